from __future__ import annotations

import logging
import re

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulse.models.user import User

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")


def extract_email(value: str) -> str | None:
    """Pull an email address out of a compound username like ``DOMAIN\\j.doe@corp.com``."""
    m = _EMAIL_RE.search(value or "")
    return m.group(1).lower() if m else None


class IdentityResolver:
    """Maps a vendor identity hint to a directory user.

    Lookups are memoized for the lifetime of the resolver, which is one sync
    run. Unmatched hints are expected (visitors, contractors) and return None.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self._cache: dict[str, User | None] = {}

    def resolve(self, identity_hint: str, source: str) -> User | None:
        hint = (identity_hint or "").strip()
        if not hint:
            return None
        key = hint.lower()
        if key in self._cache:
            return self._cache[key]

        user = self._lookup(hint)
        if user is None:
            logger.debug("%s: no user for identity hint %r", source, hint)
        self._cache[key] = user
        return user

    def _lookup(self, hint: str) -> User | None:
        if "@" in hint:
            user = self._by_email(hint.lower())
            if user is not None:
                return user

        email = extract_email(hint)
        if email and email != hint.lower():
            user = self._by_email(email)
            if user is not None:
                return user

        return self._by_display_name(hint)

    def _by_email(self, email: str) -> User | None:
        return self.db.scalar(select(User).where(func.lower(User.email) == email).limit(1))

    def _by_display_name(self, name: str) -> User | None:
        rows = self.db.scalars(
            select(User).where(func.lower(User.display_name) == name.lower()).limit(2)
        ).all()
        if len(rows) == 1:
            return rows[0]
        if len(rows) > 1:
            logger.warning("Display name %r matches several users; not resolving", name)
        return None
