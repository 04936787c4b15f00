from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.core.config import Settings
from pulse.core.errors import ConfigurationError, SourceError
from pulse.models.user import User

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
LOGIN_URL = "https://login.microsoftonline.com"
MEMBER_FIELDS = "id,displayName,mail,userPrincipalName,department,jobTitle,accountEnabled"


class DirectoryUser(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    display_name: str | None = Field(default=None, alias="displayName")
    mail: str | None = None
    user_principal_name: str | None = Field(default=None, alias="userPrincipalName")
    department: str | None = None
    job_title: str | None = Field(default=None, alias="jobTitle")
    account_enabled: bool | None = Field(default=None, alias="accountEnabled")

    @property
    def email(self) -> str | None:
        value = self.mail or self.user_principal_name
        return value.strip().lower() if value else None


@dataclass
class DirectorySyncResult:
    fetched: int = 0
    synced: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "synced": self.synced,
            "errors": self.errors[:10],
            "totalErrors": len(self.errors),
        }


class GraphDirectoryClient:
    """Members of the tracked-users group, via client-credentials auth."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        group_id: str,
        *,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.group_id = group_id
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "GraphDirectoryClient":
        if not settings.directory_configured:
            raise ConfigurationError(
                "AZURE_TENANT_ID, AZURE_CLIENT_ID, AZURE_CLIENT_SECRET and DIRECTORY_GROUP_ID are required"
            )
        return cls(
            settings.azure_tenant_id or "",
            settings.azure_client_id or "",
            settings.azure_client_secret or "",
            settings.directory_group_id or "",
            timeout=settings.http_timeout_seconds,
            **kwargs,
        )

    def _token(self, client: httpx.Client) -> str:
        res = client.post(
            f"{LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": "https://graph.microsoft.com/.default",
                "grant_type": "client_credentials",
            },
        )
        if res.status_code >= 400:
            raise SourceError("directory", f"token request failed: HTTP {res.status_code}")
        token = res.json().get("access_token")
        if not token:
            raise SourceError("directory", "token response has no access_token")
        return token

    def members(self) -> list[DirectoryUser]:
        out: list[DirectoryUser] = []
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                headers = {"Authorization": f"Bearer {self._token(client)}"}
                url: str | None = f"{GRAPH_URL}/groups/{self.group_id}/members"
                params: dict | None = {"$select": MEMBER_FIELDS, "$top": 999}
                while url:
                    res = client.get(url, params=params, headers=headers)
                    if res.status_code >= 400:
                        raise SourceError("directory", f"group members request failed: HTTP {res.status_code}")
                    data = res.json()
                    for item in data.get("value") or []:
                        try:
                            out.append(DirectoryUser.model_validate(item))
                        except ValidationError:
                            logger.warning("Skipping malformed directory member %r", item.get("id"))
                    # nextLink already carries the query string
                    url = data.get("@odata.nextLink")
                    params = None
        except httpx.HTTPError as exc:
            raise SourceError("directory", str(exc)) from exc
        return out


def upsert_directory_users(db: Session, members: Iterable[DirectoryUser]) -> DirectorySyncResult:
    """Insert or update users keyed by directory id, one commit per user."""
    result = DirectorySyncResult()
    for member in members:
        result.fetched += 1
        email = member.email
        if not email:
            continue
        try:
            user = db.scalar(select(User).where(User.external_id == member.id))
            if user is None:
                user = User(external_id=member.id)
                db.add(user)
            user.email = email
            user.display_name = (member.display_name or email).strip()
            user.department = member.department
            user.job_title = member.job_title
            user.is_active = member.account_enabled is not False
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("Failed to sync directory user %s", member.id)
            result.errors.append(f"User {member.display_name or member.id}: {exc}")
            continue
        result.synced += 1
    logger.info("Directory sync: %d members, %d synced, %d errors", result.fetched, result.synced, len(result.errors))
    return result


def sync_directory(db: Session, client: GraphDirectoryClient) -> DirectorySyncResult:
    return upsert_directory_users(db, client.members())
