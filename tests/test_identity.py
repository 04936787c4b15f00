"""
Tests for identity resolution: email, embedded email, display name.
"""

import pytest

from pulse.models.user import User
from pulse.services.identity import IdentityResolver, extract_email


@pytest.fixture
def people(db):
    users = [
        User(external_id="1", email="jane.doe@example.com", display_name="Jane Doe"),
        User(external_id="2", email="sam.lee@example.com", display_name="Sam Lee"),
        User(external_id="3", email="sam.lee2@example.com", display_name="Sam Lee"),
    ]
    db.add_all(users)
    db.commit()
    return users


class TestExtractEmail:
    def test_compound_username(self):
        assert extract_email("CORP\\Jane.Doe@Example.com") == "jane.doe@example.com"

    def test_host_prefixed(self):
        assert extract_email("host/laptop-7 jane.doe@example.com") == "jane.doe@example.com"

    def test_no_email(self):
        assert extract_email("jdoe") is None


class TestResolve:
    def test_email_is_case_insensitive(self, db, people):
        user = IdentityResolver(db).resolve("  Jane.DOE@example.com ", "ezradius")
        assert user is not None
        assert user.external_id == "1"

    def test_embedded_email(self, db, people):
        user = IdentityResolver(db).resolve("EXAMPLE\\jane.doe@example.com", "ezradius")
        assert user is not None
        assert user.external_id == "1"

    def test_display_name_fallback(self, db, people):
        user = IdentityResolver(db).resolve("jane doe", "unifi_access")
        assert user is not None
        assert user.email == "jane.doe@example.com"

    def test_ambiguous_display_name_is_not_resolved(self, db, people):
        assert IdentityResolver(db).resolve("Sam Lee", "unifi_access") is None

    def test_unknown_and_blank_hints(self, db, people):
        resolver = IdentityResolver(db)
        assert resolver.resolve("visitor@elsewhere.org", "ezradius") is None
        assert resolver.resolve("", "ezradius") is None

    def test_results_are_memoized(self, db, people, monkeypatch):
        resolver = IdentityResolver(db)
        first = resolver.resolve("jane.doe@example.com", "ezradius")

        def fail(*_args, **_kwargs):
            raise AssertionError("lookup should be cached")

        monkeypatch.setattr(resolver, "_lookup", fail)
        assert resolver.resolve("JANE.DOE@example.com", "ezradius") is first
