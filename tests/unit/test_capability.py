"""Unit tests for capability tokens and crew PIN hashing."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from foamsync.auth.capability import (
    authorize,
    check_pin,
    hash_pin,
    issue_capability,
    require_admin,
    verify_capability,
)
from foamsync.errors import AuthorizationError
from foamsync.models import SessionRole

SECRET = "test-secret"
NOW = datetime(2026, 3, 1, 8, 0, 0)


class TestCapabilityTokens:
    def test_round_trip(self):
        token = issue_capability("org-1", SessionRole.CREW, "crew", SECRET, now=NOW)

        capability = verify_capability(token, SECRET, now=NOW + timedelta(hours=1))

        assert capability.org_id == "org-1"
        assert capability.role is SessionRole.CREW
        assert capability.username == "crew"
        assert not capability.is_admin

    def test_role_accepts_string(self):
        token = issue_capability("org-1", "admin", "owner@acme", SECRET, now=NOW)

        assert verify_capability(token, SECRET, now=NOW).is_admin

    @pytest.mark.parametrize("token", [None, "", "no-dot-here"])
    def test_missing_or_malformed(self, token):
        with pytest.raises(AuthorizationError, match="Missing or malformed"):
            verify_capability(token, SECRET)

    def test_wrong_secret(self):
        token = issue_capability("org-1", SessionRole.ADMIN, "a", SECRET, now=NOW)

        with pytest.raises(AuthorizationError, match="Invalid session token"):
            verify_capability(token, "other-secret", now=NOW)

    def test_tampered_claims(self):
        token = issue_capability("org-1", SessionRole.CREW, "crew", SECRET, now=NOW)
        forged = issue_capability("org-2", SessionRole.ADMIN, "crew", "guess", now=NOW)
        body = forged.rsplit(".", 1)[0]
        signature = token.rsplit(".", 1)[1]

        with pytest.raises(AuthorizationError, match="Invalid session token"):
            verify_capability(f"{body}.{signature}", SECRET, now=NOW)

    def test_expired(self):
        token = issue_capability("org-1", SessionRole.ADMIN, "a", SECRET, ttl_hours=24, now=NOW)

        with pytest.raises(AuthorizationError, match="Session expired"):
            verify_capability(token, SECRET, now=NOW + timedelta(hours=24))


class TestAuthorization:
    def _capability(self, role=SessionRole.ADMIN):
        return verify_capability(issue_capability("org-1", role, "u", SECRET, now=NOW), SECRET, now=NOW)

    def test_same_org_is_allowed(self):
        authorize(self._capability(), "org-1")

    def test_other_org_is_rejected(self):
        with pytest.raises(AuthorizationError, match="Not authorized"):
            authorize(self._capability(), "org-2")

    def test_require_admin(self):
        require_admin(self._capability())
        with pytest.raises(AuthorizationError):
            require_admin(self._capability(SessionRole.CREW))


class TestPins:
    def test_hash_and_check(self):
        pin_hash = hash_pin("1234")

        assert pin_hash != "1234"
        assert check_pin("1234", pin_hash)
        assert not check_pin("4321", pin_hash)

    def test_empty_values_never_match(self):
        assert not check_pin("", hash_pin("1234"))
        assert not check_pin("1234", "")

    def test_plaintext_hash_is_rejected(self):
        assert not check_pin("1234", "1234")
