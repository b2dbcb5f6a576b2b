"""Capability tokens scoped to one organization.

The sync layer never deals with identity. A session carries a signed
capability naming the organization and the session role, and every store
call is authorized purely on whether that organization matches the one
embedded in the call.

Token format: ``<base64url(json claims)>.<hex hmac-sha256>``.

Crew PINs are stored as bcrypt hashes.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt

from foamsync.errors import AuthorizationError
from foamsync.models import SessionRole, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Capability:
    """Verified claims of a session token."""

    org_id: str
    role: SessionRole
    username: str
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role is SessionRole.ADMIN


def _sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def issue_capability(
    org_id: str,
    role: SessionRole | str,
    username: str,
    secret: str,
    ttl_hours: int = 24,
    now: datetime | None = None,
) -> str:
    """Create a signed capability token."""
    now = now or utcnow()
    claims = {
        "org": org_id,
        "role": SessionRole(role).value,
        "sub": username,
        "exp": (now + timedelta(hours=ttl_hours)).isoformat(),
    }
    body = base64.urlsafe_b64encode(json.dumps(claims, sort_keys=True).encode())
    return f"{body.decode()}.{_sign(body, secret)}"


def verify_capability(token: str | None, secret: str, now: datetime | None = None) -> Capability:
    """Check signature and expiry.

    Raises:
        AuthorizationError: missing, tampered, malformed or expired token
    """
    if not token or "." not in token:
        raise AuthorizationError("Missing or malformed session token")

    body, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(_sign(body.encode(), secret), signature):
        raise AuthorizationError("Invalid session token")

    try:
        claims = json.loads(base64.urlsafe_b64decode(body.encode()))
        capability = Capability(
            org_id=claims["org"],
            role=SessionRole(claims["role"]),
            username=claims.get("sub", ""),
            expires_at=datetime.fromisoformat(claims["exp"]),
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise AuthorizationError("Invalid session token") from exc

    if capability.expires_at <= (now or utcnow()):
        raise AuthorizationError("Session expired, please sign in again")

    return capability


def authorize(capability: Capability, org_id: str) -> None:
    """Reject calls addressed to an organization the session does not own."""
    if capability.org_id != org_id:
        logger.warning(
            f"Session for org {capability.org_id} attempted access to org {org_id}"
        )
        raise AuthorizationError("Not authorized for this organization")


def require_admin(capability: Capability) -> None:
    if not capability.is_admin:
        raise AuthorizationError("Admin session required")


def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode(), bcrypt.gensalt()).decode()


def check_pin(pin: str, pin_hash: str) -> bool:
    if not pin or not pin_hash:
        return False
    try:
        return bcrypt.checkpw(pin.encode(), pin_hash.encode())
    except ValueError:
        # Not a bcrypt hash
        return False
