"""Shared dependencies for foamsync web routes.

Usage:
    from fastapi import Depends
    from foamsync.web.dependencies import get_store, org_capability

    @router.get("/orgs/{org_id}/thing")
    async def thing(
        org_id: str,
        capability: Capability = Depends(org_capability),
        store: StoreService = Depends(get_store),
    ):
        ...
"""

from __future__ import annotations

from fastapi import Depends, Header, Request

from foamsync.auth.capability import Capability, authorize, require_admin, verify_capability
from foamsync.config import AppConfig
from foamsync.realtime.broker import Broker
from foamsync.store.service import StoreService


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_store(request: Request) -> StoreService:
    return request.app.state.store


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def get_capability(
    authorization: str | None = Header(default=None),
    config: AppConfig = Depends(get_app_config),
) -> Capability:
    """Verified capability from the Authorization header.

    Raises:
        AuthorizationError: missing, invalid or expired token (mapped to 403)
    """
    return verify_capability(bearer_token(authorization), config.auth.secret_key)


def org_capability(org_id: str, capability: Capability = Depends(get_capability)) -> Capability:
    """Capability checked against the organization in the path."""
    authorize(capability, org_id)
    return capability


def admin_capability(capability: Capability = Depends(get_capability)) -> Capability:
    require_admin(capability)
    return capability
