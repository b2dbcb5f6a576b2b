"""HTTP client for the hosted store RPC surface.

Implements the same calls as StoreService so a SyncCoordinator can run
against either. HTTP failures are translated into the foamsync error
taxonomy so retry decisions are made in one place.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from foamsync.errors import (
    AuthorizationError,
    ErrorKind,
    NotFoundError,
    PermanentError,
    TransientError,
    ValidationError,
    classify_status,
)
from foamsync.models import (
    BatchResult,
    CleanupResult,
    CrewSnapshot,
    Organization,
    OrgSnapshot,
    WarehouseStock,
)

logger = logging.getLogger(__name__)


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return

    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    message = f"{response.request.method} {response.request.url.path}: {response.status_code} {detail}"

    if response.status_code == 404:
        raise NotFoundError(message)
    if response.status_code == 422:
        raise ValidationError(message)

    kind = classify_status(response.status_code)
    if kind is ErrorKind.TRANSIENT:
        raise TransientError(message)
    if kind is ErrorKind.AUTHORIZATION:
        raise AuthorizationError(message)
    raise PermanentError(message)


class HttpStoreClient:
    """Async RPC client bound to one session token."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = token
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> HttpStoreClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = await self.client.request(method, path, json=json, headers=self._headers())
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {path}: {exc}") from exc
        _raise_for_status(response)
        return response.json()

    async def crew_login(self, org_name: str, pin: str) -> Organization:
        """Log in with company name + PIN and keep the crew token."""
        data = await self._request("POST", "/rpc/crew/login", {"org_name": org_name, "pin": pin})
        self.token = data["token"]
        return Organization.model_validate(data["organization"])

    async def fetch_org_snapshot(self, org_id: str) -> OrgSnapshot:
        return OrgSnapshot.model_validate(await self._request("GET", f"/rpc/orgs/{org_id}/snapshot"))

    async def fetch_crew_jobs(self, org_id: str) -> CrewSnapshot:
        return CrewSnapshot.model_validate(await self._request("GET", f"/rpc/orgs/{org_id}/crew-jobs"))

    async def reconcile_job(
        self, org_id: str, job_id: str, actuals: dict[str, Any], execution_status: str
    ) -> bool:
        data = await self._request(
            "POST",
            f"/rpc/orgs/{org_id}/jobs/{job_id}/reconcile",
            {"actuals": actuals, "execution_status": execution_status},
        )
        return bool(data["ok"])

    async def deduct_job_estimate(self, org_id: str, job_id: str) -> bool:
        data = await self._request("POST", f"/rpc/orgs/{org_id}/jobs/{job_id}/deduct-estimate")
        return bool(data["deducted"])

    async def enqueue_retry(
        self,
        org_id: str,
        table: str,
        operation: str,
        payload: dict[str, Any],
        conflict_key: str | None = "id",
        error: str | None = None,
    ) -> str:
        data = await self._request(
            "POST",
            f"/rpc/orgs/{org_id}/retry-queue",
            {
                "table": table,
                "operation": operation,
                "payload": payload,
                "conflict_key": conflict_key,
                "error": error,
            },
        )
        return data["id"]

    async def process_retry_batch(self, batch_size: int | None = None) -> BatchResult:
        data = await self._request(
            "POST", "/rpc/retry-queue/process", {"batch_size": batch_size}
        )
        return BatchResult.model_validate(data)

    async def cleanup_retry_queue(
        self, retention_days: int | None = None, failed_retention_days: int | None = None
    ) -> CleanupResult:
        data = await self._request(
            "POST",
            "/rpc/retry-queue/cleanup",
            {"retention_days": retention_days, "failed_retention_days": failed_retention_days},
        )
        return CleanupResult.model_validate(data)

    async def upsert_job(self, org_id: str, payload: dict[str, Any]) -> str:
        return (await self._request("PUT", f"/rpc/orgs/{org_id}/jobs", payload))["id"]

    async def upsert_customer(self, org_id: str, payload: dict[str, Any]) -> str:
        return (await self._request("PUT", f"/rpc/orgs/{org_id}/customers", payload))["id"]

    async def upsert_inventory_item(self, org_id: str, payload: dict[str, Any]) -> str:
        return (await self._request("PUT", f"/rpc/orgs/{org_id}/inventory", payload))["id"]

    async def upsert_equipment(self, org_id: str, payload: dict[str, Any]) -> str:
        return (await self._request("PUT", f"/rpc/orgs/{org_id}/equipment", payload))["id"]

    async def delete_job(self, org_id: str, job_id: str) -> str:
        return (await self._request("DELETE", f"/rpc/orgs/{org_id}/jobs/{job_id}"))["id"]

    async def delete_customer(self, org_id: str, customer_id: str) -> str:
        return (await self._request("DELETE", f"/rpc/orgs/{org_id}/customers/{customer_id}"))["id"]

    async def delete_inventory_item(self, org_id: str, item_id: str) -> str:
        return (await self._request("DELETE", f"/rpc/orgs/{org_id}/inventory/{item_id}"))["id"]

    async def update_org_settings(self, org_id: str, settings: dict[str, Any]) -> str:
        return (await self._request("PUT", f"/rpc/orgs/{org_id}/settings", settings))["id"]

    async def adjust_warehouse_stock(
        self, org_id: str, open_cell_delta: float, closed_cell_delta: float
    ) -> WarehouseStock:
        data = await self._request(
            "POST",
            f"/rpc/orgs/{org_id}/stock/adjust",
            {"open_cell_delta": open_cell_delta, "closed_cell_delta": closed_cell_delta},
        )
        return WarehouseStock.model_validate(data)
