"""Store RPC routes.

Every organization-scoped route is authorized purely on the organization
id in the path matching the session capability. Crew sessions carry no
identity beyond that.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from foamsync.auth.capability import Capability, issue_capability
from foamsync.config import AppConfig
from foamsync.models import (
    Actuals,
    BatchResult,
    CleanupResult,
    CrewSnapshot,
    ExecutionStatus,
    Organization,
    OrgSnapshot,
    RetryOperation,
    SessionRole,
    WarehouseStock,
)
from foamsync.store.service import StoreService
from foamsync.web.dependencies import (
    admin_capability,
    get_app_config,
    get_store,
    org_capability,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rpc", tags=["RPC"])


class CrewLoginRequest(BaseModel):
    org_name: str
    pin: str


class CrewLoginResponse(BaseModel):
    token: str
    organization: Organization


class ReconcileRequest(BaseModel):
    actuals: Actuals = Field(default_factory=Actuals)
    execution_status: ExecutionStatus


class EnqueueRequest(BaseModel):
    table: str
    operation: RetryOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    conflict_key: str | None = "id"
    error: str | None = None


class StockDeltaRequest(BaseModel):
    open_cell_delta: float = 0.0
    closed_cell_delta: float = 0.0


class BatchRequest(BaseModel):
    batch_size: int | None = Field(default=None, gt=0)


class CleanupRequest(BaseModel):
    retention_days: int | None = Field(default=None, ge=0)
    failed_retention_days: int | None = Field(default=None, ge=0)


@router.post("/crew/login", response_model=CrewLoginResponse)
async def crew_login(
    body: CrewLoginRequest,
    store: StoreService = Depends(get_store),
    config: AppConfig = Depends(get_app_config),
):
    """Exchange company name + crew PIN for an org-scoped crew capability."""
    organization = await store.verify_crew_pin(body.org_name, body.pin)
    token = issue_capability(
        organization.id,
        SessionRole.CREW,
        "crew",
        config.auth.secret_key,
        ttl_hours=config.auth.capability_ttl_hours,
    )
    logger.info(f"Crew session issued for org {organization.id}")
    return CrewLoginResponse(token=token, organization=organization)


@router.get("/orgs/{org_id}/snapshot", response_model=OrgSnapshot)
async def fetch_org_snapshot(
    org_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return await store.fetch_org_snapshot(org_id)


@router.get("/orgs/{org_id}/crew-jobs", response_model=CrewSnapshot)
async def fetch_crew_jobs(
    org_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return await store.fetch_crew_jobs(org_id)


@router.post("/orgs/{org_id}/jobs/{job_id}/reconcile")
async def reconcile_job(
    org_id: str,
    job_id: str,
    body: ReconcileRequest,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    ok = await store.reconcile_job(
        org_id, job_id, body.actuals.model_dump(mode="json"), body.execution_status.value
    )
    return {"ok": ok}


@router.post("/orgs/{org_id}/jobs/{job_id}/deduct-estimate")
async def deduct_job_estimate(
    org_id: str,
    job_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"deducted": await store.deduct_job_estimate(org_id, job_id)}


@router.put("/orgs/{org_id}/jobs")
async def upsert_job(
    org_id: str,
    payload: dict[str, Any],
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.upsert_job(org_id, payload)}


@router.delete("/orgs/{org_id}/jobs/{job_id}")
async def delete_job(
    org_id: str,
    job_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.delete_job(org_id, job_id)}


@router.put("/orgs/{org_id}/customers")
async def upsert_customer(
    org_id: str,
    payload: dict[str, Any],
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.upsert_customer(org_id, payload)}


@router.delete("/orgs/{org_id}/customers/{customer_id}")
async def delete_customer(
    org_id: str,
    customer_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.delete_customer(org_id, customer_id)}


@router.put("/orgs/{org_id}/equipment")
async def upsert_equipment(
    org_id: str,
    payload: dict[str, Any],
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.upsert_equipment(org_id, payload)}


@router.put("/orgs/{org_id}/inventory")
async def upsert_inventory_item(
    org_id: str,
    payload: dict[str, Any],
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.upsert_inventory_item(org_id, payload)}


@router.delete("/orgs/{org_id}/inventory/{item_id}")
async def delete_inventory_item(
    org_id: str,
    item_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.delete_inventory_item(org_id, item_id)}


@router.put("/orgs/{org_id}/settings")
async def update_org_settings(
    org_id: str,
    settings: dict[str, Any],
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return {"id": await store.update_org_settings(org_id, settings)}


@router.post("/orgs/{org_id}/stock/adjust", response_model=WarehouseStock)
async def adjust_warehouse_stock(
    org_id: str,
    body: StockDeltaRequest,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return await store.adjust_warehouse_stock(org_id, body.open_cell_delta, body.closed_cell_delta)


@router.post("/orgs/{org_id}/retry-queue")
async def enqueue_retry(
    org_id: str,
    body: EnqueueRequest,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    entry_id = await store.enqueue_retry(
        org_id, body.table, body.operation.value, body.payload, body.conflict_key, body.error
    )
    return {"id": entry_id}


@router.get("/orgs/{org_id}/retry-queue/stats")
async def queue_stats(
    org_id: str,
    capability: Capability = Depends(org_capability),
    store: StoreService = Depends(get_store),
):
    return await store.queue_stats(org_id)


@router.post("/retry-queue/process", response_model=BatchResult)
async def process_retry_batch(
    body: BatchRequest | None = None,
    capability: Capability = Depends(admin_capability),
    store: StoreService = Depends(get_store),
):
    """On-demand batch run; normally the worker cron does this."""
    return await store.process_retry_batch(batch_size=body.batch_size if body else None)


@router.post("/retry-queue/cleanup", response_model=CleanupResult)
async def cleanup_retry_queue(
    body: CleanupRequest | None = None,
    capability: Capability = Depends(admin_capability),
    store: StoreService = Depends(get_store),
):
    body = body or CleanupRequest()
    return await store.cleanup_retry_queue(body.retention_days, body.failed_retention_days)
