"""Row-level write routines shared by live RPC calls and queue replay.

A write the client could not complete is replayed later by the retry
queue. Both paths call the functions here so that a replayed write uses
exactly the conflict columns and merge rules the live write would have.

Every function is tenant-scoped: org_id comes from the call, never from
the payload, and the caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from foamsync.db.models import (
    CustomerModel,
    EquipmentModel,
    InventoryItemModel,
    JobModel,
    MaterialLogModel,
    OrganizationModel,
)
from foamsync.db.upsert import table_values, upsert_row
from foamsync.errors import NotFoundError, ValidationError
from foamsync.inventory.reconciliation import reconcile_job
from foamsync.inventory.resolver import InventoryResolver, adjust_foam_stock
from foamsync.models import is_server_id, new_id, utcnow

logger = logging.getLogger(__name__)

# Columns a job "update" may touch without a full upsert
JOB_PATCH_COLUMNS = (
    "status",
    "execution_status",
    "actuals",
    "inventory_processed",
    "scheduled_date",
    "notes",
)

ORG_PATCH_COLUMNS = ("name", "phone", "email", "logo_url", "address", "settings", "crew_pin")


def _coerce(model, values: dict[str, Any]) -> dict[str, Any]:
    """Drop unknown keys and parse ISO timestamps for DateTime columns."""
    table = model.__table__
    clean = table_values(table, values)
    for key, value in list(clean.items()):
        if isinstance(value, str) and isinstance(table.c[key].type, DateTime):
            clean[key] = datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    return clean


def _scoped(model, org_id: str, payload: dict[str, Any], generate_id: bool = True) -> dict[str, Any]:
    values = _coerce(model, payload)
    values["org_id"] = org_id
    if generate_id and not values.get("id"):
        values["id"] = new_id()
    return values


async def _upsert_owned(
    session: AsyncSession, model, org_id: str, values: dict[str, Any]
) -> str:
    """Upsert on id without ever touching a row owned by another organization."""
    table = model.__table__
    written = await upsert_row(session, table, values, ["id"], owner_column="org_id")
    if not written:
        row_id = values["id"]
        raise NotFoundError(f"{table.name} row {row_id} not found in organization {org_id}")
    return values["id"]


async def write_job(session: AsyncSession, org_id: str, payload: dict[str, Any]) -> str:
    """Insert or update a job record on id."""
    values = _scoped(JobModel, org_id, payload)
    values.setdefault("last_modified", utcnow())
    values.pop("created_at", None)
    return await _upsert_owned(session, JobModel, org_id, values)


async def patch_job(session: AsyncSession, org_id: str, payload: dict[str, Any]) -> str:
    """Partial job update.

    A payload carrying both actuals and execution_status is a crew
    submission and goes through reconciliation, so stock moves exactly as
    it would have on the live call.
    """
    job_id = payload.get("id")
    if not job_id:
        raise ValidationError("Job update requires an id")

    if "actuals" in payload and "execution_status" in payload:
        await reconcile_job(
            session, org_id, job_id, payload["actuals"] or {}, payload["execution_status"]
        )
        if payload.get("status"):
            await session.execute(
                update(JobModel)
                .where(JobModel.id == job_id, JobModel.org_id == org_id)
                .values(status=payload["status"])
            )
        return job_id

    changes = {key: payload[key] for key in JOB_PATCH_COLUMNS if key in payload}
    if not changes:
        raise ValidationError(f"Job update for {job_id} carries no updatable fields")
    changes["last_modified"] = utcnow()

    result = await session.execute(
        update(JobModel).where(JobModel.id == job_id, JobModel.org_id == org_id).values(**changes)
    )
    if not result.rowcount:
        raise NotFoundError(f"Job {job_id} not found in organization {org_id}")
    return job_id


async def write_customer(session: AsyncSession, org_id: str, payload: dict[str, Any]) -> str:
    values = _scoped(CustomerModel, org_id, payload)
    values.pop("created_at", None)
    return await _upsert_owned(session, CustomerModel, org_id, values)


async def write_inventory_item(
    session: AsyncSession, org_id: str, payload: dict[str, Any]
) -> str:
    """Upsert an inventory row resolved by id, then by normalized name.

    Client-generated temporary ids that match no row are replaced by the
    id of a same-named row, or by a fresh store id. So is an id that
    belongs to another organization.
    """
    values = _scoped(InventoryItemModel, org_id, payload, generate_id=False)
    resolver = InventoryResolver(session, org_id)
    resolved = await resolver.resolve_id(values.get("id"), values.get("name"))

    if resolved:
        values["id"] = resolved
    elif not is_server_id(values.get("id")) or await resolver.id_taken(values["id"]):
        values["id"] = new_id()

    return await _upsert_owned(session, InventoryItemModel, org_id, values)


async def write_equipment(session: AsyncSession, org_id: str, payload: dict[str, Any]) -> str:
    values = _scoped(EquipmentModel, org_id, payload)
    return await _upsert_owned(session, EquipmentModel, org_id, values)


async def write_material_log(
    session: AsyncSession, org_id: str, payload: dict[str, Any]
) -> str:
    """Insert a usage log; an existing id is left untouched."""
    values = _scoped(MaterialLogModel, org_id, payload)
    values.pop("created_at", None)
    await upsert_row(session, MaterialLogModel.__table__, values, ["id"], update_columns=[])
    return values["id"]


async def write_stock_delta(session: AsyncSession, org_id: str, payload: dict[str, Any]) -> str:
    """Apply foam counter deltas. Counters are never overwritten."""
    try:
        open_delta = float(payload.get("open_cell_delta") or 0)
        closed_delta = float(payload.get("closed_cell_delta") or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid stock delta payload: {payload}") from exc

    await adjust_foam_stock(session, org_id, open_delta, closed_delta)
    return org_id


async def patch_organization(
    session: AsyncSession, org_id: str, payload: dict[str, Any]
) -> str:
    """Update settings/profile fields that are present in the payload."""
    changes = {
        key: payload[key]
        for key in ORG_PATCH_COLUMNS
        if key in payload and payload[key] is not None
    }
    if not changes:
        raise ValidationError("Organization update carries no updatable fields")

    result = await session.execute(
        update(OrganizationModel).where(OrganizationModel.id == org_id).values(**changes)
    )
    if not result.rowcount:
        raise NotFoundError(f"Organization {org_id} not found")
    return org_id


async def delete_row(
    session: AsyncSession, org_id: str, payload: dict[str, Any], *, model
) -> str:
    """Delete one org-scoped row by id. Deleting a missing row is not an error."""
    row_id = payload.get("id")
    if not row_id:
        raise ValidationError(f"Delete on {model.__tablename__} requires an id")

    result = await session.execute(
        delete(model).where(model.id == row_id, model.org_id == org_id)
    )
    if not result.rowcount:
        logger.debug(f"Delete {model.__tablename__}/{row_id}: already gone")
    return row_id
