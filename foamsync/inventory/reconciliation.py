"""Inventory reconciliation for crew-reported material usage.

When a work order is created its estimated materials are deducted from
stock. When the crew reports what it actually used, stock must move by
the difference, exactly once per completion event:

- first completion: reference = estimated materials
- re-edit of a completed job: reference = previous actuals

delta = reference - actual is applied per foam counter and per inventory
line with atomic increments. Lines the crew used that were never
estimated are pure deductions. Submitting the same actuals twice yields a
zero delta the second time, which makes the procedure idempotent.

Everything runs inside the caller's transaction: job row update, counter
increments, per-item increments and usage logs commit or roll back
together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from foamsync.db.models import JobModel, MaterialLogModel
from foamsync.errors import NotFoundError, ReconciliationConflict, ValidationError
from foamsync.inventory.resolver import InventoryResolver, adjust_foam_stock, normalize_name
from foamsync.models import Actuals, ExecutionStatus, MaterialLine, MaterialSet, utcnow

logger = logging.getLogger(__name__)

# Deltas are rounded so float noise never turns into a stock write
DELTA_PRECISION = 6


@dataclass
class StockAdjustment:
    """Signed quantity change for one inventory line."""

    item_key: str | None
    name: str
    delta: float


@dataclass
class ReconciliationPlan:
    open_cell_delta: float = 0.0
    closed_cell_delta: float = 0.0
    adjustments: list[StockAdjustment] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.open_cell_delta or self.closed_cell_delta or self.adjustments)


@dataclass
class ReconciliationResult:
    job_id: str
    previous_status: str
    execution_status: str
    reconciled: bool = False
    open_cell_delta: float = 0.0
    closed_cell_delta: float = 0.0
    applied: list[StockAdjustment] = field(default_factory=list)
    unmatched: list[ReconciliationConflict] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        """True when item adjustments were attempted and none found a row."""
        return bool(self.unmatched) and not self.applied


def _delta(reference: float, actual: float) -> float:
    return round((reference or 0.0) - (actual or 0.0), DELTA_PRECISION)


def lines_match(a: MaterialLine, b: MaterialLine) -> bool:
    """Same stock key, or same normalized name."""
    if a.stock_key and a.stock_key == b.stock_key:
        return True
    name = normalize_name(a.name)
    return bool(name) and name == normalize_name(b.name)


def plan_reconciliation(reference: MaterialSet, actual: MaterialSet) -> ReconciliationPlan:
    """Compute stock deltas between a reference and a new actual.

    Each actual line is matched against at most one reference line.
    Zero deltas are dropped.
    """
    plan = ReconciliationPlan(
        open_cell_delta=_delta(reference.open_cell_sets, actual.open_cell_sets),
        closed_cell_delta=_delta(reference.closed_cell_sets, actual.closed_cell_sets),
    )

    matched: set[int] = set()
    for ref_line in reference.inventory:
        match_index = next(
            (
                index
                for index, line in enumerate(actual.inventory)
                if index not in matched and lines_match(ref_line, line)
            ),
            None,
        )
        actual_quantity = 0.0
        if match_index is not None:
            matched.add(match_index)
            actual_quantity = actual.inventory[match_index].quantity

        delta = _delta(ref_line.quantity, actual_quantity)
        if delta:
            plan.adjustments.append(
                StockAdjustment(item_key=ref_line.stock_key, name=ref_line.name, delta=delta)
            )

    # Materials used on site but never estimated
    for index, line in enumerate(actual.inventory):
        if index in matched:
            continue
        delta = _delta(0.0, line.quantity)
        if delta:
            plan.adjustments.append(
                StockAdjustment(item_key=line.stock_key, name=line.name, delta=delta)
            )

    return plan


def reference_materials(job: JobModel) -> MaterialSet:
    """What was already taken out of stock for this job."""
    if job.execution_status == ExecutionStatus.COMPLETED.value and job.actuals is not None:
        return MaterialSet.model_validate(job.actuals)
    return MaterialSet.model_validate(job.materials or {})


def parse_execution_status(value: str | ExecutionStatus) -> ExecutionStatus:
    try:
        return ExecutionStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid execution status: {value}") from exc


def _usage_logs(job: JobModel, actuals: Actuals) -> list[MaterialLogModel]:
    logged_by = actuals.completed_by or "Crew"
    common = {
        "org_id": job.org_id,
        "job_id": job.id,
        "date": utcnow(),
        "customer_name": job.customer_name or "",
        "logged_by": logged_by,
        "log_type": "actual",
    }
    logs = []
    if actuals.open_cell_sets > 0:
        logs.append(
            MaterialLogModel(
                material_name="Open Cell Foam", quantity=actuals.open_cell_sets, unit="sets", **common
            )
        )
    if actuals.closed_cell_sets > 0:
        logs.append(
            MaterialLogModel(
                material_name="Closed Cell Foam",
                quantity=actuals.closed_cell_sets,
                unit="sets",
                **common,
            )
        )
    for line in actuals.inventory:
        if line.quantity > 0:
            logs.append(
                MaterialLogModel(
                    material_name=line.name, quantity=line.quantity, unit=line.unit or "ea", **common
                )
            )
    return logs


async def reconcile_job(
    session: AsyncSession,
    org_id: str,
    job_id: str,
    actuals: Actuals | dict[str, Any],
    execution_status: str | ExecutionStatus,
) -> ReconciliationResult:
    """Persist crew actuals and reconcile stock for a completion event.

    The caller owns the transaction; nothing here commits.

    Raises:
        ValidationError: missing ids or unknown execution status
        NotFoundError: job does not exist in the organization
    """
    if not org_id or not job_id:
        raise ValidationError("org_id and job_id are required")

    status = parse_execution_status(execution_status)
    if not isinstance(actuals, Actuals):
        actuals = Actuals.model_validate(actuals or {})

    # Row lock serializes edits to the same job (ignored on SQLite)
    job = await session.scalar(
        select(JobModel)
        .where(JobModel.id == job_id, JobModel.org_id == org_id)
        .with_for_update()
    )
    if job is None:
        raise NotFoundError(f"Job {job_id} not found in organization {org_id}")

    previous_status = job.execution_status
    reference = reference_materials(job)

    job.actuals = actuals.model_dump(mode="json")
    job.execution_status = status.value
    job.last_modified = utcnow()

    result = ReconciliationResult(
        job_id=job_id, previous_status=previous_status, execution_status=status.value
    )

    if status is not ExecutionStatus.COMPLETED:
        await session.flush()
        return result

    plan = plan_reconciliation(reference, actuals)
    result.reconciled = True
    result.open_cell_delta = plan.open_cell_delta
    result.closed_cell_delta = plan.closed_cell_delta

    await adjust_foam_stock(session, org_id, plan.open_cell_delta, plan.closed_cell_delta)

    resolver = InventoryResolver(session, org_id)
    for adjustment in plan.adjustments:
        if await resolver.adjust(adjustment.item_key, adjustment.name, adjustment.delta):
            result.applied.append(adjustment)
            continue
        conflict = ReconciliationConflict(
            item_key=adjustment.item_key, item_name=adjustment.name, delta=adjustment.delta
        )
        result.unmatched.append(conflict)
        logger.warning(f"Reconcile job {job_id}: {conflict.describe()}")

    job.inventory_processed = True

    # Usage logs mirror the latest actuals only
    await session.execute(
        delete(MaterialLogModel).where(
            MaterialLogModel.org_id == org_id,
            MaterialLogModel.job_id == job_id,
            MaterialLogModel.log_type == "actual",
        )
    )
    session.add_all(_usage_logs(job, actuals))
    await session.flush()

    logger.info(
        f"Reconciled job {job_id} ({previous_status} -> {status.value}): "
        f"open {plan.open_cell_delta:+g}, closed {plan.closed_cell_delta:+g}, "
        f"{len(result.applied)} item(s) adjusted, {len(result.unmatched)} unmatched"
    )
    return result


async def deduct_job_estimate(session: AsyncSession, org_id: str, job_id: str) -> bool:
    """Deduct a work order's estimated materials from stock, at most once.

    Guarded by inventory_processed: returns False without writing when the
    flag is already set.

    Raises:
        NotFoundError: job does not exist in the organization
    """
    job = await session.scalar(
        select(JobModel)
        .where(JobModel.id == job_id, JobModel.org_id == org_id)
        .with_for_update()
    )
    if job is None:
        raise NotFoundError(f"Job {job_id} not found in organization {org_id}")
    if job.inventory_processed:
        return False

    estimated = MaterialSet.model_validate(job.materials or {})
    plan = plan_reconciliation(MaterialSet(), estimated)

    await adjust_foam_stock(session, org_id, plan.open_cell_delta, plan.closed_cell_delta)
    resolver = InventoryResolver(session, org_id)
    for adjustment in plan.adjustments:
        if not await resolver.adjust(adjustment.item_key, adjustment.name, adjustment.delta):
            logger.warning(
                f"Estimate deduction for job {job_id}: no inventory row for "
                f"{adjustment.name!r} ({adjustment.delta:+g})"
            )

    job.inventory_processed = True
    job.last_modified = utcnow()
    await session.flush()
    return True
