"""Hosted store: the RPC surface sync clients talk to.

Every method opens its own transaction through the session factory and,
for writes on jobs, customers, inventory and stock, publishes a change
event on the organization channel once the transaction has committed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from foamsync.auth.capability import check_pin, hash_pin
from foamsync.config import RetryQueueConfig
from foamsync.db.models import (
    CustomerModel,
    EquipmentModel,
    InventoryItemModel,
    JobModel,
    MaterialLogModel,
    OrganizationModel,
    WarehouseStockModel,
)
from foamsync.errors import AuthorizationError, NotFoundError, ValidationError
from foamsync.inventory import reconciliation
from foamsync.models import (
    BatchResult,
    ChangeEvent,
    ChangeOperation,
    CleanupResult,
    CrewSnapshot,
    Customer,
    Equipment,
    InventoryItem,
    Job,
    JobStatus,
    MaterialLog,
    Organization,
    OrgSettings,
    OrgSnapshot,
    WarehouseStock,
)
from foamsync.realtime.broker import Broker, publish_change
from foamsync.retry_queue.service import RetryQueueService
from foamsync.store import writes

logger = logging.getLogger(__name__)

INVALID_CREW_LOGIN = "Invalid company name or PIN."
CREW_PIN_NOT_CONFIGURED = (
    "Crew access not configured for this company. Ask an admin to set a crew PIN."
)


def _organization(row: OrganizationModel) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        phone=row.phone,
        email=row.email,
        logo_url=row.logo_url,
        address=row.address or {},
        settings=OrgSettings.model_validate(row.settings or {}),
    )


def _jobs(rows) -> list[Job]:
    return [Job.model_validate(row, from_attributes=True) for row in rows]


class StoreService:
    """Organization-scoped reads, writes and stored procedures."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: Broker | None = None,
        queue_config: RetryQueueConfig | None = None,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.retry_queue = RetryQueueService(session_factory, queue_config)

    async def _notify(self, org_id: str, table: str, operation: ChangeOperation) -> None:
        await publish_change(
            self.broker, ChangeEvent(org_id=org_id, table=table, operation=operation)
        )

    async def _organization_row(self, session: AsyncSession, org_id: str) -> OrganizationModel:
        row = await session.get(OrganizationModel, org_id)
        if row is None:
            raise NotFoundError(f"Organization {org_id} not found")
        return row

    async def _write(
        self,
        org_id: str,
        table: str,
        operation: ChangeOperation,
        write: writes.WriteFn,
        payload: dict[str, Any],
        notify: bool = True,
    ) -> str:
        if not org_id:
            raise ValidationError("org_id is required")
        async with self.session_factory() as session:
            async with session.begin():
                row_id = await write(session, org_id, payload)
        if notify:
            await self._notify(org_id, table, operation)
        return row_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_org_snapshot(self, org_id: str) -> OrgSnapshot:
        """Everything an admin session needs, in one round trip."""
        async with self.session_factory() as session:
            org = await self._organization_row(session, org_id)

            jobs = await session.scalars(
                select(JobModel)
                .where(JobModel.org_id == org_id)
                .order_by(JobModel.created_at.desc())
            )
            customers = await session.scalars(
                select(CustomerModel)
                .where(CustomerModel.org_id == org_id, CustomerModel.status != "Archived")
                .order_by(CustomerModel.name)
            )
            inventory = await session.scalars(
                select(InventoryItemModel)
                .where(InventoryItemModel.org_id == org_id)
                .order_by(InventoryItemModel.name)
            )
            stock = await session.get(WarehouseStockModel, org_id)
            equipment = await session.scalars(
                select(EquipmentModel)
                .where(EquipmentModel.org_id == org_id)
                .order_by(EquipmentModel.name)
            )
            logs = await session.scalars(
                select(MaterialLogModel)
                .where(MaterialLogModel.org_id == org_id)
                .order_by(MaterialLogModel.date.desc())
            )

            return OrgSnapshot(
                organization=_organization(org),
                jobs=_jobs(jobs.all()),
                customers=[Customer.model_validate(c, from_attributes=True) for c in customers],
                inventory=[InventoryItem.model_validate(i, from_attributes=True) for i in inventory],
                stock=(
                    WarehouseStock.model_validate(stock, from_attributes=True)
                    if stock
                    else WarehouseStock(org_id=org_id)
                ),
                equipment=[Equipment.model_validate(e, from_attributes=True) for e in equipment],
                logs=[MaterialLog.model_validate(log, from_attributes=True) for log in logs],
            )

    async def fetch_crew_jobs(self, org_id: str) -> CrewSnapshot:
        """Organization, customers and open work orders for a crew session."""
        async with self.session_factory() as session:
            org = await self._organization_row(session, org_id)

            customers = await session.scalars(
                select(CustomerModel)
                .where(CustomerModel.org_id == org_id)
                .order_by(CustomerModel.name)
            )
            jobs = await session.scalars(
                select(JobModel)
                .where(
                    JobModel.org_id == org_id,
                    JobModel.status == JobStatus.WORK_ORDER.value,
                )
                .order_by(JobModel.scheduled_date.is_(None), JobModel.scheduled_date)
            )

            return CrewSnapshot(
                organization=_organization(org),
                customers=[Customer.model_validate(c, from_attributes=True) for c in customers],
                jobs=_jobs(jobs.all()),
            )

    # ------------------------------------------------------------------
    # Stored procedures
    # ------------------------------------------------------------------

    async def reconcile_job(
        self,
        org_id: str,
        job_id: str,
        actuals: dict[str, Any],
        execution_status: str,
    ) -> bool:
        """Persist crew actuals and reconcile stock in one transaction.

        Returns False only when every inventory adjustment found no row;
        the job update itself is committed either way.
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await reconciliation.reconcile_job(
                    session, org_id, job_id, actuals, execution_status
                )

        await self._notify(org_id, "jobs", ChangeOperation.UPDATE)
        if result.reconciled and (
            result.open_cell_delta or result.closed_cell_delta or result.applied
        ):
            await self._notify(org_id, "warehouse_stock", ChangeOperation.UPDATE)
            await self._notify(org_id, "inventory_items", ChangeOperation.UPDATE)
        return not result.all_failed

    async def deduct_job_estimate(self, org_id: str, job_id: str) -> bool:
        """Deduct a new work order's estimate from stock, at most once."""
        async with self.session_factory() as session:
            async with session.begin():
                deducted = await reconciliation.deduct_job_estimate(session, org_id, job_id)

        if deducted:
            await self._notify(org_id, "warehouse_stock", ChangeOperation.UPDATE)
            await self._notify(org_id, "inventory_items", ChangeOperation.UPDATE)
        return deducted

    async def enqueue_retry(
        self,
        org_id: str,
        table: str,
        operation: str,
        payload: dict[str, Any],
        conflict_key: str | None = "id",
        error: str | None = None,
        now: datetime | None = None,
    ) -> str:
        return await self.retry_queue.enqueue(
            org_id, table, operation, payload, conflict_key, error, now=now
        )

    async def process_retry_batch(
        self, batch_size: int | None = None, now: datetime | None = None
    ) -> BatchResult:
        return await self.retry_queue.process_batch(batch_size=batch_size, now=now)

    async def cleanup_retry_queue(
        self,
        retention_days: int | None = None,
        failed_retention_days: int | None = None,
        now: datetime | None = None,
    ) -> CleanupResult:
        return await self.retry_queue.cleanup(
            now=now,
            retention_days=retention_days,
            failed_retention_days=failed_retention_days,
        )

    async def queue_stats(self, org_id: str | None = None) -> dict[str, int]:
        return await self.retry_queue.stats(org_id)

    # ------------------------------------------------------------------
    # CRUD writes
    # ------------------------------------------------------------------

    async def upsert_job(self, org_id: str, payload: dict[str, Any]) -> str:
        return await self._write(org_id, "jobs", ChangeOperation.UPDATE, writes.write_job, payload)

    async def upsert_customer(self, org_id: str, payload: dict[str, Any]) -> str:
        return await self._write(
            org_id, "customers", ChangeOperation.UPDATE, writes.write_customer, payload
        )

    async def upsert_inventory_item(self, org_id: str, payload: dict[str, Any]) -> str:
        """Upsert resolved by id, then by name, else a new store id."""
        return await self._write(
            org_id, "inventory_items", ChangeOperation.UPDATE, writes.write_inventory_item, payload
        )

    async def upsert_equipment(self, org_id: str, payload: dict[str, Any]) -> str:
        return await self._write(
            org_id, "equipment", ChangeOperation.UPDATE, writes.write_equipment, payload,
            notify=False,
        )

    async def delete_job(self, org_id: str, job_id: str) -> str:
        return await self._write(
            org_id, "jobs", ChangeOperation.DELETE,
            lambda s, o, p: writes.delete_row(s, o, p, model=JobModel), {"id": job_id},
        )

    async def delete_customer(self, org_id: str, customer_id: str) -> str:
        return await self._write(
            org_id, "customers", ChangeOperation.DELETE,
            lambda s, o, p: writes.delete_row(s, o, p, model=CustomerModel), {"id": customer_id},
        )

    async def delete_inventory_item(self, org_id: str, item_id: str) -> str:
        return await self._write(
            org_id, "inventory_items", ChangeOperation.DELETE,
            lambda s, o, p: writes.delete_row(s, o, p, model=InventoryItemModel), {"id": item_id},
        )

    async def update_org_settings(self, org_id: str, settings: dict[str, Any]) -> str:
        """Replace the settings document (yields, costs, pricing, lifetime usage)."""
        validated = OrgSettings.model_validate(settings or {})
        return await self._write(
            org_id, "organizations", ChangeOperation.UPDATE, writes.patch_organization,
            {"settings": validated.model_dump(mode="json")}, notify=False,
        )

    async def adjust_warehouse_stock(
        self, org_id: str, open_cell_delta: float, closed_cell_delta: float
    ) -> WarehouseStock:
        """Atomically increment the foam counters and return the new totals."""
        async with self.session_factory() as session:
            async with session.begin():
                await writes.write_stock_delta(
                    session,
                    org_id,
                    {"open_cell_delta": open_cell_delta, "closed_cell_delta": closed_cell_delta},
                )
            stock = await session.get(WarehouseStockModel, org_id, populate_existing=True)

        if open_cell_delta or closed_cell_delta:
            await self._notify(org_id, "warehouse_stock", ChangeOperation.UPDATE)
        if stock is None:
            return WarehouseStock(org_id=org_id)
        return WarehouseStock.model_validate(stock, from_attributes=True)

    # ------------------------------------------------------------------
    # Organizations and crew access
    # ------------------------------------------------------------------

    async def create_organization(
        self, name: str, crew_pin: str | None = None, org_id: str | None = None
    ) -> Organization:
        """Create an organization with a zeroed stock row."""
        if not name or not name.strip():
            raise ValidationError("Organization name is required")

        async with self.session_factory() as session:
            async with session.begin():
                org = OrganizationModel(
                    name=name.strip(),
                    crew_pin=hash_pin(crew_pin) if crew_pin else "",
                    address={},
                    settings=OrgSettings().model_dump(mode="json"),
                )
                if org_id:
                    org.id = org_id
                session.add(org)
                await session.flush()
                session.add(WarehouseStockModel(org_id=org.id, open_cell_sets=0.0, closed_cell_sets=0.0))
                organization = _organization(org)

        logger.info(f"Created organization {organization.id} ({organization.name})")
        return organization

    async def set_crew_pin(self, org_id: str, pin: str) -> None:
        if not pin:
            raise ValidationError("PIN is required")
        async with self.session_factory() as session:
            async with session.begin():
                org = await self._organization_row(session, org_id)
                org.crew_pin = hash_pin(pin)

    async def verify_crew_pin(self, org_name: str, pin: str) -> Organization:
        """Resolve a crew login to its organization.

        Raises:
            AuthorizationError: unknown company, wrong PIN, or no PIN configured
        """
        async with self.session_factory() as session:
            org = await session.scalar(
                select(OrganizationModel)
                .where(func.lower(func.trim(OrganizationModel.name)) == (org_name or "").strip().lower())
                .order_by(OrganizationModel.created_at)
                .limit(1)
            )

        if org is None:
            raise AuthorizationError(INVALID_CREW_LOGIN)
        if not org.crew_pin:
            raise AuthorizationError(CREW_PIN_NOT_CONFIGURED)
        if not check_pin((pin or "").strip(), org.crew_pin):
            raise AuthorizationError(INVALID_CREW_LOGIN)
        return _organization(org)
