"""Client-side sync coordinator.

Keeps a local copy of organization state eventually consistent with the
hosted store while staying usable offline:

- cold-start pull of the full snapshot, falling back to the local cache
- debounced push of the coordinator-owned slice (settings and foam
  counters) whenever its fingerprint changes
- optimistic per-entity writes with bounded retries, then the durable
  retry queue
- wholesale refetch of entity classes on change notifications

All state mutation happens on one event loop, so nothing here locks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from foamsync.config import SyncConfig
from foamsync.errors import ErrorKind, ValidationError, classify_error
from foamsync.models import (
    Actuals,
    CrewSnapshot,
    Customer,
    Equipment,
    ExecutionStatus,
    InventoryItem,
    Job,
    JobStatus,
    OrgSettings,
    OrgSnapshot,
    RetryOperation,
    SessionRole,
    WarehouseStock,
    utcnow,
)
from foamsync.realtime.broker import (
    Broker,
    broadcast_work_order_update,
    crew_channel,
    org_channel,
)
from foamsync.realtime.dedup import Deduplicator
from foamsync.sync.fingerprint import sync_fingerprint
from foamsync.sync.local_cache import CachedState, LocalCache
from foamsync.sync.notifications import NotificationCenter, SyncStatus
from foamsync.sync.retry import WriteOutcome, WriteResult, retry_write

logger = logging.getLogger(__name__)

DELTA_PRECISION = 6

# Snapshot attributes refetched for a change on each table. Reconciliation
# writes material logs under a jobs change.
CHANGE_SLICES: dict[str, tuple[str, ...]] = {
    "jobs": ("jobs", "logs"),
    "customers": ("customers",),
    "inventory_items": ("inventory",),
    "equipment": ("equipment",),
    "material_logs": ("logs",),
    "warehouse_stock": ("stock",),
}
ALL_SLICES = ("jobs", "customers", "inventory", "equipment", "logs", "stock")
CREW_SLICES = ("jobs", "customers")


class RemoteStore(Protocol):
    """Store calls the coordinator relies on (StoreService or HTTP client)."""

    async def fetch_org_snapshot(self, org_id: str) -> OrgSnapshot: ...
    async def fetch_crew_jobs(self, org_id: str) -> CrewSnapshot: ...
    async def reconcile_job(self, org_id: str, job_id: str, actuals: dict, execution_status: str) -> bool: ...
    async def enqueue_retry(self, org_id: str, table: str, operation: str, payload: dict, conflict_key: str | None = "id", error: str | None = None) -> str: ...
    async def upsert_job(self, org_id: str, payload: dict) -> str: ...
    async def upsert_customer(self, org_id: str, payload: dict) -> str: ...
    async def upsert_inventory_item(self, org_id: str, payload: dict) -> str: ...
    async def upsert_equipment(self, org_id: str, payload: dict) -> str: ...
    async def delete_job(self, org_id: str, job_id: str) -> str: ...
    async def delete_customer(self, org_id: str, customer_id: str) -> str: ...
    async def delete_inventory_item(self, org_id: str, item_id: str) -> str: ...
    async def update_org_settings(self, org_id: str, settings: dict) -> str: ...
    async def adjust_warehouse_stock(self, org_id: str, open_cell_delta: float, closed_cell_delta: float) -> WarehouseStock: ...
    async def deduct_job_estimate(self, org_id: str, job_id: str) -> bool: ...


@dataclass
class SessionContext:
    """Who the coordinator syncs for. Crew sessions have no identity beyond the org."""

    org_id: str
    username: str
    role: SessionRole = SessionRole.ADMIN
    token: str | None = None

    @property
    def is_crew(self) -> bool:
        return self.role is SessionRole.CREW


def _replace_by_id(items: list, item) -> None:
    for index, existing in enumerate(items):
        if existing.id == item.id:
            items[index] = item
            return
    items.insert(0, item)


def _find(items: list, item_id: str):
    return next((item for item in items if item.id == item_id), None)


class SyncCoordinator:
    """Keeps one session's local state in step with the store."""

    def __init__(
        self,
        remote: RemoteStore,
        session: SessionContext,
        config: SyncConfig | None = None,
        cache: LocalCache | None = None,
        broker: Broker | None = None,
        notifications: NotificationCenter | None = None,
        dedup_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.remote = remote
        self.session = session
        self.config = config or SyncConfig()
        self.cache = cache or LocalCache(self.config.cache_dir)
        self.broker = broker
        self.notifications = notifications or NotificationCenter()
        self.dedup = Deduplicator(dedup_seconds)
        self._sleep = sleep

        self.state: OrgSnapshot | None = None
        self.status = SyncStatus.IDLE
        self.initialized = False
        self.outbox: list[dict[str, Any]] = []

        self._baseline: str | None = None
        self._confirmed_stock: WarehouseStock | None = None
        self._pulling = False
        self._debounce_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribes: list[Callable[[], Awaitable[None]]] = []

    @property
    def org_id(self) -> str:
        return self.session.org_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Cold pull, then subscribe to change notifications."""
        pulled = await self.pull(initial=True)

        if self.broker is not None:
            channel = crew_channel(self.org_id) if self.session.is_crew else org_channel(self.org_id)
            try:
                self._unsubscribes.append(
                    await self.broker.subscribe(channel, self.handle_remote_change)
                )
            except Exception as e:
                logger.warning(f"Realtime subscription to {channel} failed: {e}")

        if pulled and self.outbox:
            await self.flush_outbox()
        return pulled

    async def stop(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None
        for unsubscribe in self._unsubscribes:
            try:
                await unsubscribe()
            except Exception as e:
                logger.warning(f"Realtime unsubscribe failed: {e}")
        self._unsubscribes.clear()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait for in-flight background pushes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _fetch(self) -> OrgSnapshot:
        if self.session.is_crew:
            crew = await self.remote.fetch_crew_jobs(self.org_id)
            return OrgSnapshot(
                organization=crew.organization,
                customers=crew.customers,
                jobs=crew.jobs,
                stock=WarehouseStock(org_id=self.org_id),
            )
        return await self.remote.fetch_org_snapshot(self.org_id)

    async def pull(self, initial: bool = False) -> bool:
        """Fetch the full snapshot and replace local state.

        On an initial pull that fails, the cached snapshot is used instead.
        initialized is set either way.
        """
        self._pulling = True
        self.status = SyncStatus.SYNCING
        try:
            snapshot = await self._fetch()
        except Exception as exc:
            kind = classify_error(exc)
            logger.warning(f"Pull for org {self.org_id} failed ({kind.value}): {exc}")
            self.status = SyncStatus.ERROR
            if kind is ErrorKind.AUTHORIZATION:
                self.notifications.for_error(kind)
            elif initial:
                self._load_cached()
            return False
        finally:
            self._pulling = False
            self.initialized = True

        self.state = snapshot
        self._confirmed_stock = snapshot.stock.model_copy()
        self._baseline = self.fingerprint()
        self.status = SyncStatus.SUCCESS
        self._persist()
        return True

    def _load_cached(self) -> None:
        cached = self.cache.load(self.session.username)
        if cached is None:
            self.notifications.notify("error", "Unable to reach the server and no saved data")
            return

        self.state = cached.snapshot
        self.outbox = list(cached.outbox)
        self._confirmed_stock = cached.snapshot.stock.model_copy()
        self._baseline = self.fingerprint()
        self.notifications.notify("warning", f"Working offline with data saved {cached.saved_at}")

    def _persist(self) -> None:
        if self.state is None:
            return
        self.cache.save(self.session.username, CachedState(snapshot=self.state, outbox=self.outbox))

    # ------------------------------------------------------------------
    # Debounced push of settings and counters
    # ------------------------------------------------------------------

    def fingerprint(self) -> str | None:
        if self.state is None:
            return None
        return sync_fingerprint(self.state.organization.settings, self.state.stock)

    def on_state_change(self) -> None:
        """Record a local edit and (re)start the quiet period before pushing."""
        self._persist()
        if self.state is None or self.session.is_crew or self._pulling or not self.initialized:
            return
        if self.fingerprint() == self._baseline:
            return

        self.status = SyncStatus.PENDING
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = self._spawn(self._debounced_push())

    async def _debounced_push(self) -> None:
        await asyncio.sleep(self.config.debounce_seconds)
        # Past the quiet period the push is in flight and no longer cancellable
        self._debounce_task = None
        await self.push()

    def update_settings(self, **changes: Any) -> OrgSettings:
        if self.state is None:
            raise ValidationError("No organization loaded")
        settings = self.state.organization.settings.model_copy(update=changes)
        self.state.organization.settings = OrgSettings.model_validate(settings.model_dump())
        self.on_state_change()
        return self.state.organization.settings

    def adjust_local_stock(self, open_cell_delta: float = 0.0, closed_cell_delta: float = 0.0) -> None:
        """Edit the foam counters locally; the difference is pushed later."""
        if self.state is None:
            raise ValidationError("No organization loaded")
        self.state.stock.open_cell_sets += open_cell_delta
        self.state.stock.closed_cell_sets += closed_cell_delta
        self.on_state_change()

    def _rebase_stock(self, server: WarehouseStock, pushed_open: float = 0.0, pushed_closed: float = 0.0) -> None:
        """Adopt server counters while keeping local edits not yet pushed."""
        local = self.state.stock
        confirmed = self._confirmed_stock or WarehouseStock(org_id=self.org_id)
        unpushed_open = local.open_cell_sets - confirmed.open_cell_sets - pushed_open
        unpushed_closed = local.closed_cell_sets - confirmed.closed_cell_sets - pushed_closed

        self._confirmed_stock = server.model_copy()
        local.open_cell_sets = round(server.open_cell_sets + unpushed_open, DELTA_PRECISION)
        local.closed_cell_sets = round(server.closed_cell_sets + unpushed_closed, DELTA_PRECISION)

    def _advance_confirmed(self, open_delta: float, closed_delta: float) -> None:
        confirmed = self._confirmed_stock
        confirmed.open_cell_sets = round(confirmed.open_cell_sets + open_delta, DELTA_PRECISION)
        confirmed.closed_cell_sets = round(confirmed.closed_cell_sets + closed_delta, DELTA_PRECISION)

    async def push(self, force: bool = False) -> bool:
        """Push settings and counter deltas if they changed since the baseline."""
        if self.state is None or self.session.is_crew:
            return False
        fingerprint = self.fingerprint()
        if not force and fingerprint == self._baseline:
            return True

        self.status = SyncStatus.SYNCING
        settings = self.state.organization.settings.model_dump(mode="json")
        settings_result = await self._write(
            "organizations",
            RetryOperation.UPDATE,
            lambda: self.remote.update_org_settings(self.org_id, settings),
            {"settings": settings},
        )

        confirmed = self._confirmed_stock or WarehouseStock(org_id=self.org_id)
        self._confirmed_stock = confirmed
        open_delta = round(self.state.stock.open_cell_sets - confirmed.open_cell_sets, DELTA_PRECISION)
        closed_delta = round(
            self.state.stock.closed_cell_sets - confirmed.closed_cell_sets, DELTA_PRECISION
        )

        stock_result = WriteResult(WriteOutcome.OK)
        if open_delta or closed_delta:
            payload = {"open_cell_delta": open_delta, "closed_cell_delta": closed_delta}
            stock_result = await self._write(
                "warehouse_stock",
                RetryOperation.UPDATE,
                lambda: self.remote.adjust_warehouse_stock(self.org_id, open_delta, closed_delta),
                payload,
                conflict_key="org_id",
            )
            if stock_result.ok and isinstance(stock_result.value, WarehouseStock):
                self._rebase_stock(stock_result.value, open_delta, closed_delta)
            elif stock_result.ok or stock_result.kind is ErrorKind.TRANSIENT:
                # Applied, queued or parked in the outbox: never send it twice
                self._advance_confirmed(open_delta, closed_delta)

        results = (settings_result, stock_result)
        if all(result.ok for result in results):
            self._baseline = fingerprint
            self.status = SyncStatus.SUCCESS
        elif any(result.outcome is WriteOutcome.FAILED and result.kind is not ErrorKind.TRANSIENT for result in results):
            self.status = SyncStatus.ERROR
        else:
            self._baseline = fingerprint
            self.status = SyncStatus.PENDING

        self._persist()
        return all(result.ok for result in results)

    # ------------------------------------------------------------------
    # Remote writes
    # ------------------------------------------------------------------

    async def _write(
        self,
        table: str,
        operation: RetryOperation,
        call: Callable[[], Awaitable[Any]],
        payload: dict[str, Any],
        conflict_key: str | None = "id",
    ) -> WriteResult:
        async def enqueue(error: str) -> str:
            return await self.remote.enqueue_retry(
                self.org_id, table, operation.value, payload, conflict_key, error
            )

        result = await retry_write(
            call,
            enqueue=enqueue,
            max_retries=self.config.write_max_retries,
            base_seconds=self.config.write_retry_base_seconds,
            max_delay_seconds=self.config.write_retry_max_delay_seconds,
            sleep=self._sleep,
            description=f"{operation.value} {table}",
        )

        if result.outcome is WriteOutcome.FAILED and result.kind is ErrorKind.TRANSIENT:
            self.outbox.append(
                {
                    "table": table,
                    "operation": operation.value,
                    "payload": payload,
                    "conflict_key": conflict_key,
                    "error": result.error,
                }
            )
            self._persist()

        if not result.ok:
            self.notifications.for_error(result.kind or ErrorKind.PERMANENT)
            if result.kind is not ErrorKind.TRANSIENT:
                self.status = SyncStatus.ERROR
        return result

    async def flush_outbox(self) -> int:
        """Hand writes parked while offline to the durable queue."""
        flushed = 0
        while self.outbox:
            entry = self.outbox[0]
            try:
                await self.remote.enqueue_retry(
                    self.org_id,
                    entry["table"],
                    entry["operation"],
                    entry["payload"],
                    entry.get("conflict_key"),
                    entry.get("error"),
                )
            except Exception as e:
                logger.warning(f"Outbox flush stopped: {e}")
                break
            self.outbox.pop(0)
            flushed += 1

        if flushed:
            logger.info(f"Flushed {flushed} parked write(s) to the retry queue")
            self._persist()
        return flushed

    def _require_state(self) -> OrgSnapshot:
        if self.state is None:
            raise ValidationError("No organization loaded")
        return self.state

    async def save_job(self, job: Job) -> WriteResult:
        """Optimistically store a job, then write it to the store.

        A work order whose estimate has not been deducted yet is deducted
        once the job row is saved.
        """
        state = self._require_state()
        job.last_modified = utcnow()
        _replace_by_id(state.jobs, job)
        self._persist()

        temp_id = job.id
        payload = job.model_dump(mode="json")
        result = await self._write(
            "jobs",
            RetryOperation.UPSERT,
            lambda: self.remote.upsert_job(self.org_id, payload),
            payload,
        )
        if result.ok and result.value and result.value != temp_id:
            job.id = result.value
            self._persist()

        if result.ok and job.status is JobStatus.WORK_ORDER and not job.inventory_processed:
            await self._deduct_estimate(job)
        return result

    async def _deduct_estimate(self, job: Job) -> None:
        outcome = await retry_write(
            lambda: self.remote.deduct_job_estimate(self.org_id, job.id),
            max_retries=self.config.write_max_retries,
            base_seconds=self.config.write_retry_base_seconds,
            max_delay_seconds=self.config.write_retry_max_delay_seconds,
            sleep=self._sleep,
            description=f"deduct estimate {job.id}",
        )
        if outcome.ok:
            job.inventory_processed = True
            self._persist()
        else:
            # Left unflagged; the next save of this work order tries again
            self.notifications.for_error(outcome.kind or ErrorKind.PERMANENT)

    async def save_customer(self, customer: Customer) -> WriteResult:
        state = self._require_state()
        _replace_by_id(state.customers, customer)
        self._persist()

        temp_id = customer.id
        payload = customer.model_dump(mode="json")
        result = await self._write(
            "customers",
            RetryOperation.UPSERT,
            lambda: self.remote.upsert_customer(self.org_id, payload),
            payload,
        )
        if result.ok and result.value and result.value != temp_id:
            customer.id = result.value
            for job in state.jobs:
                if job.customer_id == temp_id:
                    job.customer_id = result.value
            self._persist()
        return result

    async def save_inventory_item(self, item: InventoryItem) -> WriteResult:
        """Optimistic inventory write; temp ids are replaced by the store id."""
        state = self._require_state()
        _replace_by_id(state.inventory, item)
        self._persist()

        temp_id = item.id
        payload = item.model_dump(mode="json")
        result = await self._write(
            "inventory_items",
            RetryOperation.UPSERT,
            lambda: self.remote.upsert_inventory_item(self.org_id, payload),
            payload,
        )
        if result.ok and result.value and result.value != temp_id:
            self._replace_inventory_id(temp_id, result.value)
        return result

    async def save_equipment(self, equipment: Equipment) -> WriteResult:
        state = self._require_state()
        _replace_by_id(state.equipment, equipment)
        self._persist()

        payload = equipment.model_dump(mode="json")
        return await self._write(
            "equipment",
            RetryOperation.UPSERT,
            lambda: self.remote.upsert_equipment(self.org_id, payload),
            payload,
        )

    def _replace_inventory_id(self, temp_id: str, server_id: str) -> None:
        state = self.state
        duplicate = _find(state.inventory, server_id)
        item = _find(state.inventory, temp_id)
        if item is not None:
            if duplicate is not None:
                state.inventory.remove(duplicate)
            item.id = server_id

        for job in state.jobs:
            lines = list(job.materials.inventory)
            if job.actuals is not None:
                lines.extend(job.actuals.inventory)
            for line in lines:
                if line.warehouse_item_id == temp_id:
                    line.warehouse_item_id = server_id
        self._persist()

    async def _delete(self, table: str, items: list, item_id: str, call) -> WriteResult:
        item = _find(items, item_id)
        if item is not None:
            items.remove(item)
        self._persist()
        return await self._write(table, RetryOperation.DELETE, call, {"id": item_id})

    async def delete_job(self, job_id: str) -> WriteResult:
        state = self._require_state()
        return await self._delete(
            "jobs", state.jobs, job_id, lambda: self.remote.delete_job(self.org_id, job_id)
        )

    async def delete_customer(self, customer_id: str) -> WriteResult:
        state = self._require_state()
        return await self._delete(
            "customers",
            state.customers,
            customer_id,
            lambda: self.remote.delete_customer(self.org_id, customer_id),
        )

    async def delete_inventory_item(self, item_id: str) -> WriteResult:
        state = self._require_state()
        return await self._delete(
            "inventory_items",
            state.inventory,
            item_id,
            lambda: self.remote.delete_inventory_item(self.org_id, item_id),
        )

    async def complete_job(
        self,
        job_id: str,
        actuals: Actuals,
        execution_status: ExecutionStatus = ExecutionStatus.COMPLETED,
    ) -> WriteResult:
        """Submit crew actuals. Stock reconciliation happens in the store."""
        state = self._require_state()
        job = _find(state.jobs, job_id)
        if job is None:
            raise ValidationError(f"Job {job_id} is not loaded")

        execution_status = ExecutionStatus(execution_status)
        job.actuals = actuals
        job.execution_status = execution_status
        job.last_modified = utcnow()
        self._persist()

        actuals_payload = actuals.model_dump(mode="json")
        payload = {
            "id": job_id,
            "actuals": actuals_payload,
            "execution_status": execution_status.value,
        }
        result = await self._write(
            "jobs",
            RetryOperation.UPDATE,
            lambda: self.remote.reconcile_job(
                self.org_id, job_id, actuals_payload, execution_status.value
            ),
            payload,
        )

        if result.ok:
            if execution_status is ExecutionStatus.COMPLETED:
                job.inventory_processed = True
            if result.value is False:
                # Nothing in the report matched warehouse inventory
                self.status = SyncStatus.ERROR
                self.notifications.notify("error", "Sync error: inventory could not be updated")
            else:
                self.status = SyncStatus.SUCCESS
            self._persist()
        return result

    # ------------------------------------------------------------------
    # Manual recovery
    # ------------------------------------------------------------------

    async def force_sync(self) -> bool:
        """Explicit full push, then tell crew sessions to refresh."""
        if self.session.is_crew:
            return False
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

        await self.flush_outbox()
        pushed = await self.push(force=True)
        if pushed:
            await broadcast_work_order_update(self.broker, self.org_id, sleep=self._sleep)
        return pushed

    async def force_refresh(self) -> bool:
        """Explicit full pull, replacing local state."""
        pulled = await self.pull()
        if pulled and self.outbox:
            await self.flush_outbox()
        return pulled

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    async def handle_remote_change(self, message: dict[str, Any]) -> bool:
        """Refetch the entity class named by a change notification.

        Only that slice of local state is replaced, so optimistic edits to
        other classes survive. A message without a known table (the crew
        work-order broadcast) replaces every slice the session holds.
        Bursts on one table inside the dedup window cause a single refetch.
        Settings are coordinator-owned and are never replaced; counters are
        rebased so local edits not yet pushed survive.
        """
        if self.state is None or self._pulling:
            return False

        table = message.get("table")
        slices = CHANGE_SLICES.get(table, ALL_SLICES)
        if self.session.is_crew:
            slices = tuple(name for name in slices if name in CREW_SLICES)
        if not slices:
            return False
        if not self.dedup.should_process(f"{self.org_id}:{table or 'all'}"):
            return False

        try:
            snapshot = await self._fetch()
        except Exception as e:
            logger.warning(f"Refetch after {message.get('type', 'change')} failed: {e}")
            return False

        for name in slices:
            if name == "stock":
                in_sync = self.fingerprint() == self._baseline
                self._rebase_stock(snapshot.stock)
                if in_sync:
                    self._baseline = self.fingerprint()
            else:
                setattr(self.state, name, getattr(snapshot, name))
        self._persist()
        return True

    def unprocessed_completed_jobs(self) -> list[Job]:
        """Completed jobs whose stock has not been reconciled (diagnostic)."""
        if self.state is None:
            return []
        return [
            job
            for job in self.state.jobs
            if job.execution_status is ExecutionStatus.COMPLETED and not job.inventory_processed
        ]
