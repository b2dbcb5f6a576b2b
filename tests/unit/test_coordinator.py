"""Unit tests for the client sync coordinator against a mocked store."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from foamsync.config import SyncConfig
from foamsync.errors import AuthorizationError, ErrorKind, TransientError, ValidationError
from foamsync.models import (
    Actuals,
    CrewSnapshot,
    Customer,
    Equipment,
    ExecutionStatus,
    InventoryItem,
    Job,
    JobStatus,
    MaterialLine,
    MaterialSet,
    Organization,
    OrgSnapshot,
    SessionRole,
    WarehouseStock,
)
from foamsync.realtime.broker import MemoryBroker, crew_channel, org_channel
from foamsync.sync.coordinator import SessionContext, SyncCoordinator
from foamsync.sync.local_cache import CachedState, LocalCache
from foamsync.sync.notifications import SyncStatus
from foamsync.sync.retry import WriteOutcome

ORG_ID = "org-1"


def _snapshot(open_cell: float = 10, closed_cell: float = 5, jobs=None) -> OrgSnapshot:
    return OrgSnapshot(
        organization=Organization(id=ORG_ID, name="Acme Foam"),
        jobs=jobs or [],
        stock=WarehouseStock(org_id=ORG_ID, open_cell_sets=open_cell, closed_cell_sets=closed_cell),
    )


class FakeServerStock:
    """Counters on the store side, moved only by deltas."""

    def __init__(self, open_cell: float = 10, closed_cell: float = 5):
        self.open_cell = open_cell
        self.closed_cell = closed_cell

    def adjust(self, org_id, open_delta, closed_delta):
        self.open_cell += open_delta
        self.closed_cell += closed_delta
        return WarehouseStock(
            org_id=org_id, open_cell_sets=self.open_cell, closed_cell_sets=self.closed_cell
        )


@pytest.fixture
def server_stock():
    return FakeServerStock()


@pytest.fixture
def remote(server_stock):
    remote = AsyncMock()
    remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot()
    remote.update_org_settings.return_value = ORG_ID
    remote.adjust_warehouse_stock.side_effect = server_stock.adjust
    remote.enqueue_retry.return_value = "entry-1"
    remote.deduct_job_estimate.return_value = True
    remote.reconcile_job.return_value = True
    return remote


@pytest.fixture
def make_coordinator(remote, tmp_path):
    def factory(role=SessionRole.ADMIN, broker=None, debounce_seconds=0.01):
        coordinator = SyncCoordinator(
            remote,
            SessionContext(org_id=ORG_ID, username="owner", role=role),
            config=SyncConfig(debounce_seconds=debounce_seconds, cache_dir=tmp_path),
            cache=LocalCache(tmp_path),
            broker=broker,
            sleep=AsyncMock(),
        )
        return coordinator

    return factory


@pytest_asyncio.fixture()
async def coordinator(make_coordinator):
    coordinator = make_coordinator()
    await coordinator.start()
    try:
        yield coordinator
    finally:
        await coordinator.stop()


class TestPull:
    @pytest.mark.asyncio
    async def test_start_loads_snapshot_and_caches_it(self, coordinator, tmp_path):
        assert coordinator.initialized
        assert coordinator.status is SyncStatus.SUCCESS
        assert coordinator.state.stock.open_cell_sets == 10
        assert LocalCache(tmp_path).load("owner") is not None

    @pytest.mark.asyncio
    async def test_offline_start_uses_cache(self, make_coordinator, remote, tmp_path):
        LocalCache(tmp_path).save("owner", CachedState(snapshot=_snapshot(open_cell=7)))
        remote.fetch_org_snapshot.side_effect = TransientError("network unreachable")
        coordinator = make_coordinator()

        assert await coordinator.start() is False

        assert coordinator.initialized
        assert coordinator.status is SyncStatus.ERROR
        assert coordinator.state.stock.open_cell_sets == 7
        assert coordinator.notifications.latest.level == "warning"

    @pytest.mark.asyncio
    async def test_offline_start_without_cache(self, make_coordinator, remote):
        remote.fetch_org_snapshot.side_effect = TransientError("network unreachable")
        coordinator = make_coordinator()

        await coordinator.start()

        assert coordinator.initialized
        assert coordinator.state is None
        assert coordinator.notifications.latest.level == "error"

    @pytest.mark.asyncio
    async def test_expired_session_is_reported(self, make_coordinator, remote):
        remote.fetch_org_snapshot.side_effect = AuthorizationError("expired")
        coordinator = make_coordinator()

        await coordinator.start()

        assert coordinator.notifications.latest.kind is ErrorKind.AUTHORIZATION

    @pytest.mark.asyncio
    async def test_crew_pull_uses_crew_jobs(self, make_coordinator, remote):
        remote.fetch_crew_jobs.side_effect = lambda org_id: CrewSnapshot(
            organization=Organization(id=ORG_ID, name="Acme Foam"),
            jobs=[Job(org_id=ORG_ID, status=JobStatus.WORK_ORDER)],
        )
        coordinator = make_coordinator(role=SessionRole.CREW)

        await coordinator.start()

        remote.fetch_org_snapshot.assert_not_awaited()
        assert len(coordinator.state.jobs) == 1
        assert coordinator.state.stock.open_cell_sets == 0


class TestDebouncedPush:
    @pytest.mark.asyncio
    async def test_burst_of_edits_pushes_once(self, coordinator, remote):
        coordinator.adjust_local_stock(open_cell_delta=-2)
        coordinator.update_settings(pricing_mode="sqft_pricing")
        coordinator.update_settings(costs={"open_cell": 2000})
        assert coordinator.status is SyncStatus.PENDING

        await coordinator.wait_idle()

        remote.update_org_settings.assert_awaited_once()
        pushed_settings = remote.update_org_settings.await_args.args[1]
        assert pushed_settings["pricing_mode"] == "sqft_pricing"
        assert pushed_settings["costs"] == {"open_cell": 2000}
        remote.adjust_warehouse_stock.assert_awaited_once_with(ORG_ID, -2.0, 0.0)
        assert coordinator.status is SyncStatus.SUCCESS
        assert coordinator.state.stock.open_cell_sets == 8

    @pytest.mark.asyncio
    async def test_unchanged_fingerprint_does_not_push(self, coordinator, remote):
        coordinator.on_state_change()
        await coordinator.wait_idle()

        assert await coordinator.push() is True
        remote.update_org_settings.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_counters_are_pushed_as_deltas(self, coordinator, remote, server_stock):
        # Another device returned 3 sets since this session pulled
        server_stock.open_cell = 13
        coordinator.adjust_local_stock(open_cell_delta=-2)

        await coordinator.wait_idle()

        assert server_stock.open_cell == 11
        assert coordinator.state.stock.open_cell_sets == 11

    @pytest.mark.asyncio
    async def test_crew_sessions_never_push(self, make_coordinator, remote):
        remote.fetch_crew_jobs.side_effect = lambda org_id: CrewSnapshot(
            organization=Organization(id=ORG_ID, name="Acme Foam")
        )
        coordinator = make_coordinator(role=SessionRole.CREW)
        await coordinator.start()

        coordinator.update_settings(pricing_mode="sqft_pricing")
        await coordinator.wait_idle()

        assert await coordinator.push() is False
        assert await coordinator.force_sync() is False
        remote.update_org_settings.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_queued_stock_delta_is_not_sent_twice(self, coordinator, remote):
        remote.adjust_warehouse_stock.side_effect = TransientError("timeout")
        coordinator.adjust_local_stock(closed_cell_delta=1.5)

        await coordinator.wait_idle()

        assert coordinator.status is SyncStatus.PENDING
        args = remote.enqueue_retry.await_args.args
        assert args[:3] == (ORG_ID, "warehouse_stock", "update")
        assert args[3] == {"open_cell_delta": 0.0, "closed_cell_delta": 1.5}
        assert args[4] == "org_id"

        remote.adjust_warehouse_stock.reset_mock()
        await coordinator.push(force=True)
        remote.adjust_warehouse_stock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unqueueable_write_is_parked_in_outbox(self, coordinator, remote, tmp_path):
        remote.adjust_warehouse_stock.side_effect = TransientError("timeout")
        remote.enqueue_retry.side_effect = TransientError("offline")
        coordinator.adjust_local_stock(open_cell_delta=-1)

        await coordinator.wait_idle()

        assert len(coordinator.outbox) == 1
        assert coordinator.outbox[0]["table"] == "warehouse_stock"
        assert len(LocalCache(tmp_path).load("owner").outbox) == 1

        remote.enqueue_retry.side_effect = None
        assert await coordinator.flush_outbox() == 1
        assert coordinator.outbox == []

    @pytest.mark.asyncio
    async def test_permanent_push_failure_sets_error(self, coordinator, remote):
        remote.update_org_settings.side_effect = AuthorizationError("expired")

        assert await coordinator.push(force=True) is False

        assert coordinator.status is SyncStatus.ERROR
        remote.enqueue_retry.assert_not_awaited()


class TestEntityWrites:
    @pytest.mark.asyncio
    async def test_save_work_order_replaces_temp_id_and_deducts(self, coordinator, remote):
        remote.upsert_job.return_value = "6f1c1a52-0a3e-4bb4-9d59-3f4f58f1f5b1"
        job = Job(id="tmp-1", org_id=ORG_ID, status=JobStatus.WORK_ORDER)

        result = await coordinator.save_job(job)

        assert result.ok
        assert job.id == "6f1c1a52-0a3e-4bb4-9d59-3f4f58f1f5b1"
        assert coordinator.state.jobs[0] is job
        remote.deduct_job_estimate.assert_awaited_once_with(ORG_ID, job.id)
        assert job.inventory_processed

    @pytest.mark.asyncio
    async def test_draft_is_not_deducted(self, coordinator, remote):
        remote.upsert_job.return_value = "job-1"

        await coordinator.save_job(Job(id="job-1", org_id=ORG_ID))

        remote.deduct_job_estimate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_save_inventory_item_rewrites_job_references(self, make_coordinator, remote):
        job = Job(
            org_id=ORG_ID,
            materials=MaterialSet(
                inventory=[MaterialLine(name="Tape", quantity=2, warehouse_item_id="tmp-item")]
            ),
        )
        remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot(jobs=[job.model_copy(deep=True)])
        remote.upsert_inventory_item.return_value = "srv-item"
        coordinator = make_coordinator()
        await coordinator.start()

        await coordinator.save_inventory_item(InventoryItem(id="tmp-item", org_id=ORG_ID, name="Tape"))

        assert coordinator.state.inventory[0].id == "srv-item"
        line = coordinator.state.jobs[0].materials.inventory[0]
        assert line.warehouse_item_id == "srv-item"

    @pytest.mark.asyncio
    async def test_delete_is_optimistic(self, make_coordinator, remote):
        job = Job(id="job-1", org_id=ORG_ID)
        remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot(jobs=[job.model_copy()])
        remote.delete_job.side_effect = TransientError("offline")
        coordinator = make_coordinator()
        await coordinator.start()

        result = await coordinator.delete_job("job-1")

        assert coordinator.state.jobs == []
        assert result.outcome is WriteOutcome.QUEUED
        assert remote.enqueue_retry.await_args.args[1:4] == ("jobs", "delete", {"id": "job-1"})

    @pytest.mark.asyncio
    async def test_save_equipment_queues_when_offline(self, coordinator, remote):
        remote.upsert_equipment.side_effect = TransientError("offline")
        rig = Equipment(org_id=ORG_ID, name="Rig 2", status="In Use")

        result = await coordinator.save_equipment(rig)

        assert result.outcome is WriteOutcome.QUEUED
        assert coordinator.state.equipment == [rig]
        table, operation, payload = remote.enqueue_retry.await_args.args[1:4]
        assert (table, operation, payload["name"]) == ("equipment", "upsert", "Rig 2")


@pytest_asyncio.fixture()
async def loaded(make_coordinator, remote):
    job = Job(id="job-1", org_id=ORG_ID, status=JobStatus.WORK_ORDER, inventory_processed=True)
    remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot(jobs=[job.model_copy()])
    coordinator = make_coordinator()
    await coordinator.start()
    try:
        yield coordinator
    finally:
        await coordinator.stop()


class TestCompleteJob:
    @pytest.mark.asyncio
    async def test_completion_calls_reconcile(self, loaded, remote):
        actuals = Actuals(open_cell_sets=2, completed_by="Crew A")

        result = await loaded.complete_job("job-1", actuals)

        assert result.ok
        org_id, job_id, payload, status = remote.reconcile_job.await_args.args
        assert (org_id, job_id, status) == (ORG_ID, "job-1", "Completed")
        assert payload["open_cell_sets"] == 2
        assert loaded.status is SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_unmatched_inventory_sets_error(self, loaded, remote):
        remote.reconcile_job.return_value = False

        await loaded.complete_job("job-1", Actuals())

        assert loaded.status is SyncStatus.ERROR
        assert loaded.notifications.latest.message == "Sync error: inventory could not be updated"

    @pytest.mark.asyncio
    async def test_offline_completion_is_queued_as_job_update(self, loaded, remote):
        remote.reconcile_job.side_effect = TransientError("offline")

        result = await loaded.complete_job("job-1", Actuals(closed_cell_sets=1))

        assert result.outcome is WriteOutcome.QUEUED
        args = remote.enqueue_retry.await_args.args
        assert args[1:3] == ("jobs", "update")
        assert args[3]["id"] == "job-1"
        assert args[3]["execution_status"] == "Completed"
        assert args[3]["actuals"]["closed_cell_sets"] == 1

    @pytest.mark.asyncio
    async def test_unknown_job(self, loaded):
        with pytest.raises(ValidationError):
            await loaded.complete_job("nope", Actuals())

    @pytest.mark.asyncio
    async def test_unprocessed_completed_jobs(self, loaded):
        loaded.state.jobs[0].execution_status = ExecutionStatus.COMPLETED
        loaded.state.jobs[0].inventory_processed = False

        assert [job.id for job in loaded.unprocessed_completed_jobs()] == ["job-1"]


class TestRemoteChanges:
    @pytest.mark.asyncio
    async def test_subscribes_by_role(self, make_coordinator, remote):
        remote.fetch_crew_jobs.side_effect = lambda org_id: CrewSnapshot(
            organization=Organization(id=ORG_ID, name="Acme Foam")
        )
        broker = MemoryBroker()
        admin = make_coordinator(broker=broker)
        crew = make_coordinator(role=SessionRole.CREW, broker=broker)

        await admin.start()
        await crew.start()

        assert broker.subscriber_count(org_channel(ORG_ID)) == 1
        assert broker.subscriber_count(crew_channel(ORG_ID)) == 1

        await admin.stop()
        await crew.stop()
        assert broker.subscriber_count(org_channel(ORG_ID)) == 0

    @pytest.mark.asyncio
    async def test_burst_on_one_table_causes_one_refetch(self, coordinator, remote):
        remote.fetch_org_snapshot.reset_mock()

        first = await coordinator.handle_remote_change({"type": "change", "table": "jobs"})
        second = await coordinator.handle_remote_change({"type": "change", "table": "jobs"})

        assert (first, second) == (True, False)
        remote.fetch_org_snapshot.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_burst_does_not_swallow_other_tables(self, coordinator, remote):
        remote.fetch_org_snapshot.reset_mock()

        await coordinator.handle_remote_change({"type": "change", "table": "jobs"})
        other = await coordinator.handle_remote_change({"type": "change", "table": "customers"})

        assert other is True
        assert remote.fetch_org_snapshot.await_count == 2

    @pytest.mark.asyncio
    async def test_jobs_change_keeps_queued_customer(self, coordinator, remote):
        remote.upsert_customer.side_effect = TransientError("timeout")
        result = await coordinator.save_customer(Customer(org_id=ORG_ID, name="Smith"))
        assert result.outcome is WriteOutcome.QUEUED
        remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot(
            jobs=[Job(id="job-9", org_id=ORG_ID)]
        )

        assert await coordinator.handle_remote_change({"type": "change", "table": "jobs"})

        assert [job.id for job in coordinator.state.jobs] == ["job-9"]
        assert [customer.name for customer in coordinator.state.customers] == ["Smith"]

    @pytest.mark.asyncio
    async def test_stock_change_leaves_jobs_alone(self, coordinator, remote):
        coordinator.state.jobs.append(Job(id="local-job", org_id=ORG_ID))
        remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot(open_cell=13)

        await coordinator.handle_remote_change({"type": "change", "table": "warehouse_stock"})

        assert coordinator.state.stock.open_cell_sets == 13
        assert [job.id for job in coordinator.state.jobs] == ["local-job"]

    @pytest.mark.asyncio
    async def test_crew_broadcast_refetches_jobs(self, make_coordinator, remote):
        remote.fetch_crew_jobs.side_effect = lambda org_id: CrewSnapshot(
            organization=Organization(id=ORG_ID, name="Acme Foam"),
            jobs=[Job(id="job-3", org_id=ORG_ID, status=JobStatus.WORK_ORDER)],
        )
        crew = make_coordinator(role=SessionRole.CREW)
        crew.state = _snapshot()

        assert await crew.handle_remote_change({"type": "work_order_update", "org_id": ORG_ID})

        assert [job.id for job in crew.state.jobs] == ["job-3"]
        assert crew.state.stock.open_cell_sets == 10

    @pytest.mark.asyncio
    async def test_refetch_keeps_unpushed_counter_edits(self, make_coordinator, remote):
        coordinator = make_coordinator(debounce_seconds=60)
        await coordinator.start()
        coordinator.adjust_local_stock(open_cell_delta=-2)
        remote.fetch_org_snapshot.side_effect = lambda org_id: _snapshot(open_cell=13)

        await coordinator.handle_remote_change({"type": "change", "table": "warehouse_stock"})

        assert coordinator.state.stock.open_cell_sets == 11
        await coordinator.push()
        remote.adjust_warehouse_stock.assert_awaited_once_with(ORG_ID, -2.0, 0.0)
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_refetch_does_not_touch_settings(self, make_coordinator, remote):
        coordinator = make_coordinator(debounce_seconds=60)
        await coordinator.start()
        coordinator.update_settings(pricing_mode="sqft_pricing")

        await coordinator.handle_remote_change({"type": "change", "table": "jobs"})

        assert coordinator.state.organization.settings.pricing_mode == "sqft_pricing"
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_force_sync_broadcasts_to_crews(self, make_coordinator, remote):
        broker = MemoryBroker()
        coordinator = make_coordinator(broker=broker)
        await coordinator.start()

        assert await coordinator.force_sync()

        remote.update_org_settings.assert_awaited_once()
        channels = [channel for channel, _ in broker.published]
        assert channels == [crew_channel(ORG_ID)]
        await coordinator.stop()
