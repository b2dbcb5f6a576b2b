"""Pytest configuration and fixtures for foamsync tests.

Database fixtures use a file-backed SQLite database per test so that
several connections can run transactions against the same data.
"""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from foamsync.config import reset_config
from foamsync.db.connection import init_db
from foamsync.db.models import InventoryItemModel, JobModel, WarehouseStockModel
from foamsync.models import ExecutionStatus, JobStatus
from foamsync.realtime.broker import MemoryBroker
from foamsync.store.service import StoreService


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("FOAMSYNC_CACHE_DIR", str(tmp_path / "cache"))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def test_org_id() -> str:
    """Test organization ID."""
    return "org-acme"


@pytest_asyncio.fixture()
async def engine(tmp_path):
    """Fresh schema in a temporary SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'foamsync.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def broker() -> MemoryBroker:
    return MemoryBroker()


@pytest.fixture
def store(session_factory, broker) -> StoreService:
    return StoreService(session_factory, broker)


@pytest_asyncio.fixture()
async def org(store, test_org_id):
    """Organization 'Acme Foam' with crew PIN 1234 and zeroed stock."""
    return await store.create_organization("Acme Foam", crew_pin="1234", org_id=test_org_id)


class Seeder:
    """Direct row access for arranging and checking database state."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def inventory(
        self, org_id: str, name: str, quantity: float, item_id: str | None = None
    ) -> str:
        async with self.session_factory() as session:
            item = InventoryItemModel(org_id=org_id, name=name, quantity=quantity)
            if item_id:
                item.id = item_id
            session.add(item)
            await session.commit()
            return item.id

    async def set_stock(self, org_id: str, open_cell: float, closed_cell: float) -> None:
        async with self.session_factory() as session:
            stock = await session.get(WarehouseStockModel, org_id)
            if stock is None:
                stock = WarehouseStockModel(org_id=org_id)
                session.add(stock)
            stock.open_cell_sets = open_cell
            stock.closed_cell_sets = closed_cell
            await session.commit()

    async def job(
        self,
        org_id: str,
        materials: dict[str, Any],
        job_id: str | None = None,
        status: JobStatus = JobStatus.WORK_ORDER,
        execution_status: ExecutionStatus = ExecutionStatus.NOT_STARTED,
        inventory_processed: bool = True,
        scheduled_date: str | None = None,
        customer_name: str = "Jane Homeowner",
    ) -> str:
        """Insert a job row directly, by default as if its estimate was already deducted."""
        async with self.session_factory() as session:
            job = JobModel(
                org_id=org_id,
                customer_name=customer_name,
                status=status.value,
                execution_status=execution_status.value,
                materials=materials,
                inventory_processed=inventory_processed,
                scheduled_date=scheduled_date,
            )
            if job_id:
                job.id = job_id
            session.add(job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> JobModel | None:
        async with self.session_factory() as session:
            return await session.get(JobModel, job_id)

    async def quantity(self, item_id: str) -> float:
        async with self.session_factory() as session:
            item = await session.get(InventoryItemModel, item_id)
            return item.quantity

    async def stock(self, org_id: str) -> tuple[float, float]:
        async with self.session_factory() as session:
            stock = await session.get(WarehouseStockModel, org_id)
            return stock.open_cell_sets, stock.closed_cell_sets


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)
