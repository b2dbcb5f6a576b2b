"""foamsync Pydantic models for type-safe data exchange.

These are the shapes that travel between the hosted store, the retry
queue and sync clients. ORM rows live in foamsync.db.models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp (the store keeps timestamps without zone info)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


def is_server_id(value: str | None) -> bool:
    """True for store-assigned UUIDs, False for client-generated temp ids."""
    if not value:
        return False
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


class JobStatus(str, Enum):
    """Commercial lifecycle of a job record."""

    DRAFT = "Draft"
    WORK_ORDER = "Work Order"
    INVOICED = "Invoiced"
    PAID = "Paid"
    ARCHIVED = "Archived"


class ExecutionStatus(str, Enum):
    """Crew-side execution state of a job."""

    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    PAUSED = "Paused"
    COMPLETED = "Completed"


class SessionRole(str, Enum):
    ADMIN = "admin"
    CREW = "crew"


class MaterialLine(BaseModel):
    """One non-foam material line on an estimate or crew report."""

    id: str = Field(default_factory=new_id)
    warehouse_item_id: str | None = None  # link to inventory_items.id
    name: str = ""
    quantity: float = 0.0
    unit: str = "ea"
    unit_cost: float | None = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _none_quantity(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @property
    def stock_key(self) -> str | None:
        """Identifier used to find the matching warehouse row."""
        return self.warehouse_item_id or self.id


class MaterialSet(BaseModel):
    """Foam counters plus inventory lines (estimated or actual)."""

    open_cell_sets: float = 0.0
    closed_cell_sets: float = 0.0
    inventory: list[MaterialLine] = Field(default_factory=list)

    @field_validator("open_cell_sets", "closed_cell_sets", mode="before")
    @classmethod
    def _none_counter(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("inventory", mode="before")
    @classmethod
    def _none_inventory(cls, value: Any) -> Any:
        return [] if value is None else value


class Actuals(MaterialSet):
    """Crew-reported consumption for a job."""

    completion_date: str | None = None
    completed_by: str | None = None
    labor_hours: float | None = None
    notes: str | None = None


class Job(BaseModel):
    """One estimate / work order / invoice through its lifecycle."""

    id: str = Field(default_factory=new_id)
    org_id: str
    customer_id: str | None = None
    customer_name: str = ""
    status: JobStatus = JobStatus.DRAFT
    execution_status: ExecutionStatus = ExecutionStatus.NOT_STARTED
    materials: MaterialSet = Field(default_factory=MaterialSet)
    actuals: Actuals | None = None
    inventory_processed: bool = False
    total_value: float = 0.0
    scheduled_date: str | None = None
    notes: str | None = None
    # Estimating inputs/results, PDF links, line items: opaque to sync
    details: dict[str, Any] = Field(default_factory=dict)
    last_modified: datetime = Field(default_factory=utcnow)


class Customer(BaseModel):
    id: str = Field(default_factory=new_id)
    org_id: str
    name: str
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    email: str | None = None
    phone: str | None = None
    status: str = "Active"
    notes: str | None = None


class InventoryItem(BaseModel):
    """Warehouse row. Negative quantity means over-commitment."""

    id: str = Field(default_factory=new_id)
    org_id: str
    name: str
    quantity: float = 0.0
    unit: str = "ea"
    unit_cost: float = 0.0
    category: str = "material"


class WarehouseStock(BaseModel):
    """Per-organization foam counters."""

    org_id: str
    open_cell_sets: float = 0.0
    closed_cell_sets: float = 0.0


class Equipment(BaseModel):
    id: str = Field(default_factory=new_id)
    org_id: str
    name: str
    status: str = "Available"
    last_seen: dict[str, Any] | None = None


class MaterialLog(BaseModel):
    id: str = Field(default_factory=new_id)
    org_id: str
    job_id: str | None = None
    date: datetime = Field(default_factory=utcnow)
    customer_name: str = ""
    material_name: str
    quantity: float
    unit: str = "ea"
    logged_by: str = ""
    log_type: str = "actual"  # estimated or actual


class OrgSettings(BaseModel):
    """Settings-level fields owned by the sync coordinator."""

    yields: dict[str, Any] = Field(default_factory=dict)
    costs: dict[str, Any] = Field(default_factory=dict)
    pricing_mode: str = "level_pricing"
    sq_ft_rates: dict[str, Any] = Field(default_factory=dict)
    lifetime_usage: dict[str, Any] = Field(default_factory=dict)


class Organization(BaseModel):
    id: str
    name: str
    phone: str | None = None
    email: str | None = None
    logo_url: str | None = None
    address: dict[str, Any] = Field(default_factory=dict)
    settings: OrgSettings = Field(default_factory=OrgSettings)


class OrgSnapshot(BaseModel):
    """Full organization state fetched in one round trip."""

    organization: Organization
    jobs: list[Job] = Field(default_factory=list)
    customers: list[Customer] = Field(default_factory=list)
    inventory: list[InventoryItem] = Field(default_factory=list)
    stock: WarehouseStock
    equipment: list[Equipment] = Field(default_factory=list)
    logs: list[MaterialLog] = Field(default_factory=list)


class CrewSnapshot(BaseModel):
    """What a crew session may see: org, customers, open work orders."""

    organization: Organization
    customers: list[Customer] = Field(default_factory=list)
    jobs: list[Job] = Field(default_factory=list)


class RetryOperation(str, Enum):
    UPSERT = "upsert"
    UPDATE = "update"
    INSERT = "insert"
    DELETE = "delete"


class RetryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryEntry(BaseModel):
    """A write the client could not complete, persisted for replay."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    table_name: str
    operation: RetryOperation
    payload: dict[str, Any]
    conflict_key: str | None = "id"
    status: RetryStatus
    attempts: int = 0
    max_attempts: int = 5
    next_retry_at: datetime
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class BatchResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retrying: int = 0


class CleanupResult(BaseModel):
    purged_completed: int = 0
    purged_failed: int = 0


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """Row-change notification: table and operation only, never the row."""

    org_id: str
    table: str
    operation: ChangeOperation
    timestamp: datetime = Field(default_factory=utcnow)
