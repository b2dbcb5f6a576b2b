"""SQLAlchemy async database models for foamsync.

Every table is scoped by org_id. Identifiers are text so that rows created
from client-generated ids and store-assigned UUIDs share one column type.
Timestamps are naive UTC.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from foamsync.models import new_id, utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class OrganizationModel(Base):
    """Tenant boundary. Owns every other row."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    crew_pin: Mapped[str] = mapped_column(Text, nullable=False, default="")
    phone: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    logo_url: Mapped[str | None] = mapped_column(Text)
    address: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    settings: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class CustomerModel(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(
        Text, ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str | None] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(Text)
    state: Mapped[str | None] = mapped_column(Text)
    zip: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="Active")
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class JobModel(Base):
    """Estimate / work order / invoice record.

    materials holds the estimated consumption snapshot, actuals the crew
    report. inventory_processed marks that stock has been adjusted for
    the current materials.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(
        Text, ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[str | None] = mapped_column(Text)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="Draft")
    execution_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="Not Started"
    )
    materials: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    actuals: Mapped[dict | None] = mapped_column(JSON)
    inventory_processed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    total_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    scheduled_date: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    last_modified: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_jobs_org_status", "org_id", "status"),
        Index("idx_jobs_org_created", "org_id", "created_at"),
    )


class InventoryItemModel(Base):
    """Warehouse line item. quantity is signed."""

    __tablename__ = "inventory_items"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(
        Text, ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="ea")
    unit_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="material")


class WarehouseStockModel(Base):
    """One row per organization holding the two foam counters."""

    __tablename__ = "warehouse_stock"

    org_id: Mapped[str] = mapped_column(
        Text, ForeignKey("organizations.id"), primary_key=True
    )
    open_cell_sets: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    closed_cell_sets: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class EquipmentModel(Base):
    __tablename__ = "equipment"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(
        Text, ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="Available")
    last_seen: Mapped[dict | None] = mapped_column(JSON)


class MaterialLogModel(Base):
    """Estimated or actual material usage entry."""

    __tablename__ = "material_logs"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(
        Text, ForeignKey("organizations.id"), nullable=False, index=True
    )
    job_id: Mapped[str | None] = mapped_column(Text, index=True)
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    material_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="ea")
    logged_by: Mapped[str] = mapped_column(Text, nullable=False, default="")
    log_type: Mapped[str] = mapped_column(Text, nullable=False, default="actual")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class RetryQueueEntryModel(Base):
    """Durable record of a write a client could not complete."""

    __tablename__ = "write_retry_queue"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    table_name: Mapped[str] = mapped_column(Text, nullable=False)
    operation: Mapped[str] = mapped_column(Text, nullable=False, default="upsert")
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    conflict_key: Mapped[str | None] = mapped_column(Text, default="id")
    error_message: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_retry_queue_pending", "status", "next_retry_at"),  # claim scan
        Index("idx_retry_queue_completed", "status", "completed_at"),  # retention
    )
