"""Database layer for foamsync with async SQLAlchemy."""

from foamsync.db.connection import get_session, init_db
from foamsync.db.models import (
    Base,
    CustomerModel,
    EquipmentModel,
    InventoryItemModel,
    JobModel,
    MaterialLogModel,
    OrganizationModel,
    RetryQueueEntryModel,
    WarehouseStockModel,
)

__all__ = [
    "Base",
    "OrganizationModel",
    "CustomerModel",
    "JobModel",
    "InventoryItemModel",
    "WarehouseStockModel",
    "EquipmentModel",
    "MaterialLogModel",
    "RetryQueueEntryModel",
    "get_session",
    "init_db",
]
