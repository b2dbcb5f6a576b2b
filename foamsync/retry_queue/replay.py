"""Replay whitelist for queued writes.

Only the tables and operations listed here can be replayed. Anything else
is a permanent failure: the row is marked failed without further retries.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from foamsync.db.models import CustomerModel, EquipmentModel, InventoryItemModel, JobModel
from foamsync.errors import PermanentError
from foamsync.models import RetryOperation
from foamsync.store import writes

WriteFn = Callable[[AsyncSession, str, dict[str, Any]], Awaitable[str]]

UPSERT = RetryOperation.UPSERT.value
UPDATE = RetryOperation.UPDATE.value
INSERT = RetryOperation.INSERT.value
DELETE = RetryOperation.DELETE.value


@dataclass(frozen=True)
class TableReplay:
    """Replay rules for one table."""

    conflict_key: str
    operations: dict[str, WriteFn]


REPLAY_TABLES: dict[str, TableReplay] = {
    "jobs": TableReplay(
        conflict_key="id",
        operations={
            UPSERT: writes.write_job,
            INSERT: writes.write_job,
            UPDATE: writes.patch_job,
            DELETE: partial(writes.delete_row, model=JobModel),
        },
    ),
    "customers": TableReplay(
        conflict_key="id",
        operations={
            UPSERT: writes.write_customer,
            INSERT: writes.write_customer,
            DELETE: partial(writes.delete_row, model=CustomerModel),
        },
    ),
    "inventory_items": TableReplay(
        conflict_key="id",
        operations={
            UPSERT: writes.write_inventory_item,
            INSERT: writes.write_inventory_item,
            DELETE: partial(writes.delete_row, model=InventoryItemModel),
        },
    ),
    "equipment": TableReplay(
        conflict_key="id",
        operations={
            UPSERT: writes.write_equipment,
            INSERT: writes.write_equipment,
            DELETE: partial(writes.delete_row, model=EquipmentModel),
        },
    ),
    "warehouse_stock": TableReplay(
        conflict_key="org_id",
        operations={
            UPSERT: writes.write_stock_delta,
            UPDATE: writes.write_stock_delta,
        },
    ),
    "material_logs": TableReplay(
        conflict_key="id",
        operations={
            INSERT: writes.write_material_log,
            UPSERT: writes.write_material_log,
        },
    ),
    "organizations": TableReplay(
        conflict_key="id",
        operations={UPDATE: writes.patch_organization},
    ),
}


def resolve_replay(table_name: str, operation: str, conflict_key: str | None = None) -> WriteFn:
    """Look up the write routine for a queued operation.

    Raises:
        PermanentError: unknown table, unsupported operation, or a conflict
            key the live write would never have used
    """
    rules = REPLAY_TABLES.get(table_name)
    if rules is None:
        raise PermanentError(f"Unknown table: {table_name}")

    write = rules.operations.get(operation)
    if write is None:
        raise PermanentError(f"Unsupported operation {operation} for table {table_name}")

    if conflict_key and conflict_key != rules.conflict_key:
        raise PermanentError(
            f"Unsupported conflict key {conflict_key} for table {table_name} "
            f"(expected {rules.conflict_key})"
        )
    return write


async def replay(
    session: AsyncSession,
    org_id: str,
    table_name: str,
    operation: str,
    payload: dict[str, Any],
    conflict_key: str | None = None,
) -> str:
    """Run a queued write inside the caller's transaction."""
    write = resolve_replay(table_name, operation, conflict_key)
    return await write(session, org_id, payload)
