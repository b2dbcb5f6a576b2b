"""Two-stage inventory row resolution.

Clients create items with temporary ids before the store has assigned
real ones, so a line item may reference a row by an id the store has
never seen. Resolution therefore runs in two stages:

1. exact id match within the organization
2. case-insensitive, whitespace-trimmed name match

All quantity changes are single UPDATE statements of the form
``quantity = quantity + :delta`` so concurrent adjusters never lose an
update.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from foamsync.db.models import InventoryItemModel, WarehouseStockModel
from foamsync.db.upsert import dialect_insert

logger = logging.getLogger(__name__)


def normalize_name(name: str | None) -> str:
    """Lower-cased, trimmed item name used for fallback matching."""
    return (name or "").strip().lower()


class InventoryResolver:
    """Resolve and adjust inventory rows for one organization."""

    def __init__(self, session: AsyncSession, org_id: str):
        self.session = session
        self.org_id = org_id

    def _by_id(self, item_id: str):
        return (
            InventoryItemModel.org_id == self.org_id,
            InventoryItemModel.id == item_id,
        )

    def _by_name(self, name: str):
        return (
            InventoryItemModel.org_id == self.org_id,
            func.lower(func.trim(InventoryItemModel.name)) == normalize_name(name),
        )

    async def id_taken(self, item_id: str) -> bool:
        """True when item_id is already used by any organization's row."""
        found = await self.session.scalar(
            select(InventoryItemModel.id).where(InventoryItemModel.id == item_id)
        )
        return found is not None

    async def resolve_id(self, item_id: str | None, name: str | None) -> str | None:
        """Find the store id for an item reference, or None if unknown."""
        if item_id:
            found = await self.session.scalar(
                select(InventoryItemModel.id).where(*self._by_id(item_id))
            )
            if found:
                return found

        if normalize_name(name):
            found = await self.session.scalar(
                select(InventoryItemModel.id)
                .where(*self._by_name(name))
                .order_by(InventoryItemModel.id)
                .limit(1)
            )
            if found:
                return found

        return None

    async def adjust(self, item_id: str | None, name: str | None, delta: float) -> bool:
        """Atomically add delta to the matching row's quantity.

        Returns:
            True if a row was adjusted (or delta is zero), False if nothing matched
        """
        if delta == 0:
            return True

        new_quantity = InventoryItemModel.quantity + delta

        if item_id:
            result = await self.session.execute(
                update(InventoryItemModel)
                .where(*self._by_id(item_id))
                .values(quantity=new_quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return True

        if normalize_name(name):
            result = await self.session.execute(
                update(InventoryItemModel)
                .where(*self._by_name(name))
                .values(quantity=new_quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return True

        logger.debug(f"No inventory row for id={item_id!r} name={name!r} in {self.org_id}")
        return False


async def adjust_foam_stock(
    session: AsyncSession,
    org_id: str,
    open_cell_delta: float,
    closed_cell_delta: float,
) -> bool:
    """Atomically increment the organization's foam counters.

    Creates the stock row when it is missing (seeded with the deltas).
    Returns False when both deltas are zero and nothing was written.
    """
    if open_cell_delta == 0 and closed_cell_delta == 0:
        return False

    table = WarehouseStockModel.__table__
    stmt = dialect_insert(session, table).values(
        org_id=org_id,
        open_cell_sets=open_cell_delta,
        closed_cell_sets=closed_cell_delta,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["org_id"],
        set_={
            "open_cell_sets": table.c.open_cell_sets + open_cell_delta,
            "closed_cell_sets": table.c.closed_cell_sets + closed_cell_delta,
        },
    )
    await session.execute(stmt)
    return True
