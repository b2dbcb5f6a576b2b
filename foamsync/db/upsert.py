"""Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL and SQLite both support ON CONFLICT; SQLAlchemy exposes it via
the dialect-specific insert() constructs.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(session: AsyncSession, table: Table):
    """Return an insert() construct supporting on_conflict_* for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT is not supported for dialect {dialect!r}")


def table_values(table: Table, payload: dict[str, Any]) -> dict[str, Any]:
    """Keep only payload keys that are columns of the table."""
    return {key: value for key, value in payload.items() if key in table.c}


async def upsert_row(
    session: AsyncSession,
    table: Table,
    values: dict[str, Any],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    owner_column: str | None = None,
) -> int:
    """Insert a row, updating the given columns when the conflict key exists.

    Args:
        session: Active session (caller owns the transaction)
        table: Target table
        values: Column values
        conflict_columns: Columns forming the conflict target
        update_columns: Columns overwritten on conflict; defaults to every
            supplied non-key column. Empty list means DO NOTHING.
        owner_column: Tenant column. It is never overwritten, and an
            existing row whose owner differs from values[owner_column] is
            left untouched.

    Returns:
        Number of rows inserted or updated (0 when the conflict was skipped)
    """
    stmt = dialect_insert(session, table).values(**values)

    if update_columns is None:
        update_columns = [
            c for c in values if c not in conflict_columns and c != owner_column
        ]
    else:
        update_columns = [c for c in update_columns if c != owner_column]

    if owner_column:
        # Owned rows always take the DO UPDATE path so the owner check applies
        set_ = {column: stmt.excluded[column] for column in update_columns or [owner_column]}
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_=set_,
            where=table.c[owner_column] == values[owner_column],
        )
    elif update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_={column: stmt.excluded[column] for column in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)

    result = await session.execute(stmt)
    return result.rowcount
