"""Durable write retry queue.

Clients that exhaust their immediate retries hand the write to this queue.
A periodic processor claims due rows, replays each one in its own
transaction with the same merge rules the live write uses, and records
the outcome on the row itself.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from foamsync.config import RetryQueueConfig
from foamsync.db.models import RetryQueueEntryModel
from foamsync.errors import ErrorKind, FoamSyncError, ValidationError
from foamsync.models import (
    BatchResult,
    CleanupResult,
    RetryEntry,
    RetryOperation,
    RetryStatus,
    utcnow,
)
from foamsync.retry_queue.backoff import next_retry_at
from foamsync.retry_queue.replay import replay

logger = logging.getLogger(__name__)

# Stored error messages are truncated to keep rows small
MAX_ERROR_LENGTH = 1000


class RetryQueueService:
    """Enqueue, claim, replay and purge queued writes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: RetryQueueConfig | None = None,
    ):
        self.session_factory = session_factory
        self.config = config or RetryQueueConfig()

    async def enqueue(
        self,
        org_id: str,
        table_name: str,
        operation: str | RetryOperation,
        payload: dict[str, Any],
        conflict_key: str | None = "id",
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Persist a failed write for later replay.

        The first replay is scheduled enqueue_delay_seconds from now.

        Returns:
            Queue entry id
        """
        if not org_id or not table_name:
            raise ValidationError("org_id and table_name are required")
        try:
            operation = RetryOperation(operation)
        except ValueError as exc:
            raise ValidationError(f"Unsupported operation: {operation}") from exc

        now = now or utcnow()
        entry = RetryQueueEntryModel(
            org_id=org_id,
            table_name=table_name,
            operation=operation.value,
            payload=payload or {},
            conflict_key=conflict_key,
            error_message=(error_message or "")[:MAX_ERROR_LENGTH] or None,
            status=RetryStatus.PENDING.value,
            attempts=0,
            max_attempts=self.config.max_attempts,
            created_at=now,
            next_retry_at=now + timedelta(seconds=self.config.enqueue_delay_seconds),
        )

        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()

        logger.info(
            f"Queued {operation.value} on {table_name} for org {org_id} "
            f"(entry {entry.id})"
        )
        return entry.id

    async def release_stale_claims(self, now: datetime | None = None) -> int:
        """Return rows stuck in processing (crashed runs) to pending."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.config.claim_timeout_seconds)
        stmt = (
            update(RetryQueueEntryModel)
            .where(
                RetryQueueEntryModel.status == RetryStatus.PROCESSING.value,
                RetryQueueEntryModel.claimed_at <= cutoff,
            )
            .values(status=RetryStatus.PENDING.value, claimed_at=None, next_retry_at=now)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        released = result.rowcount or 0
        if released:
            logger.warning(f"Released {released} stale retry queue claim(s)")
        return released

    async def claim(self, batch_size: int | None = None, now: datetime | None = None) -> list[RetryEntry]:
        """Atomically claim due pending rows.

        The inner locking read skips rows another processor has already
        locked, so concurrent runs partition the pending set. The claim
        commits before any replay starts.
        """
        now = now or utcnow()
        batch_size = batch_size or self.config.batch_size
        table = RetryQueueEntryModel.__table__

        due = (
            select(table.c.id)
            .where(
                table.c.status == RetryStatus.PENDING.value,
                table.c.next_retry_at <= now,
            )
            .order_by(table.c.next_retry_at, table.c.created_at)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(table)
            .where(table.c.id.in_(due), table.c.status == RetryStatus.PENDING.value)
            .values(
                status=RetryStatus.PROCESSING.value,
                attempts=table.c.attempts + 1,
                claimed_at=now,
            )
            .returning(*table.c)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.mappings().all()
            await session.commit()

        entries = [RetryEntry.model_validate(dict(row)) for row in rows]
        entries.sort(key=lambda entry: (entry.next_retry_at, entry.created_at))
        return entries

    async def _replay_entry(self, entry: RetryEntry, now: datetime) -> None:
        """Replay one entry and mark it completed in the same transaction."""
        async with self.session_factory() as session:
            async with session.begin():
                await replay(
                    session,
                    entry.org_id,
                    entry.table_name,
                    entry.operation.value,
                    dict(entry.payload),
                    entry.conflict_key,
                )
                await session.execute(
                    update(RetryQueueEntryModel)
                    .where(RetryQueueEntryModel.id == entry.id)
                    .values(
                        status=RetryStatus.COMPLETED.value,
                        completed_at=now,
                        error_message=None,
                    )
                    .execution_options(synchronize_session=False)
                )

    async def _record_failure(self, entry: RetryEntry, exc: Exception, now: datetime) -> RetryStatus:
        """Reschedule with back-off or mark the row failed."""
        message = f"{type(exc).__name__}: {exc}"[:MAX_ERROR_LENGTH]
        permanent = isinstance(exc, FoamSyncError) and exc.kind is not ErrorKind.TRANSIENT

        if permanent or entry.attempts >= entry.max_attempts:
            values = {
                "status": RetryStatus.FAILED.value,
                "completed_at": now,
                "error_message": message,
            }
            status = RetryStatus.FAILED
        else:
            values = {
                "status": RetryStatus.PENDING.value,
                "claimed_at": None,
                "error_message": message,
                # attempts already counts this replay
                "next_retry_at": next_retry_at(
                    now, entry.attempts - 1, self.config.backoff_base_seconds
                ),
            }
            status = RetryStatus.PENDING

        async with self.session_factory() as session:
            await session.execute(
                update(RetryQueueEntryModel)
                .where(RetryQueueEntryModel.id == entry.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return status

    async def process_batch(
        self, batch_size: int | None = None, now: datetime | None = None
    ) -> BatchResult:
        """Claim due rows and replay each one.

        Failures never propagate: they are recorded on the row and counted
        in the result.
        """
        now = now or utcnow()
        await self.release_stale_claims(now=now)

        entries = await self.claim(batch_size=batch_size, now=now)
        result = BatchResult(processed=len(entries))

        for entry in entries:
            try:
                await self._replay_entry(entry, now)
            except Exception as exc:
                status = await self._record_failure(entry, exc, now)
                if status is RetryStatus.FAILED:
                    result.failed += 1
                    logger.error(
                        f"Retry entry {entry.id} ({entry.operation.value} on "
                        f"{entry.table_name}) failed permanently after "
                        f"{entry.attempts} attempt(s): {exc}"
                    )
                else:
                    result.retrying += 1
                    logger.warning(
                        f"Retry entry {entry.id} attempt {entry.attempts}/"
                        f"{entry.max_attempts} failed: {exc}"
                    )
            else:
                result.succeeded += 1

        if entries:
            logger.info(
                f"Retry batch: {result.processed} processed, {result.succeeded} succeeded, "
                f"{result.retrying} retrying, {result.failed} failed"
            )
        return result

    async def cleanup(
        self,
        now: datetime | None = None,
        retention_days: int | None = None,
        failed_retention_days: int | None = None,
    ) -> CleanupResult:
        """Purge terminal rows past their retention window (inclusive)."""
        now = now or utcnow()
        retention_days = self.config.retention_days if retention_days is None else retention_days
        failed_retention_days = (
            self.config.failed_retention_days
            if failed_retention_days is None
            else failed_retention_days
        )

        async with self.session_factory() as session:
            completed = await session.execute(
                delete(RetryQueueEntryModel)
                .where(
                    RetryQueueEntryModel.status == RetryStatus.COMPLETED.value,
                    RetryQueueEntryModel.completed_at <= now - timedelta(days=retention_days),
                )
                .execution_options(synchronize_session=False)
            )
            failed = await session.execute(
                delete(RetryQueueEntryModel)
                .where(
                    RetryQueueEntryModel.status == RetryStatus.FAILED.value,
                    RetryQueueEntryModel.completed_at
                    <= now - timedelta(days=failed_retention_days),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        result = CleanupResult(
            purged_completed=completed.rowcount or 0,
            purged_failed=failed.rowcount or 0,
        )
        logger.info(
            f"Retry queue cleanup: {result.purged_completed} completed, "
            f"{result.purged_failed} failed row(s) purged"
        )
        return result

    async def stats(self, org_id: str | None = None) -> dict[str, int]:
        """Row counts per status."""
        stmt = select(RetryQueueEntryModel.status, func.count()).group_by(
            RetryQueueEntryModel.status
        )
        if org_id:
            stmt = stmt.where(RetryQueueEntryModel.org_id == org_id)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        counts = {status.value: 0 for status in RetryStatus}
        counts.update({status: count for status, count in rows})
        return counts

    async def list_entries(
        self, org_id: str | None = None, status: RetryStatus | None = None, limit: int = 50
    ) -> list[RetryEntry]:
        stmt = select(RetryQueueEntryModel).order_by(RetryQueueEntryModel.created_at.desc())
        if org_id:
            stmt = stmt.where(RetryQueueEntryModel.org_id == org_id)
        if status:
            stmt = stmt.where(RetryQueueEntryModel.status == status.value)

        async with self.session_factory() as session:
            rows = (await session.scalars(stmt.limit(limit))).all()
        return [RetryEntry.model_validate(row) for row in rows]
