"""Sync processor: applies push operations one item at a time.

This is the core business logic. Each item runs idempotency or conflict
checks, the write and the aggregate refresh as its own unit of work; a
failing item becomes an ``error`` result and never affects its siblings.
Items of one batch run concurrently, so their relative order is whatever the
store's atomic writes serialize to.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TYPE_CHECKING, assert_never

import structlog

from inspectsync.core.errors import SyncError
from inspectsync.core.operations import (
    BatchSummary,
    CreateInspection,
    DeleteInspection,
    MediaChange,
    SyncResult,
    UpdateInspection,
    parse_change,
)

if TYPE_CHECKING:
    from inspectsync.core.conflicts import ConflictResolver
    from inspectsync.core.idempotency import IdempotencyResolver
    from inspectsync.core.models import Engineer
    from inspectsync.core.operations import RawChange, SyncOperation
    from inspectsync.core.stats import SyncStats

log = structlog.get_logger()

MEDIA_NOT_SUPPORTED = "Media should be synced via upload URLs"


class SyncProcessor:
    """Dispatches push operations to the idempotency and conflict resolvers."""

    def __init__(
        self,
        idempotency: IdempotencyResolver,
        conflicts: ConflictResolver,
        stats: SyncStats,
        max_concurrency: int = 8,
    ) -> None:
        self._idempotency = idempotency
        self._conflicts = conflicts
        self._stats = stats
        self._max_concurrency = max(1, max_concurrency)

    async def apply(self, op: SyncOperation, engineer: Engineer) -> SyncResult:
        """Apply one operation. SyncError and anything unexpected propagate."""
        match op:
            case CreateInspection():
                return await self._idempotency.create(op, engineer.id, engineer.name)
            case UpdateInspection():
                return await self._conflicts.update(op, engineer.id)
            case DeleteInspection():
                return await self._conflicts.delete(op, engineer.id)
            case MediaChange():
                return SyncResult(status="error", client_id=op.client_id,
                                  server_id=op.server_id, error=MEDIA_NOT_SUPPORTED)
            case _:
                assert_never(op)

    async def _guarded(
        self,
        run: Callable[[], Awaitable[SyncResult]],
        client_id: str | None,
        server_id: str | None,
        failure_status: str,
    ) -> SyncResult:
        try:
            result = await run()
        except SyncError as exc:
            log.info("sync_item_failed", code=exc.code, error=str(exc),
                     client_id=client_id, server_id=server_id)
            result = SyncResult(status=failure_status, client_id=client_id,
                                server_id=server_id, error=str(exc))
        except Exception as exc:
            log.error("sync_item_crashed", client_id=client_id, server_id=server_id,
                      exc_info=True)
            result = SyncResult(status=failure_status, client_id=client_id,
                                server_id=server_id,
                                error=f"Unexpected error ({type(exc).__name__})")
        self._stats.record_result(result.status)
        return result

    async def process_change(self, change: RawChange, engineer: Engineer) -> SyncResult:
        async def run() -> SyncResult:
            return await self.apply(parse_change(change), engineer)

        return await self._guarded(run, change.client_id, change.id, "error")

    async def _gather(self, coros: list[Awaitable[SyncResult]]) -> list[SyncResult]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(coro: Awaitable[SyncResult]) -> SyncResult:
            async with semaphore:
                return await coro

        return list(await asyncio.gather(*(bounded(c) for c in coros)))

    async def process_push(
        self, changes: list[RawChange], engineer: Engineer,
    ) -> tuple[list[SyncResult], BatchSummary]:
        """Process a push batch. Results are in input order."""
        self._stats.record_push(engineer.id, len(changes))
        results = await self._gather([self.process_change(c, engineer) for c in changes])
        summary = BatchSummary.from_results(results)
        log.info("push_completed", total=summary.total, created=summary.created,
                 already_synced=summary.already_synced, updated=summary.updated,
                 deleted=summary.deleted, conflicts=summary.conflicts,
                 failed=summary.failed)
        return results, summary

    async def create_one(self, op: CreateInspection, engineer: Engineer) -> SyncResult:
        """Single idempotent create. Errors propagate to the caller."""
        self._stats.record_push(engineer.id, 1)
        result = await self._idempotency.create(op, engineer.id, engineer.name)
        self._stats.record_result(result.status)
        return result

    async def create_many(
        self, ops: list[CreateInspection], engineer: Engineer,
    ) -> tuple[list[SyncResult], BatchSummary]:
        """Batch of idempotent creates; failures are reported as ``failed``."""
        self._stats.record_push(engineer.id, len(ops))

        def runner(op: CreateInspection) -> Callable[[], Awaitable[SyncResult]]:
            return lambda: self._idempotency.create(op, engineer.id, engineer.name)

        results = await self._gather([
            self._guarded(runner(op), op.client_id, None, "failed") for op in ops
        ])
        summary = BatchSummary.from_results(results)
        log.info("create_batch_completed", total=summary.total, created=summary.created,
                 already_synced=summary.already_synced, failed=summary.failed)
        return results, summary
