"""
Hourly overdue sweep.

One invocation:

1. re-submits tasks a previous sweep marked overdue but never got onto the
   queue (reconciliation),
2. selects pending tasks whose due date is before ``now``, most overdue first,
3. flips them to overdue in one transaction,
4. submits one deterministic-key job per transitioned task in a single batch,
5. records which tasks the queue accepted.

The store write always commits before anything is submitted. If submission
fails the tasks stay overdue with ``overdue_enqueued_at`` unset and the next
invocation's reconciliation picks them up. Job keys are derived from the task
id, so re-submitting a job that is still queued is a no-op.

Nothing raises out of :func:`sweep_overdue_tasks`; failures end up in the log
and in the returned :class:`SweepReport`.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.layer import CacheLayer, task_cache_key
from taskboard.core.config import get_settings
from taskboard.models import Task, TaskStatus, get_utc_now
from taskboard.queues.queue import MARK_OVERDUE, JobSubmitter, QueuedJob, overdue_job_key

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class SweepReport(BaseModel):
    now: datetime
    selected: int = 0
    transitioned: int = 0
    enqueued: int = 0
    reconciled: int = 0
    task_ids: list[int] = Field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def build_overdue_job(task_id: int, due_date: datetime | None) -> QueuedJob:
    return QueuedJob(
        key=overdue_job_key(task_id),
        function=MARK_OVERDUE,
        payload={
            "task_id": task_id,
            "due_date": due_date.isoformat() if due_date else None,
        },
    )


async def select_overdue_candidates(session: AsyncSession, now: datetime):
    """Pending tasks due strictly before ``now``: (id, title, due_date) rows."""
    statement = (
        select(Task.id, Task.title, Task.due_date)
        .where(
            Task.status == TaskStatus.PENDING,
            Task.due_date.is_not(None),
            Task.due_date < now,
        )
        .order_by(Task.due_date.asc(), Task.id.asc())
    )
    result = await session.exec(statement)
    return result.all()


async def select_unqueued_overdue(session: AsyncSession, marked_before: datetime):
    """Tasks the sweep marked overdue whose job was never confirmed queued."""
    statement = (
        select(Task.id, Task.title, Task.due_date)
        .where(
            Task.status == TaskStatus.OVERDUE,
            Task.overdue_marked_at.is_not(None),
            Task.overdue_marked_at < marked_before,
            Task.overdue_enqueued_at.is_(None),
        )
        .order_by(Task.due_date.asc(), Task.id.asc())
    )
    result = await session.exec(statement)
    return result.all()


async def transition_to_overdue(
    session: AsyncSession, task_ids: Sequence[int], now: datetime
) -> list[int]:
    """
    Flip the given tasks from pending to overdue in a single transaction.

    Rows are locked first; a row another writer moved out of pending in the
    meantime is left alone and missing from the returned ids.
    """
    if not task_ids:
        return []

    async with session.begin():
        await session.exec(
            select(Task.id)
            .where(Task.id.in_(task_ids), Task.status == TaskStatus.PENDING)
            .with_for_update()
        )
        result = await session.exec(
            update(Task)
            .where(Task.id.in_(task_ids), Task.status == TaskStatus.PENDING)
            .values(
                status=TaskStatus.OVERDUE,
                overdue_marked_at=now,
                overdue_enqueued_at=None,
                updated_at=now,
            )
            .returning(Task.id)
            .execution_options(synchronize_session=False)
        )
        return list(result.scalars().all())


async def mark_enqueued(session: AsyncSession, task_ids: Iterable[int], now: datetime):
    task_ids = list(task_ids)
    if not task_ids:
        return

    async with session.begin():
        await session.exec(
            update(Task)
            .where(
                Task.id.in_(task_ids),
                Task.status == TaskStatus.OVERDUE,
                Task.overdue_enqueued_at.is_(None),
            )
            .values(overdue_enqueued_at=now)
            .execution_options(synchronize_session=False)
        )


async def _submit(
    session_factory: SessionFactory,
    queue: JobSubmitter,
    rows,
    now: datetime,
    timeout: float,
) -> int:
    """Submit one batch for ``rows`` and record the tasks as queued."""
    jobs = [build_overdue_job(row.id, row.due_date) for row in rows]
    accepted = await asyncio.wait_for(queue.submit_batch(jobs), timeout)

    # a False flag means the same key is already on the queue
    async with session_factory() as session:
        await asyncio.wait_for(mark_enqueued(session, [row.id for row in rows], now), timeout)
    return sum(1 for flag in accepted if flag)


async def reconcile_overdue_tasks(
    session_factory: SessionFactory,
    queue: JobSubmitter,
    now: datetime,
    grace: timedelta,
    timeout: float,
) -> int:
    """Re-submit overdue tasks left unqueued by an earlier invocation."""
    async with session_factory() as session:
        rows = await asyncio.wait_for(select_unqueued_overdue(session, now - grace), timeout)

    if not rows:
        return 0

    logger.warning(f"Re-submitting {len(rows)} overdue tasks missing from the queue")
    await _submit(session_factory, queue, rows, now, timeout)
    return len(rows)


async def sweep_overdue_tasks(
    session_factory: SessionFactory,
    queue: JobSubmitter,
    *,
    now: datetime | None = None,
    cache: CacheLayer | None = None,
    timeout: float | None = None,
    reconcile_grace: timedelta | None = None,
) -> SweepReport:
    """Run one overdue sweep. Never raises."""
    settings = get_settings()
    now = now or get_utc_now()
    timeout = settings.sweep_timeout_seconds if timeout is None else timeout
    if reconcile_grace is None:
        reconcile_grace = timedelta(seconds=settings.reconcile_grace_seconds)

    report = SweepReport(now=now)
    logger.debug(f"Checking for overdue tasks due before {now.isoformat()}")

    try:
        try:
            report.reconciled = await reconcile_overdue_tasks(
                session_factory, queue, now, reconcile_grace, timeout
            )
        except Exception as e:
            # leftovers stay discoverable for the next invocation
            logger.exception(f"Overdue reconciliation failed: {e!r}")

        try:
            async with session_factory() as session:
                rows = await asyncio.wait_for(select_overdue_candidates(session, now), timeout)
        except Exception as e:
            report.error = f"selection failed: {e!r}"
            logger.exception(f"Failed to select overdue tasks: {e!r}")
            return report

        report.selected = len(rows)
        if not rows:
            logger.info("No overdue tasks found")
            return report

        try:
            async with session_factory() as session:
                transitioned = await asyncio.wait_for(
                    transition_to_overdue(session, [row.id for row in rows], now), timeout
                )
        except Exception as e:
            report.error = f"transition failed: {e!r}"
            logger.exception(f"Failed to mark {len(rows)} tasks overdue: {e!r}")
            return report

        transitioned_ids = set(transitioned)
        rows = [row for row in rows if row.id in transitioned_ids]
        report.transitioned = len(rows)
        report.task_ids = [row.id for row in rows]

        if len(rows) < report.selected:
            logger.info(
                f"{report.selected - len(rows)} selected tasks changed status before the transition"
            )
        if not rows:
            return report

        if cache is not None:
            try:
                await cache.delete_many(task_cache_key(task_id) for task_id in report.task_ids)
            except Exception as e:
                # stale entries expire with their TTL
                logger.exception(f"Failed to drop cached overdue tasks: {e!r}")

        try:
            report.enqueued = await _submit(session_factory, queue, rows, now, timeout)
        except Exception as e:
            report.error = f"enqueue failed: {e!r}"
            logger.exception(
                f"{len(rows)} tasks marked overdue but not confirmed queued, "
                f"left for reconciliation: {report.task_ids}: {e!r}"
            )
            return report

        logger.info(f"{report.transitioned} tasks marked overdue and queued for processing")
        return report
    finally:
        logger.debug("Overdue tasks check completed")
