"""
arq worker for the task queue.

    arq taskboard.queues.worker.WorkerSettings

Runs the hourly overdue sweep as a cron job and executes the jobs the sweep
and the API submit.
"""

import logging
from datetime import timedelta

from arq import Retry, cron
from arq.connections import RedisSettings
from arq.worker import func
from sqlalchemy.exc import SQLAlchemyError

from taskboard.cache.layer import cache_layer
from taskboard.core.config import get_settings
from taskboard.core.logging import configure_logging
from taskboard.database import async_session, engine
from taskboard.models import Task, TaskStatus
from taskboard.queues.overdue import sweep_overdue_tasks
from taskboard.queues.queue import MARK_OVERDUE, TASK_STATUS_UPDATE, TaskQueue

logger = logging.getLogger(__name__)

settings = get_settings()


def _retry_or_raise(ctx, exc: Exception):
    job_try = ctx.get("job_try", 1)
    if job_try >= settings.overdue_job_max_tries:
        raise exc
    logger.warning(f"Job {ctx.get('job_id')} try {job_try} failed, retrying: {exc!r}")
    raise Retry(defer=timedelta(seconds=5 * job_try)) from exc


async def _load_task(ctx, task_id: int) -> Task | None:
    try:
        async with ctx["session_factory"]() as session:
            return await session.get(Task, task_id)
    except SQLAlchemyError as e:
        _retry_or_raise(ctx, e)


async def mark_overdue(ctx, task_id: int, due_date: str | None = None):
    """Downstream processing for a task the sweep marked overdue."""
    task = await _load_task(ctx, task_id)
    if task is None:
        logger.info(f"Overdue task {task_id} no longer exists, skipping")
        return
    if task.status != TaskStatus.OVERDUE:
        logger.info(f"Task {task_id} is {task.status.value} now, skipping overdue notice")
        return

    logger.warning(f"Task {task_id} '{task.title}' is overdue (due {due_date})")


async def task_status_update(ctx, task_id: int, status: str):
    task = await _load_task(ctx, task_id)
    if task is None:
        logger.info(f"Task {task_id} deleted before status update {status} was processed")
        return
    logger.info(f"Task {task_id} status changed to {status}")


async def check_overdue_tasks(ctx):
    report = await sweep_overdue_tasks(ctx["session_factory"], ctx["queue"], cache=cache_layer)
    return report.model_dump(exclude={"now", "task_ids"})


async def startup(ctx):
    configure_logging()
    ctx["session_factory"] = async_session
    ctx["queue"] = TaskQueue(ctx["redis"], settings.queue_name)
    await cache_layer.init_cache()


async def shutdown(ctx):
    await cache_layer.close()
    await engine.dispose()


class WorkerSettings:
    functions = [
        func(
            mark_overdue,
            name=MARK_OVERDUE,
            max_tries=settings.overdue_job_max_tries,
            keep_result=0,
        ),
        func(
            task_status_update,
            name=TASK_STATUS_UPDATE,
            max_tries=settings.overdue_job_max_tries,
            keep_result=0,
        ),
    ]
    cron_jobs = [
        cron(
            check_overdue_tasks,
            minute=settings.overdue_check_minute,
            second=0,
            unique=True,
            run_at_startup=False,
        )
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.redis_dsn)
    queue_name = settings.queue_name
