import logging
from uuid import uuid4

from redis.asyncio import RedisError
from sqlalchemy import delete, func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.decorators import async_cached, async_cached_expire
from taskboard.cache.layer import task_cache_key
from taskboard.models import (
    Task,
    TaskCreate,
    TaskPriority,
    TaskStats,
    TaskStatus,
    TaskUpdate,
    get_utc_now,
)
from taskboard.queues.queue import TASK_STATUS_UPDATE, QueuedJob, QueueError, TaskQueue

logger = logging.getLogger(__name__)


async def _publish_status(queue: TaskQueue | None, task_ids: list[int], status: TaskStatus):
    """Best effort: the task rows are already committed when this runs."""
    if queue is None or not task_ids:
        return
    jobs = [
        QueuedJob(
            key=uuid4().hex,
            function=TASK_STATUS_UPDATE,
            payload={"task_id": task_id, "status": TaskStatus(status).value},
        )
        for task_id in task_ids
    ]
    try:
        await queue.submit_batch(jobs)
    except (RedisError, QueueError) as e:
        logger.error(f"Failed to queue status update for tasks {task_ids}: {e}")


class TaskService:
    @staticmethod
    async def create_task(
        task_data: TaskCreate,
        db: AsyncSession,
        user_id: str | None = None,
        queue: TaskQueue | None = None,
    ):
        task = Task.model_validate(task_data, update={"user_id": user_id})
        db.add(task)
        await db.commit()
        await db.refresh(task)
        logger.info(f"Task {task.id} created by user {user_id}")
        await _publish_status(queue, [task.id], task.status)
        return task

    @staticmethod
    async def get_all_tasks(
        db: AsyncSession,
        page: int = 1,
        limit: int = 10,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
    ) -> tuple[list[Task], int]:
        filters = []
        if status is not None:
            filters.append(Task.status == status)
        if priority is not None:
            filters.append(Task.priority == priority)

        query = (
            select(Task)
            .where(*filters)
            .offset((page - 1) * limit)
            .limit(limit)
            .order_by(Task.created_at.desc(), Task.id.desc())
        )
        tasks = (await db.exec(query)).all()

        count_query = select(func.count(Task.id)).where(*filters)
        count = (await db.exec(count_query)).one()
        return list(tasks), count

    @staticmethod
    async def get_stats(db: AsyncSession) -> TaskStats:
        """Counts per status plus high priority, aggregated in SQL."""
        rows = (
            await db.exec(select(Task.status, func.count(Task.id)).group_by(Task.status))
        ).all()
        by_status = {TaskStatus(status).value: count for status, count in rows}

        high_priority = (
            await db.exec(
                select(func.count(Task.id)).where(Task.priority == TaskPriority.HIGH)
            )
        ).one()

        return TaskStats(
            total=sum(by_status.values()),
            pending=by_status.get(TaskStatus.PENDING.value, 0),
            in_progress=by_status.get(TaskStatus.IN_PROGRESS.value, 0),
            completed=by_status.get(TaskStatus.COMPLETED.value, 0),
            overdue=by_status.get(TaskStatus.OVERDUE.value, 0),
            high_priority=high_priority,
        )

    @staticmethod
    @async_cached(lambda task_id, *_, **__: task_cache_key(task_id), l2_ttl=120)
    async def get_task(task_id: int, db: AsyncSession):
        task = await db.get(Task, task_id)
        return task

    @staticmethod
    @async_cached_expire(lambda task_id, *_, **__: task_cache_key(task_id))
    async def update_task(
        task_id: int,
        task_data: TaskUpdate,
        db: AsyncSession,
        queue: TaskQueue | None = None,
    ):
        task = await db.get(Task, task_id)
        if not task:
            return None

        original_status = task.status
        update_data = task_data.model_dump(exclude_unset=True)
        task.sqlmodel_update(update_data)
        if task.status != original_status and original_status == TaskStatus.OVERDUE:
            # a later overdue occurrence gets its own notification
            task.overdue_marked_at = None
            task.overdue_enqueued_at = None
        task.updated_at = get_utc_now()

        await db.commit()
        await db.refresh(task)

        if task.status != original_status:
            await _publish_status(queue, [task.id], task.status)
        return task

    @staticmethod
    async def update_status(
        task_id: int, status: TaskStatus, db: AsyncSession, queue: TaskQueue | None = None
    ):
        return await TaskService.update_task(task_id, TaskUpdate(status=status), db, queue)

    @staticmethod
    @async_cached_expire(lambda task_id, *_, **__: task_cache_key(task_id))
    async def delete_task(task_id: int, db: AsyncSession):
        task = await db.get(Task, task_id)
        if not task:
            return False
        await db.delete(task)
        await db.commit()
        return True

    @staticmethod
    @async_cached_expire(lambda task_ids, *_, **__: [task_cache_key(i) for i in task_ids])
    async def batch_update_status(
        task_ids: list[int],
        status: TaskStatus,
        db: AsyncSession,
        queue: TaskQueue | None = None,
    ) -> int:
        """Move every listed task not already in ``status`` to it; returns the count."""
        result = await db.exec(
            update(Task)
            .where(Task.id.in_(task_ids), Task.status != status)
            .values(
                status=status,
                overdue_marked_at=None,
                overdue_enqueued_at=None,
                updated_at=get_utc_now(),
            )
            .returning(Task.id)
            .execution_options(synchronize_session=False)
        )
        changed = list(result.scalars().all())
        await db.commit()

        await _publish_status(queue, changed, status)
        return len(changed)

    @staticmethod
    @async_cached_expire(lambda task_ids, *_, **__: [task_cache_key(i) for i in task_ids])
    async def batch_delete(task_ids: list[int], db: AsyncSession) -> int:
        result = await db.exec(
            delete(Task)
            .where(Task.id.in_(task_ids))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount
