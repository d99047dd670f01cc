from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.core.config import SettingsDep
from taskboard.database import get_db
from taskboard.dependencies import CurrentUser, get_current_user, get_queue, require_roles
from taskboard.models import (
    BatchAction,
    BatchProcessRequest,
    BatchProcessResult,
    TaskCreate,
    TaskPage,
    TaskPriority,
    TaskResponse,
    TaskStats,
    TaskStatus,
    TaskUpdate,
)
from taskboard.queues.queue import TaskQueue
from taskboard.services.task_service import TaskService

router = APIRouter(
    prefix="/tasks",
    tags=["tasks"],
    dependencies=[Depends(require_roles("admin", "user"))],
)


def _not_found(task_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Task with id {task_id} not found",
    )


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    task_data: TaskCreate,
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    queue: TaskQueue | None = Depends(get_queue),
):
    """Create a new task"""
    return await TaskService.create_task(task_data, db, user.id, queue)


@router.get("/", response_model=TaskPage)
async def get_tasks(
    settings: SettingsDep,
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    priority: TaskPriority | None = None,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """List tasks, optionally filtered by status and priority"""
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    tasks, count = await TaskService.get_all_tasks(db, page, limit, status_filter, priority)
    return TaskPage(
        data=[TaskResponse.model_validate(task) for task in tasks],
        count=count,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=TaskStats)
async def get_stats(db: AsyncSession = Depends(get_db)):
    return await TaskService.get_stats(db)


@router.post("/batch", response_model=BatchProcessResult)
async def batch_process(
    operations: BatchProcessRequest,
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue | None = Depends(get_queue),
):
    """Complete or delete several tasks at once"""
    if operations.action == BatchAction.COMPLETE:
        affected = await TaskService.batch_update_status(
            operations.tasks, TaskStatus.COMPLETED, db, queue
        )
    else:
        affected = await TaskService.batch_delete(operations.tasks, db)

    return BatchProcessResult(success=True, action=operations.action, affected=affected)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: int, db: AsyncSession = Depends(get_db)):
    """Get a specific task by ID"""

    task = await TaskService.get_task(task_id, db)

    if not task:
        raise _not_found(task_id)
    return task


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: int,
    task_data: TaskUpdate,
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue | None = Depends(get_queue),
):
    task = await TaskService.update_task(task_id, task_data, db, queue)
    if not task:
        raise _not_found(task_id)
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: int, db: AsyncSession = Depends(get_db)):
    """Delete a task"""
    result = await TaskService.delete_task(task_id, db)

    if not result:
        raise _not_found(task_id)


@router.post("/{task_id}/complete", response_model=TaskResponse)
async def mark_task_complete(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue | None = Depends(get_queue),
):
    """Mark a task as completed"""
    task = await TaskService.update_status(task_id, TaskStatus.COMPLETED, db, queue)
    if not task:
        raise _not_found(task_id)
    return task
