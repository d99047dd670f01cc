from datetime import datetime, timezone
from enum import Enum

from pydantic import field_validator
from sqlalchemy import DateTime, Index
from sqlalchemy import Enum as SAEnum
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _enum_column_type(enum_cls: type[Enum], name: str) -> SAEnum:
    # stored as the lowercase value in a plain VARCHAR column
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200, index=True)
    description: str | None = Field(default=None)
    status: TaskStatus = Field(
        default=TaskStatus.PENDING,
        sa_type=_enum_column_type(TaskStatus, "task_status"),
    )
    priority: TaskPriority = Field(
        default=TaskPriority.MEDIUM,
        sa_type=_enum_column_type(TaskPriority, "task_priority"),
    )
    due_date: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_status_due_date", "status", "due_date"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str | None = Field(default=None, max_length=64, index=True)
    # set by the overdue sweep; the second one once the queue accepted the job
    overdue_marked_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    overdue_enqueued_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    pass


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None

    @field_validator("title", "status", "priority", mode="before")
    @classmethod
    def reject_null(cls, value):
        # omit the field to leave it unchanged; these columns are NOT NULL
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class TaskResponse(TaskBase):
    """Schema for task responses"""

    id: int
    user_id: str | None = None
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class TaskPage(SQLModel):
    data: list[TaskResponse]
    count: int
    page: int
    limit: int


class TaskStats(SQLModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    overdue: int = 0
    high_priority: int = 0


class BatchAction(str, Enum):
    COMPLETE = "complete"
    DELETE = "delete"


class BatchProcessRequest(SQLModel):
    tasks: list[int] = Field(min_length=1, max_length=500)
    action: BatchAction


class BatchProcessResult(SQLModel):
    success: bool
    action: BatchAction
    affected: int
