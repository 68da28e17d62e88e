from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import field_validator
from sqlalchemy import JSON, DateTime
from sqlmodel import Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class VersionedRecord(SQLModel):
    """
    Bookkeeping shared by every mutable entity.

    `version` starts at 1 and is advanced only by the durable store's
    conditional writes; `deleted_at` marks a soft delete.
    """

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    version: int = Field(default=1, ge=1)
    created_by: str
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
    updated_by: str
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
    deleted_by: str | None = Field(default=None)
    deleted_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True, index=True
    )


# fields a patch may never touch
BOOKKEEPING_FIELDS = frozenset(VersionedRecord.model_fields)


class ProjectStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Projects


class ProjectBase(SQLModel):
    name: str = Field(min_length=1, max_length=200, index=True)
    description: str | None = Field(default=None)
    status: ProjectStatus = Field(default=ProjectStatus.PLANNED)
    owner_id: str = Field(index=True)
    workspace_id: str = Field(index=True)


class Project(ProjectBase, VersionedRecord, table=True):
    __tablename__ = "projects"


class ProjectCreate(ProjectBase):
    pass


class ProjectUpdate(SQLModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: ProjectStatus | None = None
    owner_id: str | None = None

    @field_validator("name", "status", "owner_id")
    @classmethod
    def not_null(cls, value):
        # omitted means unchanged; an explicit null would break a NOT NULL column
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


# Tasks


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200, index=True)
    description: str | None = Field(default=None)
    status: TaskStatus = Field(default=TaskStatus.TODO)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    project_id: str = Field(index=True)
    assignee_id: str | None = Field(default=None, index=True)
    due_date: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    tags: list[str] = Field(default_factory=list, sa_type=JSON)


class Task(TaskBase, VersionedRecord, table=True):
    """Database model"""

    __tablename__ = "tasks"


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    pass


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    assignee_id: str | None = None
    due_date: datetime | None = None
    tags: list[str] | None = None

    @field_validator("title", "status", "priority", "tags")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


# Comments


class CommentBase(SQLModel):
    content: str = Field(min_length=1, max_length=10_000)
    task_id: str = Field(index=True)
    author_id: str = Field(index=True)


class Comment(CommentBase, VersionedRecord, table=True):
    __tablename__ = "comments"


class CommentCreate(CommentBase):
    pass


class CommentUpdate(SQLModel):
    content: str | None = Field(default=None, min_length=1, max_length=10_000)

    @field_validator("content")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class AuditEntry(SQLModel, table=True):
    """Append-only history of every successful mutation."""

    __tablename__ = "audit_log"

    id: int | None = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    action: str
    before: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    after: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    actor: str
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )


class EntityType(str, Enum):
    TASK = "task"
    PROJECT = "project"
    COMMENT = "comment"


@dataclass(frozen=True)
class EntitySpec:
    model: type[VersionedRecord]
    create_schema: type[SQLModel]
    update_schema: type[SQLModel]
    filters: tuple[str, ...]


ENTITIES: dict[EntityType, EntitySpec] = {
    EntityType.TASK: EntitySpec(
        Task, TaskCreate, TaskUpdate, ("project_id", "status", "priority", "assignee_id")
    ),
    EntityType.PROJECT: EntitySpec(
        Project, ProjectCreate, ProjectUpdate, ("workspace_id", "status", "owner_id")
    ),
    EntityType.COMMENT: EntitySpec(
        Comment, CommentCreate, CommentUpdate, ("task_id", "author_id")
    ),
}


def entity_spec(entity_type: EntityType | str) -> EntitySpec:
    return ENTITIES[EntityType(entity_type)]


def snapshot(record: VersionedRecord | dict | None) -> dict | None:
    """JSON-ready copy of a record, as cached and written to the audit log."""
    if record is None or isinstance(record, dict):
        return record
    return record.model_dump(mode="json")


class RecordResponse(SQLModel):
    id: str
    version: int
    created_by: str
    created_at: datetime
    updated_by: str
    updated_at: datetime

    model_config = {"from_attributes": True}


class ProjectResponse(ProjectBase, RecordResponse):
    pass


class TaskResponse(TaskBase, RecordResponse):
    """Schema for task responses"""

    pass


class CommentResponse(CommentBase, RecordResponse):
    pass
