from fastapi import APIRouter, Query, status
from sqlmodel import Field

from tracker.models import EntityType, TaskCreate, TaskPriority, TaskResponse, TaskStatus, TaskUpdate
from tracker.routers.common import ActorDep, RecordsDep, not_found, unwrap

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskPatch(TaskUpdate):
    """Update body: the version the client last saw plus the changed fields."""

    version: int = Field(ge=1)


@router.post("/", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, records: RecordsDep, actor: ActorDep):
    """Create a new task"""
    result = await records.create(EntityType.TASK, task_data, actor)
    return unwrap(result, "Task")


@router.get("/", response_model=list[TaskResponse])
async def get_tasks(
    records: RecordsDep,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=100),
    project_id: str | None = None,
    status: TaskStatus | None = None,
    priority: TaskPriority | None = None,
    assignee_id: str | None = None,
):
    filters = {
        "project_id": project_id,
        "status": status,
        "priority": priority,
        "assignee_id": assignee_id,
    }
    return await records.list(EntityType.TASK, filters, skip, limit)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, records: RecordsDep):
    """Get a specific task by ID"""
    task = await records.get(EntityType.TASK, task_id)
    if not task:
        raise not_found("Task", task_id)
    return task


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(task_id: str, body: TaskPatch, records: RecordsDep, actor: ActorDep):
    patch = body.model_dump(exclude_unset=True, exclude={"version"})
    result = await records.update(EntityType.TASK, task_id, body.version, patch, actor)
    return unwrap(result, "Task", task_id)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(
    task_id: str, records: RecordsDep, actor: ActorDep, version: int = Query(ge=1)
):
    """Soft-delete a task"""
    result = await records.delete(EntityType.TASK, task_id, version, actor)
    unwrap(result, "Task", task_id)


@router.post("/{task_id}/complete", response_model=TaskResponse)
async def mark_task_complete(
    task_id: str, records: RecordsDep, actor: ActorDep, version: int = Query(ge=1)
):
    """Mark a task as completed"""
    result = await records.complete_task(task_id, version, actor)
    return unwrap(result, "Task", task_id)
