from fastapi import APIRouter, Query, status
from sqlmodel import Field

from tracker.models import EntityType, ProjectCreate, ProjectResponse, ProjectStatus, ProjectUpdate
from tracker.routers.common import ActorDep, RecordsDep, not_found, unwrap

router = APIRouter(prefix="/projects", tags=["projects"])


class ProjectPatch(ProjectUpdate):
    version: int = Field(ge=1)


@router.post("/", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(project_data: ProjectCreate, records: RecordsDep, actor: ActorDep):
    result = await records.create(EntityType.PROJECT, project_data, actor)
    return unwrap(result, "Project")


@router.get("/", response_model=list[ProjectResponse])
async def get_projects(
    records: RecordsDep,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=100),
    workspace_id: str | None = None,
    status: ProjectStatus | None = None,
    owner_id: str | None = None,
):
    filters = {"workspace_id": workspace_id, "status": status, "owner_id": owner_id}
    return await records.list(EntityType.PROJECT, filters, skip, limit)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str, records: RecordsDep):
    project = await records.get(EntityType.PROJECT, project_id)
    if not project:
        raise not_found("Project", project_id)
    return project


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str, body: ProjectPatch, records: RecordsDep, actor: ActorDep
):
    patch = body.model_dump(exclude_unset=True, exclude={"version"})
    result = await records.update(EntityType.PROJECT, project_id, body.version, patch, actor)
    return unwrap(result, "Project", project_id)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str, records: RecordsDep, actor: ActorDep, version: int = Query(ge=1)
):
    result = await records.delete(EntityType.PROJECT, project_id, version, actor)
    unwrap(result, "Project", project_id)
