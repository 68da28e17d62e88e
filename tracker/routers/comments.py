from fastapi import APIRouter, Query, status
from sqlmodel import Field

from tracker.models import CommentCreate, CommentResponse, CommentUpdate, EntityType
from tracker.routers.common import ActorDep, RecordsDep, not_found, unwrap

router = APIRouter(prefix="/comments", tags=["comments"])


class CommentPatch(CommentUpdate):
    version: int = Field(ge=1)


@router.post("/", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
async def create_comment(comment_data: CommentCreate, records: RecordsDep, actor: ActorDep):
    result = await records.create(EntityType.COMMENT, comment_data, actor)
    return unwrap(result, "Comment")


@router.get("/", response_model=list[CommentResponse])
async def get_comments(
    records: RecordsDep,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=100),
    task_id: str | None = None,
    author_id: str | None = None,
):
    filters = {"task_id": task_id, "author_id": author_id}
    return await records.list(EntityType.COMMENT, filters, skip, limit)


@router.get("/{comment_id}", response_model=CommentResponse)
async def get_comment(comment_id: str, records: RecordsDep):
    comment = await records.get(EntityType.COMMENT, comment_id)
    if not comment:
        raise not_found("Comment", comment_id)
    return comment


@router.patch("/{comment_id}", response_model=CommentResponse)
async def update_comment(
    comment_id: str, body: CommentPatch, records: RecordsDep, actor: ActorDep
):
    patch = body.model_dump(exclude_unset=True, exclude={"version"})
    result = await records.update(EntityType.COMMENT, comment_id, body.version, patch, actor)
    return unwrap(result, "Comment", comment_id)


@router.delete("/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    comment_id: str, records: RecordsDep, actor: ActorDep, version: int = Query(ge=1)
):
    result = await records.delete(EntityType.COMMENT, comment_id, version, actor)
    unwrap(result, "Comment", comment_id)
