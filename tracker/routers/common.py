from fastapi import Depends, Header, HTTPException, Request, status
from typing_extensions import Annotated

from tracker.core.results import (
    Busy,
    Conflict,
    InternalError,
    MutationResult,
    NotFound,
    Success,
)
from tracker.models import snapshot
from tracker.services.record_service import RecordService


def get_records(request: Request) -> RecordService:
    return request.app.state.container.records


RecordsDep = Annotated[RecordService, Depends(get_records)]
ActorDep = Annotated[str, Header(alias="X-Actor-Id", min_length=1)]


def not_found(label: str, record_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{label} with id {record_id} not found",
    )


def unwrap(result: MutationResult, label: str, record_id: str | None = None) -> dict:
    """Map a mutation result to the record snapshot or the matching HTTP error."""
    if isinstance(result, Success):
        return snapshot(result.record)
    if isinstance(result, Conflict):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": Conflict.message, "current_version": result.current_version},
        )
    if isinstance(result, NotFound):
        raise not_found(label, record_id)
    if isinstance(result, Busy):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is being modified by another request; retry shortly",
            headers={"Retry-After": "1"},
        )
    if isinstance(result, InternalError):
        raise HTTPException(
            status_code=(
                status.HTTP_503_SERVICE_UNAVAILABLE
                if result.retryable
                else status.HTTP_500_INTERNAL_SERVER_ERROR
            ),
            detail=result.detail,
        )
    raise TypeError(f"unexpected mutation result {result!r}")
