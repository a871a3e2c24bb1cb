from __future__ import annotations

from fastapi import HTTPException, status

from habitdata.jobs.lifecycle import ArtifactMissingError
from habitdata.jobs.service import InvalidJobStateError, JobConflictError, JobNotFoundError, JobPolicyError
from habitdata.pipeline.pool import WorkerQueueFullError

SERVICE_ERRORS = (
    JobNotFoundError,
    ArtifactMissingError,
    InvalidJobStateError,
    JobConflictError,
    JobPolicyError,
    WorkerQueueFullError,
    ValueError,
)


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (JobNotFoundError, ArtifactMissingError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidJobStateError, JobConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, JobPolicyError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, WorkerQueueFullError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc))
    # Remaining ValueErrors come from malformed query input such as an unknown cursor.
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
