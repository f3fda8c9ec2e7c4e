"""Error taxonomy shared by the matching and scheduling services.

Every error is an ``HTTPException`` so services can raise it directly and
FastAPI renders it; ``kind`` is the stable machine-readable name.
"""

from typing import Optional

from fastapi import HTTPException, status


class EngineError(HTTPException):
    kind = "EngineError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(status_code=status_code or self.status_code, detail=detail)

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"


class ValidationError(EngineError):
    kind = "ValidationError"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class PreconditionFailed(EngineError):
    kind = "PreconditionFailed"
    status_code = status.HTTP_409_CONFLICT


class InvalidState(PreconditionFailed):
    kind = "InvalidState"


class NoActiveCohort(PreconditionFailed):
    kind = "NoActiveCohort"


class NotFound(EngineError):
    kind = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(EngineError):
    kind = "Conflict"
    status_code = status.HTTP_409_CONFLICT


class UpstreamUnavailable(EngineError):
    kind = "UpstreamUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AccessDenied(EngineError):
    kind = "AccessDenied"
    status_code = status.HTTP_403_FORBIDDEN
