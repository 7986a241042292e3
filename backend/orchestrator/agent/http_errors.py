"""Translation of pipeline errors into HTTP responses."""
from datetime import datetime, timezone

from fastapi import HTTPException, status

from orchestrator.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    OrchestratorError,
    QuotaExceededError,
    RateLimitError,
    ValidationError,
)


def rate_limit_headers(error: RateLimitError) -> dict[str, str]:
    retry_after = max(int((error.reset_at - datetime.now(timezone.utc)).total_seconds()) + 1, 1)
    return {
        "Retry-After": str(retry_after),
        "X-RateLimit-Limit": str(error.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(int(error.reset_at.timestamp())),
    }


def to_http_exception(error: OrchestratorError) -> HTTPException:
    """Map a pipeline error to the HTTPException a router should raise."""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.to_dict())
    if isinstance(error, AuthError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(error))
    if isinstance(error, ForbiddenError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, QuotaExceededError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=error.to_dict())
    if isinstance(error, RateLimitError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=error.to_dict(),
            headers=rate_limit_headers(error),
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
