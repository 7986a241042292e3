"""Error taxonomy for the orchestration pipeline.

Validation and auth errors abort before anything is persisted. Quota and
rate-limit errors are admission rejections. Classification and dispatch
errors are absorbed by the pipeline and surface only in the audit log and
on ``AgentTask.error_message``.
"""
from datetime import datetime
from typing import Any


class OrchestratorError(Exception):
    """Base class for all pipeline errors."""
    pass


class ValidationError(OrchestratorError):
    """Raised when an inbound payload is missing fields or malformed.

    Attributes:
        errors: One ``{"path": ..., "message": ...}`` entry per problem.
    """

    def __init__(self, errors: list[dict[str, str]], message: str = "Invalid input"):
        super().__init__(message)
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        return {"error": "validation_error", "message": str(self), "errors": self.errors}


class AuthError(OrchestratorError):
    """Raised for a bad or missing signature, credential or principal."""
    pass


class ForbiddenError(OrchestratorError):
    """Raised when an authenticated principal may not touch a resource."""
    pass


class NotFoundError(OrchestratorError):
    """Raised when a task or other resource does not exist."""
    pass


class QuotaExceededError(OrchestratorError):
    """Raised when an organization has used up a monthly quota."""

    def __init__(self, quota_type: str, used: int, limit: int, plan: str):
        super().__init__(f"Quota exceeded for {quota_type}: {used}/{limit} on plan {plan}")
        self.quota_type = quota_type
        self.used = used
        self.limit = limit
        self.plan = plan

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "quota_exceeded",
            "quotaType": self.quota_type,
            "used": self.used,
            "limit": self.limit,
            "plan": self.plan,
        }


class RateLimitError(OrchestratorError):
    """Raised when a principal exceeds its short-window request allowance."""

    def __init__(self, key: str, limit: int, reset_at: datetime):
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key
        self.limit = limit
        self.reset_at = reset_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "rate_limit_exceeded",
            "limit": self.limit,
            "remaining": 0,
            "reset": self.reset_at.isoformat(),
        }


class ClassificationError(OrchestratorError):
    """Raised when the LLM call fails or its response cannot be parsed."""
    pass


class DispatchError(OrchestratorError):
    """Raised when the job queue cannot accept a job."""
    pass


class ConflictError(OrchestratorError):
    """Raised when a request conflicts with a task's current state."""
    pass


class TaskTransitionError(ConflictError):
    """Raised for a status change the task state machine does not allow."""

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class RetryLimitExceededError(ConflictError):
    """Raised when a failed task has no reprocessing attempts left."""

    def __init__(self, task_id: str, max_retries: int):
        super().__init__(f"Task {task_id} has exhausted its {max_retries} retries")
        self.task_id = task_id
        self.max_retries = max_retries
