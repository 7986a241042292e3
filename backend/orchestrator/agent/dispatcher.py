"""Action dispatch: approved decisions become queued jobs.

Jobs go to the ``urgent`` lane for priority 4 and above, otherwise the
``standard`` lane. Job ids derive from the task id, so dispatching the same
task twice returns the job already queued. A queue failure is recorded on
the task and in the audit log; the task keeps its status so a sweep or an
operator can dispatch it later.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orchestrator.agent import events
from orchestrator.agent.enums import TERMINAL_STATUSES, TaskStatus
from orchestrator.agent.models import AgentTask, DispatchJob, utc_now
from orchestrator.agent.schemas import AgentAction
from orchestrator.agent.tasks import TaskStore, record_audit
from orchestrator.errors import DispatchError

logger = logging.getLogger(__name__)

URGENT_LANE = "urgent"
STANDARD_LANE = "standard"
URGENT_PRIORITY = 4

EXECUTE_ACTIONS_JOB = "execute_actions"
RESUME_TASK_JOB = "resume_task"
RETRY_TASK_JOB = "retry_task"

DEFAULT_MAX_ATTEMPTS = 3


def select_lane(priority: int) -> str:
    return URGENT_LANE if priority >= URGENT_PRIORITY else STANDARD_LANE


def job_id_for(task_id: str, name: str = EXECUTE_ACTIONS_JOB, suffix: str | None = None) -> str:
    """Deterministic job id for a task."""
    base = f"{name.replace('_', '-')}:{task_id}"
    return f"{base}:{suffix}" if suffix else base


@dataclass(frozen=True)
class JobRequest:
    job_id: str
    name: str
    task_id: str
    org_id: str | None
    lane: str
    priority: int
    payload: dict[str, Any] = field(default_factory=dict)
    delay_ms: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass(frozen=True)
class QueuedJob:
    job_id: str
    lane: str
    created: bool


class JobQueue(Protocol):
    """Queue boundary. Implementations must treat ``job_id`` as an idempotency key."""

    def enqueue(self, job: JobRequest) -> QueuedJob:
        ...


class SqlJobQueue:
    """Outbox-table queue that workers poll by lane and ``available_at``.

    Uses its own session so a queue failure never disturbs the caller's
    transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def enqueue(self, job: JobRequest) -> QueuedJob:
        """Insert the job unless one with the same id exists.

        Raises:
            DispatchError: If the queue table cannot be written.
        """
        session = self.session_factory()
        try:
            existing = session.query(DispatchJob).filter(DispatchJob.job_id == job.job_id).first()
            if existing:
                return QueuedJob(job_id=existing.job_id, lane=existing.lane, created=False)

            session.add(DispatchJob(
                job_id=job.job_id,
                task_id=job.task_id,
                org_id=job.org_id,
                name=job.name,
                lane=job.lane,
                priority=job.priority,
                payload_json=json.dumps(job.payload, default=str),
                max_attempts=job.max_attempts,
                available_at=utc_now() + timedelta(milliseconds=job.delay_ms),
            ))
            session.commit()
            return QueuedJob(job_id=job.job_id, lane=job.lane, created=True)
        except IntegrityError:
            # Lost a race with a concurrent enqueue of the same job id
            session.rollback()
            existing = session.query(DispatchJob).filter(DispatchJob.job_id == job.job_id).first()
            if existing is None:
                raise DispatchError(f"Could not enqueue job {job.job_id}")
            return QueuedJob(job_id=existing.job_id, lane=existing.lane, created=False)
        except SQLAlchemyError as e:
            session.rollback()
            raise DispatchError(f"Queue unavailable: {e.__class__.__name__}") from e
        finally:
            session.close()


class ActionDispatcher:
    """Turns a task's approved actions into a queued job."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    def dispatch(
        self,
        store: TaskStore,
        task: AgentTask,
        actions: list[AgentAction],
        name: str = EXECUTE_ACTIONS_JOB,
        job_id: str | None = None,
        extra_payload: dict[str, Any] | None = None,
        delay_ms: int | None = None,
    ) -> QueuedJob | None:
        """Enqueue a job for the task.

        Args:
            store: Task store bound to the caller's session.
            task: Task whose actions are dispatched.
            actions: Actions to execute, in order.
            name: Job name workers route on.
            job_id: Override for the deterministic job id.
            extra_payload: Additional payload keys for the worker.
            delay_ms: Hold the job this long; defaults to the actions' own delays.

        Returns:
            The queued job, or None when the task is closed or the queue failed.
        """
        if TaskStatus(task.status) in TERMINAL_STATUSES:
            logger.info("Skipping dispatch for %s task %s", task.status, task.id)
            return None

        lane = select_lane(task.priority)
        delays = [a.delay_ms for a in actions if a.delay_ms]
        if delay_ms is None:
            # Hold the job only when every action asks to be delayed
            delay_ms = min(delays) if actions and len(delays) == len(actions) else 0
        request = JobRequest(
            job_id=job_id or job_id_for(task.id, name),
            name=name,
            task_id=task.id,
            org_id=task.org_id,
            lane=lane,
            priority=task.priority,
            payload={
                "taskId": task.id,
                "orgId": task.org_id,
                "userId": task.user_id,
                "correlationId": task.correlation_id,
                "actions": [a.model_dump(mode="json", by_alias=True) for a in actions],
                **(extra_payload or {}),
            },
            delay_ms=delay_ms,
        )

        try:
            queued = self.queue.enqueue(request)
        except DispatchError as e:
            logger.error(
                "Dispatch failed task=%s lane=%s correlation_id=%s: %s",
                task.id, lane, task.correlation_id, e,
            )
            store.record_error(task, f"Dispatch failed: {e}", "dispatch.failed", {"jobId": request.job_id, "lane": lane})
            store.publish_after_commit(events.DISPATCH_FAILED, {
                "taskId": task.id,
                "orgId": task.org_id,
                "jobId": request.job_id,
                "error": str(e),
            }, task.correlation_id)
            return None

        store.update_metadata(task, dispatch={
            "jobId": queued.job_id,
            "lane": queued.lane,
            "name": name,
            "enqueuedAt": utc_now().isoformat(),
        })
        record_audit(
            store.db, "dispatch.enqueued",
            org_id=task.org_id, user_id=task.user_id, task_id=task.id,
            correlation_id=task.correlation_id,
            detail={"jobId": queued.job_id, "lane": queued.lane, "created": queued.created},
        )
        logger.info(
            "Dispatched task=%s job=%s lane=%s created=%s",
            task.id, queued.job_id, queued.lane, queued.created,
        )
        return queued
