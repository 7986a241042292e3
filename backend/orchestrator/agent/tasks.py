"""Agent task persistence and lifecycle state machine.

Tasks move ``PENDING -> PROCESSING -> {AWAITING_INPUT, SCHEDULED, COMPLETED,
FAILED, CANCELLED}``. COMPLETED, FAILED and CANCELLED are terminal and stamp
``completed_at``; the only way out of FAILED is a bounded retry.

The ``open_task_index`` table holds the newest open (PENDING or
AWAITING_INPUT) task per principal. It is written in the same transaction as
the task rows, so quick-reply matching reads one row instead of scanning.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from orchestrator.agent import events
from orchestrator.agent.enums import OPEN_STATUSES, TERMINAL_STATUSES, TaskStatus, TaskType
from orchestrator.agent.events import EventBus
from orchestrator.agent.models import AgentTask, AuditLog, OpenTaskIndex, ProcessedMessage, utc_now
from orchestrator.agent.schemas import AgentDecisionResult, AgentInput, TaskResponse
from orchestrator.errors import (
    ForbiddenError,
    NotFoundError,
    RetryLimitExceededError,
    TaskTransitionError,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.PROCESSING: frozenset({
        TaskStatus.AWAITING_INPUT,
        TaskStatus.SCHEDULED,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.AWAITING_INPUT: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.SCHEDULED: frozenset({
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
        TaskStatus.FAILED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

MAX_RETRY_DELAY_MS = 60_000


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def retry_delay_ms(attempt: int, base_delay_ms: int) -> int:
    """Exponential backoff for the given 1-based retry attempt, capped at 60s."""
    return min(base_delay_ms * 2 ** (attempt - 1), MAX_RETRY_DELAY_MS)


def _naive_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; compare everything as naive UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def json_dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value, default=str)


def json_load(value: str | None) -> Any:
    return None if not value else json.loads(value)


def to_task_response(task: AgentTask) -> TaskResponse:
    """Read-surface view of a task with its JSON columns decoded."""
    return TaskResponse(
        id=task.id,
        org_id=task.org_id,
        user_id=task.user_id,
        status=task.status,
        source=task.source,
        source_id=task.source_id,
        task_type=task.task_type,
        priority=task.priority,
        entities=json_load(task.entities_json),
        ai_metadata=json_load(task.ai_metadata_json),
        resolution=json_load(task.resolution_json),
        error_message=task.error_message,
        retry_count=task.retry_count,
        next_retry_at=task.next_retry_at,
        created_at=task.created_at,
        updated_at=task.updated_at,
        processed_at=task.processed_at,
        completed_at=task.completed_at,
    )


def record_audit(
    db: Session,
    action: str,
    org_id: str | None = None,
    user_id: str | None = None,
    task_id: str | None = None,
    correlation_id: str | None = None,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """Add an audit row to the current transaction."""
    entry = AuditLog(
        org_id=org_id,
        user_id=user_id,
        task_id=task_id,
        action=action,
        detail_json=json_dump(detail),
        correlation_id=correlation_id,
    )
    db.add(entry)
    return entry


class TaskStore:
    """Task repository bound to one database session.

    Mutating methods flush but never commit. Call ``commit()`` to persist and
    then publish the status-change events gathered along the way.
    """

    def __init__(self, db: Session, bus: EventBus | None = None):
        self.db = db
        self.bus = bus
        self._pending_events: list[tuple[str, dict[str, Any], str | None]] = []

    # --- Reads ---

    def get(self, task_id: str) -> AgentTask | None:
        return self.db.query(AgentTask).filter(AgentTask.id == task_id).first()

    def get_for_org(self, task_id: str, org_id: str) -> AgentTask:
        """Fetch a task the organization owns.

        Raises:
            NotFoundError: If the task does not exist.
            ForbiddenError: If it belongs to another organization.
        """
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' not found")
        if task.org_id != org_id:
            raise ForbiddenError("Task belongs to another organization")
        return task

    def find_by_source_id(self, source: str, source_id: str) -> AgentTask | None:
        return self.db.query(AgentTask).filter(
            AgentTask.source == source,
            AgentTask.source_id == source_id,
        ).first()

    def find_task_for_message(self, source: str, source_id: str) -> AgentTask | None:
        """Task already produced or resumed by this provider message, if any."""
        task = self.find_by_source_id(source, source_id)
        if task is not None:
            return task
        seen = self.db.query(ProcessedMessage).filter(
            ProcessedMessage.source == source,
            ProcessedMessage.source_id == source_id,
        ).first()
        return self.get(seen.task_id) if seen else None

    def list_for_org(
        self,
        org_id: str,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AgentTask], int]:
        query = self.db.query(AgentTask).filter(AgentTask.org_id == org_id)
        if status:
            query = query.filter(AgentTask.status == status)
        total = query.count()
        tasks = query.order_by(AgentTask.created_at.desc()).offset(offset).limit(limit).all()
        return tasks, total

    def find_open_task_for_principal(self, principal: str) -> AgentTask | None:
        """Newest PENDING or AWAITING_INPUT task for a principal."""
        row = self.db.query(OpenTaskIndex).filter(OpenTaskIndex.principal == principal).first()
        if row is None:
            return None
        task = self.get(row.task_id)
        if task is None or TaskStatus(task.status) not in OPEN_STATUSES:
            logger.warning("Open task index for %s pointed at a closed task; rebuilding", principal)
            return self._rebuild_index(principal)
        return task

    # --- Writes ---

    def create(
        self,
        *,
        user_id: str,
        org_id: str | None,
        principal: str,
        agent_input: AgentInput,
        task_type: TaskType = TaskType.UNKNOWN,
        priority: int = 3,
        entities: dict[str, Any] | None = None,
    ) -> AgentTask:
        """Insert a PENDING task and make it the principal's open task."""
        task = AgentTask(
            id=str(uuid.uuid4()),
            user_id=user_id,
            org_id=org_id,
            principal=principal,
            correlation_id=agent_input.correlation_id,
            source=agent_input.source.value,
            source_id=agent_input.source_id,
            raw_content=agent_input.raw_content,
            task_type=task_type.value,
            priority=priority,
            status=TaskStatus.PENDING.value,
            entities_json=json_dump(entities if entities is not None else agent_input.structured_data),
            retry_count=0,
            created_at=utc_now(),
        )
        self.db.add(task)
        self.db.flush()
        self._index_opened(task)
        record_audit(
            self.db, "task.created",
            org_id=org_id, user_id=user_id, task_id=task.id,
            correlation_id=task.correlation_id,
            detail={"source": task.source, "type": agent_input.type, "priority": priority},
        )
        self.publish_after_commit(events.INTAKE_CREATED, {
            "taskId": task.id,
            "orgId": org_id,
            "userId": user_id,
            "source": task.source,
            "priority": priority,
        }, task.correlation_id)
        return task

    def transition(
        self,
        task: AgentTask,
        target: TaskStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> AgentTask:
        """Move a task to a new status.

        Raises:
            TaskTransitionError: If the state machine does not allow the move.
        """
        current = TaskStatus(task.status)
        if not can_transition(current, target):
            raise TaskTransitionError(task.id, current.value, target.value)

        now = utc_now()
        task.status = target.value
        task.updated_at = now
        if target == TaskStatus.PROCESSING and task.processed_at is None:
            task.processed_at = now
        if target in TERMINAL_STATUSES:
            task.completed_at = now
        self.db.flush()

        self._sync_index(task, was_open=current in OPEN_STATUSES)
        record_audit(
            self.db, "task.status_changed",
            org_id=task.org_id, user_id=actor or task.user_id, task_id=task.id,
            correlation_id=task.correlation_id,
            detail={"from": current.value, "to": target.value, "reason": reason},
        )
        self.publish_after_commit(events.TASK_STATUS_CHANGED, {
            "taskId": task.id,
            "orgId": task.org_id,
            "from": current.value,
            "to": target.value,
            "reason": reason,
        }, task.correlation_id)
        logger.info("Task %s %s -> %s", task.id, current.value, target.value)
        return task

    def schedule_retry(self, task: AgentTask, max_retries: int, base_delay_ms: int, actor: str | None = None) -> AgentTask:
        """Reopen a FAILED task for another processing attempt.

        Raises:
            TaskTransitionError: If the task is not FAILED.
            RetryLimitExceededError: If ``max_retries`` attempts were already made.
        """
        current = TaskStatus(task.status)
        if current != TaskStatus.FAILED:
            raise TaskTransitionError(task.id, current.value, TaskStatus.PENDING.value)
        if task.retry_count >= max_retries:
            raise RetryLimitExceededError(task.id, max_retries)

        now = utc_now()
        task.retry_count += 1
        delay_ms = retry_delay_ms(task.retry_count, base_delay_ms)
        task.status = TaskStatus.PENDING.value
        task.completed_at = None
        task.next_retry_at = now + timedelta(milliseconds=delay_ms)
        task.updated_at = now
        self.db.flush()

        self._sync_index(task, was_open=False)
        record_audit(
            self.db, "task.retry_scheduled",
            org_id=task.org_id, user_id=actor or task.user_id, task_id=task.id,
            correlation_id=task.correlation_id,
            detail={"attempt": task.retry_count, "delayMs": delay_ms},
        )
        self.publish_after_commit(events.TASK_STATUS_CHANGED, {
            "taskId": task.id,
            "orgId": task.org_id,
            "from": current.value,
            "to": TaskStatus.PENDING.value,
            "reason": f"retry {task.retry_count}/{max_retries}",
        }, task.correlation_id)
        return task

    def record_decision(
        self,
        task: AgentTask,
        decision: AgentDecisionResult,
        routing: str,
        task_type: TaskType,
        lane: str,
        thresholds: dict[str, float],
    ) -> None:
        """Store the classifier decision and routing verdict on the task.

        The recorded priority and task type replace the values set at creation.
        A degraded decision also lands in ``error_message`` and the audit log.
        """
        task.task_type = task_type.value
        task.priority = decision.priority
        self.update_metadata(
            task,
            decision=decision.model_dump(mode="json", by_alias=True),
            routing=routing,
            lane=lane,
            thresholds=thresholds,
        )
        record_audit(
            self.db, "decision.recorded",
            org_id=task.org_id, user_id=task.user_id, task_id=task.id,
            correlation_id=task.correlation_id,
            detail={
                "intent": decision.intent,
                "confidence": decision.confidence,
                "priority": decision.priority,
                "routing": routing,
                "lane": lane,
            },
        )
        if decision.degraded:
            self.record_error(
                task, "; ".join(decision.warnings) or "Classification degraded", "classification.degraded",
            )

    def mark_message(self, task: AgentTask, source: str, source_id: str) -> None:
        """Remember a provider message that resumed ``task``."""
        self.db.add(ProcessedMessage(source=source, source_id=source_id, task_id=task.id))
        self.db.flush()

    def update_metadata(self, task: AgentTask, **fields: Any) -> dict[str, Any]:
        """Merge keys into the task's AI metadata."""
        metadata = json_load(task.ai_metadata_json) or {}
        metadata.update(fields)
        task.ai_metadata_json = json_dump(metadata)
        task.updated_at = utc_now()
        return metadata

    def set_resolution(self, task: AgentTask, resolution: dict[str, Any]) -> None:
        task.resolution_json = json_dump(resolution)
        task.updated_at = utc_now()

    def record_error(
        self,
        task: AgentTask,
        message: str,
        action: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Record an absorbed failure on the task and in the audit log. Status is unchanged."""
        task.error_message = message
        task.updated_at = utc_now()
        record_audit(
            self.db, action,
            org_id=task.org_id, user_id=task.user_id, task_id=task.id,
            correlation_id=task.correlation_id,
            detail={"error": message, **(detail or {})},
        )

    def commit(self) -> None:
        """Commit the session and publish the events it produced."""
        self.db.commit()
        pending, self._pending_events = self._pending_events, []
        if self.bus is None:
            return
        for event_type, payload, correlation_id in pending:
            self.bus.emit(event_type, payload, correlation_id)

    def rollback(self) -> None:
        self.db.rollback()
        self._pending_events = []

    def publish_after_commit(self, event_type: str, payload: dict[str, Any], correlation_id: str | None) -> None:
        self._pending_events.append((event_type, payload, correlation_id))

    # --- Open task index ---

    def _index_opened(self, task: AgentTask) -> None:
        row = self.db.query(OpenTaskIndex).filter(
            OpenTaskIndex.principal == task.principal
        ).with_for_update().first()
        created_at = _naive_utc(task.created_at)
        if row is None:
            self.db.add(OpenTaskIndex(principal=task.principal, task_id=task.id, task_created_at=created_at))
        elif row.task_id == task.id or created_at >= _naive_utc(row.task_created_at):
            row.task_id = task.id
            row.task_created_at = created_at
        self.db.flush()

    def _sync_index(self, task: AgentTask, was_open: bool) -> None:
        is_open = TaskStatus(task.status) in OPEN_STATUSES
        if is_open:
            self._index_opened(task)
            return
        if not was_open:
            return
        row = self.db.query(OpenTaskIndex).filter(
            OpenTaskIndex.principal == task.principal
        ).with_for_update().first()
        if row is not None and row.task_id == task.id:
            self._rebuild_index(task.principal)

    def _rebuild_index(self, principal: str) -> AgentTask | None:
        newest = self.db.query(AgentTask).filter(
            AgentTask.principal == principal,
            AgentTask.status.in_([s.value for s in OPEN_STATUSES]),
        ).order_by(AgentTask.created_at.desc()).first()

        row = self.db.query(OpenTaskIndex).filter(OpenTaskIndex.principal == principal).first()
        if newest is None:
            if row is not None:
                self.db.delete(row)
        elif row is None:
            self.db.add(OpenTaskIndex(
                principal=principal,
                task_id=newest.id,
                task_created_at=_naive_utc(newest.created_at),
            ))
        else:
            row.task_id = newest.id
            row.task_created_at = _naive_utc(newest.created_at)
        self.db.flush()
        return newest
