"""Orchestration pipeline: admission, task creation, classification, gating, dispatch.

One ``OrchestrationEngine`` serves every channel. The order of operations is
fixed: rate limit and quota are checked before any task row exists, the task
is committed before the LLM is called, and dispatch happens only after the
decision is committed. Classification and dispatch failures are absorbed and
recorded on the task; the caller is answered as soon as the task is durable.
"""
import logging
from dataclasses import dataclass, field

import pydantic
from sqlalchemy.orm import Session

from orchestrator.agent import events
from orchestrator.agent.classifier import ClassifierRegistry
from orchestrator.agent.decision_gate import DecisionThresholds, RoutingVerdict, route
from orchestrator.agent.dispatcher import (
    RESUME_TASK_JOB,
    RETRY_TASK_JOB,
    ActionDispatcher,
    QueuedJob,
    job_id_for,
    select_lane,
)
from orchestrator.agent.enums import TaskStatus, TaskType
from orchestrator.agent.events import EventBus
from orchestrator.agent.llm import AgentConfigSnapshot
from orchestrator.agent.models import AgentTask, utc_now
from orchestrator.agent.normalizer import validation_errors
from orchestrator.agent.org_config import load_agent_config
from orchestrator.agent.priority import combine_priority, detect_priority
from orchestrator.agent.quota import INTAKES, enforce_quota, increment_usage
from orchestrator.agent.rate_limit import RateLimiter, RateLimitResult
from orchestrator.agent.schemas import (
    AgentAction,
    AgentDecisionResult,
    AgentInput,
    AutomationCallback,
    DecisionSummary,
    DispatchInfo,
    ProcessOptions,
    ProcessResponse,
)
from orchestrator.agent.sms import QUICK_REPLY_TASK_TYPES, mask_phone
from orchestrator.agent.tasks import TaskStore, can_transition, json_load, record_audit, retry_delay_ms
from orchestrator.config import Settings
from orchestrator.errors import ConflictError, ForbiddenError, ValidationError

logger = logging.getLogger(__name__)

# Routings an operator may still approve or reject
REVIEWABLE_ROUTINGS = frozenset({RoutingVerdict.REQUIRES_APPROVAL.value, RoutingVerdict.REJECT.value})

# Workflow runner status -> task status
AUTOMATION_STATUS_MAP: dict[str, TaskStatus] = {
    "success": TaskStatus.COMPLETED,
    "error": TaskStatus.FAILED,
    "running": TaskStatus.PROCESSING,
    "waiting": TaskStatus.AWAITING_INPUT,
    "cancelled": TaskStatus.CANCELLED,
}

AUTOMATION_EVENTS: dict[str, str] = {
    "success": events.AUTOMATION_COMPLETED,
    "error": events.AUTOMATION_FAILED,
    "cancelled": events.AUTOMATION_FAILED,
    "running": events.AUTOMATION_TRIGGERED,
    "waiting": events.AUTOMATION_TRIGGERED,
}

# Follow-up requests a workflow may return, and the event each one publishes
FOLLOW_UP_EVENTS: dict[str, str] = {
    "send_notification": events.WEBHOOK_CALLBACK_RECEIVED,
    "create_intake": events.INTAKE_CREATED,
    "schedule_event": events.CALENDAR_EVENT_CREATED,
}


@dataclass(frozen=True)
class Submitter:
    """Who an input is attributed to.

    Attributes:
        org_id: Owning organization.
        user_id: User the task is created for.
        principal: Quick-reply and open-task key, e.g. ``sms:+15551234567``.
    """
    org_id: str
    user_id: str
    principal: str


@dataclass
class ResumeOutcome:
    """Result of a reply to an open task. ``held`` means it waits for an operator."""
    task: AgentTask
    held: bool = False
    queued: QueuedJob | None = None


@dataclass
class ProcessOutcome:
    decision: AgentDecisionResult
    routing: RoutingVerdict
    execution_status: str
    correlation_id: str
    lane: str
    task: AgentTask | None = None
    queued: QueuedJob | None = None

    def to_response(self) -> ProcessResponse:
        d = self.decision
        return ProcessResponse(
            decision=DecisionSummary(
                intent=d.intent,
                confidence=d.confidence,
                reasoning=d.reasoning,
                requires_approval=d.requires_approval,
                priority=d.priority,
                warnings=d.warnings,
                alternatives=d.alternatives,
            ),
            actions=d.actions,
            execution_status=self.execution_status,
            routing=self.routing.value,
            task_id=self.task.id if self.task is not None else None,
            correlation_id=self.correlation_id,
            dispatch=DispatchInfo(
                job_id=self.queued.job_id,
                lane=self.queued.lane,
                created=self.queued.created,
            ) if self.queued else None,
        )


@dataclass
class WorkerOutcome:
    """Result of applying one workflow runner callback."""
    execution_id: str
    event_type: str
    task_id: str | None = None
    applied: bool = False
    status: str | None = None
    follow_ups: list[str] = field(default_factory=list)


def resolve_task_type(intent: str | None, input_type: str | None) -> TaskType:
    """Task type for a decision: the intent, else the input type tag, else UNKNOWN."""
    for candidate in (intent, input_type):
        if candidate and candidate.upper() in TaskType.__members__:
            return TaskType(candidate.upper())
    return TaskType.UNKNOWN


def mask_principal(principal: str) -> str:
    """Principal with the phone number or mailbox partially hidden, for logs."""
    kind, _, value = principal.partition(":")
    if kind == "sms":
        return f"sms:{mask_phone(value)}"
    if kind == "email" and "@" in value:
        local, _, domain = value.partition("@")
        return f"email:{local[:1]}***@{domain}"
    return principal


def stored_actions(task: AgentTask) -> list[AgentAction]:
    """Actions of the decision recorded on a task."""
    decision = (json_load(task.ai_metadata_json) or {}).get("decision") or {}
    return [AgentAction.model_validate(action) for action in decision.get("actions") or []]


class OrchestrationEngine:
    """Runs inputs from every channel through the decision pipeline.

    Args:
        settings: Process settings.
        rate_limiter: Short-window admission control.
        registry: Cached classifiers per organization and mode.
        dispatcher: Queues jobs for approved actions.
        bus: Receives lifecycle notifications after each commit.
    """

    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        registry: ClassifierRegistry,
        dispatcher: ActionDispatcher,
        bus: EventBus,
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.registry = registry
        self.dispatcher = dispatcher
        self.bus = bus

    def store(self, db: Session) -> TaskStore:
        return TaskStore(db, self.bus)

    def admit(self, channel: str, key: str) -> RateLimitResult:
        """Count one request against the channel's rate limit.

        Raises:
            RateLimitError: If the key is over its limit for the current window.
        """
        return self.rate_limiter.enforce(channel, key)

    def _thresholds(self, config: AgentConfigSnapshot, options: ProcessOptions) -> DecisionThresholds:
        auto = options.auto_execute_threshold
        require = options.require_approval_threshold
        try:
            return DecisionThresholds(
                auto_execute=auto if auto is not None else config.auto_execute_threshold,
                require_approval=require if require is not None else config.require_approval_threshold,
            )
        except ValueError as e:
            raise ValidationError([{"path": "options.requireApprovalThreshold", "message": str(e)}])

    def _gate(
        self,
        decision: AgentDecisionResult,
        detected_priority: int,
        thresholds: DecisionThresholds,
        options: ProcessOptions,
    ) -> RoutingVerdict:
        decision.priority = combine_priority(decision.priority, detected_priority)
        force = options.force_approval or decision.requires_approval
        verdict = route(decision.confidence, decision.priority, thresholds, force_approval=force)
        if verdict == RoutingVerdict.REQUIRES_APPROVAL:
            decision.requires_approval = True
        return verdict

    def process(
        self,
        db: Session,
        agent_input: AgentInput,
        submitter: Submitter,
        options: ProcessOptions | None = None,
    ) -> ProcessOutcome:
        """Create, classify, gate and possibly dispatch a task for one input.

        Rate limiting is the caller's job (see ``admit``) because the limit
        key depends on the channel. Dry runs classify without persisting a
        task or consuming quota.

        Raises:
            ValidationError: If per-request threshold overrides are inconsistent.
            QuotaExceededError: If the organization is out of monthly intakes.
        """
        options = options or ProcessOptions()
        config = load_agent_config(db, submitter.org_id, self.settings)
        thresholds = self._thresholds(config, options)
        detected = combine_priority(detect_priority(agent_input.raw_content), agent_input.metadata.priority_hint)
        classifier = self.registry.get(config, dry_run=options.dry_run)

        if options.dry_run:
            decision = classifier.classify(agent_input)
            verdict = self._gate(decision, detected, thresholds, options)
            return ProcessOutcome(
                decision=decision,
                routing=verdict,
                execution_status="dry_run",
                correlation_id=agent_input.correlation_id,
                lane=select_lane(decision.priority),
            )

        store = self.store(db)
        enforce_quota(db, submitter.org_id, INTAKES)
        task = store.create(
            user_id=submitter.user_id,
            org_id=submitter.org_id,
            principal=submitter.principal,
            agent_input=agent_input,
            priority=detected,
        )
        increment_usage(db, submitter.org_id, INTAKES)
        store.commit()
        logger.info(
            "Task %s created source=%s principal=%s correlation_id=%s",
            task.id, task.source, mask_principal(submitter.principal), agent_input.correlation_id,
        )

        decision = classifier.classify(agent_input)
        verdict = self._gate(decision, detected, thresholds, options)
        task_type = (
            TaskType.UNKNOWN if verdict == RoutingVerdict.REJECT
            else resolve_task_type(decision.intent, agent_input.type)
        )
        lane = select_lane(decision.priority)
        store.record_decision(
            task, decision, verdict.value, task_type, lane,
            {"autoExecute": thresholds.auto_execute, "requireApproval": thresholds.require_approval},
        )
        if verdict == RoutingVerdict.REQUIRES_APPROVAL:
            store.publish_after_commit(events.DECISION_REQUIRES_APPROVAL, {
                "taskId": task.id,
                "orgId": task.org_id,
                "intent": decision.intent,
                "confidence": decision.confidence,
                "priority": decision.priority,
            }, task.correlation_id)
        store.commit()
        logger.info(
            "Task %s routed %s intent=%s confidence=%.2f priority=%d lane=%s correlation_id=%s",
            task.id, verdict.value, decision.intent, decision.confidence,
            decision.priority, lane, task.correlation_id,
        )

        queued = None
        execution_status = "pending_approval"
        if verdict == RoutingVerdict.AUTO_EXECUTE:
            execution_status = "executed"
            queued = self.dispatcher.dispatch(store, task, decision.actions)
            store.commit()
        elif verdict == RoutingVerdict.REJECT:
            execution_status = "rejected"

        return ProcessOutcome(
            decision=decision,
            routing=verdict,
            execution_status=execution_status,
            correlation_id=agent_input.correlation_id,
            lane=lane,
            task=task,
            queued=queued,
        )

    def resume_with_quick_reply(self, db: Session, task: AgentTask, agent_input: AgentInput) -> ResumeOutcome:
        """Continue an open task with a quick reply or a reply in its thread.

        The task moves back to PROCESSING and, for a recognized quick reply,
        takes the domain action the reply maps to. No task is created and no quota is consumed.

        A reply never clears a held decision. When the recorded routing is not
        AUTO_EXECUTE and no operator has approved the task, the reply is kept
        on the task for the operator and nothing is dispatched; the task stays PENDING.

        Raises:
            TaskTransitionError: If the task is no longer open.
        """
        store = self.store(db)
        quick_reply = dict(agent_input.structured_data.get("quickReply") or {})
        reply_type = quick_reply.get("type")
        reply_record = {
            **quick_reply,
            "messageId": agent_input.source_id,
            "receivedAt": utc_now().isoformat(),
        }
        reason = f"quick_reply:{reply_type}" if reply_type else "thread_reply"

        metadata = json_load(task.ai_metadata_json) or {}
        if metadata.get("routing") != RoutingVerdict.AUTO_EXECUTE.value and not metadata.get("approval"):
            store.update_metadata(task, quickReply=reply_record)
            if agent_input.source_id:
                store.mark_message(task, agent_input.source.value, agent_input.source_id)
            record_audit(
                db, "reply.held",
                org_id=task.org_id, user_id=task.user_id, task_id=task.id,
                correlation_id=task.correlation_id,
                detail={"routing": metadata.get("routing"), "reason": reason},
            )
            store.commit()
            logger.info(
                "Reply (%s) held for review on task %s routing=%s correlation_id=%s",
                reason, task.id, metadata.get("routing"), agent_input.correlation_id,
            )
            return ResumeOutcome(task=task, held=True)

        store.transition(task, TaskStatus.PROCESSING, reason=reason)
        mapped = QUICK_REPLY_TASK_TYPES.get(reply_type)
        if mapped is not None:
            task.task_type = mapped.value
        store.update_metadata(task, quickReply=reply_record)
        if agent_input.source_id:
            store.mark_message(task, agent_input.source.value, agent_input.source_id)
        store.commit()
        logger.info(
            "Task %s resumed (%s) from %s correlation_id=%s",
            task.id, reason, mask_principal(task.principal), agent_input.correlation_id,
        )

        queued = self.dispatcher.dispatch(
            store, task, stored_actions(task),
            name=RESUME_TASK_JOB,
            job_id=job_id_for(task.id, RESUME_TASK_JOB, agent_input.source_id or agent_input.correlation_id),
            extra_payload={"quickReply": quick_reply, "content": agent_input.raw_content},
        )
        store.commit()
        return ResumeOutcome(task=task, queued=queued)

    def approve(self, db: Session, task: AgentTask, actor: str, reason: str | None = None) -> QueuedJob | None:
        """Operator approval: dispatch the recorded actions of a held decision.

        Raises:
            ConflictError: If the task is not waiting for review.
        """
        store = self.store(db)
        metadata = json_load(task.ai_metadata_json) or {}
        if task.status != TaskStatus.PENDING.value or metadata.get("routing") not in REVIEWABLE_ROUTINGS:
            raise ConflictError(f"Task {task.id} is not awaiting approval")
        if metadata.get("approval"):
            raise ConflictError(f"Task {task.id} was already approved")

        store.update_metadata(task, approval={"by": actor, "at": utc_now().isoformat(), "reason": reason})
        record_audit(
            db, "decision.approved",
            org_id=task.org_id, user_id=actor, task_id=task.id,
            correlation_id=task.correlation_id, detail={"reason": reason},
        )
        store.commit()

        queued = self.dispatcher.dispatch(store, task, stored_actions(task))
        store.commit()
        return queued

    def reject(self, db: Session, task: AgentTask, actor: str, reason: str | None = None) -> AgentTask:
        """Operator rejection of a held decision. The task is cancelled.

        Raises:
            ConflictError: If the task is not waiting for review.
        """
        store = self.store(db)
        metadata = json_load(task.ai_metadata_json) or {}
        if task.status != TaskStatus.PENDING.value or metadata.get("routing") not in REVIEWABLE_ROUTINGS:
            raise ConflictError(f"Task {task.id} is not awaiting approval")

        store.transition(task, TaskStatus.CANCELLED, reason="rejected", actor=actor)
        store.set_resolution(task, {"outcome": "rejected", "by": actor, "reason": reason})
        record_audit(
            db, "decision.rejected",
            org_id=task.org_id, user_id=actor, task_id=task.id,
            correlation_id=task.correlation_id, detail={"reason": reason},
        )
        store.commit()
        return task

    def cancel(self, db: Session, task: AgentTask, actor: str, reason: str | None = None) -> AgentTask:
        """Cancel a task. Jobs already queued still run to completion.

        Raises:
            TaskTransitionError: If the task is already terminal.
        """
        store = self.store(db)
        store.transition(task, TaskStatus.CANCELLED, reason=reason or "cancelled", actor=actor)
        store.set_resolution(task, {"outcome": "cancelled", "by": actor, "reason": reason})
        store.commit()
        return task

    def retry(self, db: Session, task: AgentTask, actor: str | None = None) -> QueuedJob | None:
        """Reopen a FAILED task and queue it again after the backoff delay.

        Raises:
            TaskTransitionError: If the task is not FAILED.
            RetryLimitExceededError: If no attempts are left.
        """
        store = self.store(db)
        store.schedule_retry(
            task, self.settings.task_max_retries, self.settings.task_retry_base_delay_ms, actor=actor,
        )
        store.commit()

        attempt = task.retry_count
        queued = self.dispatcher.dispatch(
            store, task, stored_actions(task),
            name=RETRY_TASK_JOB,
            job_id=job_id_for(task.id, RETRY_TASK_JOB, f"attempt-{attempt}"),
            extra_payload={"attempt": attempt},
            delay_ms=retry_delay_ms(attempt, self.settings.task_retry_base_delay_ms),
        )
        store.commit()
        return queued

    def _step_to(self, store: TaskStore, task: AgentTask, target: TaskStatus, reason: str) -> bool:
        current = TaskStatus(task.status)
        if current == target:
            return False
        if not can_transition(current, target) and can_transition(current, TaskStatus.PROCESSING):
            # Workers may report completion for a task they never marked as started
            store.transition(task, TaskStatus.PROCESSING, reason=reason)
        store.transition(task, target, reason=reason)
        return True

    def apply_worker_callback(self, db: Session, agent_input: AgentInput) -> WorkerOutcome:
        """Apply a workflow runner report to the task it references.

        Callbacks that reference no task, or a task already closed, still
        publish their automation event but change nothing.

        Raises:
            ValidationError: If the input does not carry a runner callback.
            ForbiddenError: If the callback names an organization that does not own the task.
        """
        try:
            callback = AutomationCallback.model_validate(agent_input.structured_data)
        except pydantic.ValidationError as e:
            raise ValidationError(validation_errors(e), "Invalid workflow callback")
        store = self.store(db)
        event_type = AUTOMATION_EVENTS[callback.status]
        data = callback.data or {}
        task_id = callback.context.metadata.get("taskId") or data.get("taskId")
        outcome = WorkerOutcome(execution_id=callback.execution_id, event_type=event_type, task_id=task_id)

        task = store.get(task_id) if task_id else None
        if task is not None and callback.context.org_id and task.org_id != callback.context.org_id:
            raise ForbiddenError("Callback organization does not own the task")

        if task is None:
            if task_id:
                logger.warning("Callback %s referenced unknown task %s", callback.execution_id, task_id)
        elif TaskStatus(task.status) in (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED):
            logger.info("Ignoring %s callback for closed task %s", callback.status, task.id)
        else:
            target = AUTOMATION_STATUS_MAP[callback.status]
            if callback.status == "success" and data.get("scheduled"):
                target = TaskStatus.SCHEDULED
            reason = f"automation:{callback.status}"
            outcome.applied = self._step_to(store, task, target, reason)
            if callback.status in ("success", "error", "cancelled"):
                store.set_resolution(task, {
                    "executionId": callback.execution_id,
                    "workflowId": callback.workflow_id,
                    "status": callback.status,
                    "data": callback.data,
                    "error": callback.error.model_dump(mode="json") if callback.error else None,
                })
            if callback.error:
                store.record_error(
                    task, callback.error.message, "automation.failed",
                    {"executionId": callback.execution_id, "code": callback.error.code},
                )
            outcome.status = task.status

        store.publish_after_commit(event_type, {
            "executionId": callback.execution_id,
            "workflowId": callback.workflow_id,
            "status": callback.status,
            "taskId": task.id if task is not None else None,
            "orgId": task.org_id if task is not None else callback.context.org_id,
            "data": callback.data,
        }, agent_input.correlation_id)
        store.commit()

        for follow_up in data.get("followUps") or []:
            kind = follow_up.get("type") if isinstance(follow_up, dict) else None
            follow_up_event = FOLLOW_UP_EVENTS.get(kind)
            if follow_up_event is None:
                logger.warning("Unknown follow-up %r from execution %s", kind, callback.execution_id)
                continue
            self.bus.emit_background(follow_up_event, {
                **follow_up,
                "executionId": callback.execution_id,
                "taskId": outcome.task_id,
            }, agent_input.correlation_id)
            outcome.follow_ups.append(kind)

        logger.info(
            "Callback %s status=%s task=%s applied=%s correlation_id=%s",
            callback.execution_id, callback.status, outcome.task_id, outcome.applied,
            agent_input.correlation_id,
        )
        return outcome
