"""API router for the unified process endpoint, tasks and agent configuration."""
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from orchestrator.agent.auth import OrgContext, get_org_context, require_permission
from orchestrator.agent.dependencies import get_engine
from orchestrator.agent.enums import TaskStatus
from orchestrator.agent.http_errors import to_http_exception
from orchestrator.agent.idempotency import (
    IdempotencyConflictError,
    check_idempotency,
    complete_idempotency,
    release_idempotency,
    reserve_idempotency,
)
from orchestrator.agent.normalizer import from_process_request, parse_process_request
from orchestrator.agent.org_config import get_agent_config_row, update_agent_config
from orchestrator.agent.pipeline import OrchestrationEngine, Submitter
from orchestrator.agent.rbac import Permission
from orchestrator.agent.schemas import (
    AgentConfigResponse,
    AgentConfigUpdate,
    DispatchInfo,
    ProcessResponse,
    TaskActionResponse,
    TaskDecisionRequest,
    TaskListResponse,
    TaskResponse,
)
from orchestrator.agent.tasks import to_task_response
from orchestrator.config import Settings, get_settings
from orchestrator.database import get_db
from orchestrator.errors import OrchestratorError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/agent", tags=["agent"])

PROCESS_ENDPOINT = "/v1/agent/process"


def _task_action_response(task, queued=None) -> TaskActionResponse:
    return TaskActionResponse(
        task=to_task_response(task),
        dispatch=DispatchInfo(job_id=queued.job_id, lane=queued.lane, created=queued.created) if queued else None,
    )


# --- Unified process endpoint ---


@router.post("/process", response_model=ProcessResponse)
def process_input(
    response: Response,
    context: Annotated[OrgContext, Depends(get_org_context)],
    payload: Annotated[Any, Body()] = None,
    idempotency_key: Annotated[str | None, Header()] = None,
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> ProcessResponse:
    """Normalize, classify, gate and dispatch one input.

    Admission order: validation, idempotency replay, rate limit, quota. The
    response is returned once the task is stored, even if dispatch fails.
    """
    require_permission(context, Permission.PROCESS_INPUT)

    try:
        request = parse_process_request(payload)
    except OrchestratorError as e:
        raise to_http_exception(e)

    if request.options.org_id and request.options.org_id != context.org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot process input for another organization",
        )

    request_body = request.model_dump(mode="json", by_alias=True)
    reservation = None
    if idempotency_key:
        try:
            if request.options.dry_run:
                cached = check_idempotency(db, context.org_id, PROCESS_ENDPOINT, idempotency_key, request_body)
            else:
                reservation = reserve_idempotency(db, context.org_id, PROCESS_ENDPOINT, idempotency_key, request_body)
                cached = reservation.replay
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        if cached is not None:
            return ProcessResponse.model_validate(cached)

    record = reservation.record if reservation is not None else None
    try:
        rate = engine.admit("api", context.user_id)
        response.headers.update(rate.headers())
        outcome = engine.process(
            db,
            from_process_request(request),
            Submitter(org_id=context.org_id, user_id=context.user_id, principal=context.principal),
            request.options,
        )
    except Exception as e:
        db.rollback()
        if record is not None:
            release_idempotency(db, record)
        if isinstance(e, OrchestratorError):
            raise to_http_exception(e)
        raise

    result = outcome.to_response()
    if record is not None:
        complete_idempotency(db, record, result.model_dump(mode="json", by_alias=True))
    return result


# --- Tasks ---


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    context: Annotated[OrgContext, Depends(get_org_context)],
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> TaskListResponse:
    """List the organization's tasks, newest first."""
    require_permission(context, Permission.READ_TASKS)
    tasks, total = engine.store(db).list_for_org(
        context.org_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return TaskListResponse(tasks=[to_task_response(t) for t in tasks], total=total)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(
    task_id: str,
    context: Annotated[OrgContext, Depends(get_org_context)],
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> TaskResponse:
    require_permission(context, Permission.READ_TASKS)
    try:
        task = engine.store(db).get_for_org(task_id, context.org_id)
    except OrchestratorError as e:
        raise to_http_exception(e)
    return to_task_response(task)


@router.post("/tasks/{task_id}/approve", response_model=TaskActionResponse)
def approve_task(
    task_id: str,
    context: Annotated[OrgContext, Depends(get_org_context)],
    body: TaskDecisionRequest | None = None,
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> TaskActionResponse:
    """Approve a held decision and dispatch its actions."""
    require_permission(context, Permission.APPROVE_DECISIONS)
    try:
        task = engine.store(db).get_for_org(task_id, context.org_id)
        queued = engine.approve(db, task, context.user_id, body.reason if body else None)
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)
    return _task_action_response(task, queued)


@router.post("/tasks/{task_id}/reject", response_model=TaskActionResponse)
def reject_task(
    task_id: str,
    context: Annotated[OrgContext, Depends(get_org_context)],
    body: TaskDecisionRequest | None = None,
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> TaskActionResponse:
    """Reject a held decision. The task is cancelled."""
    require_permission(context, Permission.APPROVE_DECISIONS)
    try:
        task = engine.store(db).get_for_org(task_id, context.org_id)
        engine.reject(db, task, context.user_id, body.reason if body else None)
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)
    return _task_action_response(task)


@router.post("/tasks/{task_id}/cancel", response_model=TaskActionResponse)
def cancel_task(
    task_id: str,
    context: Annotated[OrgContext, Depends(get_org_context)],
    body: TaskDecisionRequest | None = None,
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> TaskActionResponse:
    """Cancel an open task. Jobs already queued are not recalled."""
    require_permission(context, Permission.APPROVE_DECISIONS)
    try:
        task = engine.store(db).get_for_org(task_id, context.org_id)
        engine.cancel(db, task, context.user_id, body.reason if body else None)
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)
    return _task_action_response(task)


@router.post("/tasks/{task_id}/retry", response_model=TaskActionResponse)
def retry_task(
    task_id: str,
    context: Annotated[OrgContext, Depends(get_org_context)],
    engine: OrchestrationEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> TaskActionResponse:
    """Reprocess a FAILED task, within the retry limit."""
    require_permission(context, Permission.APPROVE_DECISIONS)
    try:
        task = engine.store(db).get_for_org(task_id, context.org_id)
        queued = engine.retry(db, task, context.user_id)
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)
    return _task_action_response(task, queued)


# --- Agent configuration ---


@router.get("/config", response_model=AgentConfigResponse)
def get_agent_config(
    context: Annotated[OrgContext, Depends(get_org_context)],
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> AgentConfigResponse:
    return AgentConfigResponse.model_validate(get_agent_config_row(db, context.org_id, settings))


@router.put("/config", response_model=AgentConfigResponse)
def put_agent_config(
    update: AgentConfigUpdate,
    context: Annotated[OrgContext, Depends(get_org_context)],
    engine: OrchestrationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> AgentConfigResponse:
    """Update the organization's classifier configuration.

    Cached classifiers for the organization are dropped so the next request
    uses the new settings.
    """
    require_permission(context, Permission.MANAGE_CONFIG)
    try:
        row = update_agent_config(db, context.org_id, update, settings)
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)
    db.commit()
    db.refresh(row)
    removed = engine.registry.invalidate(context.org_id)
    logger.info("Agent config updated org=%s by=%s cached_classifiers_dropped=%d", context.org_id, context.user_id, removed)
    return AgentConfigResponse.model_validate(row)
