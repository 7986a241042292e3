"""Provider-facing webhooks: SMS, inbound email, signed intake and workflow callbacks.

Webhook senders rarely retry usefully, so once a request is authenticated
the handlers acknowledge it even when classification or dispatch fails.
The SMS endpoint always answers with TwiML.
"""
import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.agent.auth import find_org_admin, find_user_by_email, find_user_by_phone
from orchestrator.agent.dependencies import get_engine
from orchestrator.agent.enums import InputSource, TaskStatus
from orchestrator.agent.email_parser import is_spam
from orchestrator.agent.http_errors import to_http_exception
from orchestrator.agent.models import Organization
from orchestrator.agent.normalizer import normalize, normalize_email, normalize_sms, normalize_webhook
from orchestrator.agent.pipeline import OrchestrationEngine, Submitter, mask_principal
from orchestrator.agent.schemas import WebhookAck
from orchestrator.agent.signatures import SIGNATURE_HEADER, TIMESTAMP_HEADER, check_signed_request
from orchestrator.agent.sms import (
    ACK_AWAITING_REVIEW,
    ACK_CONFIG_ERROR,
    ACK_DEFAULT,
    ACK_ERROR,
    ACK_HELP,
    ACK_QUOTA_EXCEEDED,
    ACK_RATE_LIMITED,
    ACK_UNKNOWN_SENDER,
    acknowledgment_for,
    detect_quick_reply,
    mask_phone,
    twiml_response,
    validate_twilio_signature,
)
from orchestrator.config import Settings, get_settings
from orchestrator.database import get_db
from orchestrator.errors import (
    AuthError,
    OrchestratorError,
    QuotaExceededError,
    RateLimitError,
    ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["webhooks"])

TWIML_MEDIA_TYPE = "application/xml"


async def raw_body(request: Request) -> bytes:
    return await request.body()


async def form_params(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


def _twiml(message: str, status_code: int = status.HTTP_200_OK) -> Response:
    return Response(content=twiml_response(message), media_type=TWIML_MEDIA_TYPE, status_code=status_code)


def _public_url(request: Request, settings: Settings) -> str:
    """URL the provider signed. Behind a proxy the configured public base URL wins."""
    if not settings.public_base_url:
        return str(request.url)
    url = settings.public_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url += f"?{request.url.query}"
    return url


def _verify_signed(secret: str | None, settings: Settings, signature: str | None, timestamp: str | None, body: bytes) -> None:
    try:
        check_signed_request(secret, settings.allow_unsigned_webhooks, signature, timestamp, body)
    except AuthError as e:
        logger.warning("Rejected webhook: %s", e)
        raise to_http_exception(e)


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body or b"null")
    except ValueError:
        raise to_http_exception(ValidationError([{"path": "body", "message": "Body is not valid JSON"}]))


# --- SMS ---


@router.post("/agent/sms")
def sms_webhook(
    request: Request,
    params: Annotated[dict[str, str], Depends(form_params)],
    x_twilio_signature: Annotated[str | None, Header()] = None,
    engine: OrchestrationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> Response:
    """Inbound SMS from the provider.

    A bad signature or a foreign account SID gets 403. Every other outcome,
    including missing configuration and internal failures, is a 200 TwiML acknowledgment.
    """
    if settings.twilio_auth_token:
        if not validate_twilio_signature(x_twilio_signature, _public_url(request, settings), params, settings.twilio_auth_token):
            logger.warning("Invalid SMS signature from %s", mask_phone(params.get("From")))
            return _twiml("Invalid signature", status.HTTP_403_FORBIDDEN)
    elif not settings.skip_twilio_signature_validation:
        logger.error("TWILIO_AUTH_TOKEN is not configured; SMS webhook cannot be verified")
        return _twiml(ACK_CONFIG_ERROR)

    if settings.twilio_account_sid and params.get("AccountSid") != settings.twilio_account_sid:
        logger.warning("SMS for another account from %s", mask_phone(params.get("From")))
        return _twiml("Forbidden", status.HTTP_403_FORBIDDEN)

    try:
        return _twiml(_handle_sms(db, engine, settings, params))
    except Exception:
        db.rollback()
        logger.exception("SMS processing failed for %s", mask_phone(params.get("From")))
        return _twiml(ACK_ERROR)


def _handle_sms(db: Session, engine: OrchestrationEngine, settings: Settings, params: dict[str, str]) -> str:
    """Run one verified SMS through the pipeline and return the reply text."""
    try:
        agent_input = normalize_sms(params)
    except ValidationError as e:
        logger.warning("Invalid SMS payload: %s", e.errors)
        return ACK_ERROR

    phone = agent_input.metadata.sender_phone
    principal = f"sms:{phone}"
    quick_reply = detect_quick_reply(agent_input.raw_content)

    try:
        engine.admit("sms", phone)
    except RateLimitError:
        return ACK_RATE_LIMITED

    store = engine.store(db)
    if store.find_task_for_message(InputSource.SMS.value, agent_input.source_id):
        logger.info("Duplicate SMS %s ignored", agent_input.source_id)
        return acknowledgment_for(quick_reply)

    if quick_reply is not None and quick_reply.type == "help":
        return ACK_HELP

    user = find_user_by_phone(db, phone, settings.default_org_id)
    if user is None:
        logger.info("SMS from unregistered number %s", mask_phone(phone))
        return ACK_UNKNOWN_SENDER

    if quick_reply is not None:
        open_task = store.find_open_task_for_principal(principal)
        if open_task is not None:
            resumed = engine.resume_with_quick_reply(db, open_task, agent_input)
            return ACK_AWAITING_REVIEW if resumed.held else acknowledgment_for(quick_reply)

    try:
        engine.process(db, agent_input, Submitter(org_id=user.org_id, user_id=user.user_id, principal=principal))
    except QuotaExceededError:
        return ACK_QUOTA_EXCEEDED
    except IntegrityError:
        # Concurrent delivery of the same MessageSid
        db.rollback()
        return ACK_DEFAULT
    return ACK_DEFAULT


# --- Email ---


@router.post("/agent/email", response_model=WebhookAck)
def email_webhook(
    body: Annotated[bytes, Depends(raw_body)],
    x_webhook_signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
    x_webhook_timestamp: Annotated[str | None, Header(alias=TIMESTAMP_HEADER)] = None,
    engine: OrchestrationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> WebhookAck:
    """Inbound email from the mail provider's parse webhook."""
    _verify_signed(settings.email_webhook_secret, settings, x_webhook_signature, x_webhook_timestamp, body)

    try:
        agent_input = normalize_email(_parse_json(body))
    except OrchestratorError as e:
        raise to_http_exception(e)

    data = agent_input.structured_data
    sender = agent_input.metadata.sender_email
    principal = f"email:{sender}"
    correlation_id = agent_input.correlation_id

    if is_spam(agent_input.raw_content, data.get("senderDomain")):
        logger.info("Spam email from %s ignored", mask_principal(principal))
        return WebhookAck(status="ignored", reason="spam", correlation_id=correlation_id)

    try:
        engine.admit("email", data.get("senderDomain") or sender)
    except RateLimitError as e:
        raise to_http_exception(e)

    store = engine.store(db)
    if agent_input.source_id:
        existing = store.find_task_for_message(InputSource.EMAIL.value, agent_input.source_id)
        if existing is not None:
            return WebhookAck(status="duplicate", task_id=existing.id, correlation_id=existing.correlation_id)

    user = find_user_by_email(db, sender, settings.default_org_id)
    if user is None:
        logger.info("Email from unregistered sender %s", mask_principal(principal))
        return WebhookAck(status="ignored", reason="unknown_sender", correlation_id=correlation_id)

    try:
        parent_id = data.get("inReplyTo")
        parent = store.find_by_source_id(InputSource.EMAIL.value, parent_id) if parent_id else None
        if (
            parent is not None
            and parent.principal == principal
            and TaskStatus(parent.status) in (TaskStatus.PENDING, TaskStatus.AWAITING_INPUT)
        ):
            resumed = engine.resume_with_quick_reply(db, parent, agent_input)
            return WebhookAck(
                status="continued",
                task_id=parent.id,
                correlation_id=parent.correlation_id,
                reason="awaiting_review" if resumed.held else None,
            )

        outcome = engine.process(db, agent_input, Submitter(org_id=user.org_id, user_id=user.user_id, principal=principal))
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)

    return WebhookAck(
        status="accepted",
        task_id=outcome.task.id,
        correlation_id=correlation_id,
        routing=outcome.routing.value,
        execution_status=outcome.execution_status,
    )


# --- Generic signed intake ---


@router.post("/webhooks/intake/{org_id}", response_model=WebhookAck)
def intake_webhook(
    org_id: str,
    body: Annotated[bytes, Depends(raw_body)],
    x_webhook_signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
    x_webhook_timestamp: Annotated[str | None, Header(alias=TIMESTAMP_HEADER)] = None,
    x_correlation_id: Annotated[str | None, Header()] = None,
    engine: OrchestrationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> WebhookAck:
    """Signed JSON intake for an organization (forms, third-party systems)."""
    _verify_signed(settings.intake_webhook_secret, settings, x_webhook_signature, x_webhook_timestamp, body)

    org = db.query(Organization).filter(Organization.org_id == org_id).first()
    owner = find_org_admin(db, org_id) if org else None
    if org is None or owner is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Organization '{org_id}' not found")

    try:
        agent_input = normalize_webhook(_parse_json(body), x_correlation_id)
        engine.admit("webhook", org_id)

        store = engine.store(db)
        if agent_input.source_id:
            existing = store.find_task_for_message(InputSource.WEBHOOK.value, agent_input.source_id)
            if existing is not None:
                return WebhookAck(status="duplicate", task_id=existing.id, correlation_id=existing.correlation_id)

        outcome = engine.process(
            db, agent_input, Submitter(org_id=org_id, user_id=owner.user_id, principal=f"webhook:{org_id}"),
        )
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)

    return WebhookAck(
        status="accepted",
        task_id=outcome.task.id,
        correlation_id=outcome.correlation_id,
        routing=outcome.routing.value,
        execution_status=outcome.execution_status,
    )


# --- Workflow runner callbacks ---


@router.post("/webhooks/automation", response_model=WebhookAck)
def automation_callback(
    body: Annotated[bytes, Depends(raw_body)],
    x_webhook_signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
    x_webhook_timestamp: Annotated[str | None, Header(alias=TIMESTAMP_HEADER)] = None,
    engine: OrchestrationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> WebhookAck:
    """Status report from the workflow runner for a dispatched task."""
    _verify_signed(settings.automation_webhook_secret, settings, x_webhook_signature, x_webhook_timestamp, body)

    try:
        agent_input = normalize(InputSource.WORKER, _parse_json(body))
        engine.admit("webhook", "automation")
        outcome = engine.apply_worker_callback(db, agent_input)
    except OrchestratorError as e:
        db.rollback()
        raise to_http_exception(e)

    return WebhookAck(
        status="applied" if outcome.applied else "ignored",
        task_id=outcome.task_id,
        correlation_id=agent_input.correlation_id,
        event=outcome.event_type,
        execution_status=outcome.status,
    )
