"""Input normalization: source-specific payloads to one canonical AgentInput.

Every function here is a pure transform. Failures raise ``ValidationError``
listing each missing or malformed field; nothing is persisted.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

import pydantic

from orchestrator.agent.email_parser import (
    cap_content,
    clean_email_content,
    detect_email_priority,
    extract_domain,
    extract_email_address,
    extract_email_intent,
    parse_ics_attachment,
)
from orchestrator.agent.enums import InputSource
from orchestrator.agent.schemas import (
    AgentInput,
    AutomationCallback,
    EmailWebhookPayload,
    InputMetadata,
    IntakeWebhookPayload,
    ProcessRequest,
)
from orchestrator.agent.sms import extract_sms_content, parse_phone_number, validate_twilio_params
from orchestrator.errors import ValidationError

GENERIC_SOURCES = frozenset({
    InputSource.API,
    InputSource.FORM,
    InputSource.CHAT,
    InputSource.VOICE,
    InputSource.SCHEDULE,
})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


def validation_errors(exc: pydantic.ValidationError) -> list[dict[str, str]]:
    """Flatten pydantic errors into ``{"path", "message"}`` entries."""
    return [
        {
            "path": ".".join(str(part) for part in error["loc"]) or "body",
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


def _validate(model: type[pydantic.BaseModel], payload: Any):
    if not isinstance(payload, Mapping):
        raise ValidationError([{"path": "body", "message": "Expected a JSON object"}])
    try:
        return model.model_validate(dict(payload))
    except pydantic.ValidationError as e:
        raise ValidationError(validation_errors(e))


def parse_process_request(payload: Any) -> ProcessRequest:
    """Validate the unified process endpoint body."""
    return _validate(ProcessRequest, payload)


def from_process_request(request: ProcessRequest) -> AgentInput:
    """Build the canonical input from a validated process request."""
    return AgentInput(
        source=request.source,
        type=request.type.strip().lower(),
        raw_content=cap_content(request.content.strip()),
        structured_data=request.structured_data,
        metadata=request.metadata,
        timestamp=_now(),
        correlation_id=request.correlation_id or _new_correlation_id(),
    )


def normalize_generic(source: InputSource, payload: Any) -> AgentInput:
    """Normalize API, form, chat, voice and schedule payloads."""
    body = dict(payload) if isinstance(payload, Mapping) else payload
    if isinstance(body, dict):
        body = {**body, "source": source.value}
    return from_process_request(parse_process_request(body))


def normalize_webhook(payload: Any, correlation_id: str | None = None) -> AgentInput:
    """Normalize a generic signed intake webhook body."""
    intake = _validate(IntakeWebhookPayload, payload)
    return AgentInput(
        source=InputSource.WEBHOOK,
        type=intake.type.strip().lower(),
        raw_content=cap_content(intake.content.strip()),
        structured_data=intake.structured_data,
        metadata=intake.metadata,
        timestamp=_now(),
        correlation_id=correlation_id or _new_correlation_id(),
        source_id=intake.source_id,
    )


def normalize_sms(params: Mapping[str, str], correlation_id: str | None = None) -> AgentInput:
    """Normalize provider SMS form fields.

    The caller must have verified the provider signature first.
    """
    if not isinstance(params, Mapping):
        raise ValidationError([{"path": "body", "message": "Expected form fields"}])
    errors = validate_twilio_params(params)
    phone = parse_phone_number(params.get("From") or "")
    if params.get("From") and not phone.is_valid:
        errors.append({"path": "From", "message": "Invalid phone number"})
    if errors:
        raise ValidationError(errors, "Invalid SMS payload")

    content = extract_sms_content(params)
    quick_reply = content.quick_reply
    structured: dict[str, Any] = {
        "messageSid": params["MessageSid"],
        "accountSid": params["AccountSid"],
        "from": phone.e164,
        "to": parse_phone_number(params["To"]).e164 or params["To"],
        "mediaUrls": content.media_urls,
        "mediaTypes": content.media_types,
        "isMultipart": content.is_multipart,
    }
    if quick_reply:
        structured["quickReply"] = {
            "type": quick_reply.type,
            "confidence": quick_reply.confidence,
            "value": quick_reply.value,
        }

    return AgentInput(
        source=InputSource.SMS,
        type="sms_quick_reply" if quick_reply else "sms_message",
        raw_content=cap_content(content.body),
        structured_data=structured,
        metadata=InputMetadata(sender_phone=phone.e164),
        timestamp=_now(),
        correlation_id=correlation_id or _new_correlation_id(),
        source_id=params["MessageSid"],
    )


def normalize_email(payload: Any, correlation_id: str | None = None) -> AgentInput:
    """Normalize an inbound email from the mail provider's parse webhook."""
    email = _validate(EmailWebhookPayload, payload)
    sender = extract_email_address(email.from_)
    if not sender:
        raise ValidationError([{"path": "from", "message": "No sender address found"}], "Invalid email payload")

    body = clean_email_content(email.text, email.html)

    calendar_event = None
    for attachment in email.attachments:
        is_calendar = (attachment.content_type or "").lower().startswith("text/calendar") or (
            attachment.filename or ""
        ).lower().endswith(".ics")
        if is_calendar:
            event = parse_ics_attachment(attachment.content)
            if event:
                calendar_event = event.to_dict()
                break

    if not body and calendar_event and calendar_event.get("summary"):
        body = f"Calendar invite: {calendar_event['summary']}"

    subject = email.subject.strip()
    intent = extract_email_intent(subject)
    raw = f"Subject: {subject}\n\n{body}" if subject else body

    structured = {
        "subject": subject,
        "from": sender,
        "to": email.to,
        "messageId": email.message_id,
        "inReplyTo": email.in_reply_to,
        "references": email.references,
        "senderDomain": extract_domain(sender),
        "body": body,
        "intentHint": {
            "intent": intent.intent,
            "priority": intent.priority,
            "confidence": intent.confidence,
        },
        "calendarEvent": calendar_event,
        "attachmentCount": len(email.attachments),
    }

    return AgentInput(
        source=InputSource.EMAIL,
        type="email",
        raw_content=cap_content(raw),
        structured_data=structured,
        metadata=InputMetadata(
            sender_email=sender,
            headers=email.headers,
            priority_hint=detect_email_priority(subject, body, email.headers),
        ),
        timestamp=_now(),
        correlation_id=correlation_id or _new_correlation_id(),
        source_id=email.message_id,
    )


def normalize_worker(payload: Any) -> AgentInput:
    """Normalize a workflow runner callback into a WORKER-sourced input."""
    callback = _validate(AutomationCallback, payload)
    summary = f"Workflow {callback.workflow_name or callback.workflow_id} reported {callback.status}"
    if callback.error:
        summary += f": {callback.error.message}"

    return AgentInput(
        source=InputSource.WORKER,
        type=f"automation_{callback.status}",
        raw_content=cap_content(summary),
        structured_data=callback.model_dump(mode="json", by_alias=True),
        metadata=InputMetadata(tags=[f"workflow:{callback.workflow_id}"]),
        timestamp=_now(),
        correlation_id=callback.context.correlation_id or _new_correlation_id(),
        source_id=callback.execution_id,
    )


def normalize(source: InputSource | str, payload: Any, correlation_id: str | None = None) -> AgentInput:
    """Convert a source-specific payload into an AgentInput.

    Args:
        source: Channel tag.
        payload: JSON object, or form fields for SMS.
        correlation_id: Existing id to thread through; generated when absent.

    Raises:
        ValidationError: If the source is unknown or the payload is invalid.
    """
    try:
        source = InputSource(source)
    except ValueError:
        raise ValidationError([{"path": "source", "message": f"Unknown source: {source}"}])

    if source == InputSource.SMS:
        return normalize_sms(payload, correlation_id)
    if source == InputSource.EMAIL:
        return normalize_email(payload, correlation_id)
    if source == InputSource.WORKER:
        return normalize_worker(payload)
    if source == InputSource.WEBHOOK:
        return normalize_webhook(payload, correlation_id)

    agent_input = normalize_generic(source, payload)
    if correlation_id:
        agent_input.correlation_id = correlation_id
    return agent_input
