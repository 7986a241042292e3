"""SMS channel helpers: provider signatures, phone numbers, quick replies, TwiML.

The provider signs each webhook with HMAC-SHA1 over the full request URL
followed by every form parameter (sorted by name, key then value), base64
encoded, and sends it in ``X-Twilio-Signature``.
"""
import base64
import hashlib
import hmac
import re
from dataclasses import dataclass, field
from typing import Mapping
from xml.sax.saxutils import escape

from orchestrator.agent.enums import TaskType

REQUIRED_PARAMS = ("MessageSid", "AccountSid", "From", "To", "Body")

SINGLE_SEGMENT_LENGTH = 160

# Longer messages are treated as free text, never as quick replies
QUICK_REPLY_MAX_LENGTH = 50

XML_QUOTE_ENTITIES = {'"': "&quot;", "'": "&apos;"}


@dataclass
class ParsedPhoneNumber:
    """A phone number broken into its parts."""
    raw: str
    country_code: str
    national_number: str
    e164: str
    is_valid: bool


@dataclass
class QuickReply:
    """A recognized short reply token."""
    type: str  # confirm | cancel | reschedule | select | help | other
    confidence: float
    value: str | None = None


@dataclass
class SmsContent:
    """Content extracted from an inbound SMS webhook."""
    body: str
    media_urls: list[str] = field(default_factory=list)
    media_types: list[str] = field(default_factory=list)
    is_multipart: bool = False
    quick_reply: QuickReply | None = None


# Ordered; first match wins. Select patterns capture the choice as ``value``.
QUICK_REPLY_PATTERNS: list[tuple[str, re.Pattern, float]] = [
    ("confirm", re.compile(
        r"^(y(es)?|yep|yup|yeah|ok(ay)?|sure|confirm(ed)?|correct|right|absolutely|definitely|affirmative)[.!]*$", re.I,
    ), 0.95),
    ("confirm", re.compile(r"^(sounds good|that works|works for me|perfect|great|good|fine)[.!]*$", re.I), 0.9),
    ("confirm", re.compile(r"^(book it|schedule it|confirm it|let'?s do it)[.!]*$", re.I), 0.95),
    ("cancel", re.compile(r"^(no?|nope|nah|cancel(led)?|stop|abort|nevermind|never mind)[.!]*$", re.I), 0.95),
    ("cancel", re.compile(r"^(don'?t|do not|please don'?t|don'?t book|no thanks|no thank you)[.!]*$", re.I), 0.85),
    ("cancel", re.compile(r"^cancel (it|this|that|my|the)( (appointment|meeting|booking))?[.!]*$", re.I), 0.95),
    ("select", re.compile(r"^(?P<value>[1-9])[.!]*$"), 0.95),
    ("select", re.compile(r"^(option|choice|number|#)\s*(?P<value>[1-9])[.!]*$", re.I), 0.9),
    ("select", re.compile(r"^(the\s+)?(?P<value>first|second|third|fourth|fifth)( one| option)?[.!]*$", re.I), 0.85),
    ("reschedule", re.compile(r"^(reschedule|change|move|postpone|delay|different (time|day|date))[.!?]*$", re.I), 0.95),
    ("reschedule", re.compile(
        r"^((can we|could we|i need to)\s+)?(reschedule|change|move|postpone)(\s+(it|this|that|the meeting))?[.!?]*$", re.I,
    ), 0.9),
    ("reschedule", re.compile(
        r"^((another|different) (time|day|date)( (please|works better))?|change( the)? time)[.!?]*$", re.I,
    ), 0.85),
    ("help", re.compile(r"^(help|h|commands|options|menu|info|\?)[.!?]*$", re.I), 0.95),
    ("help", re.compile(r"^(what can (you|i) do|how does this work)\??$", re.I), 0.85),
]

ORDINALS = {"first": "1", "second": "2", "third": "3", "fourth": "4", "fifth": "5"}

# Quick replies that resume an open task, and the domain action they map to
QUICK_REPLY_TASK_TYPES: dict[str, TaskType] = {
    "confirm": TaskType.SCHEDULE_MEETING,
    "select": TaskType.SCHEDULE_MEETING,
    "cancel": TaskType.CANCEL_MEETING,
    "reschedule": TaskType.RESCHEDULE_MEETING,
}

ACK_DEFAULT = "Got it! Processing your request..."
ACK_ERROR = "Sorry, we encountered an error processing your message. Please try again later."
ACK_UNKNOWN_SENDER = (
    "We couldn't identify your account. Please make sure you're texting from the phone "
    "number registered with your account."
)
ACK_RATE_LIMITED = "Too many messages. Please wait a moment before trying again."
ACK_QUOTA_EXCEEDED = "Your organization has reached its monthly request limit. Please contact your administrator."
ACK_CONFIG_ERROR = "System configuration error. Please try again later."
ACK_AWAITING_REVIEW = "Thanks! Your request is waiting for review by your team."
ACK_HELP = (
    "Reply YES to confirm, NO to cancel, RESCHEDULE to pick another time, "
    "or a number to choose an option."
)


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """Compute the provider signature for a webhook request.

    Args:
        url: Full URL the provider posted to, including query string.
        params: Form parameters from the request body.
        auth_token: Account auth token used as the HMAC key.

    Returns:
        Base64-encoded HMAC-SHA1 digest.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_twilio_signature(
    signature: str | None,
    url: str,
    params: Mapping[str, str],
    auth_token: str,
) -> bool:
    """Check a webhook signature using a constant-time comparison."""
    if not signature or not auth_token:
        return False
    expected = compute_twilio_signature(url, params, auth_token)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "ignore"))


def validate_twilio_params(params: Mapping[str, str]) -> list[dict[str, str]]:
    """Return one error entry per missing required field."""
    return [
        {"path": name, "message": f"Missing required field: {name}"}
        for name in REQUIRED_PARAMS
        if not params.get(name)
    ]


def parse_phone_number(raw: str) -> ParsedPhoneNumber:
    """Normalize a phone number to E.164, assuming North America for 10 digits."""
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 10:
        return ParsedPhoneNumber(raw, "1", digits, f"+1{digits}", True)
    if len(digits) == 11 and digits.startswith("1"):
        return ParsedPhoneNumber(raw, "1", digits[1:], f"+{digits}", True)
    if (raw or "").strip().startswith("+") and 8 <= len(digits) <= 15:
        # Country code length is ambiguous without a numbering plan; keep it whole
        return ParsedPhoneNumber(raw, "", digits, f"+{digits}", True)
    return ParsedPhoneNumber(raw, "", digits, f"+{digits}" if digits else "", False)


def mask_phone(phone: str | None) -> str:
    """Mask all but the last four digits for logging."""
    if not phone:
        return "unknown"
    return "*" * max(len(phone) - 4, 0) + phone[-4:]


def detect_quick_reply(body: str) -> QuickReply | None:
    """Match a short message against the quick-reply vocabulary.

    Returns:
        The matched QuickReply, or None for free-text messages.
    """
    text = (body or "").strip()
    if not text or len(text) > QUICK_REPLY_MAX_LENGTH:
        return None

    for reply_type, pattern, confidence in QUICK_REPLY_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        value = None
        if reply_type == "select":
            token = match.group("value").lower()
            value = ORDINALS.get(token, token)
        return QuickReply(type=reply_type, confidence=confidence, value=value)
    return None


def extract_sms_content(params: Mapping[str, str]) -> SmsContent:
    """Pull the message body, media attachments and quick reply out of the form fields."""
    body = (params.get("Body") or "").strip()
    try:
        num_media = int(params.get("NumMedia") or 0)
    except ValueError:
        num_media = 0

    media_urls: list[str] = []
    media_types: list[str] = []
    for index in range(num_media):
        url = params.get(f"MediaUrl{index}")
        if url:
            media_urls.append(url)
            media_types.append(params.get(f"MediaContentType{index}") or "application/octet-stream")

    return SmsContent(
        body=body,
        media_urls=media_urls,
        media_types=media_types,
        is_multipart=len(body) > SINGLE_SEGMENT_LENGTH,
        quick_reply=detect_quick_reply(body),
    )


def acknowledgment_for(reply: QuickReply | None) -> str:
    """Acknowledgment text sent back for a processed message."""
    if reply is None:
        return ACK_DEFAULT
    if reply.type == "confirm":
        return "Got it! Confirming your request now."
    if reply.type == "cancel":
        return "Understood. Cancelling as requested."
    if reply.type == "select":
        return f"Got it! Processing option {reply.value}."
    if reply.type == "reschedule":
        return "Understood. Let me help you reschedule. What time works better for you?"
    if reply.type == "help":
        return ACK_HELP
    return ACK_DEFAULT


def twiml_response(message: str) -> str:
    """Minimal TwiML document replying with one message."""
    body = escape(message, XML_QUOTE_ENTITIES)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<Response>\n"
        f"  <Message>{body}</Message>\n"
        "</Response>"
    )


def empty_twiml_response() -> str:
    """TwiML document that acknowledges without replying."""
    return '<?xml version="1.0" encoding="UTF-8"?>\n<Response></Response>'
