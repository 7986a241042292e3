"""Email channel parsing: HTML to text, signature removal, ICS invites, subject intent."""
import base64
import binascii
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from orchestrator.agent.priority import detect_priority

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10_000
TRUNCATION_MARKER = "...[truncated]"

# Ordered; a match only counts past this share of the body
SIGNATURE_POSITION_THRESHOLD = 0.3

SIGNATURE_PATTERNS: list[re.Pattern] = [
    re.compile(r"^[-_=]{2,}\s*$"),
    re.compile(r"^Sent from my (iPhone|iPad|Android|Samsung|BlackBerry|Windows Phone|Mobile).*", re.I),
    re.compile(r"^Sent from (?:Yahoo|Outlook|Gmail|Mail) for .*", re.I),
    re.compile(r"^Get Outlook for .*", re.I),
    re.compile(r"^On .+ wrote:$"),
    re.compile(r"^From:.*$"),
    re.compile(r"^-{2,}.*Original Message.*-{2,}", re.I),
    re.compile(r"^>{2,}\s*On .+ wrote:"),
    re.compile(r"^(Best|Regards|Thanks|Cheers|Sincerely|Kind regards|Best regards|Thank you|Warm regards),?\s*$", re.I),
    re.compile(r"^--\s*$"),
    re.compile(r"^(CONFIDENTIALITY|DISCLAIMER|NOTICE):", re.I),
    re.compile(r"^This email (?:and any|message).*(confidential|privileged|intended).*", re.I),
]


@dataclass
class IntentBucket:
    keywords: tuple[str, ...]
    priority: int
    confidence: float


# Subject-line intent buckets: urgent > important > scheduling > low-priority
INTENT_KEYWORDS: dict[str, IntentBucket] = {
    "URGENT": IntentBucket(
        ("urgent", "asap", "immediately", "emergency", "critical", "right away",
         "as soon as possible", "pressing", "time-sensitive"),
        5, 0.85,
    ),
    "CANCEL_MEETING": IntentBucket(
        ("cancel", "cancellation", "won't be able", "can't attend", "not going to make",
         "have to skip", "drop the meeting"),
        4, 0.8,
    ),
    "RESCHEDULE_MEETING": IntentBucket(
        ("reschedule", "postpone", "change time", "different time", "push back",
         "another time", "can't make it", "conflict", "rain check"),
        4, 0.75,
    ),
    "SCHEDULE_MEETING": IntentBucket(
        ("schedule", "book", "set up", "arrange", "meeting", "call", "appointment",
         "catch up", "sync", "discuss", "meet", "calendar", "time to talk", "quick call",
         "zoom", "teams", "available for", "let's meet"),
        3, 0.7,
    ),
    "CONFIRMATION": IntentBucket(
        ("confirm", "confirmed", "see you", "looking forward", "sounds good",
         "works for me", "perfect", "accepted"),
        2, 0.7,
    ),
    "CHECK_AVAILABILITY": IntentBucket(
        ("available", "availability", "open slots", "when can", "what times",
         "your calendar", "check your schedule"),
        2, 0.65,
    ),
    "FOLLOW_UP": IntentBucket(
        ("follow up", "following up", "checking in", "just wanted to check",
         "any update", "status", "touched base", "circle back"),
        2, 0.6,
    ),
}

URGENCY_BOOST = re.compile(r"urgent|asap|emergency", re.I)
REPLY_PREFIX = re.compile(r"^(re|fw|fwd):\s*", re.I)

SPAM_PATTERNS: list[re.Pattern] = [
    re.compile(r"click here to unsubscribe", re.I),
    re.compile(r"you have won", re.I),
    re.compile(r"congratulations.*winner", re.I),
    re.compile(r"million dollars", re.I),
    re.compile(r"nigerian prince", re.I),
    re.compile(r"lottery", re.I),
]

SUSPICIOUS_DOMAINS = frozenset({
    "tempmail.com",
    "throwaway.email",
    "guerrillamail.com",
    "mailinator.com",
    "10minutemail.com",
    "fakeinbox.com",
})


@dataclass
class EmailIntent:
    intent: str
    priority: int
    confidence: float


@dataclass
class ParsedEvent:
    """Fields extracted from an ICS VEVENT."""
    uid: str | None = None
    summary: str | None = None
    description: str | None = None
    dtstart: datetime | date | None = None
    dtend: datetime | date | None = None
    location: str | None = None
    organizer: str | None = None
    attendees: list[str] = field(default_factory=list)
    status: str | None = None
    sequence: int | None = None
    method: str | None = None

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "summary": self.summary,
            "description": self.description,
            "dtstart": self.dtstart.isoformat() if self.dtstart else None,
            "dtend": self.dtend.isoformat() if self.dtend else None,
            "location": self.location,
            "organizer": self.organizer,
            "attendees": list(self.attendees),
            "status": self.status,
            "sequence": self.sequence,
            "method": self.method,
        }


def strip_html_tags(markup: str | None) -> str:
    """Convert an HTML body to plain text, keeping block boundaries as newlines."""
    if not markup:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", markup, flags=re.I)
    text = re.sub(r"</p>", "\n\n", text, flags=re.I)
    text = re.sub(r"</(div|tr|li)>", "\n", text, flags=re.I)
    text = re.sub(r"</h[1-6]>", "\n\n", text, flags=re.I)
    text = re.sub(r"<[^>]*>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_email_signature(text: str | None) -> str:
    """Drop trailing signatures, reply quotes and disclaimers.

    A pattern match early in the message is ignored; only lines past the first
    30% of the body are treated as the start of a signature block.
    """
    if not text:
        return ""
    lines = text.replace("\r\n", "\n").split("\n")
    cutoff = len(lines)
    for index, line in enumerate(lines):
        if index <= len(lines) * SIGNATURE_POSITION_THRESHOLD:
            continue
        stripped = line.strip()
        if any(pattern.match(stripped) for pattern in SIGNATURE_PATTERNS):
            cutoff = index
            break
    return "\n".join(lines[:cutoff]).strip()


def cap_content(text: str, limit: int = MAX_CONTENT_LENGTH) -> str:
    """Truncate text to ``limit`` characters, appending a truncation marker."""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def clean_email_content(text_body: str | None, html_body: str | None) -> str:
    """Plain text body (HTML as fallback) without signature, normalized and capped."""
    content = text_body or ""
    if not content and html_body:
        content = strip_html_tags(html_body)
    content = strip_email_signature(content)
    content = content.replace("\r\n", "\n").replace("\t", " ")
    content = re.sub(r" +", " ", content)
    content = re.sub(r"\n{3,}", "\n\n", content).strip()
    return cap_content(content)


def _looks_like_base64(content: str) -> bool:
    compact = re.sub(r"\s", "", content)
    return bool(compact) and not content.lstrip().startswith("BEGIN:") and re.fullmatch(r"[A-Za-z0-9+/=]+", compact) is not None


def _unescape_ics(value: str) -> str:
    return (
        value.replace("\\n", "\n")
        .replace("\\N", "\n")
        .replace("\\,", ",")
        .replace("\\;", ";")
        .replace("\\\\", "\\")
    )


def parse_ics_date(value: str) -> datetime | date | None:
    """Parse ``YYYYMMDD`` or ``YYYYMMDDTHHMMSS[Z]``.

    A trailing ``Z`` yields an aware UTC datetime; without it the time is floating.
    """
    if len(value) == 8:
        return datetime.strptime(value, "%Y%m%d").date()
    if len(value) >= 15:
        parsed = datetime.strptime(value[:15], "%Y%m%dT%H%M%S")
        if value.endswith("Z"):
            return parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def _property(vevent: str, name: str) -> str | None:
    match = re.search(rf"^{name}(?:;[^:\n]*)?:(.*)$", vevent, re.M)
    return match.group(1).strip() if match else None


def _strip_mailto(value: str) -> str:
    return re.sub(r"^mailto:", "", value, flags=re.I).strip()


def parse_ics_attachment(content: str | None) -> ParsedEvent | None:
    """Extract the first VEVENT from an ICS attachment, base64 or plain.

    Returns:
        The parsed event, or None when the content is not a calendar.
    """
    if not content:
        return None

    ics = content
    if _looks_like_base64(content):
        try:
            ics = base64.b64decode(re.sub(r"\s", "", content)).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning("Could not decode base64 ICS attachment: %s", e)
            return None

    if "BEGIN:VCALENDAR" not in ics and "BEGIN:VEVENT" not in ics:
        return None

    # Unfold continuation lines before matching properties
    ics = re.sub(r"\r?\n[ \t]", "", ics).replace("\r\n", "\n")

    block = re.search(r"BEGIN:VEVENT.*?END:VEVENT", ics, re.S)
    if not block:
        return None
    vevent = block.group(0)

    event = ParsedEvent()
    for attr in ("uid", "summary", "description", "location"):
        raw = _property(vevent, attr.upper())
        if raw is not None:
            setattr(event, attr, _unescape_ics(raw))

    for attr in ("dtstart", "dtend"):
        match = re.search(rf"^{attr.upper()}(?:;[^:\n]*)?:(\d{{8}}(?:T\d{{6}}Z?)?)", vevent, re.M)
        if match:
            try:
                setattr(event, attr, parse_ics_date(match.group(1)))
            except ValueError as e:
                logger.warning("Invalid %s in ICS attachment: %s", attr.upper(), e)

    organizer = _property(vevent, "ORGANIZER")
    if organizer:
        event.organizer = _strip_mailto(organizer).lower()

    event.attendees = [
        _strip_mailto(match.group(1)).lower()
        for match in re.finditer(r"^ATTENDEE(?:;[^:\n]*)?:(.*)$", vevent, re.M)
    ]

    status = _property(vevent, "STATUS")
    if status:
        event.status = status.upper()

    sequence = _property(vevent, "SEQUENCE")
    if sequence and sequence.isdigit():
        event.sequence = int(sequence)

    method = re.search(r"^METHOD:(.*)$", ics, re.M)
    if method:
        event.method = method.group(1).strip().upper()

    return event


def extract_email_intent(subject: str | None) -> EmailIntent:
    """Derive an intent and priority hint from the subject line.

    Each additional keyword in a bucket adds 0.1 confidence, capped at 0.95.
    Urgency words raise the priority one level even when a different bucket
    wins. Reply and forward prefixes fall back to FOLLOW_UP.
    """
    best = EmailIntent(intent="UNKNOWN", priority=3, confidence=0.0)
    if not subject:
        return best

    lower = subject.lower()
    for intent, bucket in INTENT_KEYWORDS.items():
        matches = sum(1 for keyword in bucket.keywords if keyword in lower)
        if not matches:
            continue
        confidence = min(bucket.confidence + (matches - 1) * 0.1, 0.95)
        if confidence > best.confidence:
            best = EmailIntent(intent=intent, priority=bucket.priority, confidence=confidence)

    if best.intent != "URGENT" and URGENCY_BOOST.search(subject):
        best.priority = min(best.priority + 1, 5)

    if REPLY_PREFIX.match(subject) and best.intent == "UNKNOWN":
        best.intent = "FOLLOW_UP"
        best.confidence = 0.5

    return best


def detect_email_priority(subject: str, content: str, headers: dict[str, str] | None = None) -> int:
    """Combine importance headers, subject intent and body keywords into a 1-5 priority."""
    priority = 3
    normalized = {k.lower(): v for k, v in (headers or {}).items()}
    importance = normalized.get("importance") or normalized.get("x-priority")
    if importance:
        value = importance.strip().lower()
        if value in ("high", "1") or value.startswith("1 "):
            priority = 5
        elif value in ("low", "5") or value.startswith("5 "):
            priority = 1

    intent = extract_email_intent(subject)
    if intent.intent != "UNKNOWN":
        priority = max(priority, intent.priority)

    body_priority = detect_priority(f"{content} {subject}")
    if body_priority >= 4:
        priority = max(priority, body_priority)

    return max(1, min(5, priority))


def extract_email_address(value: str | None) -> str | None:
    """Pull the address out of ``Name <addr>`` or a bare address, lower-cased."""
    if not value:
        return None
    bracket = re.search(r"<([^>]+@[^>]+)>", value)
    if bracket:
        return bracket.group(1).strip().lower()
    bare = re.search(r"[^\s<>\"']+@[^\s<>\"']+", value)
    return bare.group(0).strip().lower() if bare else None


def extract_domain(value: str | None) -> str | None:
    address = extract_email_address(value)
    if not address:
        return None
    parts = address.split("@")
    return parts[1] if len(parts) == 2 else None


def is_spam(content: str, sender_domain: str | None) -> bool:
    """Heuristic spam screen for inbound email."""
    if not content or len(content.strip()) < 5:
        return True
    if sender_domain and sender_domain.lower() in SUSPICIOUS_DOMAINS:
        return True
    return any(pattern.search(content) for pattern in SPAM_PATTERNS)
