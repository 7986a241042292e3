"""Enumerations shared by the orchestration pipeline."""
from enum import Enum


class InputSource(str, Enum):
    """Channel an inbound signal arrived on."""
    FORM = "FORM"
    EMAIL = "EMAIL"
    SMS = "SMS"
    API = "API"
    CHAT = "CHAT"
    VOICE = "VOICE"
    WEBHOOK = "WEBHOOK"
    WORKER = "WORKER"
    SCHEDULE = "SCHEDULE"


class TaskType(str, Enum):
    """Domain action an AgentTask represents."""
    SCHEDULE_MEETING = "SCHEDULE_MEETING"
    RESCHEDULE_MEETING = "RESCHEDULE_MEETING"
    CANCEL_MEETING = "CANCEL_MEETING"
    CHECK_AVAILABILITY = "CHECK_AVAILABILITY"
    CREATE_TASK = "CREATE_TASK"
    UPDATE_TASK = "UPDATE_TASK"
    INQUIRY = "INQUIRY"
    REMINDER = "REMINDER"
    UNKNOWN = "UNKNOWN"


class TaskStatus(str, Enum):
    """AgentTask lifecycle states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    AWAITING_INPUT = "AWAITING_INPUT"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Candidates for quick-reply continuation
OPEN_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.AWAITING_INPUT})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class ActionType(str, Enum):
    """Executable operations a decision may request."""
    ASSIGN_PIPELINE = "ASSIGN_PIPELINE"
    CREATE_TASK = "CREATE_TASK"
    CREATE_EVENT = "CREATE_EVENT"
    UPDATE_EVENT = "UPDATE_EVENT"
    CANCEL_EVENT = "CANCEL_EVENT"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    TRIGGER_AUTOMATION = "TRIGGER_AUTOMATION"
    ESCALATE = "ESCALATE"
    NO_ACTION = "NO_ACTION"


class Plan(str, Enum):
    """Subscription plans with different monthly quotas."""
    FREE = "FREE"
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"


class LLMProvider(str, Enum):
    OPENAI = "OPENAI"
    CLAUDE = "CLAUDE"
