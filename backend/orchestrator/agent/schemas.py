"""Pydantic schemas for the orchestration API and decision types."""
from datetime import datetime
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from orchestrator.agent.enums import ActionType, InputSource


class CamelModel(BaseModel):
    """Base for payloads whose wire format is camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def clamp_priority(value: Any) -> int:
    """Coerce a priority into the 1-5 range."""
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return 3
    return max(1, min(5, number))


def clamp_confidence(value: Any) -> float:
    """Coerce a confidence into the 0-1 range."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(1.0, number))


# Canonical input
class InputMetadata(CamelModel):
    """Sender details and hints attached to an inbound signal."""
    sender_email: str | None = None
    sender_phone: str | None = None
    sender_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    related_entity_ids: list[str] = Field(default_factory=list)
    priority_hint: int | None = Field(None, ge=1, le=5)
    tags: list[str] = Field(default_factory=list)


class AgentInput(CamelModel):
    """Canonical normalized representation of one inbound signal."""
    source: InputSource
    type: str
    raw_content: str
    structured_data: dict[str, Any] = Field(default_factory=dict)
    metadata: InputMetadata = Field(default_factory=InputMetadata)
    timestamp: datetime
    correlation_id: str
    source_id: str | None = None


# Decisions
class AgentAction(CamelModel):
    """One executable operation suggested by the classifier."""
    type: ActionType
    priority: int = 3
    requires_confirmation: bool = False
    params: dict[str, Any] = Field(default_factory=dict)
    delay_ms: int | None = Field(None, ge=0)

    @field_validator("priority", mode="before")
    @classmethod
    def _clamp_priority(cls, value: Any) -> int:
        return clamp_priority(value)


class AgentDecisionResult(CamelModel):
    """Classifier output: intent, confidence and suggested actions."""
    intent: str = "UNKNOWN"
    confidence: float = 0.0
    reasoning: str = ""
    requires_approval: bool = False
    priority: int = 3
    actions: list[AgentAction] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    alternatives: list[dict[str, Any]] = Field(default_factory=list)
    degraded: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return clamp_confidence(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _clamp_priority(cls, value: Any) -> int:
        return clamp_priority(value)


# Unified process endpoint
class ProcessOptions(CamelModel):
    """Per-request overrides for the process endpoint."""
    org_id: str | None = None
    dry_run: bool = False
    force_approval: bool = False
    auto_execute_threshold: float | None = Field(None, ge=0.0, le=1.0)
    require_approval_threshold: float | None = Field(None, ge=0.0, le=1.0)


class ProcessRequest(CamelModel):
    """Request body for the unified process endpoint."""
    source: InputSource
    type: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1)
    metadata: InputMetadata = Field(default_factory=InputMetadata)
    structured_data: dict[str, Any] = Field(default_factory=dict)
    options: ProcessOptions = Field(default_factory=ProcessOptions)
    correlation_id: str | None = None


class DecisionSummary(CamelModel):
    intent: str
    confidence: float
    reasoning: str
    requires_approval: bool
    priority: int
    warnings: list[str]
    alternatives: list[dict[str, Any]]


class DispatchInfo(CamelModel):
    job_id: str
    lane: str
    created: bool


class ProcessResponse(CamelModel):
    """Response for the unified process endpoint."""
    decision: DecisionSummary
    actions: list[AgentAction]
    execution_status: Literal["dry_run", "executed", "pending_approval", "rejected"]
    routing: str
    task_id: str | None = None
    correlation_id: str
    dispatch: DispatchInfo | None = None


# Tasks
class TaskResponse(CamelModel):
    """Read surface for a persisted AgentTask."""
    id: str
    org_id: str | None
    user_id: str
    status: str
    source: str
    source_id: str | None
    task_type: str
    priority: int
    entities: dict[str, Any] | None
    ai_metadata: dict[str, Any] | None
    resolution: dict[str, Any] | None
    error_message: str | None
    retry_count: int
    next_retry_at: datetime | None
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None
    completed_at: datetime | None


class TaskListResponse(CamelModel):
    tasks: list[TaskResponse]
    total: int


class TaskDecisionRequest(CamelModel):
    """Operator note attached to an approval, rejection or cancellation."""
    reason: str | None = Field(None, max_length=1000)


# Agent configuration
class AgentConfigUpdate(CamelModel):
    """Request schema for updating an organization's classifier configuration."""
    llm_provider: Literal["OPENAI", "CLAUDE"] | None = None
    llm_model: str | None = Field(None, min_length=1, max_length=100)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(None, ge=1, le=32000)
    auto_execute_threshold: float | None = Field(None, ge=0.0, le=1.0)
    require_approval_threshold: float | None = Field(None, ge=0.0, le=1.0)
    system_prompt: str | None = Field(None, max_length=20000)
    timezone: str | None = Field(None, max_length=64)


class AgentConfigResponse(CamelModel):
    org_id: str
    llm_provider: str
    llm_model: str
    temperature: float
    max_tokens: int
    auto_execute_threshold: float
    require_approval_threshold: float
    system_prompt: str | None
    timezone: str

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Organizations and users
class OrgCreate(BaseModel):
    """Request schema for creating an organization."""
    name: str = Field(..., min_length=1, max_length=255)
    plan: str = Field("FREE", pattern="^(FREE|STARTER|PROFESSIONAL|ENTERPRISE)$")
    admin_email: EmailStr = Field(..., description="Email for the bootstrap admin user")
    admin_phone: str | None = Field(None, max_length=20)


class BootstrapAdmin(BaseModel):
    """Bootstrap admin user created with the organization."""
    user_id: str
    email: str
    phone: str | None
    role: str


class OrgResponse(BaseModel):
    """Response schema for organization creation."""
    org_id: str
    name: str
    plan: str
    api_key: str
    created_at: datetime
    admin: BootstrapAdmin

    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    """Request schema for creating a user."""
    org_id: str = Field(..., min_length=36, max_length=36)
    email: EmailStr
    role: str = Field(..., pattern="^(admin|member)$")
    phone: str | None = Field(None, max_length=20)


class UserResponse(BaseModel):
    """Response schema for user creation."""
    user_id: str
    org_id: str
    email: str
    phone: str | None
    role: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QuotaUsage(BaseModel):
    used: int
    limit: int
    remaining: int | None
    percent_used: float | None


class UsageResponse(BaseModel):
    """Monthly quota usage for the caller's organization."""
    org_id: str
    plan: str
    period_start: str
    period_end: str
    quotas: dict[str, QuotaUsage]
    warnings: list[str]


# Webhook payloads
class EmailAttachment(CamelModel):
    filename: str | None = None
    content_type: str | None = None
    content: str = ""


class EmailWebhookPayload(CamelModel):
    """Inbound email as delivered by the mail provider's parse webhook."""
    from_: str = Field(..., alias="from")
    to: str | list[str] | None = None
    subject: str = ""
    text: str | None = None
    html: str | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    attachments: list[EmailAttachment] = Field(default_factory=list)


class AutomationError(CamelModel):
    message: str
    code: str | None = None


class AutomationContext(CamelModel):
    org_id: str | None = None
    user_id: str | None = None
    correlation_id: str | None = None
    source_event: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AutomationCallback(CamelModel):
    """Status report from the external workflow runner."""
    execution_id: str = Field(..., min_length=1)
    workflow_id: str = Field(..., min_length=1)
    status: Literal["success", "error", "running", "waiting", "cancelled"]
    data: dict[str, Any] | None = None
    error: AutomationError | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    execution_time_ms: int | None = None
    workflow_name: str | None = None
    mode: str | None = None
    retry_count: int | None = None
    context: AutomationContext = Field(default_factory=AutomationContext)


class IntakeWebhookPayload(CamelModel):
    """Generic signed intake webhook body."""
    type: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1)
    source_id: str | None = Field(None, max_length=255)
    metadata: InputMetadata = Field(default_factory=InputMetadata)
    structured_data: dict[str, Any] = Field(default_factory=dict)


class TaskActionResponse(CamelModel):
    """Task state after an operator action, with the job it queued."""
    task: TaskResponse
    dispatch: DispatchInfo | None = None


class WebhookAck(CamelModel):
    """Acknowledgment returned to JSON webhook senders."""
    status: Literal["accepted", "continued", "duplicate", "ignored", "applied"]
    task_id: str | None = None
    correlation_id: str | None = None
    routing: str | None = None
    execution_status: str | None = None
    event: str | None = None
    reason: str | None = None
