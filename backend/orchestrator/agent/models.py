"""Database models for the orchestration engine."""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Text, DateTime, Float, Index, UniqueConstraint
from orchestrator.database import Base


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Organization(Base):
    """Organization owning users, tasks and quota."""
    __tablename__ = "organizations"

    org_id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    plan = Column(String(20), nullable=False, default="FREE")
    api_key = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class OrgUser(Base):
    """User scoped to an organization, reachable by email or phone."""
    __tablename__ = "org_users"

    user_id = Column(String(36), primary_key=True)
    org_id = Column(String(36), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(20), nullable=True, index=True)  # E.164
    role = Column(String(50), nullable=False)  # "admin" or "member"
    created_at = Column(DateTime, default=utc_now, nullable=False)


class OrgAgentConfig(Base):
    """Per-organization classifier configuration."""
    __tablename__ = "org_agent_configs"

    org_id = Column(String(36), primary_key=True)
    llm_provider = Column(String(20), nullable=False, default="OPENAI")
    llm_model = Column(String(100), nullable=False, default="gpt-4o-mini")
    temperature = Column(Float, nullable=False, default=0.3)
    max_tokens = Column(Integer, nullable=False, default=2000)
    auto_execute_threshold = Column(Float, nullable=False, default=0.85)
    require_approval_threshold = Column(Float, nullable=False, default=0.5)
    system_prompt = Column(Text, nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class AgentTask(Base):
    """Persisted unit of work created for each admitted input."""
    __tablename__ = "agent_tasks"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    org_id = Column(String(36), nullable=True, index=True)
    principal = Column(String(320), nullable=False)  # e.g. sms:+15551234567
    correlation_id = Column(String(36), nullable=False)
    source = Column(String(20), nullable=False)
    source_id = Column(String(255), nullable=True)  # external message id
    raw_content = Column(Text, nullable=False)
    task_type = Column(String(40), nullable=False, default="UNKNOWN")
    priority = Column(Integer, nullable=False, default=3)
    status = Column(String(20), nullable=False, default="PENDING")
    entities_json = Column(Text, nullable=True)
    ai_metadata_json = Column(Text, nullable=True)
    resolution_json = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "source_id", name="uq_agent_task_source_id"),
        Index("ix_agent_tasks_principal_created", "principal", "created_at"),
        Index("ix_agent_tasks_org_status", "org_id", "status"),
    )


class OpenTaskIndex(Base):
    """Most recent open task per principal, used for quick-reply matching."""
    __tablename__ = "open_task_index"

    principal = Column(String(320), primary_key=True)
    task_id = Column(String(36), nullable=False)
    task_created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class UsageRollupMonthly(Base):
    """Monthly usage counters per organization and quota type."""
    __tablename__ = "usage_rollups_monthly"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(String(36), nullable=False)
    period_start = Column(String(10), nullable=False)  # YYYY-MM-01
    quota_type = Column(String(50), nullable=False)
    units = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("org_id", "period_start", "quota_type", name="uq_usage_rollup_org_period_type"),
        Index("ix_usage_rollup_org_period", "org_id", "period_start"),
    )


class DispatchJob(Base):
    """Outbox row for a queued job. Workers poll by lane and available_at."""
    __tablename__ = "dispatch_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(255), nullable=False)
    task_id = Column(String(36), nullable=False, index=True)
    org_id = Column(String(36), nullable=True)
    name = Column(String(100), nullable=False)
    lane = Column(String(20), nullable=False)  # "urgent" or "standard"
    priority = Column(Integer, nullable=False)
    payload_json = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="queued")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, default=utc_now, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("job_id", name="uq_dispatch_jobs_job_id"),
        Index("ix_dispatch_jobs_lane_status_available", "lane", "status", "available_at"),
    )


class AuditLog(Base):
    """Audit trail for task creation, decisions and absorbed failures."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)
    task_id = Column(String(36), nullable=True, index=True)
    action = Column(String(100), nullable=False)
    detail_json = Column(Text, nullable=True)
    correlation_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class IdempotencyKey(Base):
    """Idempotency keys to prevent duplicate processing."""
    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    org_id = Column(String(36), nullable=False)
    endpoint = Column(String(100), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    request_hash = Column(String(64), nullable=False)  # SHA-256 hex
    response_json = Column(Text, nullable=True)  # NULL while the request is running
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "org_id", "endpoint", "idempotency_key",
            name="uq_idempotency_org_endpoint_key"
        ),
    )


class ProcessedMessage(Base):
    """Provider message ids that resumed an existing task instead of creating one."""
    __tablename__ = "processed_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(20), nullable=False)
    source_id = Column(String(255), nullable=False)
    task_id = Column(String(36), nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("source", "source_id", name="uq_processed_message_source_id"),
    )
