"""Per-organization agent configuration storage."""
from sqlalchemy.orm import Session

from orchestrator.agent.llm import AgentConfigSnapshot
from orchestrator.agent.models import OrgAgentConfig
from orchestrator.agent.schemas import AgentConfigUpdate
from orchestrator.config import Settings
from orchestrator.errors import ValidationError


def _defaults(org_id: str, settings: Settings) -> OrgAgentConfig:
    return OrgAgentConfig(
        org_id=org_id,
        llm_provider=settings.llm_provider,
        llm_model=settings.llm_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        auto_execute_threshold=settings.auto_execute_threshold,
        require_approval_threshold=settings.require_approval_threshold,
        system_prompt=None,
        timezone="UTC",
    )


def get_agent_config_row(db: Session, org_id: str, settings: Settings) -> OrgAgentConfig:
    """Stored configuration, or an unsaved row holding the process defaults."""
    row = db.query(OrgAgentConfig).filter(OrgAgentConfig.org_id == org_id).first()
    return row if row is not None else _defaults(org_id, settings)


def load_agent_config(db: Session, org_id: str, settings: Settings) -> AgentConfigSnapshot:
    """Snapshot of an organization's classifier configuration."""
    row = get_agent_config_row(db, org_id, settings)
    return AgentConfigSnapshot(
        org_id=org_id,
        llm_provider=row.llm_provider,
        llm_model=row.llm_model,
        temperature=row.temperature,
        max_tokens=row.max_tokens,
        timeout_seconds=settings.llm_timeout_seconds,
        auto_execute_threshold=row.auto_execute_threshold,
        require_approval_threshold=row.require_approval_threshold,
        system_prompt=row.system_prompt,
        timezone=row.timezone,
    )


def update_agent_config(
    db: Session,
    org_id: str,
    update: AgentConfigUpdate,
    settings: Settings,
) -> OrgAgentConfig:
    """Apply a partial update and persist it. Does not commit.

    Raises:
        ValidationError: If the resulting thresholds are inconsistent.
    """
    row = db.query(OrgAgentConfig).filter(OrgAgentConfig.org_id == org_id).first()
    if row is None:
        row = _defaults(org_id, settings)
        db.add(row)

    for name, value in update.model_dump(exclude_unset=True).items():
        # Only the system prompt may be cleared
        if value is None and name != "system_prompt":
            continue
        setattr(row, name, value)

    if row.require_approval_threshold > row.auto_execute_threshold:
        raise ValidationError([{
            "path": "requireApprovalThreshold",
            "message": "Must not exceed autoExecuteThreshold",
        }])

    db.flush()
    return row
