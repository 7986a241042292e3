"""Runtime configuration loaded from environment variables.

Values are read once per process through ``get_settings()``. Routers take the
settings through FastAPI dependency injection so tests can override them.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Process-wide settings.

    Attributes:
        default_org_id: Organization used when a channel cannot resolve one.
        llm_provider: ``OPENAI`` or ``CLAUDE``.
        llm_model: Model name passed to the provider.
        auto_execute_threshold: Default confidence needed to auto-execute.
        require_approval_threshold: Default confidence below which input is rejected.
        twilio_auth_token: Shared secret for SMS webhook signatures.
        skip_twilio_signature_validation: Explicit opt-out, honored only without a token.
        allow_unsigned_webhooks: Explicit opt-out for signed JSON webhooks without a secret.
        public_base_url: Externally visible base URL used to rebuild signed URLs.
    """
    default_org_id: str | None = None
    llm_provider: str = "OPENAI"
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 2000
    llm_timeout_seconds: float = 30.0
    auto_execute_threshold: float = 0.85
    require_approval_threshold: float = 0.5
    twilio_auth_token: str | None = None
    twilio_account_sid: str | None = None
    skip_twilio_signature_validation: bool = False
    email_webhook_secret: str | None = None
    automation_webhook_secret: str | None = None
    intake_webhook_secret: str | None = None
    allow_unsigned_webhooks: bool = False
    public_base_url: str | None = None
    rate_limit_disabled: bool = False
    rate_limit_api_per_minute: int = 60
    rate_limit_sms_per_minute: int = 30
    rate_limit_email_per_minute: int = 30
    rate_limit_webhook_per_minute: int = 120
    classifier_cache_size: int = 64
    classifier_cache_ttl_seconds: float = 900.0
    task_max_retries: int = 3
    task_retry_base_delay_ms: int = 5000
    cors_origins: list[str] = field(default_factory=list)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current process environment."""
        return cls(
            default_org_id=os.environ.get("DEFAULT_ORG_ID") or None,
            llm_provider=os.environ.get("AGENT_LLM_PROVIDER", "OPENAI").upper(),
            llm_model=os.environ.get("AGENT_LLM_MODEL", "gpt-4o-mini"),
            llm_temperature=float(os.environ.get("AGENT_LLM_TEMPERATURE", "0.3")),
            llm_max_tokens=int(os.environ.get("AGENT_LLM_MAX_TOKENS", "2000")),
            llm_timeout_seconds=float(os.environ.get("AGENT_LLM_TIMEOUT_SECONDS", "30")),
            auto_execute_threshold=float(os.environ.get("AGENT_AUTO_EXECUTE_THRESHOLD", "0.85")),
            require_approval_threshold=float(os.environ.get("AGENT_REQUIRE_APPROVAL_THRESHOLD", "0.5")),
            twilio_auth_token=os.environ.get("TWILIO_AUTH_TOKEN") or None,
            twilio_account_sid=os.environ.get("TWILIO_ACCOUNT_SID") or None,
            skip_twilio_signature_validation=_env_bool("SKIP_TWILIO_SIGNATURE_VALIDATION"),
            email_webhook_secret=os.environ.get("EMAIL_WEBHOOK_SECRET") or None,
            automation_webhook_secret=os.environ.get("N8N_WEBHOOK_SECRET") or None,
            intake_webhook_secret=os.environ.get("INTAKE_WEBHOOK_SECRET") or None,
            allow_unsigned_webhooks=_env_bool("ALLOW_UNSIGNED_WEBHOOKS"),
            public_base_url=os.environ.get("PUBLIC_BASE_URL") or None,
            rate_limit_disabled=_env_bool("RATE_LIMIT_DISABLED"),
            rate_limit_api_per_minute=int(os.environ.get("RATE_LIMIT_API_PER_MINUTE", "60")),
            rate_limit_sms_per_minute=int(os.environ.get("RATE_LIMIT_SMS_PER_MINUTE", "30")),
            rate_limit_email_per_minute=int(os.environ.get("RATE_LIMIT_EMAIL_PER_MINUTE", "30")),
            rate_limit_webhook_per_minute=int(os.environ.get("RATE_LIMIT_WEBHOOK_PER_MINUTE", "120")),
            classifier_cache_size=int(os.environ.get("CLASSIFIER_CACHE_SIZE", "64")),
            classifier_cache_ttl_seconds=float(os.environ.get("CLASSIFIER_CACHE_TTL_SECONDS", "900")),
            task_max_retries=int(os.environ.get("TASK_MAX_RETRIES", "3")),
            task_retry_base_delay_ms=int(os.environ.get("TASK_RETRY_BASE_DELAY_MS", "5000")),
            cors_origins=_env_list("CORS_ORIGINS"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached process settings."""
    return Settings.from_env()
