"""Chat model construction per LLM provider."""
import hashlib
import json
from dataclasses import asdict, dataclass

from langchain_core.language_models.chat_models import BaseChatModel

from orchestrator.agent.enums import LLMProvider


@dataclass(frozen=True)
class AgentConfigSnapshot:
    """Immutable view of an organization's classifier configuration."""
    org_id: str
    llm_provider: str
    llm_model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float
    auto_execute_threshold: float
    require_approval_threshold: float
    system_prompt: str | None = None
    timezone: str = "UTC"

    def fingerprint(self) -> str:
        """Stable hash of every field, used to spot stale cached classifiers."""
        canonical = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_chat_model(config: AgentConfigSnapshot) -> BaseChatModel:
    """Create the provider chat model for a configuration.

    Retries are disabled; the classifier enforces its own timeout and
    degrades instead of retrying.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = LLMProvider(config.llm_provider.upper())
    if provider == LLMProvider.CLAUDE:
        from langchain_anthropic import ChatAnthropic

        return ChatAnthropic(
            model=config.llm_model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=config.llm_model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        timeout=config.timeout_seconds,
        max_retries=0,
    )
