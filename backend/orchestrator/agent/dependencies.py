"""Process-wide pipeline components, exposed as FastAPI dependencies.

Each provider builds its component once per process. Tests replace them
through ``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import Depends

from orchestrator.agent.classifier import ClassifierRegistry
from orchestrator.agent.dispatcher import ActionDispatcher, SqlJobQueue
from orchestrator.agent.events import EventBus, event_bus
from orchestrator.agent.pipeline import OrchestrationEngine
from orchestrator.agent.rate_limit import RateLimiter, build_rate_limiter
from orchestrator.config import Settings, get_settings
from orchestrator.database import get_session_factory


def get_event_bus() -> EventBus:
    return event_bus


@lru_cache(maxsize=1)
def _classifier_registry() -> ClassifierRegistry:
    settings = get_settings()
    return ClassifierRegistry(
        max_size=settings.classifier_cache_size,
        ttl_seconds=settings.classifier_cache_ttl_seconds,
    )


def get_classifier_registry() -> ClassifierRegistry:
    return _classifier_registry()


@lru_cache(maxsize=1)
def _rate_limiter() -> RateLimiter:
    return build_rate_limiter(get_settings())


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter()


def get_dispatcher() -> ActionDispatcher:
    return ActionDispatcher(SqlJobQueue(get_session_factory()))


def get_engine(
    settings: Settings = Depends(get_settings),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    registry: ClassifierRegistry = Depends(get_classifier_registry),
    dispatcher: ActionDispatcher = Depends(get_dispatcher),
    bus: EventBus = Depends(get_event_bus),
) -> OrchestrationEngine:
    """Engine wired from the current component providers."""
    return OrchestrationEngine(settings, rate_limiter, registry, dispatcher, bus)
