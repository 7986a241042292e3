"""Tests for LLM response parsing, the intent classifier and the classifier registry."""
import json
import time
from dataclasses import replace
from datetime import datetime, timezone

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from orchestrator.agent.classifier import (
    DEGRADED_CONFIDENCE,
    ClassifierRegistry,
    IntentClassifier,
    ParsedDecision,
    ParseError,
    parse_decision,
)
from orchestrator.agent.enums import ActionType, InputSource
from orchestrator.agent.llm import AgentConfigSnapshot
from orchestrator.agent.schemas import AgentInput

from conftest import decision_json

CONFIG = AgentConfigSnapshot(
    org_id="org-1",
    llm_provider="OPENAI",
    llm_model="gpt-4o-mini",
    temperature=0.3,
    max_tokens=2000,
    timeout_seconds=5.0,
    auto_execute_threshold=0.85,
    require_approval_threshold=0.5,
)


def make_input(content: str = "Can we meet Thursday?") -> AgentInput:
    return AgentInput(
        source=InputSource.API,
        type="inquiry",
        raw_content=content,
        timestamp=datetime.now(timezone.utc),
        correlation_id="corr-1",
    )


def fake_factory(*responses: str):
    def factory(config):
        return FakeListChatModel(responses=list(responses))
    return factory


class SlowModel:
    """Chat model stand-in that takes longer than any test timeout."""

    def invoke(self, messages):
        time.sleep(1.0)
        return "{}"


class TestParseDecision:
    """Test tolerant parsing of LLM output."""

    def test_plain_json(self):
        parsed = parse_decision(decision_json(intent="SCHEDULE_MEETING", confidence=0.92))
        assert isinstance(parsed, ParsedDecision)
        assert parsed.decision.intent == "SCHEDULE_MEETING"
        assert parsed.decision.confidence == 0.92
        assert parsed.decision.actions[0].type == ActionType.CREATE_TASK

    def test_code_fence_stripped(self):
        parsed = parse_decision("```json\n" + decision_json() + "\n```")
        assert isinstance(parsed, ParsedDecision)

    def test_surrounding_prose_tolerated(self):
        parsed = parse_decision("Here is my analysis: " + decision_json() + " Hope that helps.")
        assert isinstance(parsed, ParsedDecision)

    def test_values_clamped(self):
        parsed = parse_decision(json.dumps({"intent": "INQUIRY", "confidence": 1.7, "priority": 9}))
        assert parsed.decision.confidence == 1.0
        assert parsed.decision.priority == 5

    def test_unknown_action_dropped_with_warning(self):
        raw = json.dumps({
            "intent": "INQUIRY",
            "confidence": 0.8,
            "actions": [{"type": "LAUNCH_ROCKET"}, {"type": "SEND_NOTIFICATION", "priority": 0}],
        })
        decision = parse_decision(raw).decision
        assert [a.type for a in decision.actions] == [ActionType.SEND_NOTIFICATION]
        assert decision.actions[0].priority == 1
        assert "Dropped unsupported action: 'LAUNCH_ROCKET'" in decision.warnings

    def test_degraded_flag_cannot_be_injected(self):
        raw = json.dumps({"intent": "INQUIRY", "confidence": 0.8, "degraded": True})
        assert parse_decision(raw).decision.degraded is False

    @pytest.mark.parametrize("raw", ["", "no json here", "{not valid json}", "[1, 2, 3]"])
    def test_unparsable(self, raw):
        parsed = parse_decision(raw)
        assert isinstance(parsed, ParseError)
        assert parsed.raw == raw

    def test_schema_mismatch(self):
        parsed = parse_decision(json.dumps({"intent": "INQUIRY", "alternatives": "not a list"}))
        assert isinstance(parsed, ParseError)


class TestIntentClassifier:
    """Test classification and degradation."""

    def test_classify(self):
        classifier = IntentClassifier(CONFIG, fake_factory(decision_json(intent="SCHEDULE_MEETING", confidence=0.9)))
        decision = classifier.classify(make_input())
        assert decision.intent == "SCHEDULE_MEETING"
        assert decision.confidence == 0.9
        assert decision.degraded is False

    def test_confirmation_action_forces_approval(self):
        actions = [{"type": "CREATE_EVENT", "priority": 3, "requiresConfirmation": True, "params": {}}]
        classifier = IntentClassifier(CONFIG, fake_factory(decision_json(actions=actions)))
        assert classifier.classify(make_input()).requires_approval is True

    def test_unparsable_response_degrades(self):
        classifier = IntentClassifier(CONFIG, fake_factory("I am not sure what you mean."))
        decision = classifier.classify(make_input())
        assert decision.intent == "UNKNOWN"
        assert decision.confidence == DEGRADED_CONFIDENCE
        assert decision.requires_approval is True
        assert decision.degraded is True
        assert decision.warnings[0].startswith("Unparsable LLM response")

    def test_provider_construction_failure_degrades(self):
        def broken_factory(config):
            raise RuntimeError("missing API key")

        decision = IntentClassifier(CONFIG, broken_factory).classify(make_input())
        assert decision.degraded is True
        assert "missing API key" in decision.warnings[0]

    def test_slow_call_times_out(self):
        """A call slower than the timeout is abandoned and degrades."""
        config = replace(CONFIG, timeout_seconds=0.05)
        started = time.monotonic()
        decision = IntentClassifier(config, lambda c: SlowModel()).classify(make_input())
        assert time.monotonic() - started < 0.9
        assert decision.degraded is True
        assert "timed out" in decision.warnings[0]

    def test_model_built_once(self):
        calls = []

        def factory(config):
            calls.append(config)
            return FakeListChatModel(responses=[decision_json()])

        classifier = IntentClassifier(CONFIG, factory)
        classifier.classify(make_input())
        classifier.classify(make_input())
        assert len(calls) == 1

    def test_messages_carry_prompt_and_content(self):
        config = replace(CONFIG, system_prompt="You triage dental clinic requests.", timezone="America/Chicago")
        messages = IntentClassifier(config, fake_factory()).build_messages(make_input("Toothache, need help now"))
        assert isinstance(messages[0], SystemMessage)
        assert messages[0].content.startswith("You triage dental clinic requests.")
        assert "America/Chicago" in messages[0].content
        assert isinstance(messages[1], HumanMessage)
        assert "Toothache, need help now" in messages[1].content


class TestClassifierRegistry:
    """Test the bounded classifier cache."""

    def test_cached_per_org_and_mode(self):
        registry = ClassifierRegistry(model_factory=fake_factory())
        first = registry.get(CONFIG)
        assert registry.get(CONFIG) is first
        assert registry.get(CONFIG, dry_run=True) is not first
        assert registry.get(replace(CONFIG, org_id="org-2")) is not first
        assert len(registry) == 3

    def test_lru_eviction(self):
        registry = ClassifierRegistry(model_factory=fake_factory(), max_size=2)
        a = registry.get(replace(CONFIG, org_id="a"))
        registry.get(replace(CONFIG, org_id="b"))
        registry.get(replace(CONFIG, org_id="a"))  # a is now most recent
        registry.get(replace(CONFIG, org_id="c"))
        assert len(registry) == 2
        assert registry.get(replace(CONFIG, org_id="a")) is a

    def test_ttl_expiry(self):
        now = [0.0]
        registry = ClassifierRegistry(model_factory=fake_factory(), ttl_seconds=10, clock=lambda: now[0])
        first = registry.get(CONFIG)
        now[0] = 9.0
        assert registry.get(CONFIG) is first
        now[0] = 10.0
        assert registry.get(CONFIG) is not first

    def test_config_change_rebuilds(self):
        registry = ClassifierRegistry(model_factory=fake_factory())
        first = registry.get(CONFIG)
        rebuilt = registry.get(replace(CONFIG, temperature=0.9))
        assert rebuilt is not first
        assert rebuilt.config.temperature == 0.9
        assert len(registry) == 1

    def test_invalidate_drops_both_modes(self):
        registry = ClassifierRegistry(model_factory=fake_factory())
        registry.get(CONFIG)
        registry.get(CONFIG, dry_run=True)
        registry.get(replace(CONFIG, org_id="org-2"))
        assert registry.invalidate("org-1") == 2
        assert len(registry) == 1
