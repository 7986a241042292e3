"""Tests for provider chat model construction."""
from dataclasses import replace

import pytest
from langchain_anthropic import ChatAnthropic
from langchain_openai import ChatOpenAI

from orchestrator.agent.llm import AgentConfigSnapshot, build_chat_model

CONFIG = AgentConfigSnapshot(
    org_id="org-1",
    llm_provider="OPENAI",
    llm_model="gpt-4o-mini",
    temperature=0.3,
    max_tokens=2000,
    timeout_seconds=30.0,
    auto_execute_threshold=0.85,
    require_approval_threshold=0.5,
)


class TestBuildChatModel:
    """Test provider selection."""

    def test_openai(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        model = build_chat_model(CONFIG)
        assert isinstance(model, ChatOpenAI)
        assert model.model_name == "gpt-4o-mini"
        assert model.max_retries == 0

    def test_claude(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        model = build_chat_model(replace(CONFIG, llm_provider="claude", llm_model="claude-3-5-haiku-latest"))
        assert isinstance(model, ChatAnthropic)
        assert model.model == "claude-3-5-haiku-latest"

    def test_unsupported_provider(self):
        with pytest.raises(ValueError):
            build_chat_model(replace(CONFIG, llm_provider="MISTRAL"))


class TestFingerprint:
    """Test configuration fingerprints."""

    def test_stable(self):
        assert CONFIG.fingerprint() == replace(CONFIG).fingerprint()

    def test_any_field_changes_it(self):
        assert CONFIG.fingerprint() != replace(CONFIG, system_prompt="Be brief.").fingerprint()
        assert CONFIG.fingerprint() != replace(CONFIG, auto_execute_threshold=0.9).fingerprint()
