"""Intent classification through an external LLM.

``IntentClassifier.classify`` never raises. A failed call, a timeout or an
unparsable response yields a degraded UNKNOWN decision with a warning, so the
pipeline can still record the task.
"""
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import pydantic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from orchestrator.agent.enums import ActionType
from orchestrator.agent.llm import AgentConfigSnapshot, build_chat_model
from orchestrator.agent.schemas import AgentDecisionResult, AgentInput
from orchestrator.errors import ClassificationError

logger = logging.getLogger(__name__)

DEGRADED_CONFIDENCE = 0.3

# Shared pool so a timed-out call does not block the request thread on exit
_LLM_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="llm-call")

DEFAULT_SYSTEM_PROMPT = """You are the orchestration agent for an operations team.
Each message you receive is one inbound request (email, SMS, form, webhook, API call or worker report).
Decide what the request is about, how confident you are, how urgent it is, and which actions the
system should take.

Urgency scale: 5 critical (emergency, urgent, ASAP, production issue), 4 high (important, deadline,
blocking), 3 normal business request, 2 low (general information), 1 minimal (newsletters, FYI).

Available action types: ASSIGN_PIPELINE, CREATE_TASK, CREATE_EVENT, UPDATE_EVENT, CANCEL_EVENT,
SEND_NOTIFICATION, TRIGGER_AUTOMATION, ESCALATE, NO_ACTION.
Mark an action requiresConfirmation when it changes someone's calendar or contacts an external party
and the request is ambiguous."""

RESPONSE_FORMAT = """Respond with ONLY a JSON object of this shape:
{
  "intent": "SCHEDULE_MEETING | RESCHEDULE_MEETING | CANCEL_MEETING | CHECK_AVAILABILITY | CREATE_TASK | UPDATE_TASK | INQUIRY | REMINDER | UNKNOWN",
  "confidence": 0.0,
  "reasoning": "one or two sentences",
  "requiresApproval": false,
  "priority": 3,
  "actions": [{"type": "CREATE_TASK", "priority": 3, "requiresConfirmation": false, "params": {}, "delayMs": null}],
  "warnings": [],
  "alternatives": [{"intent": "INQUIRY", "confidence": 0.2}]
}"""


@dataclass(frozen=True)
class ParsedDecision:
    decision: AgentDecisionResult


@dataclass(frozen=True)
class ParseError:
    raw: str
    reason: str


_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.S | re.I)


def parse_decision(raw: str) -> ParsedDecision | ParseError:
    """Parse an LLM response into a decision without raising.

    Markdown code fences and text around the JSON object are tolerated.
    Actions with unknown types are dropped and reported as warnings.
    """
    text = (raw or "").strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    if not text.startswith("{"):
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return ParseError(raw=raw, reason="No JSON object in response")
        text = text[start:end + 1]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseError(raw=raw, reason=f"Invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        return ParseError(raw=raw, reason="Response is not a JSON object")

    warnings = [str(w) for w in data.get("warnings") or []]
    known_actions = []
    for action in data.get("actions") or []:
        action_type = action.get("type") if isinstance(action, dict) else None
        if action_type in ActionType.__members__:
            known_actions.append(action)
        else:
            warnings.append(f"Dropped unsupported action: {action_type!r}")
    data["actions"] = known_actions
    data["warnings"] = warnings
    data.pop("degraded", None)

    try:
        decision = AgentDecisionResult.model_validate(data)
    except pydantic.ValidationError as e:
        return ParseError(raw=raw, reason=f"Schema mismatch: {e.error_count()} error(s)")
    return ParsedDecision(decision=decision)


def degraded_decision(reason: str, priority: int = 3) -> AgentDecisionResult:
    """Low-confidence UNKNOWN decision used when classification fails."""
    return AgentDecisionResult(
        intent="UNKNOWN",
        confidence=DEGRADED_CONFIDENCE,
        reasoning="Classification unavailable; recorded for manual review.",
        requires_approval=True,
        priority=priority,
        actions=[],
        warnings=[reason],
        degraded=True,
    )


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


class IntentClassifier:
    """Classifies one AgentInput with an organization's configuration.

    The chat model is built lazily so a misconfigured provider degrades the
    first classification instead of failing construction.
    """

    def __init__(
        self,
        config: AgentConfigSnapshot,
        model_factory: Callable[[AgentConfigSnapshot], BaseChatModel] = build_chat_model,
        dry_run: bool = False,
    ):
        self.config = config
        self.dry_run = dry_run
        self._model_factory = model_factory
        self._model: BaseChatModel | None = None
        self._model_lock = threading.Lock()

    def _get_model(self) -> BaseChatModel:
        with self._model_lock:
            if self._model is None:
                self._model = self._model_factory(self.config)
            return self._model

    def build_messages(self, agent_input: AgentInput) -> list:
        system = (self.config.system_prompt or DEFAULT_SYSTEM_PROMPT).strip()
        system += (
            f"\n\nCurrent time: {datetime.now(timezone.utc).isoformat()} "
            f"(organization timezone {self.config.timezone})\n\n{RESPONSE_FORMAT}"
        )
        details = {
            "source": agent_input.source.value,
            "type": agent_input.type,
            "metadata": agent_input.metadata.model_dump(by_alias=True, exclude_none=True),
            "structuredData": agent_input.structured_data,
        }
        human = (
            f"Request content:\n{agent_input.raw_content}\n\n"
            f"Request details:\n{json.dumps(details, default=str, indent=2)}"
        )
        return [SystemMessage(content=system), HumanMessage(content=human)]

    def _complete(self, messages: list) -> str:
        """Call the model with a bounded wait.

        Raises:
            ClassificationError: On timeout, provider failure or empty output.
        """
        try:
            model = self._get_model()
            future = _LLM_EXECUTOR.submit(model.invoke, messages)
        except Exception as e:
            raise ClassificationError(f"LLM client unavailable: {e}") from e

        try:
            response = future.result(timeout=self.config.timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            raise ClassificationError(f"LLM call timed out after {self.config.timeout_seconds}s")
        except Exception as e:
            raise ClassificationError(f"LLM call failed: {e}") from e

        text = _message_text(getattr(response, "content", response)).strip()
        if not text:
            raise ClassificationError("LLM returned an empty response")
        return text

    def classify(self, agent_input: AgentInput) -> AgentDecisionResult:
        """Classify an input; returns a degraded decision instead of raising."""
        started = time.monotonic()
        try:
            raw = self._complete(self.build_messages(agent_input))
        except ClassificationError as e:
            logger.warning(
                "Classification degraded org=%s correlation_id=%s: %s",
                self.config.org_id, agent_input.correlation_id, e,
            )
            return degraded_decision(str(e))

        parsed = parse_decision(raw)
        if isinstance(parsed, ParseError):
            logger.warning(
                "Unparsable classifier response org=%s correlation_id=%s: %s",
                self.config.org_id, agent_input.correlation_id, parsed.reason,
            )
            return degraded_decision(f"Unparsable LLM response: {parsed.reason}")

        decision = parsed.decision
        if any(action.requires_confirmation for action in decision.actions):
            decision.requires_approval = True

        logger.info(
            "Classified org=%s correlation_id=%s intent=%s confidence=%.2f elapsed_ms=%d",
            self.config.org_id, agent_input.correlation_id, decision.intent,
            decision.confidence, (time.monotonic() - started) * 1000,
        )
        return decision


class ClassifierRegistry:
    """Bounded cache of classifiers keyed by ``(org_id, dry_run)``.

    Entries are evicted least-recently-used beyond ``max_size``, expire after
    ``ttl_seconds``, and are rebuilt when the organization's configuration
    fingerprint changes.
    """

    def __init__(
        self,
        model_factory: Callable[[AgentConfigSnapshot], BaseChatModel] = build_chat_model,
        max_size: int = 64,
        ttl_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model_factory = model_factory
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict[tuple[str, bool], tuple[IntentClassifier, str, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, config: AgentConfigSnapshot, dry_run: bool = False) -> IntentClassifier:
        key = (config.org_id, dry_run)
        fingerprint = config.fingerprint()
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                classifier, cached_fingerprint, created_at = entry
                if cached_fingerprint == fingerprint and now - created_at < self.ttl_seconds:
                    self._entries.move_to_end(key)
                    return classifier
                del self._entries[key]

            classifier = IntentClassifier(config, self.model_factory, dry_run=dry_run)
            self._entries[key] = (classifier, fingerprint, now)
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted classifier for org=%s dry_run=%s", *evicted)
            return classifier

    def invalidate(self, org_id: str) -> int:
        """Drop both cached modes for an organization. Returns entries removed."""
        with self._lock:
            removed = 0
            for dry_run in (False, True):
                if self._entries.pop((org_id, dry_run), None) is not None:
                    removed += 1
            return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
