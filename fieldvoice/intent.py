"""
FIELDVOICE Intent Resolution Stage

Maps a finalized transcript plus application context to an Intent.

Two paths:
    - Cloud reasoning: when the turn's degradation level permits it, the
      transcript and context go to a reasoning provider through the recovery
      engine. The structured reply is validated as a whole; a malformed or
      schema-violating reply is rejected, never partially trusted.
    - Offline pattern matcher: an ordered table of (matcher, action,
      entity extractor) rows, first match wins, fixed confidence ceiling.
      No match resolves to Intent(UNKNOWN, confidence 0), which is a
      successful, deliberately inactionable result.

Resolution never mutates application state.

Usage:
    stage = IntentStage(recovery)
    intent = await stage.resolve("create job called Roof Repair", context, mode)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from fieldvoice.config import IntentConfig
from fieldvoice.exceptions import (
    InvalidReasoningOutputError,
    NoProviderAvailableError,
    UserCancelledError,
    VoicePipelineError,
)
from fieldvoice.mode_controller import ModeSnapshot
from fieldvoice.providers import ReasoningRequest
from fieldvoice.recovery import ErrorRecoveryEngine
from fieldvoice.types import (
    ActionType,
    ContextSnapshot,
    Intent,
    IntentSource,
    ProviderRole,
)

logger = logging.getLogger("FIELDVOICE.Intent")


__all__ = [
    "IntentStage",
    "IntentPattern",
    "OfflinePatternMatcher",
    "ReasoningReply",
    "DEFAULT_PATTERNS",
    "parse_reasoning_reply",
]


# =============================================================================
# Cloud reply schema
# =============================================================================


class ReasoningReply(BaseModel):
    """Structured reply expected from a cloud reasoning provider."""

    model_config = ConfigDict(extra="ignore", frozen=True, coerce_numbers_to_str=True)

    action: ActionType
    entities: Dict[str, str] = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    raw_response_text: str = Field(
        default="",
        validation_alias=AliasChoices("raw_response_text", "rawResponseText"),
    )

    @field_validator("action", mode="before")
    @classmethod
    def parse_action(cls, value: Any) -> ActionType:
        if isinstance(value, ActionType):
            return value
        if not isinstance(value, str):
            raise ValueError("action must be a string")
        return ActionType.parse(value)

    def to_intent(self) -> Intent:
        return Intent(
            action=self.action,
            entities=self.entities,
            confidence=self.confidence,
            source=IntentSource.CLOUD_REASONING,
            raw_response_text=self.raw_response_text,
        )


def parse_reasoning_reply(reply: Any, provider: Optional[str] = None) -> Intent:
    """Validate a raw provider reply into an Intent.

    Raises:
        InvalidReasoningOutputError: reply is not an object or violates the schema
    """
    if not isinstance(reply, dict):
        raise InvalidReasoningOutputError(
            f"Reasoning reply must be an object, got {type(reply).__name__}",
            role=ProviderRole.INTENT,
            provider=provider,
        )
    try:
        return ReasoningReply.model_validate(reply).to_intent()
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise InvalidReasoningOutputError(
            f"Reasoning reply failed validation: {fields}",
            role=ProviderRole.INTENT,
            provider=provider,
        ) from e


# =============================================================================
# Offline pattern matcher
# =============================================================================


def _clean(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.strip().rstrip(".,!?;:").strip().strip('"\'')


EntityExtractor = Callable[[re.Match, ContextSnapshot], Dict[str, str]]


def _groups(match: re.Match, context: ContextSnapshot) -> Dict[str, str]:
    """Default extractor: every non-empty named group, cleaned."""
    entities = {}
    for key, value in match.groupdict().items():
        cleaned = _clean(value)
        if cleaned:
            entities[key] = cleaned
    return entities


def _record_entities(match: re.Match, context: ContextSnapshot) -> Dict[str, str]:
    entities = _groups(match, context)
    if "record_type" in entities:
        entities["record_type"] = entities["record_type"].lower()
    return entities


def _entry_entities(match: re.Match, context: ContextSnapshot) -> Dict[str, str]:
    entities = _record_entities(match, context)
    if "entry_type" in entities:
        entities["entry_type"] = entities["entry_type"].lower()
    if context.active_record_id and "record_id" not in entities:
        entities["record_id"] = context.active_record_id
    return entities


def _destination_entities(match: re.Match, context: ContextSnapshot) -> Dict[str, str]:
    entities = _groups(match, context)
    if "destination" in entities:
        entities["destination"] = entities["destination"].lower()
    return entities


def _query_entities(match: re.Match, context: ContextSnapshot) -> Dict[str, str]:
    return {"question": _clean(match.string)}


@dataclass(frozen=True)
class IntentPattern:
    """One row of the offline table."""
    name: str
    regex: re.Pattern
    action: ActionType
    extract: EntityExtractor = _groups
    examples: tuple[str, ...] = ()

    @classmethod
    def compile(
        cls,
        name: str,
        pattern: str,
        action: ActionType,
        extract: EntityExtractor = _groups,
        examples: Sequence[str] = (),
    ) -> "IntentPattern":
        return cls(
            name=name,
            regex=re.compile(pattern, re.IGNORECASE),
            action=action,
            extract=extract,
            examples=tuple(examples),
        )


_RECORD_TYPES = r"job|task|ticket|project|inspection|report|record|work\s+order"
_ENTRY_TYPES = r"note|entry|comment|measurement|photo|reading"

DEFAULT_PATTERNS: List[IntentPattern] = [
    IntentPattern.compile(
        "create_record_named",
        rf"^(?:please\s+)?(?:create|make|start|add|new)\s+(?:a\s+|an\s+)?(?:new\s+)?"
        rf"(?P<record_type>{_RECORD_TYPES})\s+(?:called|named|titled|for)\s+(?P<title>.+)$",
        ActionType.CREATE_RECORD,
        _record_entities,
        ["create job called Roof Repair", "new task named Replace filters"],
    ),
    IntentPattern.compile(
        "create_record",
        rf"^(?:please\s+)?(?:create|make|start|new)\s+(?:a\s+|an\s+)?(?:new\s+)?"
        rf"(?P<record_type>{_RECORD_TYPES})$",
        ActionType.CREATE_RECORD,
        _record_entities,
        ["create a new inspection"],
    ),
    IntentPattern.compile(
        "add_entry",
        rf"^(?:please\s+)?(?:add|log|record|write)\s+(?:a\s+|an\s+)?(?P<entry_type>{_ENTRY_TYPES})"
        r"(?:\s+(?:saying|that\s+says|reading|of))?\s*[:,]?\s*(?P<content>.*)$",
        ActionType.ADD_ENTRY,
        _entry_entities,
        ["add note saying gutters need cleaning", "log a measurement of twelve feet"],
    ),
    IntentPattern.compile(
        "set_active_context",
        rf"^(?:switch\s+to|work\s+on|select|set\s+active)\s+(?:the\s+)?"
        rf"(?:(?P<record_type>{_RECORD_TYPES})\s+)?(?P<record>.+)$",
        ActionType.SET_ACTIVE_CONTEXT,
        _record_entities,
        ["switch to job Roof Repair", "work on the Main Street project"],
    ),
    IntentPattern.compile(
        "query",
        r"^(?:what|which|when|where|who|how\s+many|how\s+much|is|are|list|find|search\s+for)\b.*$",
        ActionType.QUERY,
        _query_entities,
        ["what jobs are due today", "how many open tickets"],
    ),
    IntentPattern.compile(
        "navigate",
        r"^(?:go\s+to|open|show(?:\s+me)?|navigate\s+to|take\s+me\s+to)\s+(?:the\s+|my\s+)?"
        r"(?P<destination>.+?)(?:\s+(?:page|screen|view|tab))?$",
        ActionType.NAVIGATE,
        _destination_entities,
        ["go to the schedule", "show me the dashboard"],
    ),
]


class OfflinePatternMatcher:
    """Ordered, first-match-wins transcript matcher.

    Every match reports the same fixed confidence; there is no ambiguity
    resolution beyond table order.
    """

    def __init__(
        self,
        patterns: Optional[Sequence[IntentPattern]] = None,
        confidence: float = 0.7,
    ):
        self.patterns = list(DEFAULT_PATTERNS if patterns is None else patterns)
        self.confidence = confidence

    def match(self, transcript: str, context: Optional[ContextSnapshot] = None) -> Intent:
        context = context or ContextSnapshot()
        text = " ".join(transcript.split())
        for pattern in self.patterns:
            match = pattern.regex.match(text)
            if match is None:
                continue
            entities = pattern.extract(match, context)
            logger.debug(f"Offline pattern {pattern.name} matched: {entities}")
            return Intent(
                action=pattern.action,
                entities=entities,
                confidence=self.confidence,
                source=IntentSource.OFFLINE_PATTERN,
            )
        return Intent.unknown()

    def matching_pattern(self, transcript: str) -> Optional[IntentPattern]:
        text = " ".join(transcript.split())
        for pattern in self.patterns:
            if pattern.regex.match(text):
                return pattern
        return None

    def suggestions(self, limit: int = 5) -> List[str]:
        """Example phrases, one per pattern first, for command suggestion lists."""
        firsts = [p.examples[0] for p in self.patterns if p.examples]
        rest = [e for p in self.patterns for e in p.examples[1:]]
        return (firsts + rest)[:limit]


# =============================================================================
# Stage
# =============================================================================


@dataclass
class IntentResolution:
    """Intent plus how it was reached, for telemetry."""
    intent: Intent
    provider: Optional[str] = None
    fallback_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class IntentStage:
    """Cloud reasoning with offline pattern fallback."""

    def __init__(
        self,
        recovery: ErrorRecoveryEngine,
        matcher: Optional[OfflinePatternMatcher] = None,
        config: Optional[IntentConfig] = None,
        language: str = "en",
    ):
        self.recovery = recovery
        self.config = config or IntentConfig()
        self.matcher = matcher or OfflinePatternMatcher(confidence=self.config.pattern_confidence)
        self.language = language

    async def resolve(
        self,
        transcript: str,
        context: ContextSnapshot,
        mode: ModeSnapshot,
    ) -> Intent:
        return (await self.resolve_detailed(transcript, context, mode)).intent

    async def resolve_detailed(
        self,
        transcript: str,
        context: ContextSnapshot,
        mode: ModeSnapshot,
    ) -> IntentResolution:
        """Resolve a transcript under the turn's degradation snapshot.

        UserCancelledError and task cancellation propagate; every other
        failure of the cloud path falls back to the offline matcher.
        """
        allowed = mode.level.allowed_tiers(ProviderRole.INTENT)
        registry = self.recovery.registry

        if not allowed:
            reason = f"intent reasoning not permitted at {mode.level.value}"
        elif not registry.ranked(ProviderRole.INTENT, allowed):
            reason = "no viable reasoning provider"
        else:
            request = ReasoningRequest(transcript=transcript, context=context, language=self.language)
            used: Dict[str, str] = {}

            async def attempt(provider) -> Intent:
                used["name"] = provider.name
                reply = await provider.reason(request)
                return parse_reasoning_reply(reply, provider=provider.name)

            try:
                intent = await self.recovery.run(
                    ProviderRole.INTENT,
                    allowed,
                    attempt,
                    timeout_sec=self.config.timeout_sec,
                )
                logger.debug(
                    f"Cloud intent {intent.action.value} ({intent.confidence:.2f}) "
                    f"from {used.get('name')}"
                )
                return IntentResolution(intent=intent, provider=used.get("name"))
            except UserCancelledError:
                raise
            except NoProviderAvailableError as e:
                reason = str(e)
            except VoicePipelineError as e:
                reason = f"{e.kind.value}: {e}"
            logger.warning(f"Cloud reasoning unavailable, using offline patterns: {reason}")
            return IntentResolution(
                intent=self.matcher.match(transcript, context),
                fallback_reason=reason,
                errors=[reason],
            )

        logger.debug(f"Offline intent resolution ({reason})")
        return IntentResolution(
            intent=self.matcher.match(transcript, context),
            fallback_reason=reason,
        )

    def suggestions(self, limit: int = 5) -> List[str]:
        return self.matcher.suggestions(limit)
