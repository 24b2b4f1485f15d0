"""
FIELDVOICE Shared Type Definitions

Data structures shared across the voice command pipeline: the provider and
degradation vocabulary, one spoken turn (Utterance), its resolved Intent,
and the terminal VoiceTurnResult record.

Types are organized by category:
    - Provider and degradation enums
    - Failure and recovery enums
    - Turn data (Utterance, Intent, ActionOutcome, VoiceTurnResult)
    - Collaborator protocols (action executor, context provider)

Usage:
    from fieldvoice.types import DegradationLevel, Intent, ActionType
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Protocol, TypeAlias, runtime_checkable

Entities: TypeAlias = Mapping[str, str]


# =============================================================================
# Provider and Degradation Types
# =============================================================================

class ProviderRole(Enum):
    """Capability role a provider fills."""
    STT = "stt"
    INTENT = "intent"
    TTS = "tts"


class ProviderTier(Enum):
    """Where a provider runs."""
    NETWORK = "network"
    LOCAL = "local"


class DegradationLevel(Enum):
    """Ceiling on which provider tiers may be used.

    Ordered from least to most restricted; each level's restrictions are a
    strict superset of the previous one.
    """
    FULL = "full"
    PARTIAL = "partial"
    BASIC = "basic"
    DISABLED = "disabled"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def is_worse_than(self, other: DegradationLevel) -> bool:
        return self.rank > other.rank

    def allowed_tiers(self, role: ProviderRole) -> frozenset[ProviderTier]:
        """Provider tiers this level permits for a role."""
        return _ALLOWED_TIERS[self][role]


_LEVEL_ORDER = [
    DegradationLevel.FULL,
    DegradationLevel.PARTIAL,
    DegradationLevel.BASIC,
    DegradationLevel.DISABLED,
]

_BOTH = frozenset({ProviderTier.NETWORK, ProviderTier.LOCAL})
_LOCAL = frozenset({ProviderTier.LOCAL})
_NONE: frozenset[ProviderTier] = frozenset()

_ALLOWED_TIERS: dict[DegradationLevel, dict[ProviderRole, frozenset[ProviderTier]]] = {
    DegradationLevel.FULL: {
        ProviderRole.STT: _BOTH,
        ProviderRole.INTENT: _BOTH,
        ProviderRole.TTS: _BOTH,
    },
    DegradationLevel.PARTIAL: {
        ProviderRole.STT: _BOTH,
        ProviderRole.INTENT: _LOCAL,
        ProviderRole.TTS: _LOCAL,
    },
    DegradationLevel.BASIC: {
        ProviderRole.STT: _LOCAL,
        ProviderRole.INTENT: _LOCAL,
        ProviderRole.TTS: _LOCAL,
    },
    DegradationLevel.DISABLED: {
        ProviderRole.STT: _NONE,
        ProviderRole.INTENT: _NONE,
        ProviderRole.TTS: _NONE,
    },
}


# =============================================================================
# Failure and Recovery Types
# =============================================================================

class FailureKind(Enum):
    """Terminal failure reasons surfaced to the orchestrator."""
    DEVICE_UNAVAILABLE = "device_unavailable"
    LOW_CONFIDENCE = "low_confidence"
    NO_PROVIDER_AVAILABLE = "no_provider_available"
    INVALID_REASONING_OUTPUT = "invalid_reasoning_output"
    MALFORMED_PROVIDER_OUTPUT = "malformed_provider_output"
    USER_CANCELLED = "user_cancelled"
    PROVIDER_TRANSIENT = "provider_transient"


class RecoveryAction(Enum):
    """User-facing recovery the orchestrator chooses for a failed turn."""
    NONE = "none"
    REPROMPT = "reprompt"
    TEXT_INPUT = "text_input"
    SUGGEST_COMMANDS = "suggest_commands"


class RecognitionState(Enum):
    """Per-utterance recognition state machine."""
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecognitionState.FINALIZED, RecognitionState.FAILED)


# =============================================================================
# Turn Data
# =============================================================================

@dataclass(frozen=True)
class TranscriptSegment:
    """One transcript reading (interim or final)."""
    text: str
    confidence: float
    received_at: float = field(default_factory=time.monotonic)


class Utterance:
    """One spoken turn, from start-of-voice to end-of-speech.

    The raw audio buffer is owned by the turn and released once the
    response has been dispatched or the turn aborted. Interim transcripts
    are append-only and kept in non-decreasing time order; the final
    transcript is set at most once.
    """

    def __init__(
        self,
        raw_audio: Optional[bytes] = None,
        sample_rate: int = 16000,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
        utterance_id: Optional[str] = None,
    ):
        self.utterance_id = utterance_id or f"utt-{time.monotonic_ns():x}"
        self.sample_rate = sample_rate
        self.started_at = started_at or datetime.now()
        self.ended_at = ended_at
        self._raw_audio = raw_audio
        self._interim: list[TranscriptSegment] = []
        self._final: Optional[TranscriptSegment] = None

    @property
    def raw_audio(self) -> Optional[bytes]:
        return self._raw_audio

    @property
    def is_released(self) -> bool:
        return self._raw_audio is None

    @property
    def interim_transcripts(self) -> tuple[TranscriptSegment, ...]:
        return tuple(self._interim)

    @property
    def final_transcript(self) -> Optional[TranscriptSegment]:
        return self._final

    def add_interim(self, text: str, confidence: float) -> TranscriptSegment:
        """Append an interim reading, clamping its timestamp to stay ordered."""
        now = time.monotonic()
        if self._interim and now < self._interim[-1].received_at:
            now = self._interim[-1].received_at
        segment = TranscriptSegment(text=text, confidence=confidence, received_at=now)
        self._interim.append(segment)
        return segment

    def set_final(self, text: str, confidence: float) -> TranscriptSegment:
        if self._final is not None:
            raise ValueError(f"Final transcript already set for {self.utterance_id}")
        now = time.monotonic()
        if self._interim and now < self._interim[-1].received_at:
            now = self._interim[-1].received_at
        self._final = TranscriptSegment(text=text, confidence=confidence, received_at=now)
        return self._final

    def finish(self) -> None:
        if self.ended_at is None:
            self.ended_at = datetime.now()

    def release(self) -> None:
        """Drop the buffered audio. Safe to call more than once."""
        self._raw_audio = None

    @property
    def duration_sec(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    def __repr__(self) -> str:
        final = self._final.text if self._final else None
        return f"Utterance(id={self.utterance_id!r}, final={final!r}, interim={len(self._interim)})"


class ActionType(Enum):
    """Closed set of actions an intent can request."""
    NAVIGATE = "navigate"
    CREATE_RECORD = "create_record"
    ADD_ENTRY = "add_entry"
    SET_ACTIVE_CONTEXT = "set_active_context"
    QUERY = "query"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "ActionType":
        """Accept either the value ("create_record") or the name ("CreateRecord")."""
        normalized = value.strip()
        for member in cls:
            if normalized == member.value:
                return member
        squashed = normalized.replace("_", "").lower()
        for member in cls:
            if member.value.replace("_", "") == squashed:
                return member
        raise ValueError(f"Unknown action: {value!r}")


class IntentSource(Enum):
    """Which path produced an intent."""
    CLOUD_REASONING = "cloud_reasoning"
    OFFLINE_PATTERN = "offline_pattern"


@dataclass(frozen=True)
class Intent:
    """Resolved meaning of a finalized utterance. Immutable."""
    action: ActionType
    entities: Entities = field(default_factory=dict)
    confidence: float = 0.0
    source: IntentSource = IntentSource.OFFLINE_PATTERN
    raw_response_text: str = ""

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        object.__setattr__(self, "entities", MappingProxyType(dict(self.entities)))

    @property
    def is_actionable(self) -> bool:
        return self.action is not ActionType.UNKNOWN

    @classmethod
    def unknown(cls, source: IntentSource = IntentSource.OFFLINE_PATTERN) -> "Intent":
        return cls(action=ActionType.UNKNOWN, confidence=0.0, source=source)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "entities": dict(self.entities),
            "confidence": self.confidence,
            "source": self.source.value,
            "raw_response_text": self.raw_response_text,
        }


@dataclass(frozen=True)
class ContextSnapshot:
    """Application context at the moment of intent resolution."""
    active_record_id: Optional[str] = None
    current_view: Optional[str] = None
    recent_action_history: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_record_id": self.active_record_id,
            "current_view": self.current_view,
            "recent_action_history": list(self.recent_action_history),
        }


@dataclass(frozen=True)
class ActionOutcome:
    """Result of handing an intent to the action executor."""
    success: bool
    detail: str = ""
    dispatched: bool = True

    @classmethod
    def clarification(cls) -> "ActionOutcome":
        return cls(success=False, detail="clarification requested", dispatched=False)


@dataclass
class VoiceTurnResult:
    """Terminal record of one pipeline run, handed to telemetry sinks."""
    utterance: Optional[Utterance]
    intent: Optional[Intent]
    action_outcome: Optional[ActionOutcome]
    spoken_response: str
    degradation_level_at_run: DegradationLevel
    failure: Optional[FailureKind] = None
    recovery: RecoveryAction = RecoveryAction.NONE
    suggestions: tuple[str, ...] = ()
    text_only: bool = False
    sequence: int = 0
    stage_latency_ms: dict[str, float] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    @property
    def transcript(self) -> str:
        if self.utterance is None or self.utterance.final_transcript is None:
            return ""
        return self.utterance.final_transcript.text

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "transcript": self.transcript,
            "intent": self.intent.to_dict() if self.intent else None,
            "action_success": self.action_outcome.success if self.action_outcome else None,
            "action_detail": self.action_outcome.detail if self.action_outcome else None,
            "spoken_response": self.spoken_response,
            "degradation_level": self.degradation_level_at_run.value,
            "failure": self.failure.value if self.failure else None,
            "recovery": self.recovery.value,
            "text_only": self.text_only,
            "stage_latency_ms": dict(self.stage_latency_ms),
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(frozen=True)
class CachedPhrase:
    """Synthesized audio for one exact response text."""
    text_key: str
    audio_payload: bytes
    created_at: datetime = field(default_factory=datetime.now)


# =============================================================================
# Collaborator Protocols
# =============================================================================

@runtime_checkable
class ActionExecutor(Protocol):
    """Executes an intent's action inside the host application."""

    async def execute(
        self,
        action: ActionType,
        entities: Entities,
        context: ContextSnapshot,
    ) -> ActionOutcome:
        ...


@runtime_checkable
class ContextProvider(Protocol):
    """Supplies a read-only context snapshot on demand."""

    def snapshot(self) -> ContextSnapshot:
        ...
