"""
FIELDVOICE Recognition Stage

Drives speech-to-text for one utterance:

    IDLE -> LISTENING -> TRANSCRIBING -> FINALIZED | FAILED

LISTENING while the utterance audio is being streamed to the provider
(interim transcripts arrive here), TRANSCRIBING once the last chunk has
been sent and the final transcript is pending. Exactly one terminal event
is produced per utterance, after every interim event.

Interim transcripts are UI-only feedback; only the final transcript is
authoritative, and only when its confidence clears the floor.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from fieldvoice.config import RecognitionConfig
from fieldvoice.exceptions import (
    LowConfidenceError,
    MalformedProviderOutputError,
    NoProviderAvailableError,
    UserCancelledError,
    VoicePipelineError,
)
from fieldvoice.mode_controller import ModeSnapshot
from fieldvoice.providers import TranscriptEvent
from fieldvoice.recovery import ErrorRecoveryEngine
from fieldvoice.types import (
    DegradationLevel,
    FailureKind,
    ProviderRole,
    RecognitionState,
    TranscriptSegment,
    Utterance,
)

logger = logging.getLogger("FIELDVOICE.Recognition")


__all__ = [
    "RecognitionStage",
    "RecognitionResult",
    "normalize_transcript",
    "FILLER_WORDS",
]


FILLER_WORDS = {"um", "uh", "erm", "hmm", "like", "basically", "actually"}
FILLER_PHRASES = ("you know", "okay so", "alright so")


def normalize_transcript(text: str) -> str:
    """
    Clean a raw transcript before intent resolution.

    Collapses whitespace and drops filler words common in speech. Casing of
    the remaining words is preserved since entity values are taken from it.
    """
    if not text:
        return ""

    result = " ".join(text.split())
    for phrase in FILLER_PHRASES:
        result = re.sub(rf"\b{phrase}\b[,]?\s*", "", result, flags=re.IGNORECASE)

    words = [
        word for word in result.split()
        if word.lower().strip(",.") not in FILLER_WORDS
    ]
    return " ".join(words).strip()


@dataclass
class RecognitionResult:
    """Terminal event of one utterance's recognition."""
    utterance: Utterance
    state: RecognitionState
    transcript: Optional[TranscriptSegment] = None
    failure: Optional[FailureKind] = None
    error: Optional[VoicePipelineError] = None
    provider: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.state is RecognitionState.FINALIZED


InterimListener = Callable[[Utterance, TranscriptSegment], None]
StateListener = Callable[[Utterance, RecognitionState], None]


class RecognitionStage:
    """Speech-to-text for one utterance at a time, via the recovery engine."""

    def __init__(
        self,
        recovery: ErrorRecoveryEngine,
        config: Optional[RecognitionConfig] = None,
        language: str = "en",
    ):
        self.recovery = recovery
        self.config = config or RecognitionConfig()
        self.language = language
        self._interim_listeners: List[InterimListener] = []
        self._state_listeners: List[StateListener] = []
        self._terminal_listeners: List[Callable[[RecognitionResult], None]] = []

    def on_interim(self, listener: InterimListener) -> None:
        """Subscribe to live interim transcripts (non-authoritative)."""
        self._interim_listeners.append(listener)

    def on_state(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_terminal(self, listener: Callable[[RecognitionResult], None]) -> None:
        self._terminal_listeners.append(listener)

    def _emit(self, listeners: list, *args) -> None:
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.warning(f"Recognition listener error: {e}")

    def _chunks(self, utterance: Utterance) -> List[bytes]:
        audio = utterance.raw_audio or b""
        bytes_per_chunk = max(2, int(utterance.sample_rate * 2 * self.config.chunk_ms / 1000))
        return [audio[i:i + bytes_per_chunk] for i in range(0, len(audio), bytes_per_chunk)]

    async def recognize(self, utterance: Utterance, mode: ModeSnapshot) -> RecognitionResult:
        """Transcribe one utterance under the turn's degradation snapshot.

        Never raises for pipeline failures; the terminal state and
        FailureKind are in the returned result. Task cancellation
        (user stop) also ends in FAILED(USER_CANCELLED) before propagating.
        """
        state = {"value": RecognitionState.IDLE}

        def set_state(new_state: RecognitionState) -> None:
            if state["value"] is new_state or state["value"].is_terminal:
                return
            state["value"] = new_state
            self._emit(self._state_listeners, utterance, new_state)

        chunks = self._chunks(utterance)

        async def feed() -> AsyncIterator[bytes]:
            set_state(RecognitionState.LISTENING)
            for chunk in chunks:
                yield chunk
                await asyncio.sleep(0)
            set_state(RecognitionState.TRANSCRIBING)

        async def attempt(provider) -> tuple[TranscriptEvent, str]:
            final: Optional[TranscriptEvent] = None
            async for event in provider.transcribe(
                feed(), sample_rate=utterance.sample_rate, language=self.language
            ):
                if final is not None:
                    continue
                if event.is_final:
                    final = event
                    continue
                segment = utterance.add_interim(event.text, event.confidence)
                self._emit(self._interim_listeners, utterance, segment)
            if final is None:
                raise MalformedProviderOutputError(
                    "Transcription stream ended without a final transcript",
                    role=ProviderRole.STT,
                    provider=provider.name,
                )
            return final, provider.name

        result: Optional[RecognitionResult] = None
        try:
            if mode.level is DegradationLevel.DISABLED:
                raise NoProviderAvailableError(
                    "Recognition disabled at current degradation level",
                    role=ProviderRole.STT,
                )

            set_state(RecognitionState.LISTENING)
            final, provider_name = await self.recovery.run(
                ProviderRole.STT,
                mode.level.allowed_tiers(ProviderRole.STT),
                attempt,
                timeout_sec=self.config.timeout_sec,
            )

            if final.confidence < self.config.confidence_floor:
                raise LowConfidenceError(
                    f"Transcript confidence {final.confidence:.2f} below floor",
                    confidence=final.confidence,
                    floor=self.config.confidence_floor,
                    provider=provider_name,
                )

            text = final.text.strip()
            if self.config.normalize_transcript:
                text = normalize_transcript(text)
            segment = utterance.set_final(text, final.confidence)
            logger.debug(f"Final transcript ({final.confidence:.2f}, {provider_name}): {text}")
            result = RecognitionResult(
                utterance=utterance,
                state=RecognitionState.FINALIZED,
                transcript=segment,
                provider=provider_name,
            )
        except asyncio.CancelledError:
            result = self._failed(
                utterance, UserCancelledError("Recognition cancelled by user", role=ProviderRole.STT)
            )
            raise
        except VoicePipelineError as e:
            result = self._failed(utterance, e)
        finally:
            if result is None:
                result = self._failed(
                    utterance,
                    VoicePipelineError("Recognition aborted", role=ProviderRole.STT),
                )
            state["value"] = result.state
            utterance.finish()
            self._emit(self._state_listeners, utterance, result.state)
            self._emit(self._terminal_listeners, result)

        return result

    def _failed(self, utterance: Utterance, error: VoicePipelineError) -> RecognitionResult:
        log = logger.warning if error.kind is FailureKind.NO_PROVIDER_AVAILABLE else logger.info
        log(f"Recognition failed for {utterance.utterance_id}: {error.kind.value}: {error}")
        return RecognitionResult(
            utterance=utterance,
            state=RecognitionState.FAILED,
            failure=error.kind,
            error=error,
        )
