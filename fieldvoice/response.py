"""
FIELDVOICE Response Stage
Turns a resolved intent into response text and speaks it.

Response text comes from the intent's own reply (cloud path) or from a
template keyed by action and entities (offline path). ``speak`` checks the
phrase cache by exact text first; on a miss it synthesizes through the
recovery engine and stores the audio before playback. When no synthesis
provider is viable the response is presented as text only.

Usage:
    stage = ResponseStage(recovery, ResponseConfig())
    await stage.prewarm(mode.current)
    result = await stage.speak('Creating job "Roof Repair"', mode.current)
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
import wave
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from fieldvoice.config import ResponseConfig
from fieldvoice.exceptions import MalformedProviderOutputError, UserCancelledError, VoicePipelineError
from fieldvoice.mode_controller import ModeSnapshot
from fieldvoice.recovery import ErrorRecoveryEngine
from fieldvoice.types import ActionOutcome, ActionType, CachedPhrase, Intent, ProviderRole

logger = logging.getLogger("FIELDVOICE.Response")


__all__ = [
    "PhraseCache",
    "ResponseStage",
    "SpeakResult",
    "AudioPlayer",
    "SYSTEM_PHRASES",
    "render_response",
]


# =============================================================================
# Response text
# =============================================================================

SYSTEM_PHRASES: Dict[str, str] = {
    "confirmation": "Done.",
    "repeat": "Sorry, I didn't catch that. Please say it again.",
    "clarification": "I'm not sure what you meant. Here are some things you can say.",
    "text_input": "Voice commands are unavailable right now. Please type your command.",
    "error": "Something went wrong. Please try again.",
    "cancelled": "Cancelled.",
}


class _Slots(dict):
    """format_map source that leaves unknown slots blank."""

    def __missing__(self, key: str) -> str:
        return ""


# (action) -> [(required entity keys, template)], first satisfied template wins
TEMPLATES: Dict[ActionType, List[tuple[tuple[str, ...], str]]] = {
    ActionType.CREATE_RECORD: [
        (("record_type", "title"), 'Creating {record_type} "{title}"'),
        (("title",), 'Creating "{title}"'),
        (("record_type",), "Creating a new {record_type}"),
        ((), "Creating a new record"),
    ],
    ActionType.ADD_ENTRY: [
        (("entry_type", "content"), "Adding {entry_type}: {content}"),
        (("entry_type",), "Adding {entry_type}"),
        ((), "Adding entry"),
    ],
    ActionType.NAVIGATE: [
        (("destination",), "Opening {destination}"),
        ((), "Opening"),
    ],
    ActionType.SET_ACTIVE_CONTEXT: [
        (("record_type", "record"), 'Switched to {record_type} "{record}"'),
        (("record",), 'Switched to "{record}"'),
        ((), "Switched"),
    ],
    ActionType.QUERY: [
        ((), "Looking that up"),
    ],
    ActionType.UNKNOWN: [
        ((), SYSTEM_PHRASES["clarification"]),
    ],
}


def render_template(intent: Intent) -> str:
    entities = intent.entities
    for required, template in TEMPLATES[intent.action]:
        if all(entities.get(key) for key in required):
            return template.format_map(_Slots(entities))
    return SYSTEM_PHRASES["confirmation"]


def render_response(intent: Intent, outcome: Optional[ActionOutcome] = None) -> str:
    """
    Choose the response text for a turn.

    Args:
        intent: Resolved intent
        outcome: Dispatch outcome, if the action was dispatched

    Returns:
        The intent's own reply when it has one, else the template text.
        A dispatched action that failed gets an apology with the detail.
    """
    if outcome is not None and outcome.dispatched and not outcome.success:
        detail = outcome.detail.strip()
        return f"Sorry, that didn't work. {detail}".strip() if detail else SYSTEM_PHRASES["error"]
    if intent.raw_response_text.strip():
        return intent.raw_response_text.strip()
    return render_template(intent)


# =============================================================================
# Phrase cache
# =============================================================================


class PhraseCache:
    """
    Bounded LRU of synthesized audio keyed by exact response text.

    Pinned entries (pre-warmed system phrases) count toward the size but are
    never evicted. Entries are immutable and replaced whole under the lock,
    so a reader sees either the old or the new entry.
    """

    def __init__(self, capacity: int = 200):
        self.capacity = capacity
        self._entries: "OrderedDict[str, CachedPhrase]" = OrderedDict()
        self._pinned: set[str] = set()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, text: str) -> Optional[CachedPhrase]:
        with self._lock:
            entry = self._entries.get(text)
            if entry is None:
                self.misses += 1
                return None
            self._entries.move_to_end(text)
            self.hits += 1
            return entry

    def put(self, text: str, audio: bytes, pinned: bool = False) -> CachedPhrase:
        entry = CachedPhrase(text_key=text, audio_payload=audio)
        with self._lock:
            self._entries[text] = entry
            self._entries.move_to_end(text)
            if pinned:
                self._pinned.add(text)
            self._evict()
        return entry

    def pin(self, text: str) -> bool:
        with self._lock:
            if text not in self._entries:
                return False
            self._pinned.add(text)
            return True

    def is_pinned(self, text: str) -> bool:
        return text in self._pinned

    def _evict(self) -> None:
        while len(self._entries) > self.capacity:
            victim = next((k for k in self._entries if k not in self._pinned), None)
            if victim is None:
                return
            del self._entries[victim]
            self.evictions += 1
            logger.debug(f"Evicted cached phrase ({len(victim)} chars)")

    def clear(self, include_pinned: bool = False) -> None:
        with self._lock:
            if include_pinned:
                self._entries.clear()
                self._pinned.clear()
                return
            for key in [k for k in self._entries if k not in self._pinned]:
                del self._entries[key]

    def __contains__(self, text: str) -> bool:
        return text in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> Dict[str, float]:
        return {
            "size": len(self._entries),
            "pinned": len(self._pinned),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_ratio": round(self.hit_ratio, 3),
        }


# =============================================================================
# Playback
# =============================================================================


def decode_audio(payload: bytes, default_sample_rate: int) -> tuple[np.ndarray, int]:
    """Decode a WAV payload, or treat anything else as raw 16-bit mono PCM."""
    if payload[:4] == b"RIFF":
        with wave.open(io.BytesIO(payload), "rb") as wav:
            sample_rate = wav.getframerate()
            frames = wav.readframes(wav.getnframes())
        return np.frombuffer(frames, dtype=np.int16), sample_rate
    usable = len(payload) - (len(payload) % 2)
    return np.frombuffer(payload[:usable], dtype=np.int16), default_sample_rate


def _sounddevice_play(audio: np.ndarray, sample_rate: int, device: Optional[str]) -> None:
    import sounddevice as sd

    sd.play(audio.astype(np.float32) / 32768.0, sample_rate, device=device)
    sd.wait()


class AudioPlayer:
    """Plays synthesized payloads on the output device, off the event loop."""

    def __init__(
        self,
        sample_rate: int = 22050,
        device: Optional[str] = None,
        play_fn: Optional[Callable[[np.ndarray, int, Optional[str]], None]] = None,
    ):
        self.sample_rate = sample_rate
        self.device = device
        self._play_fn = play_fn or _sounddevice_play

    async def play(self, payload: bytes) -> None:
        if not payload:
            return
        audio, sample_rate = decode_audio(payload, self.sample_rate)
        await asyncio.to_thread(self._play_fn, audio, sample_rate, self.device)


# =============================================================================
# Stage
# =============================================================================


@dataclass
class SpeakResult:
    """What ``speak`` did with one response text."""
    text: str
    audio: Optional[bytes] = None
    cached: bool = False
    text_only: bool = False
    provider: Optional[str] = None
    played: bool = False


class ResponseStage:
    """Phrase cache, synthesis via the recovery engine, and playback."""

    def __init__(
        self,
        recovery: ErrorRecoveryEngine,
        config: Optional[ResponseConfig] = None,
        cache: Optional[PhraseCache] = None,
        player: Optional[AudioPlayer] = None,
    ):
        self.recovery = recovery
        self.config = config or ResponseConfig()
        self.cache = cache or PhraseCache(self.config.cache_capacity)
        self.player = player
        if self.player is None and self.config.playback:
            self.player = AudioPlayer(
                sample_rate=self.config.playback_sample_rate,
                device=self.config.output_device,
            )

    async def _synthesize(self, text: str, mode: ModeSnapshot) -> tuple[bytes, str]:
        voice = self.config.voice

        async def attempt(provider) -> tuple[bytes, str]:
            audio = await provider.synthesize(text, voice=voice)
            if not audio:
                raise MalformedProviderOutputError(
                    "Synthesis returned no audio", role=ProviderRole.TTS, provider=provider.name
                )
            return audio, provider.name

        return await self.recovery.run(
            ProviderRole.TTS,
            mode.level.allowed_tiers(ProviderRole.TTS),
            attempt,
            timeout_sec=self.config.timeout_sec,
        )

    async def speak(self, text: str, mode: ModeSnapshot) -> SpeakResult:
        """Speak one response, degrading to text only when synthesis is unavailable."""
        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("Phrase cache hit")
            result = SpeakResult(text=text, audio=cached.audio_payload, cached=True)
        elif not mode.level.allowed_tiers(ProviderRole.TTS):
            logger.info(f"Synthesis not permitted at {mode.level.value}, text-only response")
            return SpeakResult(text=text, text_only=True)
        else:
            try:
                audio, provider = await self._synthesize(text, mode)
            except UserCancelledError:
                raise
            except VoicePipelineError as e:
                logger.warning(f"No synthesis available, text-only response: {e}")
                return SpeakResult(text=text, text_only=True)
            self.cache.put(text, audio)
            result = SpeakResult(text=text, audio=audio, provider=provider)

        result.played = await self._play(result.audio)
        return result

    async def _play(self, audio: Optional[bytes]) -> bool:
        if self.player is None or not audio:
            return False
        try:
            await self.player.play(audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Audio playback failed: {e}")
            return False
        return True

    async def prewarm(self, mode: ModeSnapshot, phrases: Optional[List[str]] = None) -> int:
        """Synthesize and pin the system phrases. Returns how many are cached."""
        phrases = list(SYSTEM_PHRASES.values()) if phrases is None else phrases
        if not mode.level.allowed_tiers(ProviderRole.TTS):
            logger.info("Skipping phrase pre-warm, synthesis not permitted")
            return 0

        warmed = 0
        for phrase in phrases:
            if phrase in self.cache:
                self.cache.pin(phrase)
                warmed += 1
                continue
            try:
                audio, _ = await self._synthesize(phrase, mode)
            except UserCancelledError:
                raise
            except VoicePipelineError as e:
                logger.warning(f"Pre-warm stopped: {e}")
                break
            self.cache.put(phrase, audio, pinned=True)
            warmed += 1

        logger.info(f"Pre-warmed {warmed}/{len(phrases)} system phrases")
        return warmed
