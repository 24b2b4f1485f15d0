"""
FIELDVOICE Local Providers
On-device STT (faster-whisper) and TTS (piper-tts).

Both models load lazily off the event loop on first use or health check.
The libraries come from the ``local`` extra; when they are missing or the
model cannot load, the provider reports unhealthy and the registry routes
around it.

Usage:
    stt = WhisperTranscriptionProvider(model_size="base.en", device="cpu")
    tts = PiperSynthesisProvider(model_path="voices/en_US-lessac-medium.onnx")
    registry.register_provider(ProviderRole.STT, stt, priority=10)
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
import wave
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import numpy as np

from fieldvoice.exceptions import ProviderTransientError
from fieldvoice.providers import TranscriptEvent
from fieldvoice.types import ProviderRole, ProviderTier

logger = logging.getLogger("FIELDVOICE.LocalProviders")


__all__ = [
    "WhisperTranscriptionProvider",
    "PiperSynthesisProvider",
    "logprob_to_confidence",
]


def logprob_to_confidence(avg_logprobs: list[float]) -> float:
    """Mean per-segment average log probability mapped to [0, 1]."""
    if not avg_logprobs:
        return 0.0
    mean = sum(avg_logprobs) / len(avg_logprobs)
    return max(0.0, min(1.0, math.exp(mean)))


class _LazyModel:
    """
    Loads a model once, in a worker thread, remembering a load failure.

    Turns do not retry a failed load; the periodic health check does, so a
    model that becomes loadable (a finished download, say) recovers without
    a restart.
    """

    def __init__(self, name: str):
        self.name = name
        self._model: Any = None
        self._error: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def load_error(self) -> Optional[str]:
        return self._error

    def _load(self) -> Any:
        raise NotImplementedError

    async def model(self, retry_failed: bool = False) -> Any:
        if self._model is not None:
            return self._model
        async with self._lock:
            if self._model is None and (self._error is None or retry_failed):
                try:
                    self._model = await asyncio.to_thread(self._load)
                    self._error = None
                    logger.info(f"{self.name} model loaded")
                except Exception as e:
                    self._error = str(e)
                    logger.error(f"{self.name} model failed to load: {e}")
        if self._model is None:
            raise ProviderTransientError(
                f"{self.name} model unavailable: {self._error}",
                role=self.role,
                provider=self.name,
            )
        return self._model

    async def health_check(self) -> bool:
        try:
            await self.model(retry_failed=True)
        except ProviderTransientError:
            return False
        return True


class WhisperTranscriptionProvider(_LazyModel):
    """faster-whisper STT. Emits a single final event per utterance."""

    role = ProviderRole.STT
    tier = ProviderTier.LOCAL

    def __init__(
        self,
        model_size: str = "base.en",
        device: str = "auto",
        compute_type: str = "int8",
        name: str = "whisper-local",
        beam_size: int = 5,
    ):
        super().__init__(name)
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.beam_size = beam_size

    def _load(self) -> Any:
        from faster_whisper import WhisperModel

        logger.info(f"Loading Whisper model: {self.model_size} ({self.device}, {self.compute_type})")
        return WhisperModel(self.model_size, device=self.device, compute_type=self.compute_type)

    def _run(self, model: Any, audio: np.ndarray, language: str) -> TranscriptEvent:
        segments, _info = model.transcribe(
            audio,
            language=language,
            beam_size=self.beam_size,
            vad_filter=True,
        )
        texts = []
        logprobs = []
        for segment in segments:
            texts.append(segment.text.strip())
            logprobs.append(segment.avg_logprob)
        return TranscriptEvent(
            text=" ".join(t for t in texts if t),
            confidence=logprob_to_confidence(logprobs),
            is_final=True,
        )

    async def transcribe(
        self,
        audio: AsyncIterator[bytes],
        *,
        sample_rate: int,
        language: str,
    ) -> AsyncIterator[TranscriptEvent]:
        model = await self.model()
        pcm = b"".join([chunk async for chunk in audio])
        samples = np.frombuffer(pcm[: len(pcm) - len(pcm) % 2], dtype=np.int16)
        samples = samples.astype(np.float32) / 32768.0
        if sample_rate != 16000 and samples.size:
            # Whisper expects 16 kHz; linear resample is adequate for speech
            target = int(samples.size * 16000 / sample_rate)
            samples = np.interp(
                np.linspace(0, samples.size - 1, target), np.arange(samples.size), samples
            ).astype(np.float32)
        yield await asyncio.to_thread(self._run, model, samples, language)


class PiperSynthesisProvider(_LazyModel):
    """piper-tts synthesis returning 16-bit PCM WAV bytes."""

    role = ProviderRole.TTS
    tier = ProviderTier.LOCAL

    def __init__(self, model_path: str, name: str = "piper-local"):
        super().__init__(name)
        self.model_path = Path(model_path) if model_path else None

    def _load(self) -> Any:
        if self.model_path is None or not self.model_path.exists():
            raise FileNotFoundError(f"Voice model not found at {self.model_path}")
        from piper import PiperVoice

        return PiperVoice.load(str(self.model_path))

    def _render(self, voice: Any, text: str) -> bytes:
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav_file:
            if hasattr(voice, "synthesize_wav"):
                voice.synthesize_wav(text, wav_file)
            else:
                voice.synthesize(text, wav_file)
        return buffer.getvalue()

    async def synthesize(self, text: str, *, voice: str = "default") -> bytes:
        model = await self.model()
        return await asyncio.to_thread(self._render, model, text)
