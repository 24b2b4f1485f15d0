"""
FIELDVOICE Audio Capture & Conditioning

Acquires the microphone, conditions the signal for speech recognition and
segments the continuous stream into utterances.

Conditioning chain (applied per frame, filter state carried across frames):
    1. high-pass (removes sub-80Hz rumble)
    2. band-pass limited to the speech range
    3. dynamic-range compression
    4. noise gate

Segmentation: an utterance starts on the first frame above the noise-gate
threshold (with a short pre-roll) and ends after ``silence_timeout_ms`` below
it, on ``max_utterance_sec``, or when the caller issues ``end_utterance()``.

The input device is a single-owner resource. ``session()`` scopes its
ownership; ``stop_capture()`` releases it and is safe to call repeatedly.

Usage:
    capture = AudioCapture(config.audio)
    async with capture.session():
        async for utterance in capture.detect_segment_boundaries():
            await pipeline.process_utterance(utterance)
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Deque, List, Optional

import numpy as np
from scipy import signal

from fieldvoice.config import AudioConfig
from fieldvoice.exceptions import DeviceUnavailableError
from fieldvoice.types import Utterance

logger = logging.getLogger("FIELDVOICE.AudioCapture")


__all__ = [
    "AudioConditioner",
    "SegmentDetector",
    "AudioCapture",
    "CaptureHandle",
    "rms_dbfs",
]

# Floor for silent frames, keeps log10 finite
SILENCE_DBFS = -120.0


def rms_dbfs(samples: np.ndarray) -> float:
    """RMS level of float samples in [-1, 1], in dBFS."""
    if samples.size == 0:
        return SILENCE_DBFS
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    if rms <= 0.0:
        return SILENCE_DBFS
    return max(SILENCE_DBFS, 20.0 * np.log10(rms))


# =============================================================================
# Conditioning
# =============================================================================


class AudioConditioner:
    """
    Voice-optimizing filter chain for 16-bit mono PCM.

    Stateful: filter memory carries over between consecutive frames, so the
    same instance must see frames in order. ``reset()`` clears it.
    """

    def __init__(self, config: Optional[AudioConfig] = None):
        self.config = config or AudioConfig()
        fs = self.config.sample_rate
        self._highpass = signal.butter(
            2, self.config.highpass_hz, btype="highpass", fs=fs, output="sos"
        )
        self._bandpass = signal.butter(
            2,
            [self.config.band_low_hz, self.config.band_high_hz],
            btype="bandpass",
            fs=fs,
            output="sos",
        )
        self.reset()

    def reset(self) -> None:
        self._hp_state = np.zeros((self._highpass.shape[0], 2))
        self._bp_state = np.zeros((self._bandpass.shape[0], 2))

    def _compress(self, samples: np.ndarray, level_db: float) -> np.ndarray:
        threshold = self.config.compressor_threshold_db
        if level_db <= threshold:
            return samples
        target_db = threshold + (level_db - threshold) / self.config.compressor_ratio
        return samples * (10.0 ** ((target_db - level_db) / 20.0))

    def process(self, frame: np.ndarray) -> tuple[np.ndarray, float]:
        """Condition one frame.

        Args:
            frame: int16 samples (mono)

        Returns:
            (conditioned int16 samples, post-compression level in dBFS).
            Gated frames come back as zeros.
        """
        samples = frame.astype(np.float32) / 32768.0
        samples, self._hp_state = signal.sosfilt(self._highpass, samples, zi=self._hp_state)
        samples, self._bp_state = signal.sosfilt(self._bandpass, samples, zi=self._bp_state)

        samples = self._compress(samples, rms_dbfs(samples))
        level = rms_dbfs(samples)

        if level < self.config.noise_gate_threshold_db:
            return np.zeros_like(frame, dtype=np.int16), level

        out = np.clip(samples * 32768.0, -32768, 32767).astype(np.int16)
        return out, level


# =============================================================================
# Segmentation
# =============================================================================


@dataclass
class _Segment:
    frames: List[bytes]
    started_at: datetime
    voiced_ms: int = 0
    silence_ms: int = 0
    total_ms: int = 0


class SegmentDetector:
    """Silence-timeout utterance segmentation over conditioned frames."""

    def __init__(self, config: Optional[AudioConfig] = None):
        self.config = config or AudioConfig()
        self.frame_ms = self.config.frame_ms
        pre_roll_frames = max(0, self.config.pre_roll_ms // self.frame_ms)
        self._pre_roll: Deque[bytes] = deque(maxlen=pre_roll_frames or None)
        self._use_pre_roll = pre_roll_frames > 0
        self._segment: Optional[_Segment] = None

    @property
    def in_speech(self) -> bool:
        return self._segment is not None

    def reset(self) -> None:
        self._pre_roll.clear()
        self._segment = None

    def push(self, frame: bytes, level_db: float) -> Optional[Utterance]:
        """Feed one conditioned frame; returns an Utterance when one completes."""
        voiced = level_db >= self.config.noise_gate_threshold_db

        if self._segment is None:
            if not voiced:
                if self._use_pre_roll:
                    self._pre_roll.append(frame)
                return None
            self._segment = _Segment(
                frames=list(self._pre_roll),
                started_at=datetime.now(),
            )
            self._pre_roll.clear()

        segment = self._segment
        segment.frames.append(frame)
        segment.total_ms += self.frame_ms
        if voiced:
            segment.voiced_ms += self.frame_ms
            segment.silence_ms = 0
        else:
            segment.silence_ms += self.frame_ms

        if segment.silence_ms >= self.config.silence_timeout_ms:
            return self._close()
        if segment.total_ms >= self.config.max_utterance_sec * 1000:
            logger.info("Maximum utterance length reached, closing segment")
            return self._close()
        return None

    def flush(self) -> Optional[Utterance]:
        """Close the open segment now (explicit caller stop)."""
        if self._segment is None:
            return None
        return self._close()

    def _close(self) -> Optional[Utterance]:
        segment, self._segment = self._segment, None
        if segment is None or segment.voiced_ms < self.config.min_speech_ms:
            logger.debug("Discarding segment shorter than minimum speech length")
            return None
        return Utterance(
            raw_audio=b"".join(segment.frames),
            sample_rate=self.config.sample_rate,
            started_at=segment.started_at,
            ended_at=datetime.now(),
        )


# =============================================================================
# Capture
# =============================================================================


@dataclass
class CaptureHandle:
    """Handle to an active capture session."""
    session_id: int
    device: Optional[str]
    sample_rate: int
    started_at: datetime


_END_UTTERANCE = object()
_STOP = object()


def _default_stream_factory(**kwargs: Any) -> Any:
    import sounddevice as sd

    return sd.InputStream(**kwargs)


class AudioCapture:
    """
    Microphone capture with conditioning and utterance segmentation.

    The PortAudio callback runs on its own thread and hands frames to the
    event loop; segmentation runs on the loop inside
    ``detect_segment_boundaries()``.
    """

    def __init__(
        self,
        config: Optional[AudioConfig] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        max_queue_frames: int = 500,
    ):
        self.config = config or AudioConfig()
        self._stream_factory = stream_factory or _default_stream_factory
        self._max_queue_frames = max_queue_frames

        self._stream: Any = None
        self._handle: Optional[CaptureHandle] = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sessions = 0
        self._dropped_frames = 0

    @property
    def is_capturing(self) -> bool:
        return self._stream is not None

    @property
    def handle(self) -> Optional[CaptureHandle]:
        return self._handle

    @property
    def dropped_frames(self) -> int:
        return self._dropped_frames

    def start_capture(self, config: Optional[AudioConfig] = None) -> CaptureHandle:
        """Acquire the input device and start streaming.

        Raises:
            DeviceUnavailableError: permission denied or no input device
        """
        if self._stream is not None:
            raise DeviceUnavailableError(
                "Capture already active; stop it before starting again",
                device=self.config.device,
            )
        if config is not None:
            self.config = config

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._max_queue_frames)
        self._dropped_frames = 0
        frame_samples = int(self.config.sample_rate * self.config.frame_ms / 1000)

        try:
            stream = self._stream_factory(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                dtype="int16",
                blocksize=frame_samples,
                device=self.config.device,
                callback=self._audio_callback,
            )
        except DeviceUnavailableError:
            self._queue = None
            raise
        except Exception as e:
            self._queue = None
            logger.error(f"Cannot open input device {self.config.device or 'default'}: {e}")
            raise DeviceUnavailableError(
                f"Microphone unavailable: {e}", device=self.config.device
            ) from e

        # The stream already holds the device once constructed.
        try:
            stream.start()
        except Exception as e:
            self._queue = None
            try:
                stream.close()
            except Exception as close_error:
                logger.warning(f"Error closing input stream: {close_error}")
            if isinstance(e, DeviceUnavailableError):
                raise
            logger.error(f"Cannot start input device {self.config.device or 'default'}: {e}")
            raise DeviceUnavailableError(
                f"Microphone unavailable: {e}", device=self.config.device
            ) from e

        self._stream = stream
        self._sessions += 1
        self._handle = CaptureHandle(
            session_id=self._sessions,
            device=self.config.device,
            sample_rate=self.config.sample_rate,
            started_at=datetime.now(),
        )
        logger.info(
            f"Capture started (session {self._sessions}, "
            f"device={self.config.device or 'default'}, {self.config.sample_rate}Hz)"
        )
        return self._handle

    def stop_capture(self) -> None:
        """Release the device and buffered audio. Idempotent."""
        stream, self._stream = self._stream, None
        queue = self._queue
        self._handle = None

        if stream is not None:
            try:
                stream.stop()
            except Exception as e:
                logger.warning(f"Error stopping input stream: {e}")
            finally:
                try:
                    stream.close()
                except Exception as e:
                    logger.warning(f"Error closing input stream: {e}")
            logger.info("Capture stopped")

        if queue is not None:
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(_STOP)
            self._queue = None

    def end_utterance(self) -> None:
        """Explicit caller stop: close the current segment now."""
        loop = self._loop
        if self._queue is None or loop is None or loop.is_closed():
            return
        # Queued behind frames the audio thread has already handed over
        loop.call_soon_threadsafe(self._put, _END_UTTERANCE)

    @asynccontextmanager
    async def session(self, config: Optional[AudioConfig] = None) -> AsyncIterator[CaptureHandle]:
        """Scoped device ownership; the device is released on every exit path."""
        handle = self.start_capture(config)
        try:
            yield handle
        finally:
            self.stop_capture()

    # -------------------------------------------------------------------------
    # Frame delivery
    # -------------------------------------------------------------------------

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning(f"Audio capture status: {status}")
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        data = np.asarray(indata, dtype=np.int16)
        if data.ndim > 1:
            data = data[:, 0]
        loop.call_soon_threadsafe(self._put, data.copy())

    def _put(self, item: Any) -> None:
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            self._dropped_frames += 1

    async def detect_segment_boundaries(self) -> AsyncIterator[Utterance]:
        """Lazily yield one Utterance per detected speech segment.

        Runs until ``stop_capture()``. A fresh ``start_capture()`` yields a
        fresh sequence.
        """
        queue = self._queue
        if queue is None:
            raise DeviceUnavailableError("Capture not started", device=self.config.device)

        conditioner = AudioConditioner(self.config)
        detector = SegmentDetector(self.config)
        frame_samples = int(self.config.sample_rate * self.config.frame_ms / 1000)
        pending = np.zeros(0, dtype=np.int16)

        try:
            while True:
                item = await queue.get()
                if item is _STOP:
                    return
                if item is _END_UTTERANCE:
                    utterance = detector.flush()
                    if utterance is not None:
                        yield utterance
                    continue

                pending = np.concatenate([pending, item])
                while pending.size >= frame_samples:
                    frame, pending = pending[:frame_samples], pending[frame_samples:]
                    conditioned, level = conditioner.process(frame)
                    utterance = detector.push(conditioned.tobytes(), level)
                    if utterance is not None:
                        logger.debug(
                            f"Utterance segmented: {utterance.duration_sec:.2f}s, "
                            f"{len(utterance.raw_audio or b'')} bytes"
                        )
                        yield utterance
        finally:
            detector.reset()
