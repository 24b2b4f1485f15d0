"""
FIELDVOICE Pipeline Orchestrator
End-to-end voice command processing.

Pipeline Flow:
    Audio Capture -> Recognition (STT) -> Intent Resolution ->
    Action Dispatch -> Response (phrase cache / TTS) -> Telemetry

Every turn reads the degradation level once at its start and keeps that
snapshot to the end. Recognition of a new utterance may overlap the
previous turn, but intent resolution for turn N+1 waits until turn N's
dispatch has been issued, so commands execute in spoken order. Telemetry is
emitted as turns complete.

Stage-terminal failures never escape a turn; each one is mapped to a
recovery action (re-prompt, text input, or command suggestions).

Usage:
    from fieldvoice.orchestrator import create_voice_pipeline

    pipeline = create_voice_pipeline(config, executor, context_provider)
    await pipeline.start()

    # Continuous listening on the microphone
    await pipeline.run()

    # Or process text directly (text-input fallback)
    result = await pipeline.process_text("create job called Roof Repair")
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fieldvoice.audio_capture import AudioCapture
from fieldvoice.config import FieldVoiceConfig
from fieldvoice.connectivity import ConnectivityMonitor
from fieldvoice.dispatch import ActionDispatcher
from fieldvoice.exceptions import (
    DeviceUnavailableError,
    LowConfidenceError,
    UserCancelledError,
    VoicePipelineError,
)
from fieldvoice.http_providers import (
    HttpReasoningProvider,
    HttpSynthesisProvider,
    HttpTranscriptionProvider,
)
from fieldvoice.intent import IntentStage, OfflinePatternMatcher
from fieldvoice.local_providers import PiperSynthesisProvider, WhisperTranscriptionProvider
from fieldvoice.mode_controller import ModeController, ModeSnapshot
from fieldvoice.providers import ProviderDescriptor, ProviderRegistry
from fieldvoice.recognition import RecognitionStage, normalize_transcript
from fieldvoice.recovery import ErrorRecoveryEngine
from fieldvoice.response import SYSTEM_PHRASES, AudioPlayer, ResponseStage, render_response
from fieldvoice.telemetry import LoggingTelemetrySink, PipelineMetrics, TelemetrySink
from fieldvoice.types import (
    ActionExecutor,
    ContextProvider,
    DegradationLevel,
    FailureKind,
    ProviderRole,
    RecoveryAction,
    TranscriptSegment,
    Utterance,
    VoiceTurnResult,
)

logger = logging.getLogger("FIELDVOICE.Pipeline")


__all__ = [
    "VoicePipeline",
    "PipelineState",
    "RECOVERY_FOR_FAILURE",
    "create_voice_pipeline",
    "register_configured_providers",
]


class PipelineState(Enum):
    """Voice pipeline states."""
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    SPEAKING = "speaking"
    ERROR = "error"


RECOVERY_FOR_FAILURE: Dict[FailureKind, RecoveryAction] = {
    FailureKind.LOW_CONFIDENCE: RecoveryAction.REPROMPT,
    FailureKind.PROVIDER_TRANSIENT: RecoveryAction.REPROMPT,
    FailureKind.NO_PROVIDER_AVAILABLE: RecoveryAction.TEXT_INPUT,
    FailureKind.DEVICE_UNAVAILABLE: RecoveryAction.TEXT_INPUT,
    FailureKind.INVALID_REASONING_OUTPUT: RecoveryAction.SUGGEST_COMMANDS,
    FailureKind.MALFORMED_PROVIDER_OUTPUT: RecoveryAction.REPROMPT,
    FailureKind.USER_CANCELLED: RecoveryAction.NONE,
}

_RECOVERY_PHRASE: Dict[RecoveryAction, str] = {
    RecoveryAction.REPROMPT: SYSTEM_PHRASES["repeat"],
    RecoveryAction.TEXT_INPUT: SYSTEM_PHRASES["text_input"],
    RecoveryAction.SUGGEST_COMMANDS: SYSTEM_PHRASES["clarification"],
}


class _TurnGate:
    """Admits turns into intent resolution in ticket order.

    A turn is released once its dispatch has been issued or it ended
    without one; release is synchronous so it can run in cleanup paths.
    """

    def __init__(self):
        self._next_ticket = 0
        self._released_through = 0
        self._released: Set[int] = set()
        self._changed = asyncio.Event()

    def ticket(self) -> int:
        self._next_ticket += 1
        return self._next_ticket

    @property
    def released_through(self) -> int:
        return self._released_through

    async def wait(self, sequence: int) -> None:
        while self._released_through < sequence - 1:
            await self._changed.wait()

    def release(self, sequence: int) -> None:
        if sequence <= self._released_through or sequence in self._released:
            return
        self._released.add(sequence)
        advanced = False
        while self._released_through + 1 in self._released:
            self._released_through += 1
            self._released.discard(self._released_through)
            advanced = True
        if advanced:
            changed, self._changed = self._changed, asyncio.Event()
            changed.set()


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class VoicePipeline:
    """
    End-to-end voice command pipeline.

    Coordinates capture, recognition, intent resolution, dispatch and
    response under the current degradation level.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        mode_controller: ModeController,
        executor: ActionExecutor,
        context_provider: Optional[ContextProvider] = None,
        config: Optional[FieldVoiceConfig] = None,
        capture: Optional[AudioCapture] = None,
        telemetry: Optional[Iterable[TelemetrySink]] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        matcher: Optional[OfflinePatternMatcher] = None,
        player: Optional[AudioPlayer] = None,
    ):
        """
        Initialize voice pipeline.

        Args:
            registry: Provider registry holding STT/intent/TTS providers
            mode_controller: Owner of the degradation level
            executor: Host application's action executor
            context_provider: Host application's context snapshot source
            config: Pipeline configuration (defaults when None)
            capture: Microphone capture (needed only for ``run``)
            telemetry: Sinks receiving one VoiceTurnResult per turn
            connectivity: Optional connectivity signal source
            matcher: Offline pattern matcher (default table when None)
            player: Audio output (sounddevice when None and playback enabled)
        """
        self.config = config or FieldVoiceConfig()
        self.registry = registry
        self.mode_controller = mode_controller
        self.capture = capture
        self.connectivity = connectivity
        self.telemetry: List[TelemetrySink] = list(telemetry) if telemetry is not None else []

        self.recovery = ErrorRecoveryEngine(registry, mode_controller, self.config.recovery)
        self.recognition = RecognitionStage(
            self.recovery, self.config.recognition, language=self.config.language
        )
        self.intent = IntentStage(
            self.recovery, matcher, self.config.intent, language=self.config.language
        )
        self.response = ResponseStage(self.recovery, self.config.response, player=player)
        self.dispatcher = ActionDispatcher(executor, context_provider)
        self.metrics = PipelineMetrics()

        # State
        self._state = PipelineState.IDLE
        self._running = False
        self._callbacks: List[Callable[[PipelineState], None]] = []
        self._gate = _TurnGate()
        self._active: Dict[int, asyncio.Task] = {}
        self._user_cancelled: Set[int] = set()
        self._turn_tasks: Set[asyncio.Task] = set()

        if self.connectivity is not None:
            self.connectivity.subscribe(self.mode_controller.set_connectivity)

        logger.info("Voice pipeline initialized")

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def level(self) -> DegradationLevel:
        return self.mode_controller.level

    @property
    def active_turns(self) -> int:
        return len(self._active)

    def register_state_callback(self, callback: Callable[[PipelineState], None]) -> None:
        """Register callback for state changes."""
        self._callbacks.append(callback)

    def on_interim(self, callback: Callable[[Utterance, TranscriptSegment], None]) -> None:
        """Live interim transcripts; display only, never authoritative."""
        self.recognition.on_interim(callback)

    def _set_state(self, new_state: PipelineState) -> None:
        if new_state is self._state:
            return
        self._state = new_state
        for callback in self._callbacks:
            try:
                callback(new_state)
            except Exception as e:
                logger.warning(f"State callback error: {e}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start health checks, mode evaluation and connectivity monitoring."""
        if self._running:
            logger.warning("Pipeline already running")
            return

        logger.info("Starting voice pipeline...")
        self._running = True
        self.registry.start_health_checks()
        self.mode_controller.start()
        if self.connectivity is not None:
            self.mode_controller.set_connectivity(self.connectivity.online)
            self.connectivity.start()

        snapshot = self.mode_controller.evaluate(reason="startup")
        if self.config.response.prewarm:
            await self.response.prewarm(snapshot)
        self._set_state(PipelineState.IDLE)
        logger.info(f"Voice pipeline started (level={snapshot.level.value})")

    async def stop(self) -> None:
        """Stop listening, abort in-flight turns and release every resource."""
        if not self._running:
            return

        logger.info("Stopping voice pipeline...")
        self._running = False
        if self.capture is not None:
            self.capture.stop_capture()

        # Turns started through process_text/process_utterance are tracked
        # only in _active, so both sets are aborted here.
        current = asyncio.current_task()
        in_flight = {
            task
            for task in list(self._turn_tasks) + list(self._active.values())
            if task is not current and not task.done()
        }
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

        await self.registry.stop_health_checks()
        await self.mode_controller.stop()
        if self.connectivity is not None:
            await self.connectivity.stop()
        await self.close_providers()
        self._set_state(PipelineState.IDLE)
        logger.info("Voice pipeline stopped")

    async def close_providers(self) -> None:
        for descriptor in self.registry.list_descriptors():
            close = getattr(descriptor.provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing provider {descriptor.name}: {e}")

    def set_online(self, online: bool) -> None:
        """Push a connectivity change from the host application."""
        if self.connectivity is not None:
            self.connectivity.set_online(online)
        else:
            self.mode_controller.set_connectivity(online)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def run(self, on_result: Optional[Callable[[VoiceTurnResult], Any]] = None) -> Optional[VoiceTurnResult]:
        """
        Continuous listening: one turn per detected utterance.

        Returns when capture stops. If the microphone cannot be acquired the
        failure is reported as a turn and returned.
        """
        if self.capture is None:
            raise DeviceUnavailableError("No audio capture configured")
        if not self._running:
            await self.start()

        try:
            async with self.capture.session(self.config.audio):
                self._set_state(PipelineState.LISTENING)
                logger.info("Listening for voice commands")
                async for utterance in self.capture.detect_segment_boundaries():
                    task = asyncio.create_task(self._process_and_report(utterance, on_result))
                    self._turn_tasks.add(task)
                    task.add_done_callback(self._turn_tasks.discard)
        except DeviceUnavailableError as e:
            logger.error(f"Audio capture unavailable: {e}")
            result = await self._failed_turn(
                self._gate.ticket(), None, self.mode_controller.current, e, {}
            )
            self._complete(result)
            await self._report(result, on_result)
            return result
        finally:
            if self._turn_tasks:
                await asyncio.gather(*self._turn_tasks, return_exceptions=True)
            self._set_state(PipelineState.IDLE)
        return None

    async def _process_and_report(self, utterance: Utterance, on_result) -> None:
        result = await self.process_utterance(utterance)
        await self._report(result, on_result)

    async def _report(self, result: VoiceTurnResult, on_result) -> None:
        if on_result is None:
            return
        try:
            if asyncio.iscoroutinefunction(on_result):
                await on_result(result)
            else:
                on_result(result)
        except Exception as e:
            logger.error(f"Turn result callback error: {e}")

    def stop_listening(self) -> None:
        """Release the microphone; ``run`` returns once in-flight turns finish."""
        if self.capture is not None:
            self.capture.stop_capture()

    def end_utterance(self) -> None:
        """Explicit caller-issued end of the current utterance."""
        if self.capture is not None:
            self.capture.end_utterance()

    def cancel_current(self) -> int:
        """User stop: abort every in-flight turn. Returns how many were cancelled."""
        cancelled = 0
        for sequence, task in list(self._active.items()):
            if task.done():
                continue
            self._user_cancelled.add(sequence)
            task.cancel()
            cancelled += 1
        if cancelled:
            logger.info(f"User cancelled {cancelled} turn(s)")
        return cancelled

    async def process_utterance(self, utterance: Utterance) -> VoiceTurnResult:
        """Run one captured utterance through the whole pipeline."""
        return await self._turn(utterance, transcript=None)

    async def process_text(self, text: str) -> VoiceTurnResult:
        """
        Text-input fallback: enter the pipeline at intent resolution.

        Works at every degradation level; when nothing network-side is
        permitted the offline matcher resolves and the response is text only.
        """
        cleaned = " ".join(text.split())
        if self.config.recognition.normalize_transcript:
            cleaned = normalize_transcript(cleaned)
        utterance = Utterance(sample_rate=self.config.audio.sample_rate)
        utterance.set_final(cleaned, 1.0)
        utterance.finish()
        return await self._turn(utterance, transcript=cleaned)

    # -------------------------------------------------------------------------
    # Turn execution
    # -------------------------------------------------------------------------

    async def _turn(self, utterance: Utterance, transcript: Optional[str]) -> VoiceTurnResult:
        sequence = self._gate.ticket()
        mode = self.mode_controller.current
        task = asyncio.current_task()
        if task is not None:
            self._active[sequence] = task
        latency: Dict[str, float] = {}
        result: Optional[VoiceTurnResult] = None

        try:
            result = await self._execute(sequence, utterance, transcript, mode, latency)
        except asyncio.CancelledError:
            user_stop = sequence in self._user_cancelled
            error = UserCancelledError(
                "Turn cancelled by user" if user_stop else "Turn aborted by shutdown"
            )
            result = self._result_for_failure(sequence, utterance, mode, error, latency, "", False)
            if not user_stop:
                raise
            if task is not None and hasattr(task, "uncancel"):
                task.uncancel()
        finally:
            self._gate.release(sequence)
            self._active.pop(sequence, None)
            self._user_cancelled.discard(sequence)
            utterance.release()
            if result is not None:
                self._complete(result)
            if not self._active:
                self._set_state(PipelineState.LISTENING if self._listening else PipelineState.IDLE)

        return result

    @property
    def _listening(self) -> bool:
        return self.capture is not None and self.capture.is_capturing

    async def _execute(
        self,
        sequence: int,
        utterance: Utterance,
        transcript: Optional[str],
        mode: ModeSnapshot,
        latency: Dict[str, float],
    ) -> VoiceTurnResult:
        try:
            if transcript is None:
                self._set_state(PipelineState.TRANSCRIBING)
                started = time.perf_counter()
                recognition = await self.recognition.recognize(utterance, mode)
                latency["recognition"] = _ms_since(started)
                if not recognition.finalized:
                    return await self._failed_turn(sequence, utterance, mode, recognition.error, latency)
                transcript = recognition.transcript.text

            if not transcript:
                error = LowConfidenceError(
                    "Empty transcript",
                    confidence=0.0,
                    floor=self.config.recognition.confidence_floor,
                )
                return await self._failed_turn(sequence, utterance, mode, error, latency)

            # Ordering: resolution for this turn waits for earlier dispatches
            await self._gate.wait(sequence)

            self._set_state(PipelineState.RESOLVING)
            context = self.dispatcher.context()
            started = time.perf_counter()
            intent = await self.intent.resolve(transcript, context, mode)
            latency["intent"] = _ms_since(started)

            self._set_state(PipelineState.DISPATCHING)
            started = time.perf_counter()
            outcome = await self.dispatcher.dispatch(intent, context)
            latency["dispatch"] = _ms_since(started)
            self._gate.release(sequence)
            utterance.release()

            recovery = RecoveryAction.NONE
            suggestions: tuple[str, ...] = ()
            if not intent.is_actionable:
                recovery = RecoveryAction.SUGGEST_COMMANDS
                suggestions = tuple(self.intent.suggestions())

            text = render_response(intent, outcome)
            self._set_state(PipelineState.SPEAKING)
            started = time.perf_counter()
            spoken = await self.response.speak(text, mode)
            latency["response"] = _ms_since(started)

            return VoiceTurnResult(
                utterance=utterance,
                intent=intent,
                action_outcome=outcome,
                spoken_response=text,
                degradation_level_at_run=mode.level,
                recovery=recovery,
                suggestions=suggestions,
                text_only=spoken.text_only,
                sequence=sequence,
                stage_latency_ms=latency,
            )
        except VoicePipelineError as e:
            return await self._failed_turn(sequence, utterance, mode, e, latency)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in turn #{sequence}: {e}")
            self._set_state(PipelineState.ERROR)
            error = VoicePipelineError(f"Unexpected pipeline error: {e}")
            return await self._failed_turn(sequence, utterance, mode, error, latency)

    async def _failed_turn(
        self,
        sequence: int,
        utterance: Optional[Utterance],
        mode: ModeSnapshot,
        error: Optional[VoicePipelineError],
        latency: Dict[str, float],
    ) -> VoiceTurnResult:
        """Map a stage-terminal failure to its recovery and say so."""
        if error is None:
            error = VoicePipelineError("Turn failed")
        self._gate.release(sequence)
        recovery = RECOVERY_FOR_FAILURE.get(error.kind, RecoveryAction.REPROMPT)
        text = _RECOVERY_PHRASE.get(recovery, "")

        text_only = False
        if text:
            self._set_state(PipelineState.SPEAKING)
            started = time.perf_counter()
            spoken = await self.response.speak(text, mode)
            latency["response"] = _ms_since(started)
            text_only = spoken.text_only

        return self._result_for_failure(sequence, utterance, mode, error, latency, text, text_only)

    def _result_for_failure(
        self,
        sequence: int,
        utterance: Optional[Utterance],
        mode: ModeSnapshot,
        error: VoicePipelineError,
        latency: Dict[str, float],
        text: str,
        text_only: bool,
    ) -> VoiceTurnResult:
        recovery = RECOVERY_FOR_FAILURE.get(error.kind, RecoveryAction.REPROMPT)
        suggestions: tuple[str, ...] = ()
        if recovery is RecoveryAction.SUGGEST_COMMANDS:
            suggestions = tuple(self.intent.suggestions())
        log = logger.info if error.kind in (FailureKind.LOW_CONFIDENCE, FailureKind.USER_CANCELLED) else logger.warning
        log(f"Turn #{sequence} failed: {error.kind.value} -> {recovery.value} ({error})")
        return VoiceTurnResult(
            utterance=utterance,
            intent=None,
            action_outcome=None,
            spoken_response=text,
            degradation_level_at_run=mode.level,
            failure=error.kind,
            recovery=recovery,
            suggestions=suggestions,
            text_only=text_only,
            sequence=sequence,
            stage_latency_ms=latency,
        )

    def _complete(self, result: VoiceTurnResult) -> None:
        """Record and publish a finished turn, in completion order."""
        self.metrics.record(result)
        for sink in self.telemetry:
            try:
                sink.emit(result)
            except Exception as e:
                logger.warning(f"Telemetry sink error: {e}")

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict(cache_hit_ratio=self.response.cache.hit_ratio)

    def get_status(self) -> Dict[str, Any]:
        snapshot = self.mode_controller.current
        return {
            "running": self._running,
            "state": self._state.value,
            "degradation_level": snapshot.level.value,
            "level_version": snapshot.version,
            "online": snapshot.online,
            "active_turns": len(self._active),
            "providers": self.registry.get_status(),
            "cache": self.response.cache.stats(),
        }


# =============================================================================
# Factory
# =============================================================================


def register_configured_providers(
    registry: ProviderRegistry,
    config: FieldVoiceConfig,
) -> List[ProviderDescriptor]:
    """Register the cloud and on-device providers enabled in configuration."""
    cloud = config.cloud
    local = config.local
    registered: List[ProviderDescriptor] = []

    if cloud.stt_url:
        registered.append(registry.register_provider(
            ProviderRole.STT,
            HttpTranscriptionProvider(cloud.stt_url, api_key=cloud.api_key),
            cloud.stt_priority,
        ))
    if cloud.reasoning_url:
        registered.append(registry.register_provider(
            ProviderRole.INTENT,
            HttpReasoningProvider(cloud.reasoning_url, api_key=cloud.api_key),
            cloud.reasoning_priority,
        ))
    if cloud.tts_url:
        registered.append(registry.register_provider(
            ProviderRole.TTS,
            HttpSynthesisProvider(cloud.tts_url, api_key=cloud.api_key),
            cloud.tts_priority,
        ))
    if local.whisper_enabled:
        registered.append(registry.register_provider(
            ProviderRole.STT,
            WhisperTranscriptionProvider(
                model_size=local.whisper_model,
                device=local.whisper_device,
                compute_type=local.whisper_compute_type,
            ),
            local.whisper_priority,
        ))
    if local.piper_enabled:
        registered.append(registry.register_provider(
            ProviderRole.TTS,
            PiperSynthesisProvider(local.piper_model_path),
            local.piper_priority,
        ))

    if not registered:
        logger.warning("No providers configured; pipeline will start DISABLED")
    return registered


def create_voice_pipeline(
    config: FieldVoiceConfig,
    executor: ActionExecutor,
    context_provider: Optional[ContextProvider] = None,
    telemetry: Optional[Iterable[TelemetrySink]] = None,
    capture: Optional[AudioCapture] = None,
    registry: Optional[ProviderRegistry] = None,
) -> VoicePipeline:
    """
    Create a voice pipeline from configuration.

    Args:
        config: Loaded FIELDVOICE configuration
        executor: Host application's action executor
        context_provider: Host application's context source
        telemetry: Sinks (defaults to a logging sink)
        capture: Audio capture (defaults to the configured microphone)
        registry: Pre-populated registry; configured providers are added to it

    Returns:
        Configured VoicePipeline instance
    """
    reg_cfg = config.registry
    if registry is None:
        registry = ProviderRegistry(
            trip_threshold=reg_cfg.trip_threshold,
            failure_window_sec=reg_cfg.failure_window_sec,
            health_check_interval_sec=reg_cfg.health_check_interval_sec,
            health_check_timeout_sec=reg_cfg.health_check_timeout_sec,
        )
    register_configured_providers(registry, config)

    connectivity = None
    if config.connectivity.enabled:
        connectivity = ConnectivityMonitor(
            probe_url=config.connectivity.probe_url,
            poll_interval_sec=config.connectivity.poll_interval_sec,
            timeout_sec=config.connectivity.timeout_sec,
        )

    mode_controller = ModeController(
        registry,
        online=True,
        evaluation_interval_sec=config.mode.evaluation_interval_sec,
    )

    return VoicePipeline(
        registry=registry,
        mode_controller=mode_controller,
        executor=executor,
        context_provider=context_provider,
        config=config,
        capture=capture if capture is not None else AudioCapture(config.audio),
        telemetry=telemetry if telemetry is not None else [LoggingTelemetrySink()],
        connectivity=connectivity,
    )
