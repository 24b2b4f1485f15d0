"""
Unit tests for the voice pipeline orchestrator.

Covers turn execution, spoken-order dispatch, per-turn mode snapshots,
failure-to-recovery mapping, user cancellation, telemetry, lifecycle,
continuous listening and the configuration factory.

Run:
    pytest tests/unit/test_orchestrator.py -v
"""

import asyncio
from unittest.mock import MagicMock

import numpy as np
import pytest

from fieldvoice.audio_capture import AudioCapture
from fieldvoice.config import AudioConfig
from fieldvoice.exceptions import DeviceUnavailableError, ProviderTransientError
from fieldvoice.mode_controller import ModeController
from fieldvoice.orchestrator import (
    RECOVERY_FOR_FAILURE,
    PipelineState,
    VoicePipeline,
    _TurnGate,
    create_voice_pipeline,
    register_configured_providers,
)
from fieldvoice.providers import ProviderRegistry
from fieldvoice.response import SYSTEM_PHRASES
from fieldvoice.telemetry import InMemoryTelemetrySink, LoggingTelemetrySink
from fieldvoice.types import (
    ActionOutcome,
    ActionType,
    DegradationLevel,
    FailureKind,
    IntentSource,
    ProviderRole,
    ProviderTier,
    RecoveryAction,
    Utterance,
)

from tests.fixtures import (
    DEFAULT_AUDIO,
    FakeExecutor,
    FakeReasoningProvider,
    FakeStreamFactory,
    FakeSynthesisProvider,
    FakeTranscriptionProvider,
    final,
    make_config,
    make_pipeline,
    reasoning_reply,
)


FRAME = 480


def spoken_audio() -> Utterance:
    return Utterance(raw_audio=DEFAULT_AUDIO, sample_rate=16000)


def tone(frames: int = 20) -> np.ndarray:
    t = np.arange(frames * FRAME) / 16000
    return (0.3 * np.sin(2 * np.pi * 1000 * t) * 32767).astype(np.int16)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TitleReasoning(FakeReasoningProvider):
    """Echoes the last transcript word as the record title; slow for chosen titles."""

    def __init__(self, slow=(), delay: float = 0.05):
        super().__init__("cloud-reasoning")
        self.slow = set(slow)
        self.slow_delay = delay

    async def reason(self, request):
        self.requests.append(request)
        title = request.transcript.rsplit(" ", 1)[-1]
        if title in self.slow:
            await asyncio.sleep(self.slow_delay)
        return reasoning_reply(entities={"record_type": "job", "title": title})


class SlowTextSynthesis(FakeSynthesisProvider):
    """Synthesis that takes longer for texts containing a marker."""

    def __init__(self, marker: str, delay: float = 0.1):
        super().__init__("cloud-tts")
        self.marker = marker
        self.slow_delay = delay

    async def synthesize(self, text, *, voice="default"):
        if self.marker in text:
            await asyncio.sleep(self.slow_delay)
        return await super().synthesize(text, voice=voice)


def register_full(registry, stt=None, reasoning=None, tts=None):
    stt = stt or FakeTranscriptionProvider("cloud-stt")
    reasoning = reasoning or FakeReasoningProvider("cloud-reasoning")
    tts = tts or FakeSynthesisProvider("cloud-tts")
    registry.register_provider(ProviderRole.STT, stt, priority=1)
    registry.register_provider(ProviderRole.INTENT, reasoning, priority=1)
    registry.register_provider(ProviderRole.TTS, tts, priority=1)
    return stt, reasoning, tts


class TestTurnGate:
    """Ticket-ordered admission."""

    @pytest.mark.asyncio
    async def test_first_ticket_passes(self):
        gate = _TurnGate()
        await asyncio.wait_for(gate.wait(gate.ticket()), timeout=0.1)

    @pytest.mark.asyncio
    async def test_waits_for_predecessor(self):
        gate = _TurnGate()
        first, second = gate.ticket(), gate.ticket()
        waiter = asyncio.create_task(gate.wait(second))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        gate.release(first)
        await asyncio.wait_for(waiter, timeout=0.1)

    def test_out_of_order_release(self):
        gate = _TurnGate()
        first, second, third = gate.ticket(), gate.ticket(), gate.ticket()
        gate.release(third)
        gate.release(second)
        assert gate.released_through == 0
        gate.release(first)
        assert gate.released_through == 3
        gate.release(first)
        assert gate.released_through == 3


class TestProcessText:
    """Text entry skips recognition and enters at intent resolution."""

    @pytest.mark.asyncio
    async def test_cloud_turn(self, registry, cloud_providers, executor, context_provider):
        stt, reasoning, tts, _ = cloud_providers
        pipeline = make_pipeline(registry, executor, context_provider=context_provider)

        result = await pipeline.process_text("  um create job called   Roof Repair ")

        assert result.succeeded
        assert result.transcript == "create job called Roof Repair"
        assert result.intent.action is ActionType.CREATE_RECORD
        assert result.intent.source is IntentSource.CLOUD_REASONING
        assert result.spoken_response == 'Creating job "Roof Repair"'
        assert result.degradation_level_at_run is DegradationLevel.FULL
        assert result.recovery is RecoveryAction.NONE
        assert not result.text_only
        assert stt.calls == 0
        assert reasoning.requests[0].context.active_record_id == "job-42"
        assert executor.calls[0][0] is ActionType.CREATE_RECORD
        assert tts.texts == ['Creating job "Roof Repair"']

    @pytest.mark.asyncio
    async def test_works_when_disabled(self, registry, executor):
        pipeline = make_pipeline(registry, executor)
        assert pipeline.level is DegradationLevel.DISABLED

        result = await pipeline.process_text("create job called Roof Repair")

        assert result.succeeded
        assert result.intent.source is IntentSource.OFFLINE_PATTERN
        assert result.intent.confidence == pytest.approx(0.7)
        assert result.text_only
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_suggests_commands(self, registry, executor):
        pipeline = make_pipeline(registry, executor)

        result = await pipeline.process_text("sing me a song")

        assert result.succeeded
        assert result.intent.action is ActionType.UNKNOWN
        assert result.recovery is RecoveryAction.SUGGEST_COMMANDS
        assert "create job called Roof Repair" in result.suggestions
        assert result.action_outcome.dispatched is False
        assert result.spoken_response == SYSTEM_PHRASES["clarification"]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_failed_action_is_spoken(self, registry, cloud_providers):
        executor = FakeExecutor(outcome=ActionOutcome(success=False, detail="Job already exists."))
        pipeline = make_pipeline(registry, executor)

        result = await pipeline.process_text("create job called Roof Repair")

        assert result.succeeded
        assert result.action_outcome.success is False
        assert result.spoken_response == "Sorry, that didn't work. Job already exists."

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_reprompt(self, registry, executor):
        matcher = MagicMock()
        matcher.match.side_effect = RuntimeError("pattern table broken")
        matcher.suggestions.return_value = []
        pipeline = VoicePipeline(
            registry=registry,
            mode_controller=ModeController(registry),
            executor=executor,
            config=make_config(),
            matcher=matcher,
        )

        result = await pipeline.process_text("create job called Roof Repair")

        assert result.failure is FailureKind.PROVIDER_TRANSIENT
        assert result.recovery is RecoveryAction.REPROMPT
        assert pipeline.state is PipelineState.IDLE


class TestProcessUtterance:
    """Captured audio through every stage."""

    @pytest.mark.asyncio
    async def test_full_turn(self, registry, cloud_providers, executor):
        stt, reasoning, tts, local_stt = cloud_providers
        pipeline = make_pipeline(registry, executor)
        utterance = spoken_audio()

        result = await pipeline.process_utterance(utterance)

        assert result.succeeded
        assert result.transcript == "create job called Roof Repair"
        assert [s.text for s in utterance.interim_transcripts] == ["create", "create job"]
        assert stt.received_bytes == len(DEFAULT_AUDIO)
        assert local_stt.calls == 0
        assert utterance.is_released
        assert set(result.stage_latency_ms) == {"recognition", "intent", "dispatch", "response"}

    @pytest.mark.asyncio
    async def test_low_confidence_reprompts(self, registry, executor):
        stt, _, tts = register_full(registry, stt=FakeTranscriptionProvider(
            "cloud-stt", default=final(confidence=0.2)
        ))
        pipeline = make_pipeline(registry, executor)

        result = await pipeline.process_utterance(spoken_audio())

        assert result.failure is FailureKind.LOW_CONFIDENCE
        assert result.recovery is RecoveryAction.REPROMPT
        assert result.spoken_response == SYSTEM_PHRASES["repeat"]
        assert result.intent is None
        assert executor.calls == []
        assert tts.texts == [SYSTEM_PHRASES["repeat"]]
        assert result.utterance.is_released

    @pytest.mark.asyncio
    async def test_empty_transcript_reprompts(self, registry, executor):
        register_full(registry, stt=FakeTranscriptionProvider("cloud-stt", default=final("uh um")))
        pipeline = make_pipeline(registry, executor)

        result = await pipeline.process_utterance(spoken_audio())

        assert result.failure is FailureKind.LOW_CONFIDENCE
        assert result.recovery is RecoveryAction.REPROMPT
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_no_stt_asks_for_text(self, registry, executor):
        stt = FakeTranscriptionProvider("cloud-stt", default=ProviderTransientError)
        registry.register_provider(ProviderRole.STT, stt, priority=1)
        pipeline = make_pipeline(registry, executor)
        assert pipeline.level is DegradationLevel.PARTIAL

        result = await pipeline.process_utterance(spoken_audio())

        assert result.failure is FailureKind.NO_PROVIDER_AVAILABLE
        assert result.recovery is RecoveryAction.TEXT_INPUT
        assert result.spoken_response == SYSTEM_PHRASES["text_input"]
        assert result.text_only
        assert stt.calls == 3
        assert pipeline.level is DegradationLevel.DISABLED

    @pytest.mark.asyncio
    async def test_disabled_asks_for_text(self, registry, executor):
        pipeline = make_pipeline(registry, executor)

        result = await pipeline.process_utterance(spoken_audio())

        assert result.failure is FailureKind.NO_PROVIDER_AVAILABLE
        assert result.recovery is RecoveryAction.TEXT_INPUT
        assert result.degradation_level_at_run is DegradationLevel.DISABLED

    @pytest.mark.asyncio
    async def test_mode_snapshot_held_for_whole_turn(self, registry, executor):
        stt = FakeTranscriptionProvider("cloud-stt", delay=0.05)
        local_stt = FakeTranscriptionProvider("local-stt", tier=ProviderTier.LOCAL)
        _, reasoning, _ = register_full(registry, stt=stt)
        registry.register_provider(ProviderRole.STT, local_stt, priority=10)
        pipeline = make_pipeline(registry, executor)

        turn = asyncio.create_task(pipeline.process_utterance(spoken_audio()))
        await asyncio.sleep(0.01)
        pipeline.set_online(False)
        result = await turn

        assert pipeline.level is DegradationLevel.BASIC
        assert result.degradation_level_at_run is DegradationLevel.FULL
        assert result.intent.source is IntentSource.CLOUD_REASONING
        assert len(reasoning.requests) == 1


class TestOrdering:
    """Dispatch in spoken order; telemetry in completion order."""

    @pytest.mark.asyncio
    async def test_dispatch_follows_spoken_order(self, registry, executor):
        register_full(registry, reasoning=TitleReasoning(slow={"Alpha"}))
        pipeline = make_pipeline(registry, executor)

        results = await asyncio.gather(
            pipeline.process_text("create job called Alpha"),
            pipeline.process_text("create job called Bravo"),
        )

        assert [call[1]["title"] for call in executor.calls] == ["Alpha", "Bravo"]
        assert [r.sequence for r in results] == [1, 2]

    @pytest.mark.asyncio
    async def test_telemetry_in_completion_order(self, registry, executor):
        register_full(registry, reasoning=TitleReasoning(), tts=SlowTextSynthesis("Alpha"))
        sink = InMemoryTelemetrySink()
        pipeline = make_pipeline(registry, executor, telemetry=[sink])

        await asyncio.gather(
            pipeline.process_text("create job called Alpha"),
            pipeline.process_text("create job called Bravo"),
        )

        assert [r.sequence for r in sink.results] == [2, 1]
        assert [call[1]["title"] for call in executor.calls] == ["Alpha", "Bravo"]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_turn(self, registry, executor):
        broken = MagicMock()
        broken.emit.side_effect = RuntimeError("sink down")
        sink = InMemoryTelemetrySink()
        pipeline = make_pipeline(registry, executor, telemetry=[broken, sink])

        result = await pipeline.process_text("go to the schedule")

        assert result.succeeded
        assert len(sink) == 1


class TestCancellation:
    """User stop."""

    @pytest.mark.asyncio
    async def test_cancel_current_reports_user_cancelled(self, registry, cloud_providers):
        executor = FakeExecutor(delay=1.0)
        sink = InMemoryTelemetrySink()
        pipeline = make_pipeline(registry, executor, telemetry=[sink])

        turn = asyncio.create_task(pipeline.process_text("create job called Roof Repair"))
        await wait_until(lambda: executor.in_flight)

        assert pipeline.cancel_current() == 1
        result = await turn

        assert result.failure is FailureKind.USER_CANCELLED
        assert result.recovery is RecoveryAction.NONE
        assert result.spoken_response == ""
        assert executor.calls == []
        assert pipeline.active_turns == 0
        assert sink.results == [result]

    @pytest.mark.asyncio
    async def test_cancel_during_recognition(self, registry, executor):
        register_full(registry, stt=FakeTranscriptionProvider("cloud-stt", delay=1.0))
        pipeline = make_pipeline(registry, executor)

        turn = asyncio.create_task(pipeline.process_utterance(spoken_audio()))
        await asyncio.sleep(0.02)
        pipeline.cancel_current()
        result = await turn

        assert result.failure is FailureKind.USER_CANCELLED
        assert result.utterance.is_released
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_stop_aborts_caller_started_turn(self, registry, cloud_providers):
        executor = FakeExecutor(delay=2.0)
        sink = InMemoryTelemetrySink()
        pipeline = make_pipeline(registry, executor, telemetry=[sink])
        await pipeline.start()

        turn = asyncio.create_task(pipeline.process_text("create job called Roof Repair"))
        await wait_until(lambda: executor.in_flight)

        await pipeline.stop()

        assert turn.done()
        assert turn.cancelled()
        assert pipeline.active_turns == 0
        assert executor.calls == []
        assert len(sink.results) == 1
        assert sink.results[0].failure is FailureKind.USER_CANCELLED

    def test_nothing_to_cancel(self, registry):
        assert make_pipeline(registry).cancel_current() == 0


class TestDiagnostics:
    """Status, metrics and state callbacks."""

    @pytest.mark.asyncio
    async def test_status_and_metrics(self, registry, cloud_providers, executor):
        pipeline = make_pipeline(registry, executor)
        states = []
        pipeline.register_state_callback(states.append)

        await pipeline.process_text("create job called Roof Repair")
        status = pipeline.get_status()
        metrics = pipeline.get_metrics()

        assert status["running"] is False
        assert status["degradation_level"] == "full"
        assert status["online"] is True
        assert status["active_turns"] == 0
        assert len(status["providers"]["stt"]) == 2
        assert metrics["turns_total"] == 1
        assert metrics["turns_completed"] == 1
        assert PipelineState.RESOLVING in states
        assert PipelineState.DISPATCHING in states
        assert states[-1] is PipelineState.IDLE

    def test_recovery_table(self):
        assert RECOVERY_FOR_FAILURE[FailureKind.LOW_CONFIDENCE] is RecoveryAction.REPROMPT
        assert RECOVERY_FOR_FAILURE[FailureKind.PROVIDER_TRANSIENT] is RecoveryAction.REPROMPT
        assert RECOVERY_FOR_FAILURE[FailureKind.NO_PROVIDER_AVAILABLE] is RecoveryAction.TEXT_INPUT
        assert RECOVERY_FOR_FAILURE[FailureKind.DEVICE_UNAVAILABLE] is RecoveryAction.TEXT_INPUT
        assert RECOVERY_FOR_FAILURE[FailureKind.INVALID_REASONING_OUTPUT] is RecoveryAction.SUGGEST_COMMANDS
        assert RECOVERY_FOR_FAILURE[FailureKind.MALFORMED_PROVIDER_OUTPUT] is RecoveryAction.REPROMPT
        assert set(RECOVERY_FOR_FAILURE) == set(FailureKind)
        assert RECOVERY_FOR_FAILURE[FailureKind.USER_CANCELLED] is RecoveryAction.NONE


class TestLifecycle:
    """start / stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry, cloud_providers, executor):
        stt, reasoning, tts, _ = cloud_providers
        pipeline = make_pipeline(registry, executor)

        await pipeline.start()
        assert pipeline.is_running
        await pipeline.start()

        await pipeline.stop()
        assert not pipeline.is_running
        assert stt.closed and reasoning.closed and tts.closed
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_start_prewarms_system_phrases(self, registry, cloud_providers, executor):
        _, _, tts, _ = cloud_providers
        pipeline = make_pipeline(registry, executor, config=make_config(response={"prewarm": True}))

        await pipeline.start()
        try:
            assert set(tts.texts) == set(SYSTEM_PHRASES.values())
            assert pipeline.response.cache.is_pinned(SYSTEM_PHRASES["repeat"])
        finally:
            await pipeline.stop()

        spoken = await pipeline.response.speak(
            SYSTEM_PHRASES["repeat"], pipeline.mode_controller.current
        )
        assert spoken.cached
        assert tts.texts.count(SYSTEM_PHRASES["repeat"]) == 1


class TestRun:
    """Continuous listening on a capture device."""

    @pytest.mark.asyncio
    async def test_run_processes_detected_utterances(self, registry, cloud_providers, executor):
        factory = FakeStreamFactory()
        capture = AudioCapture(AudioConfig(), stream_factory=factory)
        pipeline = make_pipeline(registry, executor, capture=capture)
        results = []

        listening = asyncio.create_task(pipeline.run(on_result=results.append))
        try:
            await wait_until(lambda: factory.streams and factory.last.started)
            for start in range(0, FRAME * 20, FRAME):
                factory.last.push(tone()[start:start + FRAME])
            pipeline.end_utterance()
            await wait_until(lambda: results)

            pipeline.stop_listening()
            assert await asyncio.wait_for(listening, timeout=1.0) is None
        finally:
            await pipeline.stop()

        assert len(results) == 1
        assert results[0].succeeded
        assert results[0].intent.action is ActionType.CREATE_RECORD
        assert factory.last.stopped == 1
        assert not capture.is_capturing

    @pytest.mark.asyncio
    async def test_device_failure_is_reported(self, registry, cloud_providers, executor):
        factory = FakeStreamFactory(fail_on_start=OSError("permission denied"))
        capture = AudioCapture(AudioConfig(), stream_factory=factory)
        sink = InMemoryTelemetrySink()
        pipeline = make_pipeline(registry, executor, capture=capture, telemetry=[sink])
        reported = []

        async def on_result(result):
            reported.append(result)

        try:
            result = await pipeline.run(on_result=on_result)
        finally:
            await pipeline.stop()

        assert result.failure is FailureKind.DEVICE_UNAVAILABLE
        assert result.recovery is RecoveryAction.TEXT_INPUT
        assert result.spoken_response == SYSTEM_PHRASES["text_input"]
        assert reported == [result]
        assert sink.results == [result]

    @pytest.mark.asyncio
    async def test_run_without_capture(self, registry):
        with pytest.raises(DeviceUnavailableError):
            await make_pipeline(registry).run()


class TestFactory:
    """Configuration-driven construction."""

    def test_register_configured_providers(self):
        registry = ProviderRegistry()
        config = make_config(
            cloud={
                "stt_url": "http://stt.local",
                "reasoning_url": "http://reason.local",
                "tts_url": "http://tts.local",
                "api_key": "secret",
            },
            local={"whisper_enabled": True, "piper_enabled": True, "piper_model_path": "v.onnx"},
        )

        registered = register_configured_providers(registry, config)

        assert [d.name for d in registered] == [
            "http-stt", "http-reasoning", "http-tts", "whisper-local", "piper-local",
        ]
        stt_chain = registry.list_descriptors(ProviderRole.STT)
        assert [(d.tier, d.priority) for d in stt_chain] == [
            (ProviderTier.NETWORK, 1), (ProviderTier.LOCAL, 10),
        ]
        assert registry.get(ProviderRole.STT, "http-stt").provider.api_key == "secret"

    def test_nothing_configured(self):
        registry = ProviderRegistry()
        assert register_configured_providers(registry, make_config()) == []

    def test_create_voice_pipeline(self, executor):
        config = make_config(
            cloud={"stt_url": "http://stt.local"},
            connectivity={"enabled": True, "probe_url": "http://probe.local"},
            registry={"trip_threshold": 5},
        )

        pipeline = create_voice_pipeline(config, executor)

        assert pipeline.registry.trip_threshold == 5
        assert isinstance(pipeline.capture, AudioCapture)
        assert isinstance(pipeline.telemetry[0], LoggingTelemetrySink)
        assert pipeline.connectivity.probe_url == "http://probe.local"
        assert pipeline.level is DegradationLevel.PARTIAL

        pipeline.set_online(False)
        assert pipeline.level is DegradationLevel.DISABLED
        assert pipeline.connectivity.online is False

    def test_create_with_existing_registry(self, registry, cloud_providers, executor):
        pipeline = create_voice_pipeline(make_config(), executor, registry=registry)
        assert pipeline.registry is registry
        assert pipeline.level is DegradationLevel.FULL
