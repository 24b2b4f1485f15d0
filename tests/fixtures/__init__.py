"""
FIELDVOICE Test Fixtures Package.

Scripted stand-ins for every pipeline collaborator, so the pipeline can be
exercised without a microphone, a network or on-device models.

Available fixtures:
- FakeTranscriptionProvider: streaming STT with scripted finals and failures
- FakeReasoningProvider: cloud reasoning returning scripted raw replies
- FakeSynthesisProvider: TTS recording every synthesized text
- FakeExecutor / FakeContextProvider: host application collaborators
- FakeStreamFactory: sounddevice.InputStream replacement for AudioCapture

Usage:
    from tests.fixtures import FakeTranscriptionProvider, final

    stt = FakeTranscriptionProvider(script=[final("go to schedule", 0.9)])
"""

from typing import Iterable, Optional

from fieldvoice.config import FieldVoiceConfig
from fieldvoice.mode_controller import ModeController
from fieldvoice.orchestrator import VoicePipeline
from fieldvoice.providers import ProviderRegistry
from fieldvoice.types import ActionExecutor, ContextProvider

from tests.fixtures.providers import (
    DEFAULT_AUDIO,
    DEFAULT_TRANSCRIPT,
    FakeContextProvider,
    FakeExecutor,
    FakeInputStream,
    FakeReasoningProvider,
    FakeStreamFactory,
    FakeSynthesisProvider,
    FakeTranscriptionProvider,
    final,
    reasoning_reply,
)


def make_config(**sections) -> FieldVoiceConfig:
    """Config tuned for tests: no backoff, no playback, no pre-warm, short timeouts."""
    data = {
        "recovery": {"backoff_base_sec": 0.0},
        "response": {"playback": False, "prewarm": False, "timeout_sec": 1.0},
        "recognition": {"timeout_sec": 1.0},
        "intent": {"timeout_sec": 1.0},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return FieldVoiceConfig(**data)


def make_pipeline(
    registry: ProviderRegistry,
    executor: Optional[ActionExecutor] = None,
    config: Optional[FieldVoiceConfig] = None,
    online: bool = True,
    context_provider: Optional[ContextProvider] = None,
    telemetry: Optional[Iterable] = None,
    capture=None,
) -> VoicePipeline:
    """Pipeline around an already-populated registry."""
    config = config or make_config()
    mode = ModeController(registry, online=online)
    return VoicePipeline(
        registry=registry,
        mode_controller=mode,
        executor=executor or FakeExecutor(),
        context_provider=context_provider,
        config=config,
        capture=capture,
        telemetry=telemetry,
    )


__all__ = [
    "DEFAULT_AUDIO",
    "DEFAULT_TRANSCRIPT",
    "FakeContextProvider",
    "FakeExecutor",
    "FakeInputStream",
    "FakeReasoningProvider",
    "FakeStreamFactory",
    "FakeSynthesisProvider",
    "FakeTranscriptionProvider",
    "final",
    "reasoning_reply",
    "make_config",
    "make_pipeline",
]
