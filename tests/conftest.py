"""
Pytest Fixtures for FIELDVOICE Testing.

Shared fixtures for unit and end-to-end tests. The fakes themselves live in
tests.fixtures and can also be imported directly.
"""

import pytest

from fieldvoice.config import FieldVoiceConfig
from fieldvoice.providers import ProviderRegistry
from fieldvoice.types import ProviderRole, ProviderTier

from tests.fixtures import (
    FakeContextProvider,
    FakeExecutor,
    FakeReasoningProvider,
    FakeSynthesisProvider,
    FakeTranscriptionProvider,
    make_config,
)


@pytest.fixture
def config() -> FieldVoiceConfig:
    """Fast test configuration (no backoff, no playback)."""
    return make_config()


@pytest.fixture
def registry() -> ProviderRegistry:
    """Empty registry with default trip policy."""
    return ProviderRegistry()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def context_provider() -> FakeContextProvider:
    return FakeContextProvider()


@pytest.fixture
def cloud_providers(registry):
    """
    One network provider per role plus a local STT.

    Returns (stt, reasoning, tts, local_stt); the registry starts at FULL.
    """
    stt = FakeTranscriptionProvider("cloud-stt")
    reasoning = FakeReasoningProvider("cloud-reasoning")
    tts = FakeSynthesisProvider("cloud-tts")
    local_stt = FakeTranscriptionProvider("local-stt", tier=ProviderTier.LOCAL)
    registry.register_provider(ProviderRole.STT, stt, priority=1)
    registry.register_provider(ProviderRole.INTENT, reasoning, priority=1)
    registry.register_provider(ProviderRole.TTS, tts, priority=1)
    registry.register_provider(ProviderRole.STT, local_stt, priority=10)
    return stt, reasoning, tts, local_stt
