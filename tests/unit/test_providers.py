"""
Unit tests for the FIELDVOICE provider registry.

Tests registration, ranked selection, trip policy and health checks.

Run:
    pytest tests/unit/test_providers.py -v
"""

import asyncio

import pytest

from fieldvoice.providers import ProviderDescriptor, ProviderRegistry, ReasoningRequest
from fieldvoice.types import ContextSnapshot, ProviderRole, ProviderTier

from tests.fixtures import FakeSynthesisProvider, FakeTranscriptionProvider

BOTH = {ProviderTier.NETWORK, ProviderTier.LOCAL}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_registry(clock):
    return ProviderRegistry(trip_threshold=3, failure_window_sec=60.0, clock=clock)


def stt(name, tier=ProviderTier.NETWORK, **kwargs):
    return FakeTranscriptionProvider(name, tier=tier, **kwargs)


class TestRegistration:

    def test_register_provider(self, registry):
        descriptor = registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        assert descriptor.name == "a"
        assert descriptor.tier is ProviderTier.NETWORK
        assert registry.get(ProviderRole.STT, "a") is descriptor
        assert registry.get(ProviderRole.TTS, "a") is None

    def test_register_same_name_replaces(self, registry):
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("a"), priority=5)
        descriptors = registry.list_descriptors(ProviderRole.STT)
        assert len(descriptors) == 1
        assert descriptors[0].priority == 5

    def test_role_mismatch(self, registry):
        descriptor = ProviderDescriptor.for_provider(stt("a"), ProviderRole.STT, 1)
        with pytest.raises(ValueError):
            registry.register(ProviderRole.TTS, descriptor)

    def test_list_all_roles(self, registry):
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        registry.register_provider(ProviderRole.TTS, FakeSynthesisProvider("t"), priority=1)
        assert {d.name for d in registry.list_descriptors()} == {"a", "t"}


class TestSelection:
    """Ranked selection under tier and trip filters."""

    def test_lowest_priority_wins(self, registry):
        registry.register_provider(ProviderRole.STT, stt("slow"), priority=5)
        registry.register_provider(ProviderRole.STT, stt("fast"), priority=1)
        assert registry.select(ProviderRole.STT, BOTH).name == "fast"

    def test_tier_filter(self, registry):
        registry.register_provider(ProviderRole.STT, stt("cloud"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("local", ProviderTier.LOCAL), priority=10)
        assert registry.select(ProviderRole.STT, {ProviderTier.LOCAL}).name == "local"

    def test_no_tiers_allowed(self, registry):
        registry.register_provider(ProviderRole.STT, stt("cloud"), priority=1)
        assert registry.select(ProviderRole.STT, frozenset()) is None

    def test_nothing_registered(self, registry):
        assert registry.select(ProviderRole.INTENT, BOTH) is None

    def test_exclude(self, registry):
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("b"), priority=2)
        assert registry.select(ProviderRole.STT, BOTH, exclude=["a"]).name == "b"
        assert registry.select(ProviderRole.STT, BOTH, exclude=["a", "b"]) is None

    def test_tie_break_most_recent_success(self, clocked_registry, clock):
        registry = clocked_registry
        registry.register_provider(ProviderRole.STT, stt("older"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("newer"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("never"), priority=1)

        registry.mark_healthy(ProviderRole.STT, "older")
        clock.advance(5)
        registry.mark_healthy(ProviderRole.STT, "newer")

        names = [d.name for d in registry.ranked(ProviderRole.STT, BOTH)]
        assert names == ["newer", "older", "never"]

    def test_tie_break_registration_order(self, registry):
        registry.register_provider(ProviderRole.STT, stt("first"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("second"), priority=1)
        assert [d.name for d in registry.ranked(ProviderRole.STT, BOTH)] == ["first", "second"]

    def test_has_viable(self, registry):
        registry.register_provider(ProviderRole.STT, stt("local", ProviderTier.LOCAL), priority=1)
        assert registry.has_viable(ProviderRole.STT, ProviderTier.LOCAL)
        assert not registry.has_viable(ProviderRole.STT, ProviderTier.NETWORK)


class TestTripPolicy:
    """Failure counting inside the rolling window."""

    def test_trips_at_threshold(self, clocked_registry):
        registry = clocked_registry
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("b"), priority=2)

        registry.mark_failed(ProviderRole.STT, "a", "timeout")
        registry.mark_failed(ProviderRole.STT, "a", "timeout")
        assert registry.select(ProviderRole.STT, BOTH).name == "a"

        registry.mark_failed(ProviderRole.STT, "a", "timeout")
        assert registry.select(ProviderRole.STT, BOTH).name == "b"
        assert not registry.is_viable(registry.get(ProviderRole.STT, "a"))

    def test_success_resets(self, clocked_registry):
        registry = clocked_registry
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        for _ in range(3):
            registry.mark_failed(ProviderRole.STT, "a")
        registry.mark_healthy(ProviderRole.STT, "a")

        descriptor = registry.get(ProviderRole.STT, "a")
        assert descriptor.consecutive_failures == 0
        assert registry.select(ProviderRole.STT, BOTH) is descriptor

    def test_failures_age_out_of_window(self, clocked_registry, clock):
        registry = clocked_registry
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        for _ in range(3):
            registry.mark_failed(ProviderRole.STT, "a")
        assert registry.select(ProviderRole.STT, BOTH) is None

        clock.advance(61)
        assert registry.select(ProviderRole.STT, BOTH).name == "a"

    def test_mark_unknown_provider_is_noop(self, registry):
        registry.mark_failed(ProviderRole.STT, "ghost")
        registry.mark_healthy(ProviderRole.STT, "ghost")

    def test_listener_notified(self, registry):
        seen = []
        registry.add_listener(lambda d: seen.append((d.name, d.consecutive_failures)))
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        registry.mark_failed(ProviderRole.STT, "a")
        registry.mark_healthy(ProviderRole.STT, "a")
        assert seen == [("a", 1), ("a", 0)]

    def test_listener_error_does_not_propagate(self, registry):
        def broken(descriptor):
            raise RuntimeError("listener bug")

        registry.add_listener(broken)
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        registry.mark_failed(ProviderRole.STT, "a")


class SlowHealthProvider:
    name = "slow"
    tier = ProviderTier.NETWORK

    async def health_check(self) -> bool:
        await asyncio.sleep(5)
        return True


class BrokenHealthProvider:
    name = "broken"
    tier = ProviderTier.NETWORK

    async def health_check(self) -> bool:
        raise ConnectionError("refused")


class TestHealthChecks:

    @pytest.mark.asyncio
    async def test_run_health_checks(self, registry):
        registry.register_provider(ProviderRole.STT, stt("up"), priority=1)
        registry.register_provider(ProviderRole.STT, stt("down", healthy=False), priority=2)
        registry.register_provider(ProviderRole.TTS, FakeSynthesisProvider("tts"), priority=1)

        results = await registry.run_health_checks()

        assert results == {"stt/up": True, "stt/down": False, "tts/tts": True}
        up = registry.get(ProviderRole.STT, "up")
        down = registry.get(ProviderRole.STT, "down")
        assert up.last_health_check.healthy
        assert up.last_success is not None
        assert down.consecutive_failures == 1
        assert down.last_health_check.error == "health check failed"

    @pytest.mark.asyncio
    async def test_health_check_timeout(self):
        registry = ProviderRegistry(health_check_timeout_sec=0.01)
        registry.register_provider(ProviderRole.STT, SlowHealthProvider(), priority=1)
        results = await registry.run_health_checks()
        assert results == {"stt/slow": False}

    @pytest.mark.asyncio
    async def test_health_check_exception(self, registry):
        registry.register_provider(ProviderRole.STT, BrokenHealthProvider(), priority=1)
        results = await registry.run_health_checks()
        assert results == {"stt/broken": False}
        assert "refused" in registry.get(ProviderRole.STT, "broken").last_health_check.error

    @pytest.mark.asyncio
    async def test_background_loop_start_stop(self):
        registry = ProviderRegistry(health_check_interval_sec=0.01)
        provider = stt("a")
        registry.register_provider(ProviderRole.STT, provider, priority=1)

        registry.start_health_checks()
        registry.start_health_checks()  # already running
        await asyncio.sleep(0.05)
        await registry.stop_health_checks()

        checks = provider.health_checks
        assert checks >= 1
        await asyncio.sleep(0.03)
        assert provider.health_checks == checks

    def test_status(self, registry):
        registry.register_provider(ProviderRole.STT, stt("a"), priority=1)
        status = registry.get_status()
        assert status["stt"][0]["name"] == "a"
        assert status["stt"][0]["last_health_ok"] is None
        assert status["intent"] == []


def test_reasoning_request_dict():
    request = ReasoningRequest("go to schedule", ContextSnapshot(active_record_id="job-1"))
    data = request.to_dict()
    assert data["transcript"] == "go to schedule"
    assert data["context"]["active_record_id"] == "job-1"
    assert data["language"] == "en"
