"""
FIELDVOICE Provider Registry

Keeps every known provider per capability role (STT, intent reasoning,
TTS), tracks their health, and picks the best currently-viable one.

Selection rule for a role:
    1. tier must be permitted by the caller (derived from DegradationLevel)
    2. provider must not be tripped: fewer than ``trip_threshold`` failures
       recorded inside the rolling ``failure_window_sec`` since its last
       success
    3. lowest priority wins; ties go to the most recent successful health
       check (never-checked ranks last), then to registration order

Health checks run on a background task and never block the pipeline. A
failed call reported by the recovery engine marks the provider failed
immediately, ahead of the next scheduled check.

Usage:
    registry = ProviderRegistry()
    registry.register(ProviderRole.STT, ProviderDescriptor.for_provider(cloud_stt, priority=1))
    descriptor = registry.select(ProviderRole.STT, {ProviderTier.NETWORK})
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Collection,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from fieldvoice.types import ContextSnapshot, ProviderRole, ProviderTier

logger = logging.getLogger("FIELDVOICE.ProviderRegistry")


__all__ = [
    "Provider",
    "TranscriptEvent",
    "TranscriptionProvider",
    "ReasoningRequest",
    "ReasoningProvider",
    "SynthesisProvider",
    "HealthCheckResult",
    "ProviderDescriptor",
    "ProviderRegistry",
]


# =============================================================================
# Provider Protocols
# =============================================================================


@runtime_checkable
class Provider(Protocol):
    """Anything the registry can hold."""
    name: str
    tier: ProviderTier

    async def health_check(self) -> bool:
        ...


@dataclass(frozen=True)
class TranscriptEvent:
    """One event from a streaming transcription."""
    text: str
    confidence: float
    is_final: bool = False


class TranscriptionProvider(Provider, Protocol):
    """Speech-to-text.

    Consumes a stream of PCM chunks and lazily yields interim events
    followed by exactly one final event.
    """

    def transcribe(
        self,
        audio: AsyncIterator[bytes],
        *,
        sample_rate: int,
        language: str,
    ) -> AsyncIterator[TranscriptEvent]:
        ...


@dataclass(frozen=True)
class ReasoningRequest:
    transcript: str
    context: ContextSnapshot
    language: str = "en"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transcript": self.transcript,
            "context": self.context.to_dict(),
            "language": self.language,
        }


class ReasoningProvider(Provider, Protocol):
    """Cloud reasoning: returns the raw structured reply (unvalidated)."""

    async def reason(self, request: ReasoningRequest) -> Dict[str, Any]:
        ...


class SynthesisProvider(Provider, Protocol):
    """Text-to-speech: returns an audio payload."""

    async def synthesize(self, text: str, *, voice: str = "default") -> bytes:
        ...


# =============================================================================
# Descriptor
# =============================================================================


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one health check."""
    healthy: bool
    checked_at: datetime = field(default_factory=datetime.now)
    error: Optional[str] = None


@dataclass
class ProviderDescriptor:
    """One implementation of a capability role.

    Owned by the registry; only health-check results and failure reports
    mutate it.
    """
    role: ProviderRole
    name: str
    tier: ProviderTier
    priority: int
    provider: Any = None
    last_health_check: Optional[HealthCheckResult] = None
    last_success: Optional[float] = None  # monotonic
    consecutive_failures: int = 0
    registration_index: int = 0
    _failure_times: Deque[float] = field(default_factory=deque, repr=False)

    @classmethod
    def for_provider(
        cls,
        provider: Any,
        role: ProviderRole,
        priority: int,
    ) -> "ProviderDescriptor":
        return cls(
            role=role,
            name=provider.name,
            tier=provider.tier,
            priority=priority,
            provider=provider,
        )

    def recent_failures(self, now: float, window_sec: float) -> int:
        """Failures inside the rolling window (pruning older ones)."""
        while self._failure_times and now - self._failure_times[0] > window_sec:
            self._failure_times.popleft()
        return len(self._failure_times)

    def is_tripped(self, now: float, threshold: int, window_sec: float) -> bool:
        if self.consecutive_failures < threshold:
            return False
        return self.recent_failures(now, window_sec) >= threshold

    def to_dict(self) -> Dict[str, Any]:
        check = self.last_health_check
        return {
            "role": self.role.value,
            "name": self.name,
            "tier": self.tier.value,
            "priority": self.priority,
            "consecutive_failures": self.consecutive_failures,
            "last_health_check": check.checked_at.isoformat() if check else None,
            "last_health_ok": check.healthy if check else None,
        }


# =============================================================================
# Registry
# =============================================================================


class ProviderRegistry:
    """
    Registry and selector for STT / intent / TTS providers.

    Descriptor state is mutated by the health-check task and by per-call
    failure reports; every mutation goes through one lock.
    """

    def __init__(
        self,
        trip_threshold: int = 3,
        failure_window_sec: float = 60.0,
        health_check_interval_sec: float = 30.0,
        health_check_timeout_sec: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.trip_threshold = trip_threshold
        self.failure_window_sec = failure_window_sec
        self.health_check_interval_sec = health_check_interval_sec
        self.health_check_timeout_sec = health_check_timeout_sec
        self._clock = clock

        self._descriptors: Dict[ProviderRole, List[ProviderDescriptor]] = {
            role: [] for role in ProviderRole
        }
        self._lock = threading.Lock()
        self._registrations = 0
        self._health_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[ProviderDescriptor], None]] = []

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, role: ProviderRole, descriptor: ProviderDescriptor) -> None:
        """Register a descriptor under a role, replacing one of the same name."""
        if descriptor.role is not role:
            raise ValueError(
                f"Descriptor {descriptor.name} has role {descriptor.role.value}, "
                f"cannot register under {role.value}"
            )
        with self._lock:
            entries = self._descriptors[role]
            entries[:] = [d for d in entries if d.name != descriptor.name]
            descriptor.registration_index = self._registrations
            self._registrations += 1
            entries.append(descriptor)
        logger.info(
            f"Registered {role.value} provider: {descriptor.name} "
            f"(tier={descriptor.tier.value}, priority={descriptor.priority})"
        )

    def register_provider(self, role: ProviderRole, provider: Any, priority: int) -> ProviderDescriptor:
        """Convenience wrapper building the descriptor from a provider object."""
        descriptor = ProviderDescriptor.for_provider(provider, role, priority)
        self.register(role, descriptor)
        return descriptor

    def get(self, role: ProviderRole, name: str) -> Optional[ProviderDescriptor]:
        with self._lock:
            for descriptor in self._descriptors[role]:
                if descriptor.name == name:
                    return descriptor
        return None

    def list_descriptors(self, role: Optional[ProviderRole] = None) -> List[ProviderDescriptor]:
        with self._lock:
            if role is not None:
                return list(self._descriptors[role])
            return [d for entries in self._descriptors.values() for d in entries]

    def add_listener(self, listener: Callable[[ProviderDescriptor], None]) -> None:
        """Called after any health change (mark_healthy / mark_failed)."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Health updates
    # -------------------------------------------------------------------------

    def mark_healthy(self, role: ProviderRole, name: str) -> None:
        with self._lock:
            descriptor = self._find(role, name)
            if descriptor is None:
                return
            was_failing = descriptor.consecutive_failures > 0
            descriptor.consecutive_failures = 0
            descriptor._failure_times.clear()
            descriptor.last_success = self._clock()
            descriptor.last_health_check = HealthCheckResult(healthy=True)
        if was_failing:
            logger.info(f"{role.value} provider {name} recovered")
        self._notify(descriptor)

    def mark_failed(self, role: ProviderRole, name: str, error: Optional[str] = None) -> None:
        with self._lock:
            descriptor = self._find(role, name)
            if descriptor is None:
                return
            now = self._clock()
            descriptor.consecutive_failures += 1
            descriptor._failure_times.append(now)
            descriptor.last_health_check = HealthCheckResult(healthy=False, error=error)
            tripped = descriptor.is_tripped(now, self.trip_threshold, self.failure_window_sec)
            failures = descriptor.consecutive_failures
        if tripped:
            logger.warning(f"{role.value} provider {name} tripped after {failures} failures")
        else:
            logger.debug(f"{role.value} provider {name} failure #{failures}: {error}")
        self._notify(descriptor)

    def _find(self, role: ProviderRole, name: str) -> Optional[ProviderDescriptor]:
        for descriptor in self._descriptors[role]:
            if descriptor.name == name:
                return descriptor
        return None

    def _notify(self, descriptor: ProviderDescriptor) -> None:
        for listener in self._listeners:
            try:
                listener(descriptor)
            except Exception as e:
                logger.warning(f"Registry listener error: {e}")

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def is_viable(self, descriptor: ProviderDescriptor) -> bool:
        with self._lock:
            return not descriptor.is_tripped(
                self._clock(), self.trip_threshold, self.failure_window_sec
            )

    def ranked(
        self,
        role: ProviderRole,
        allowed_tiers: Collection[ProviderTier],
        exclude: Iterable[str] = (),
    ) -> List[ProviderDescriptor]:
        """All viable descriptors for a role, best first."""
        excluded = set(exclude)
        with self._lock:
            now = self._clock()
            candidates = [
                d for d in self._descriptors[role]
                if d.tier in allowed_tiers
                and d.name not in excluded
                and not d.is_tripped(now, self.trip_threshold, self.failure_window_sec)
            ]
        return sorted(
            candidates,
            key=lambda d: (
                d.priority,
                -(d.last_success if d.last_success is not None else float("-inf")),
                d.registration_index,
            ),
        )

    def select(
        self,
        role: ProviderRole,
        allowed_tiers: Collection[ProviderTier],
        exclude: Iterable[str] = (),
    ) -> Optional[ProviderDescriptor]:
        """Best viable descriptor, or None when nothing qualifies.

        None is a hard fallback signal, not a retryable error.
        """
        if not allowed_tiers:
            return None
        ranked = self.ranked(role, allowed_tiers, exclude)
        return ranked[0] if ranked else None

    def has_viable(self, role: ProviderRole, tier: ProviderTier) -> bool:
        return self.select(role, {tier}) is not None

    # -------------------------------------------------------------------------
    # Health checks
    # -------------------------------------------------------------------------

    async def _check_one(self, descriptor: ProviderDescriptor) -> bool:
        provider = descriptor.provider
        if provider is None or not hasattr(provider, "health_check"):
            return True
        try:
            healthy = await asyncio.wait_for(
                provider.health_check(), timeout=self.health_check_timeout_sec
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.mark_failed(descriptor.role, descriptor.name, f"health check error: {e}")
            return False

        if healthy:
            self.mark_healthy(descriptor.role, descriptor.name)
        else:
            self.mark_failed(descriptor.role, descriptor.name, "health check failed")
        return bool(healthy)

    async def run_health_checks(self) -> Dict[str, bool]:
        """Check every provider concurrently; returns {"role/name": healthy}."""
        descriptors = self.list_descriptors()
        results = await asyncio.gather(*(self._check_one(d) for d in descriptors))
        return {
            f"{d.role.value}/{d.name}": ok for d, ok in zip(descriptors, results)
        }

    async def _health_loop(self) -> None:
        while True:
            try:
                await self.run_health_checks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check error: {e}")
            await asyncio.sleep(self.health_check_interval_sec)

    def start_health_checks(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())
            logger.info(
                f"Provider health checks every {self.health_check_interval_sec:.0f}s"
            )

    async def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_status(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            role.value: [d.to_dict() for d in self.list_descriptors(role)]
            for role in ProviderRole
        }
