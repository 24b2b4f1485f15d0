"""
FIELDVOICE Error Recovery Engine

One retry / backoff / fallback policy shared by the recognition, intent and
response stages. Behavior is data (POLICY_TABLE), not per-stage control
flow:

    error class          retries  backoff                 fallback
    -------------------  -------  ----------------------  -----------------------
    TRANSIENT            2        exponential, 250ms x2   next-ranked provider
    LOW_CONFIDENCE       0        -                       prompt caller to repeat
    NO_PROVIDER          0        -                       demote mode, notify
    MALFORMED_OUTPUT     1        immediate               next-ranked provider

Usage:
    engine = ErrorRecoveryEngine(registry, mode_controller)
    text = await engine.run(
        ProviderRole.TTS,
        snapshot.level.allowed_tiers(ProviderRole.TTS),
        lambda provider: provider.synthesize("hello"),
        timeout_sec=5.0,
    )
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, Dict, List, Optional, TypeVar

import aiohttp

from fieldvoice.config import RecoveryConfig
from fieldvoice.exceptions import (
    LowConfidenceError,
    MalformedProviderOutputError,
    NoProviderAvailableError,
    ProviderTransientError,
    UserCancelledError,
    VoicePipelineError,
)
from fieldvoice.providers import ProviderDescriptor, ProviderRegistry
from fieldvoice.types import ProviderRole, ProviderTier

logger = logging.getLogger("FIELDVOICE.Recovery")

T = TypeVar("T")


__all__ = [
    "ErrorClass",
    "RetryPolicy",
    "ErrorRecoveryEngine",
    "classify_exception",
    "build_policy_table",
]


class ErrorClass(Enum):
    TRANSIENT = "transient"
    LOW_CONFIDENCE = "low_confidence"
    NO_PROVIDER = "no_provider"
    MALFORMED_OUTPUT = "malformed_output"
    TERMINAL = "terminal"


class Fallback(Enum):
    NEXT_PROVIDER = "next_provider"
    PROMPT_REPEAT = "prompt_repeat"
    DEMOTE_MODE = "demote_mode"
    NONE = "none"


@dataclass(frozen=True)
class RetryPolicy:
    retries: int
    backoff_base_sec: float = 0.0
    backoff_factor: float = 1.0
    fallback: Fallback = Fallback.NONE

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.backoff_base_sec <= 0:
            return 0.0
        return self.backoff_base_sec * (self.backoff_factor ** (attempt - 1))


def build_policy_table(config: Optional[RecoveryConfig] = None) -> Dict[ErrorClass, RetryPolicy]:
    config = config or RecoveryConfig()
    return {
        ErrorClass.TRANSIENT: RetryPolicy(
            retries=config.transient_retries,
            backoff_base_sec=config.backoff_base_sec,
            backoff_factor=config.backoff_factor,
            fallback=Fallback.NEXT_PROVIDER,
        ),
        ErrorClass.LOW_CONFIDENCE: RetryPolicy(retries=0, fallback=Fallback.PROMPT_REPEAT),
        ErrorClass.NO_PROVIDER: RetryPolicy(retries=0, fallback=Fallback.DEMOTE_MODE),
        ErrorClass.MALFORMED_OUTPUT: RetryPolicy(
            retries=config.malformed_retries,
            fallback=Fallback.NEXT_PROVIDER,
        ),
        ErrorClass.TERMINAL: RetryPolicy(retries=0, fallback=Fallback.NONE),
    }


def classify_exception(exc: BaseException) -> ErrorClass:
    """Map a raised exception to a row of the policy table."""
    if isinstance(exc, (UserCancelledError, asyncio.CancelledError)):
        return ErrorClass.TERMINAL
    if isinstance(exc, LowConfidenceError):
        return ErrorClass.LOW_CONFIDENCE
    if isinstance(exc, NoProviderAvailableError):
        return ErrorClass.NO_PROVIDER
    if isinstance(exc, MalformedProviderOutputError):
        return ErrorClass.MALFORMED_OUTPUT
    if isinstance(exc, (ProviderTransientError, asyncio.TimeoutError, aiohttp.ClientError, OSError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, VoicePipelineError):
        return ErrorClass.TERMINAL
    # Unexpected provider bugs are treated like a flaky provider
    return ErrorClass.TRANSIENT


class ErrorRecoveryEngine:
    """
    Runs one provider call under the shared policy.

    Walks the ranked providers for a role; each provider gets its retry
    budget for the error class it raised, then the next-ranked provider is
    tried within the same turn. Exhausting every provider raises
    NoProviderAvailableError and asks the mode controller to re-evaluate.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        mode_controller: Optional[Any] = None,
        config: Optional[RecoveryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.mode_controller = mode_controller
        self.policies = build_policy_table(config)
        self._sleep = sleep

    def policy_for(self, error_class: ErrorClass) -> RetryPolicy:
        return self.policies[error_class]

    async def run(
        self,
        role: ProviderRole,
        allowed_tiers: Collection[ProviderTier],
        call: Callable[[Any], Awaitable[T]],
        timeout_sec: float,
        on_attempt: Optional[Callable[[ProviderDescriptor, int], None]] = None,
    ) -> T:
        """Call ``call(provider)`` until one provider succeeds.

        Args:
            role: Capability role being exercised
            allowed_tiers: Tiers permitted by the turn's degradation level
            call: Coroutine factory receiving the provider object
            timeout_sec: Per-attempt timeout; expiry counts as transient
            on_attempt: Optional hook (descriptor, attempt number) for telemetry

        Raises:
            LowConfidenceError: propagated untouched (0 retries)
            UserCancelledError / CancelledError: propagated untouched
            NoProviderAvailableError: nothing viable, or every provider exhausted
        """
        tried: List[str] = []
        last_error: Optional[BaseException] = None

        while True:
            descriptor = self.registry.select(role, allowed_tiers, exclude=tried)
            if descriptor is None:
                self._report_unavailable(role)
                if tried:
                    raise NoProviderAvailableError(
                        f"All {role.value} providers exhausted",
                        role=role,
                        tried=list(tried),
                        last_error=str(last_error) if last_error else None,
                    )
                raise NoProviderAvailableError(
                    f"No viable {role.value} provider", role=role
                )

            tried.append(descriptor.name)
            result = await self._run_provider(descriptor, call, timeout_sec, on_attempt)
            if result.ok:
                return result.value
            last_error = result.error
            logger.warning(
                f"{role.value} provider {descriptor.name} exhausted "
                f"({type(result.error).__name__}: {result.error}), falling back"
            )

    async def _run_provider(
        self,
        descriptor: ProviderDescriptor,
        call: Callable[[Any], Awaitable[T]],
        timeout_sec: float,
        on_attempt: Optional[Callable[[ProviderDescriptor, int], None]],
    ) -> "_Attempt":
        attempt = 0
        retries_used: Dict[ErrorClass, int] = {}

        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(descriptor, attempt)
            try:
                value = await asyncio.wait_for(call(descriptor.provider), timeout=timeout_sec)
            except (asyncio.CancelledError, UserCancelledError, LowConfidenceError):
                raise
            except Exception as e:
                error_class = classify_exception(e)
                if error_class is ErrorClass.TERMINAL:
                    raise
                if isinstance(e, asyncio.TimeoutError):
                    e = ProviderTransientError(
                        f"{descriptor.role.value} call timed out after {timeout_sec}s",
                        role=descriptor.role,
                        provider=descriptor.name,
                    )
                self.registry.mark_failed(descriptor.role, descriptor.name, str(e))

                policy = self.policies[error_class]
                used = retries_used.get(error_class, 0)
                if policy.fallback is not Fallback.NEXT_PROVIDER or used >= policy.retries:
                    return _Attempt(ok=False, error=e)

                retries_used[error_class] = used + 1
                delay = policy.delay_for(used + 1)
                logger.info(
                    f"Retrying {descriptor.role.value} provider {descriptor.name} "
                    f"({error_class.value}, retry {used + 1}/{policy.retries}, "
                    f"delay {delay * 1000:.0f}ms)"
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            self.registry.mark_healthy(descriptor.role, descriptor.name)
            return _Attempt(ok=True, value=value)

    def _report_unavailable(self, role: ProviderRole) -> None:
        if self.mode_controller is None:
            return
        try:
            self.mode_controller.report_unavailable(role)
        except Exception as e:
            logger.warning(f"Mode controller notification failed: {e}")


@dataclass
class _Attempt:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None
