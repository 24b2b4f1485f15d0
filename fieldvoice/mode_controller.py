"""
FIELDVOICE Mode / Degradation Controller

Computes the single authoritative DegradationLevel from connectivity and
provider registry state, and publishes it as a versioned snapshot.

Algorithm (compute_degradation_level):
    offline:  BASIC if any local STT is viable, else DISABLED
    online:   FULL     if network STT, intent and TTS are all viable
              PARTIAL  if network STT is viable
              BASIC    if a local STT is viable
              DISABLED otherwise

Re-evaluation happens on a periodic timer, immediately on every
connectivity change, and on demand when a stage reports that a role has no
provider left. Stages read ``current`` once at the start of a turn and keep
that snapshot for the whole turn.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from fieldvoice.providers import ProviderRegistry
from fieldvoice.types import DegradationLevel, ProviderRole, ProviderTier

logger = logging.getLogger("FIELDVOICE.ModeController")


__all__ = [
    "ModeSnapshot",
    "ModeController",
    "compute_degradation_level",
]


def compute_degradation_level(registry: ProviderRegistry, online: bool) -> DegradationLevel:
    """Pure function of registry state plus connectivity."""
    local_stt = registry.has_viable(ProviderRole.STT, ProviderTier.LOCAL)

    if not online:
        return DegradationLevel.BASIC if local_stt else DegradationLevel.DISABLED

    network_stt = registry.has_viable(ProviderRole.STT, ProviderTier.NETWORK)
    network_intent = registry.has_viable(ProviderRole.INTENT, ProviderTier.NETWORK)
    network_tts = registry.has_viable(ProviderRole.TTS, ProviderTier.NETWORK)

    if network_stt and network_intent and network_tts:
        return DegradationLevel.FULL
    if network_stt:
        return DegradationLevel.PARTIAL
    if local_stt:
        return DegradationLevel.BASIC
    return DegradationLevel.DISABLED


@dataclass(frozen=True)
class ModeSnapshot:
    """One published degradation level. ``version`` increases on every change."""
    level: DegradationLevel
    version: int
    online: bool
    reason: str = ""
    evaluated_at: datetime = field(default_factory=datetime.now)


ModeListener = Callable[[ModeSnapshot, ModeSnapshot], None]


class ModeController:
    """Owns and publishes the current DegradationLevel."""

    def __init__(
        self,
        registry: ProviderRegistry,
        online: bool = True,
        evaluation_interval_sec: float = 30.0,
    ):
        self.registry = registry
        self.evaluation_interval_sec = evaluation_interval_sec
        self._online = online
        self._snapshot = ModeSnapshot(
            level=compute_degradation_level(registry, online),
            version=0,
            online=online,
            reason="initial",
        )
        self._listeners: List[ModeListener] = []
        self._timer_task: Optional[asyncio.Task] = None

    @property
    def current(self) -> ModeSnapshot:
        return self._snapshot

    @property
    def level(self) -> DegradationLevel:
        return self._snapshot.level

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: ModeListener) -> None:
        """Listener receives (old_snapshot, new_snapshot) on every level change."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: ModeListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def evaluate(self, reason: str = "evaluation") -> ModeSnapshot:
        """Recompute the level and publish it if it changed."""
        level = compute_degradation_level(self.registry, self._online)
        old = self._snapshot
        if level is old.level and self._online == old.online:
            return old

        new = ModeSnapshot(
            level=level,
            version=old.version + 1,
            online=self._online,
            reason=reason,
        )
        self._snapshot = new

        if level is not old.level:
            log = logger.warning if level.is_worse_than(old.level) else logger.info
            log(
                f"Degradation level {old.level.value} -> {level.value} "
                f"(v{new.version}, online={self._online}, reason={reason})"
            )
            for listener in list(self._listeners):
                try:
                    listener(old, new)
                except Exception as e:
                    logger.warning(f"Mode listener error: {e}")
        return new

    def set_connectivity(self, online: bool) -> ModeSnapshot:
        """Connectivity change event: re-evaluate immediately."""
        if online == self._online:
            return self._snapshot
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self._online = online
        return self.evaluate(reason="connectivity")

    def report_unavailable(self, role: ProviderRole) -> ModeSnapshot:
        """A stage exhausted every provider for a role."""
        return self.evaluate(reason=f"no {role.value} provider")

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.evaluation_interval_sec)
            try:
                self.evaluate(reason="timer")
            except Exception as e:
                logger.error(f"Mode evaluation error: {e}")

    def start(self) -> None:
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._timer_loop())

    async def stop(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
