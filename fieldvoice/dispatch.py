"""
FIELDVOICE Action Dispatch
Hands resolved intents to the host application's action executor.

UNKNOWN intents short-circuit to a clarification outcome without touching
the executor. Executor outcomes are surfaced as-is and never retried. Only
one dispatch is in flight at a time, so commands execute in spoken order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fieldvoice.types import ActionExecutor, ActionOutcome, ContextProvider, ContextSnapshot, Intent

logger = logging.getLogger("FIELDVOICE.Dispatch")


__all__ = ["ActionDispatcher"]


class ActionDispatcher:
    """Serialized bridge to the external ActionExecutor."""

    def __init__(
        self,
        executor: ActionExecutor,
        context_provider: Optional[ContextProvider] = None,
    ):
        self.executor = executor
        self.context_provider = context_provider
        self._lock = asyncio.Lock()
        self.dispatched_count = 0

    def context(self) -> ContextSnapshot:
        """Read-only context snapshot; empty when no provider is attached."""
        if self.context_provider is None:
            return ContextSnapshot()
        try:
            return self.context_provider.snapshot()
        except Exception as e:
            logger.warning(f"Context provider failed, using empty context: {e}")
            return ContextSnapshot()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def dispatch(self, intent: Intent, context: Optional[ContextSnapshot] = None) -> ActionOutcome:
        """
        Execute an intent's action.

        Args:
            intent: Resolved intent
            context: Snapshot used for resolution; taken fresh when omitted

        Returns:
            The executor's outcome, a clarification outcome for UNKNOWN, or a
            failed outcome wrapping an executor exception
        """
        if not intent.is_actionable:
            logger.debug("Unknown intent, requesting clarification")
            return ActionOutcome.clarification()

        async with self._lock:
            context = context or self.context()
            logger.info(f"Dispatching {intent.action.value} ({intent.source.value})")
            try:
                outcome = await self.executor.execute(intent.action, intent.entities, context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Action executor failed for {intent.action.value}: {e}")
                return ActionOutcome(success=False, detail=str(e))
            finally:
                self.dispatched_count += 1

        if not outcome.success:
            logger.warning(f"Action {intent.action.value} failed: {outcome.detail}")
        return outcome
