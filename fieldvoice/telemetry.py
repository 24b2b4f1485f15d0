"""
FIELDVOICE Telemetry
Sinks that receive one VoiceTurnResult per completed or failed turn, plus
running pipeline metrics.

Usage:
    sink = InMemoryTelemetrySink(max_history=100)
    pipeline = VoicePipeline(..., telemetry=[LoggingTelemetrySink(), sink])
    print(sink.results[-1].to_dict())
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Protocol, runtime_checkable

from fieldvoice.types import VoiceTurnResult

logger = logging.getLogger("FIELDVOICE.Telemetry")


__all__ = [
    "TelemetrySink",
    "LoggingTelemetrySink",
    "InMemoryTelemetrySink",
    "PipelineMetrics",
]


@runtime_checkable
class TelemetrySink(Protocol):
    def emit(self, result: VoiceTurnResult) -> None:
        ...


class LoggingTelemetrySink:
    """One structured log line per turn."""

    def __init__(self, logger_name: str = "FIELDVOICE.Telemetry", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def emit(self, result: VoiceTurnResult) -> None:
        outcome = "ok" if result.succeeded else result.failure.value
        action = result.intent.action.value if result.intent else "-"
        self._logger.log(
            self._level,
            f"Turn #{result.sequence} {outcome} action={action} "
            f"level={result.degradation_level_at_run.value} recovery={result.recovery.value}",
            extra={"turn": result.to_dict()},
        )


class InMemoryTelemetrySink:
    """Bounded history of turn results."""

    def __init__(self, max_history: int = 100):
        self._results: Deque[VoiceTurnResult] = deque(maxlen=max_history)
        self._lock = threading.Lock()

    def emit(self, result: VoiceTurnResult) -> None:
        with self._lock:
            self._results.append(result)

    @property
    def results(self) -> List[VoiceTurnResult]:
        with self._lock:
            return list(self._results)

    def clear(self) -> None:
        with self._lock:
            self._results.clear()

    def __len__(self) -> int:
        return len(self._results)


class PipelineMetrics:
    """Running counters and per-stage latency averages."""

    STAGES = ("recognition", "intent", "dispatch", "response")

    def __init__(self):
        self.turns_completed = 0
        self.turns_failed = 0
        self.failures_by_kind: Dict[str, int] = {}
        self.recoveries: Dict[str, int] = {}
        self.text_only_responses = 0
        self._latency_totals: Dict[str, float] = {stage: 0.0 for stage in self.STAGES}
        self._latency_counts: Dict[str, int] = {stage: 0 for stage in self.STAGES}
        self._lock = threading.Lock()

    def record(self, result: VoiceTurnResult) -> None:
        with self._lock:
            if result.succeeded:
                self.turns_completed += 1
            else:
                self.turns_failed += 1
                kind = result.failure.value
                self.failures_by_kind[kind] = self.failures_by_kind.get(kind, 0) + 1
            if result.recovery.value != "none":
                key = result.recovery.value
                self.recoveries[key] = self.recoveries.get(key, 0) + 1
            if result.text_only:
                self.text_only_responses += 1
            for stage, ms in result.stage_latency_ms.items():
                if stage in self._latency_totals:
                    self._latency_totals[stage] += ms
                    self._latency_counts[stage] += 1

    def average_latency_ms(self, stage: str) -> float:
        count = self._latency_counts.get(stage, 0)
        if not count:
            return 0.0
        return self._latency_totals[stage] / count

    @property
    def total_turns(self) -> int:
        return self.turns_completed + self.turns_failed

    def to_dict(self, cache_hit_ratio: float = 0.0) -> Dict[str, Any]:
        return {
            "turns_total": self.total_turns,
            "turns_completed": self.turns_completed,
            "turns_failed": self.turns_failed,
            "failures_by_kind": dict(self.failures_by_kind),
            "recoveries": dict(self.recoveries),
            "text_only_responses": self.text_only_responses,
            "avg_latency_ms": {
                stage: round(self.average_latency_ms(stage), 1) for stage in self.STAGES
            },
            "cache_hit_ratio": round(cache_hit_ratio, 3),
        }
