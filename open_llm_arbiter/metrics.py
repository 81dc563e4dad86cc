from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class EngineMetrics:
    total_selections: int = 0
    failed_selections: int = 0
    total_executions: int = 0
    failed_executions: int = 0
    fallback_executions: int = 0
    total_selection_time_ms: float = 0.0
    total_cost: float = 0.0
    model_usage: Counter[str] = field(default_factory=Counter)
    strategy_usage: Counter[str] = field(default_factory=Counter)
    error_counts: Counter[str] = field(default_factory=Counter)

    @property
    def average_selection_time_ms(self) -> float:
        if self.total_selections == 0:
            return 0.0
        return self.total_selection_time_ms / self.total_selections

    def record_selection(self, model_id: str, strategy: str, elapsed_ms: float) -> None:
        self.total_selections += 1
        self.total_selection_time_ms += max(0.0, elapsed_ms)
        self.model_usage[model_id] += 1
        self.strategy_usage[strategy] += 1

    def record_selection_failure(self, error_code: str) -> None:
        self.failed_selections += 1
        self.error_counts[error_code] += 1

    def record_execution(self, cost: float, fallback_used: bool) -> None:
        self.total_executions += 1
        self.total_cost += max(0.0, cost)
        if fallback_used:
            self.fallback_executions += 1

    def record_execution_failure(self, error_code: str) -> None:
        self.failed_executions += 1
        self.error_counts[error_code] += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_selections": self.total_selections,
            "failed_selections": self.failed_selections,
            "average_selection_time_ms": round(self.average_selection_time_ms, 3),
            "total_executions": self.total_executions,
            "failed_executions": self.failed_executions,
            "fallback_executions": self.fallback_executions,
            "total_cost": round(self.total_cost, 8),
            "model_usage": dict(self.model_usage.most_common()),
            "strategy_usage": dict(self.strategy_usage.most_common()),
            "error_counts": dict(self.error_counts.most_common()),
        }
