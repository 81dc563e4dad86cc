from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from open_llm_arbiter.config import RankingConfig
from open_llm_arbiter.domain import ArbitrationContext, Candidate, SelectionStrategy
from open_llm_arbiter.errors import NoSuitableModelError


@dataclass(slots=True)
class RankedSelection:
    selected: Candidate
    fallbacks: list[Candidate] = field(default_factory=list)
    filtered: list[Candidate] = field(default_factory=list)
    ordered: list[Candidate] = field(default_factory=list)
    strategy: str = SelectionStrategy.BALANCED.value
    constraints_relaxed: bool = False


_StrategyPicker = Callable[[list[Candidate]], Candidate]

_STRATEGY_PICKERS: dict[str, _StrategyPicker] = {
    SelectionStrategy.COST_OPTIMIZED.value: lambda items: min(
        items, key=lambda item: item.estimated_cost
    ),
    SelectionStrategy.PERFORMANCE_CRITICAL.value: lambda items: max(
        items, key=lambda item: item.performance_score
    ),
    SelectionStrategy.LATENCY_SENSITIVE.value: lambda items: min(
        items, key=lambda item: item.estimated_latency_ms
    ),
    SelectionStrategy.RELIABILITY_FOCUSED.value: lambda items: max(
        items, key=lambda item: item.reliability_score
    ),
}


def sort_candidates(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(
        candidates,
        key=lambda item: (item.final_score, item.value_score),
        reverse=True,
    )


def normalize_strategy(strategy: str | None) -> str:
    normalized = (strategy or "").strip().lower()
    return normalized or SelectionStrategy.BALANCED.value


class Ranker:
    def __init__(
        self,
        config: RankingConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or RankingConfig()
        self._logger = logger

    def rank(
        self, candidates: list[Candidate], context: ArbitrationContext
    ) -> RankedSelection:
        if not candidates:
            raise NoSuitableModelError(
                "No candidates available for selection.",
                {"tenant_id": context.tenant_id},
            )

        ordered = sort_candidates(candidates)
        filtered, relaxed = self.apply_business_rules(ordered, context)
        strategy = normalize_strategy(context.selection_strategy)
        selected = self.select_best(filtered, strategy)
        fallbacks = self.prepare_fallbacks(filtered, selected)
        if relaxed and self._logger is not None:
            self._logger.info(
                "ranking_constraints_relaxed tenant=%s candidates=%d kept=%d",
                context.tenant_id,
                len(ordered),
                len(filtered),
            )
        return RankedSelection(
            selected=selected,
            fallbacks=fallbacks,
            filtered=filtered,
            ordered=ordered,
            strategy=strategy,
            constraints_relaxed=relaxed,
        )

    def apply_business_rules(
        self, candidates: list[Candidate], context: ArbitrationContext
    ) -> tuple[list[Candidate], bool]:
        filtered = [
            candidate
            for candidate in candidates
            if candidate.final_score >= self._config.min_final_score
            and (
                context.max_latency_ms is None
                or candidate.estimated_latency_ms <= context.max_latency_ms
            )
            and (context.max_cost is None or candidate.estimated_cost <= context.max_cost)
        ]
        if filtered:
            return filtered, False
        # Jointly unsatisfiable constraints still yield a selection.
        relaxed = sorted(candidates, key=lambda item: item.final_score, reverse=True)
        return relaxed[: self._config.relaxed_top_n], True

    def select_best(self, candidates: list[Candidate], strategy: str | None) -> Candidate:
        if not candidates:
            raise NoSuitableModelError("No candidates available for selection.")
        picker = _STRATEGY_PICKERS.get(normalize_strategy(strategy))
        if picker is None:
            return max(candidates, key=lambda item: item.final_score)
        return picker(candidates)

    def prepare_fallbacks(
        self, candidates: list[Candidate], selected: Candidate
    ) -> list[Candidate]:
        remaining = [
            candidate
            for candidate in candidates
            if candidate.model.id != selected.model.id
        ]
        remaining.sort(key=lambda item: item.final_score, reverse=True)
        return remaining[: self._config.max_fallbacks]
