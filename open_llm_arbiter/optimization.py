from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta

from open_llm_arbiter.config import DEFAULT_TASK_TYPE, OptimizationConfig
from open_llm_arbiter.domain import ArbitrationRule, utc_now
from open_llm_arbiter.interfaces import ModelCatalog


@dataclass(slots=True)
class _ModelOutcomes:
    samples: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        if self.samples == 0:
            return 0.0
        return self.successes / self.samples


class RuleOptimizer:
    """Derives per-task model preferences from recorded decisions."""

    def __init__(
        self,
        catalog: ModelCatalog,
        config: OptimizationConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._catalog = catalog
        self._config = config or OptimizationConfig()
        self._logger = logger
        self._rules: dict[str, list[ArbitrationRule]] = {}

    def rules_for(self, tenant_id: str) -> list[ArbitrationRule]:
        return list(self._rules.get(tenant_id, []))

    async def optimize(self, tenant_id: str) -> list[ArbitrationRule]:
        since = utc_now() - timedelta(days=self._config.lookback_days)
        decisions = await self._catalog.get_decisions(tenant_id, since)

        outcomes: dict[str, dict[str, _ModelOutcomes]] = defaultdict(
            lambda: defaultdict(_ModelOutcomes)
        )
        for decision in decisions:
            task_type = decision.task_type or DEFAULT_TASK_TYPE
            entry = outcomes[task_type][decision.selected_model_id]
            entry.samples += 1
            if decision.success:
                entry.successes += 1

        rules: list[ArbitrationRule] = []
        for task_type in sorted(outcomes):
            eligible = [
                (model_id, entry)
                for model_id, entry in outcomes[task_type].items()
                if entry.samples >= self._config.min_samples
            ]
            eligible.sort(
                key=lambda item: (item[1].success_rate, item[1].samples, item[0]),
                reverse=True,
            )
            for index, (model_id, entry) in enumerate(
                eligible[: self._config.top_models_per_task]
            ):
                rules.append(
                    ArbitrationRule(
                        tenant_id=tenant_id,
                        task_type=task_type,
                        preferred_model_id=model_id,
                        preference_weight=max(
                            0.0, 1.0 - self._config.weight_step * index
                        ),
                        success_rate=entry.success_rate,
                        sample_count=entry.samples,
                    )
                )

        self._rules[tenant_id] = rules
        if self._logger is not None:
            self._logger.info(
                "rule_optimization_complete tenant=%s decisions=%d rules=%d",
                tenant_id,
                len(decisions),
                len(rules),
            )
        return rules


@dataclass(slots=True)
class RuleOptimizationStatus:
    enabled: bool
    interval_seconds: float
    tenants: list[str] = field(default_factory=list)
    last_run_epoch: float | None = None
    last_rule_count: int = 0
    last_error: str | None = None


class RuleOptimizationScheduler:
    def __init__(
        self,
        *,
        optimizer: RuleOptimizer,
        tenants: list[str],
        logger: logging.Logger | None = None,
        enabled: bool = True,
        interval_seconds: float = 86400.0,
    ) -> None:
        self._optimizer = optimizer
        self._tenants = list(tenants)
        self._logger = logger
        self._enabled = enabled and bool(self._tenants)
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None
        self._status = RuleOptimizationStatus(
            enabled=self._enabled,
            interval_seconds=self._interval_seconds,
            tenants=list(self._tenants),
        )

    @property
    def status(self) -> RuleOptimizationStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="arbitration-rule-optimizer")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> int:
        total = 0
        for tenant_id in self._tenants:
            rules = await self._optimizer.optimize(tenant_id)
            total += len(rules)
        self._status.last_run_epoch = time.time()
        self._status.last_rule_count = total
        self._status.last_error = None
        return total

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.run_once()
            except Exception as exc:
                self._status.last_error = str(exc)
                if self._logger is not None:
                    self._logger.warning("rule_optimization_failed error=%s", str(exc))
