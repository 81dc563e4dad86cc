from __future__ import annotations

from collections import defaultdict

from open_llm_arbiter.config import ArbiterConfig, BudgetConfig
from open_llm_arbiter.domain import BudgetStatus, UsageRecord


def _budget_keys(
    tenant_id: str, project_id: str | None, user_id: str | None
) -> list[str]:
    keys = []
    if project_id:
        keys.append(f"{tenant_id}|{project_id}")
    if user_id:
        keys.append(f"{tenant_id}|{user_id}")
    keys.append(tenant_id)
    return keys


class InMemoryCostTracker:
    """Running spend per tenant, tenant|project and tenant|user."""

    def __init__(self, budgets: dict[str, BudgetConfig] | None = None) -> None:
        self._budgets = dict(budgets or {})
        self._spent: dict[str, float] = defaultdict(float)
        self._records: list[UsageRecord] = []

    @classmethod
    def from_config(cls, config: ArbiterConfig) -> InMemoryCostTracker:
        return cls(config.budgets)

    @property
    def records(self) -> list[UsageRecord]:
        return list(self._records)

    async def record_usage(self, record: UsageRecord) -> None:
        self._records.append(record)
        for key in set(_budget_keys(record.tenant_id, record.project_id, record.user_id)):
            self._spent[key] += max(0.0, record.cost)

    async def get_budget_status(
        self,
        tenant_id: str,
        project_id: str | None = None,
        user_id: str | None = None,
    ) -> BudgetStatus:
        # Most specific configured budget wins.
        for key in _budget_keys(tenant_id, project_id, user_id):
            budget = self._budgets.get(key)
            if budget is not None:
                return BudgetStatus(
                    tenant_id=tenant_id,
                    limit=budget.limit,
                    spent=self._spent.get(key, 0.0),
                    warning_threshold=budget.warning_threshold,
                )
        return BudgetStatus(
            tenant_id=tenant_id, limit=None, spent=self._spent.get(tenant_id, 0.0)
        )
