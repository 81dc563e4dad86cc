from __future__ import annotations

import asyncio
import logging

from open_llm_arbiter.cancellation import CancellationToken, raise_if_cancelled
from open_llm_arbiter.config import RankingConfig
from open_llm_arbiter.domain import (
    ArbitrationContext,
    Candidate,
    HealthStatus,
    Model,
)
from open_llm_arbiter.errors import OperationCancelledError
from open_llm_arbiter.interfaces import (
    ComplianceChecker,
    ModelCatalog,
    ScoringService,
    UserConstraintsProvider,
)

EVALUATION_STAGE = "evaluation"


class CandidateEvaluator:
    def __init__(
        self,
        *,
        catalog: ModelCatalog,
        user_constraints: UserConstraintsProvider,
        compliance: ComplianceChecker,
        scoring: ScoringService,
        ranking: RankingConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._catalog = catalog
        self._user_constraints = user_constraints
        self._compliance = compliance
        self._scoring = scoring
        self._ranking = ranking or RankingConfig()
        self._logger = logger or logging.getLogger("uvicorn.error")

    async def evaluate(
        self,
        models: list[Model],
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> list[Candidate]:
        if not models:
            self._logger.warning(
                "candidate_evaluation_empty_catalog tenant=%s", context.tenant_id
            )
            return []

        blocked_for_user: frozenset[str] | None = None
        candidates: list[Candidate] = []
        for model in models:
            raise_if_cancelled(cancellation, EVALUATION_STAGE)
            try:
                if blocked_for_user is None:
                    blocked_for_user = await self._user_blocked_models(context)
                reason = await self.rejection_reason(
                    model, context, blocked_for_user, cancellation
                )
                if reason is not None:
                    self._logger.debug(
                        "candidate_rejected model=%s reason=%s", model.id, reason
                    )
                    continue
                raise_if_cancelled(cancellation, EVALUATION_STAGE)
                candidates.append(await self.build_candidate(model, context))
            except OperationCancelledError:
                raise
            except Exception as exc:
                self._logger.warning(
                    "candidate_evaluation_failed model=%s error_type=%s error=%s",
                    model.id,
                    type(exc).__name__,
                    str(exc),
                )

        self._logger.debug(
            "candidate_evaluation_complete eligible=%d total=%d tenant=%s",
            len(candidates),
            len(models),
            context.tenant_id,
        )
        return candidates

    async def is_eligible(self, model: Model, context: ArbitrationContext) -> bool:
        blocked_for_user = await self._user_blocked_models(context)
        return await self.rejection_reason(model, context, blocked_for_user) is None

    async def rejection_reason(
        self,
        model: Model,
        context: ArbitrationContext,
        blocked_for_user: frozenset[str] = frozenset(),
        cancellation: CancellationToken | None = None,
    ) -> str | None:
        if (
            context.min_intelligence_score is not None
            and model.intelligence_score < context.min_intelligence_score
        ):
            return "intelligence_below_minimum"
        if (
            context.min_context_length is not None
            and model.max_tokens < context.min_context_length
        ):
            return "context_length_below_minimum"
        if _matches_model(model, blocked_for_user):
            return "blocked_for_user"
        if _matches_model(model, context.blocked_models):
            return "blocked_model"
        if context.allowed_models and not _matches_model(model, context.allowed_models):
            return "not_in_allowed_models"
        if context.pinned_model and not _matches_model(
            model, frozenset({context.pinned_model})
        ):
            return "not_pinned_model"
        provider = model.provider.strip().lower()
        if provider in _lowered(context.blocked_providers):
            return "blocked_provider"
        if context.allowed_providers and provider not in _lowered(
            context.allowed_providers
        ):
            return "not_in_allowed_providers"

        health = await self._catalog.get_provider_health(model.provider)
        raise_if_cancelled(cancellation, EVALUATION_STAGE)
        if health != HealthStatus.HEALTHY:
            return f"provider_{HealthStatus(health).value}"

        compliance = await self._compliance.check_model_compliance(model, context)
        raise_if_cancelled(cancellation, EVALUATION_STAGE)
        if not compliance.is_compliant:
            return "non_compliant"

        for requirement in context.required_capabilities:
            score = model.capabilities.get(requirement.capability)
            if score is None or score < requirement.min_score:
                return f"missing_capability:{requirement.capability.value}"
        return None

    async def build_candidate(
        self, model: Model, context: ArbitrationContext
    ) -> Candidate:
        (
            performance,
            cost,
            compliance,
            reliability,
            latency,
            expected_cost,
            health,
        ) = await asyncio.gather(
            self._scoring.calculate_performance_score(model, context),
            self._scoring.calculate_cost_score(model, context),
            self._scoring.calculate_compliance_score(model, context),
            self._scoring.calculate_reliability_score(model, context),
            self._scoring.estimate_latency(model, context),
            self._scoring.calculate_expected_cost(model, context),
            self._catalog.get_provider_health(model.provider),
        )
        weights = self._scoring.get_scoring_weights(context)
        final_score = (
            performance * weights.performance
            + cost * weights.cost
            + compliance * weights.compliance
            + reliability * weights.reliability
        )
        return Candidate(
            model=model,
            performance_score=float(performance),
            cost_score=float(cost),
            compliance_score=float(compliance),
            reliability_score=float(reliability),
            final_score=float(final_score),
            value_score=model.intelligence_score
            / max(float(expected_cost), self._ranking.value_cost_floor),
            estimated_latency_ms=float(latency),
            estimated_cost=float(expected_cost),
            provider_health=HealthStatus(health),
        )

    async def _user_blocked_models(self, context: ArbitrationContext) -> frozenset[str]:
        if not context.user_id:
            return frozenset()
        constraints = await self._user_constraints.get_user_constraints(context.user_id)
        return frozenset(constraints.blocked_models)


def _matches_model(model: Model, model_ids: frozenset[str]) -> bool:
    if not model_ids:
        return False
    return model.id in model_ids or model.upstream_model in model_ids


def _lowered(values: frozenset[str]) -> set[str]:
    return {value.strip().lower() for value in values if value.strip()}
