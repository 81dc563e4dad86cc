from __future__ import annotations

import re

from open_llm_arbiter.config import ArbiterConfig, CompliancePolicy
from open_llm_arbiter.domain import (
    ArbitrationContext,
    ChatRequest,
    ComplianceResult,
    Model,
)

BUILTIN_SENSITIVE_PATTERNS: dict[str, str] = {
    "us_ssn": r"\b\d{3}-\d{2}-\d{4}\b",
    "credit_card": r"\b(?:\d[ -]?){13,16}\b",
}


class PolicyComplianceChecker:
    def __init__(
        self,
        policies: dict[str, CompliancePolicy] | None = None,
        default_policy: CompliancePolicy | None = None,
    ) -> None:
        self._policies = dict(policies or {})
        self._default_policy = default_policy or CompliancePolicy()
        self._compiled: dict[str, list[tuple[str, re.Pattern[str]]]] = {}

    @classmethod
    def from_config(cls, config: ArbiterConfig) -> PolicyComplianceChecker:
        return cls(
            policies={key: value for key, value in config.compliance.items() if key != "*"},
            default_policy=config.compliance.get("*"),
        )

    def policy_for(self, tenant_id: str) -> CompliancePolicy:
        return self._policies.get(tenant_id) or self._default_policy

    async def check_model_compliance(
        self, model: Model, context: ArbitrationContext
    ) -> ComplianceResult:
        policy = self.policy_for(context.tenant_id)
        violations: list[str] = []
        if model.provider in policy.blocked_providers:
            violations.append(f"provider '{model.provider}' is blocked by policy")
        if model.tier in policy.blocked_tiers:
            violations.append(f"model tier '{model.tier}' is blocked by policy")
        if policy.enforce_data_residency and context.require_data_residency:
            region = (context.required_region or "").strip().lower()
            if not region or region not in model.supported_regions:
                violations.append(
                    f"model '{model.id}' does not support data residency in "
                    f"'{context.required_region}'"
                )
        if (
            policy.enforce_encryption_at_rest
            and context.require_encryption_at_rest
            and not model.supports_encryption_at_rest
        ):
            violations.append(f"model '{model.id}' lacks encryption at rest")
        return ComplianceResult(is_compliant=not violations, violations=tuple(violations))

    async def check_request_compliance(
        self, request: ChatRequest, context: ArbitrationContext
    ) -> ComplianceResult:
        violations: list[str] = []
        if context.require_data_residency and not context.required_region:
            violations.append("data residency required but no region specified")
        text = request.text()
        for name, pattern in self._patterns(context.tenant_id):
            if pattern.search(text):
                violations.append(f"sensitive data detected ({name})")
        return ComplianceResult(is_compliant=not violations, violations=tuple(violations))

    def _patterns(self, tenant_id: str) -> list[tuple[str, re.Pattern[str]]]:
        cached = self._compiled.get(tenant_id)
        if cached is not None:
            return cached
        policy = self.policy_for(tenant_id)
        compiled: list[tuple[str, re.Pattern[str]]] = []
        for entry in policy.sensitive_data_patterns:
            builtin = BUILTIN_SENSITIVE_PATTERNS.get(entry)
            compiled.append((entry, re.compile(builtin or entry)))
        self._compiled[tenant_id] = compiled
        return compiled
