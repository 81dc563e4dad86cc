from __future__ import annotations

import asyncio

from open_llm_arbiter.compliance import PolicyComplianceChecker
from open_llm_arbiter.config import CompliancePolicy
from open_llm_arbiter.domain import ComplianceResult
from tests.arbiter_test_utils import load_test_config, make_context, make_model, make_request


def _check_model(checker: PolicyComplianceChecker, **overrides: object) -> ComplianceResult:
    model = make_model(
        "m",
        provider="alpha",
        tier="standard",
        supported_regions=frozenset({"us"}),
    )
    return asyncio.run(checker.check_model_compliance(model, make_context(**overrides)))


def test_models_pass_without_requirements() -> None:
    result = _check_model(PolicyComplianceChecker())

    assert result.is_compliant is True
    assert result.violations == ()


def test_blocked_provider_and_tier_are_violations() -> None:
    checker = PolicyComplianceChecker(
        default_policy=CompliancePolicy(
            blocked_providers=["alpha"], blocked_tiers=["standard"]
        )
    )

    result = _check_model(checker)

    assert result.is_compliant is False
    assert len(result.violations) == 2


def test_residency_and_encryption_checked_only_when_required() -> None:
    checker = PolicyComplianceChecker()

    assert _check_model(checker, required_region="eu").is_compliant is True
    assert (
        _check_model(checker, require_data_residency=True, required_region="US").is_compliant
        is True
    )
    residency = _check_model(checker, require_data_residency=True, required_region="eu")
    encryption = _check_model(checker, require_encryption_at_rest=True)
    assert residency.is_compliant is False
    assert "data residency" in residency.violations[0]
    assert encryption.violations == ("model 'm' lacks encryption at rest",)


def test_policy_can_waive_residency_enforcement() -> None:
    checker = PolicyComplianceChecker(
        policies={"tenant-a": CompliancePolicy(enforce_data_residency=False)}
    )

    assert (
        _check_model(checker, require_data_residency=True, required_region="eu").is_compliant
        is True
    )
    assert (
        _check_model(
            checker, tenant_id="tenant-b", require_data_residency=True, required_region="eu"
        ).is_compliant
        is False
    )


def test_request_compliance_flags_sensitive_patterns() -> None:
    checker = PolicyComplianceChecker.from_config(load_test_config())

    clean = asyncio.run(
        checker.check_request_compliance(make_request(content="hello"), make_context())
    )
    flagged = asyncio.run(
        checker.check_request_compliance(
            make_request(content="ssn 123-45-6789"), make_context()
        )
    )

    assert clean.is_compliant is True
    assert flagged.violations == ("sensitive data detected (us_ssn)",)


def test_custom_regex_patterns_are_supported() -> None:
    checker = PolicyComplianceChecker(
        default_policy=CompliancePolicy(sensitive_data_patterns=[r"(?i)project\s+x"])
    )

    result = asyncio.run(
        checker.check_request_compliance(
            make_request(content="Details on Project X"), make_context()
        )
    )

    assert result.is_compliant is False


def test_residency_without_region_fails_request_check() -> None:
    checker = PolicyComplianceChecker()

    result = asyncio.run(
        checker.check_request_compliance(
            make_request(), make_context(require_data_residency=True)
        )
    )

    assert result.violations == ("data residency required but no region specified",)
