from __future__ import annotations

from typing import Any


class ArbitrationError(Exception):
    code = "ARBITRATION_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = dict(details or {})
        super().__init__(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.code.lower(),
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArbitrationContextError(ArbitrationError, ValueError):
    code = "INVALID_CONTEXT"
    status_code = 400


class InvalidRequestError(ArbitrationError, ValueError):
    code = "INVALID_REQUEST"
    status_code = 400


class NoSuitableModelError(ArbitrationError):
    code = "NO_SUITABLE_MODEL"
    status_code = 422

    def __init__(
        self,
        message: str = "No suitable models found for the given context.",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)


class ComplianceViolationError(ArbitrationError):
    code = "COMPLIANCE_VIOLATION"
    status_code = 403

    def __init__(self, violations: list[str] | tuple[str, ...]) -> None:
        self.violations = list(violations)
        super().__init__(
            "Request failed compliance check: " + "; ".join(self.violations),
            {"violations": self.violations},
        )


class RateLimitExceededError(ArbitrationError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(
        self,
        identifier: str,
        limit_type: str,
        current_count: int,
        max_count: int,
        reset_at_epoch: float,
    ) -> None:
        self.identifier = identifier
        self.limit_type = limit_type
        self.current_count = current_count
        self.max_count = max_count
        self.reset_at_epoch = reset_at_epoch
        super().__init__(
            f"Rate limit exceeded for '{identifier}' ({limit_type}): "
            f"{current_count}/{max_count}.",
            {
                "identifier": identifier,
                "limit_type": limit_type,
                "current_count": current_count,
                "max_count": max_count,
                "reset_at_epoch": reset_at_epoch,
            },
        )


class InsufficientBudgetError(ArbitrationError):
    code = "INSUFFICIENT_BUDGET"
    status_code = 402

    def __init__(self, tenant_id: str, estimated_cost: float, remaining: float | None):
        self.tenant_id = tenant_id
        self.estimated_cost = estimated_cost
        self.remaining = remaining
        super().__init__(
            f"Insufficient budget for tenant '{tenant_id}'.",
            {
                "tenant_id": tenant_id,
                "estimated_cost": estimated_cost,
                "remaining": remaining,
            },
        )


class ProviderUnsupportedOperationError(ArbitrationError):
    code = "PROVIDER_UNSUPPORTED_OPERATION"
    status_code = 501

    def __init__(self, provider: str, operation: str) -> None:
        self.provider = provider
        self.operation = operation
        super().__init__(
            f"Provider '{provider}' does not support '{operation}'.",
            {"provider": provider, "operation": operation},
        )


class ProviderRequestError(ArbitrationError):
    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        provider: str,
        message: str,
        status: int | None = None,
    ) -> None:
        self.provider = provider
        self.status = status
        super().__init__(message, {"provider": provider, "status": status})


class CircuitOpenError(ArbitrationError):
    code = "CIRCUIT_OPEN"
    status_code = 503

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Circuit breaker is open for '{key}'.", {"key": key})


class AllModelsFailedError(ArbitrationError):
    code = "ALL_MODELS_FAILED"
    status_code = 502

    def __init__(
        self,
        attempted_models: list[str],
        original_error: BaseException,
        fallback_errors: dict[str, str] | None = None,
    ) -> None:
        self.attempted_models = list(attempted_models)
        self.original_error = original_error
        self.fallback_errors = dict(fallback_errors or {})
        super().__init__(
            "All models failed: " + ", ".join(self.attempted_models),
            {
                "attempted_models": self.attempted_models,
                "original_error": str(original_error),
                "fallback_errors": self.fallback_errors,
            },
        )


class OperationCancelledError(ArbitrationError):
    code = "OPERATION_CANCELLED"
    status_code = 499

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"Operation cancelled during '{stage}'.", {"stage": stage})


NON_RECOVERABLE_ERRORS: tuple[type[BaseException], ...] = (
    InvalidArbitrationContextError,
    InvalidRequestError,
    NoSuitableModelError,
    ComplianceViolationError,
    RateLimitExceededError,
    InsufficientBudgetError,
    OperationCancelledError,
)
