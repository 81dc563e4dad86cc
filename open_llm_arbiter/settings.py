from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    arbiter_config_path: str = "arbiter.profile.yaml"
    redis_url: str | None = None
    arbiter_audit_log_enabled: bool = True
    arbiter_audit_log_path: str = "logs/arbitration_decisions.jsonl"
    circuit_breaker_enabled: bool = True
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout_seconds: float = 30.0
    circuit_breaker_half_open_max_requests: int = 1
    rate_limit_index_maintenance_enabled: bool = True
    rate_limit_index_interval_seconds: float = 3600.0
    rule_optimization_enabled: bool = False
    rule_optimization_interval_seconds: float = 86400.0
    rule_optimization_tenants: str = ""
    default_tenant_header: str = "X-Tenant-Id"
    default_user_header: str = "X-User-Id"
    default_project_header: str = "X-Project-Id"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def rule_optimization_tenants_list(self) -> list[str]:
        return _split_csv(self.rule_optimization_tenants)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
