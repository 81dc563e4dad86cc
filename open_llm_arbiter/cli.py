from __future__ import annotations

import argparse
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, cast

from open_llm_arbiter.config import load_arbiter_config
from open_llm_arbiter.domain import ArbitrationContext, Capability, CapabilityRequirement
from open_llm_arbiter.engine import build_engine
from open_llm_arbiter.rate_limit_index import TenantIndexMaintainer
from open_llm_arbiter.rate_limiter import (
    RateLimiter,
    RateLimitQuota,
    RateLimitStore,
    RateLimitType,
    build_rate_limit_store,
)
from open_llm_arbiter.settings import get_settings
from open_llm_arbiter.utils.yaml_utils import print_yaml


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _config_path(args: argparse.Namespace) -> str:
    return args.config or get_settings().arbiter_config_path


def _open_store(args: argparse.Namespace) -> RateLimitStore:
    redis_url = args.redis_url or get_settings().redis_url
    return build_rate_limit_store(redis_url)


def _run_with_limiter(
    args: argparse.Namespace,
    action: Callable[[RateLimiter, RateLimitStore], Awaitable[Any]],
) -> int:
    async def _run() -> Any:
        store = _open_store(args)
        try:
            return await action(RateLimiter(store), store)
        finally:
            await store.close()

    print_yaml(asyncio.run(_run()))
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    config = load_arbiter_config(_config_path(args))
    print_yaml(
        {
            "valid": True,
            "providers": [provider.name for provider in config.providers],
            "models": [model.id for model in config.models],
            "weight_profiles": {
                name: weights.model_dump()
                for name, weights in config.scoring.weight_profiles.items()
            },
        }
    )
    return 0


def cmd_explain(args: argparse.Namespace) -> int:
    config = load_arbiter_config(_config_path(args))
    context = ArbitrationContext(
        tenant_id=args.tenant,
        user_id=args.user,
        project_id=args.project,
        task_type=args.task_type,
        min_intelligence_score=args.min_intelligence,
        max_cost=args.max_cost,
        max_latency_ms=args.max_latency_ms,
        required_capabilities=tuple(
            CapabilityRequirement(Capability(item)) for item in _parse_csv(args.capabilities)
        ),
        selection_strategy=args.strategy,
        estimated_input_tokens=args.input_tokens,
        estimated_output_tokens=args.output_tokens,
    )

    async def _run() -> dict[str, Any]:
        store = build_rate_limit_store(None)
        engine = build_engine(config, rate_limit_store=store)
        result = await engine.select_model(context)
        return result.as_dict()

    print_yaml(asyncio.run(_run()))
    return 0


def cmd_rate_limit_usage(args: argparse.Namespace) -> int:
    async def action(limiter: RateLimiter, _: RateLimitStore) -> dict[str, Any]:
        return {
            "identifier": args.identifier,
            "usage": [
                (await limiter.get_usage(args.identifier, limit_type)).as_dict()
                for limit_type in RateLimitType
            ],
        }

    return _run_with_limiter(args, action)


def cmd_rate_limit_reset(args: argparse.Namespace) -> int:
    limit_type = RateLimitType(args.limit_type)

    async def action(limiter: RateLimiter, _: RateLimitStore) -> dict[str, Any]:
        await limiter.reset(args.identifier, limit_type)
        return {"identifier": args.identifier, "limit_type": limit_type.value, "reset": True}

    return _run_with_limiter(args, action)


def cmd_rate_limit_violations(args: argparse.Namespace) -> int:
    start = _parse_time(args.start)
    end = _parse_time(args.end)

    async def action(limiter: RateLimiter, _: RateLimitStore) -> dict[str, Any]:
        violations = await limiter.get_violations(args.tenant, start, end)
        return {
            "tenant_id": args.tenant,
            "violations": [item.model_dump(mode="json") for item in violations],
        }

    return _run_with_limiter(args, action)


def cmd_rate_limit_quota(args: argparse.Namespace) -> int:
    async def action(limiter: RateLimiter, _: RateLimitStore) -> dict[str, Any]:
        quota = await limiter.get_quota(args.identifier)
        updates = {
            "request_limit": args.request_limit,
            "request_window_seconds": args.request_window_seconds,
            "token_limit": args.token_limit,
            "token_window_seconds": args.token_window_seconds,
        }
        changes = {key: value for key, value in updates.items() if value is not None}
        if changes:
            await limiter.update_quota(
                args.identifier,
                RateLimitQuota.model_validate({**quota.model_dump(), **changes}),
            )
            quota = await limiter.get_quota(args.identifier)
        return quota.model_dump(mode="json")

    return _run_with_limiter(args, action)


def cmd_rate_limit_cleanup(args: argparse.Namespace) -> int:
    older_than = time.time() - max(0.0, args.older_than_seconds)

    async def action(limiter: RateLimiter, _: RateLimitStore) -> dict[str, Any]:
        removed = await limiter.cleanup(older_than)
        return {"older_than_epoch": older_than, "removed_keys": removed}

    return _run_with_limiter(args, action)


def cmd_index_backfill(args: argparse.Namespace) -> int:
    async def action(_: RateLimiter, store: RateLimitStore) -> dict[str, Any]:
        maintainer = TenantIndexMaintainer(store=store)
        return {"indexed": await maintainer.backfill()}

    return _run_with_limiter(args, action)


def cmd_index_prune(args: argparse.Namespace) -> int:
    async def action(_: RateLimiter, store: RateLimitStore) -> dict[str, Any]:
        maintainer = TenantIndexMaintainer(store=store)
        return {"removed": await maintainer.prune()}

    return _run_with_limiter(args, action)


def _add_store_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--redis-url",
        default=None,
        help="Redis URL for rate-limit state (defaults to REDIS_URL).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="open-llm-arbiter",
        description="Inspect arbitration config and manage rate-limit state.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to arbiter profile YAML (defaults to ARBITER_CONFIG_PATH).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_cmd = subparsers.add_parser(
        "validate-config", help="Validate the arbiter profile and print a summary."
    )
    validate_cmd.set_defaults(handler=cmd_validate_config)

    explain_cmd = subparsers.add_parser(
        "explain", help="Run a selection offline and print the ranked candidates."
    )
    explain_cmd.add_argument("--tenant", required=True)
    explain_cmd.add_argument("--user", required=True)
    explain_cmd.add_argument("--project", default=None)
    explain_cmd.add_argument("--task-type", default=None)
    explain_cmd.add_argument("--strategy", default=None)
    explain_cmd.add_argument("--min-intelligence", type=float, default=None)
    explain_cmd.add_argument("--max-cost", type=float, default=None)
    explain_cmd.add_argument("--max-latency-ms", type=float, default=None)
    explain_cmd.add_argument(
        "--capabilities", default=None, help="Comma-separated required capabilities."
    )
    explain_cmd.add_argument("--input-tokens", type=int, default=None)
    explain_cmd.add_argument("--output-tokens", type=int, default=None)
    explain_cmd.set_defaults(handler=cmd_explain)

    rate_cmd = subparsers.add_parser("rate-limit", help="Rate-limit state commands.")
    rate_subparsers = rate_cmd.add_subparsers(dest="rate_limit_command", required=True)

    usage_cmd = rate_subparsers.add_parser("usage", help="Show current window usage.")
    usage_cmd.add_argument("--identifier", required=True)
    _add_store_argument(usage_cmd)
    usage_cmd.set_defaults(handler=cmd_rate_limit_usage)

    reset_cmd = rate_subparsers.add_parser("reset", help="Clear window state.")
    reset_cmd.add_argument("--identifier", required=True)
    reset_cmd.add_argument(
        "--limit-type",
        choices=[item.value for item in RateLimitType],
        default=RateLimitType.REQUEST.value,
    )
    _add_store_argument(reset_cmd)
    reset_cmd.set_defaults(handler=cmd_rate_limit_reset)

    violations_cmd = rate_subparsers.add_parser(
        "violations", help="List recorded violations for a tenant, newest first."
    )
    violations_cmd.add_argument("--tenant", required=True)
    violations_cmd.add_argument("--start", default=None, help="ISO-8601, UTC if naive.")
    violations_cmd.add_argument("--end", default=None, help="ISO-8601, UTC if naive.")
    _add_store_argument(violations_cmd)
    violations_cmd.set_defaults(handler=cmd_rate_limit_violations)

    quota_cmd = rate_subparsers.add_parser(
        "quota", help="Show the quota, or update it when limits are given."
    )
    quota_cmd.add_argument("--identifier", required=True)
    quota_cmd.add_argument("--request-limit", type=int, default=None)
    quota_cmd.add_argument("--request-window-seconds", type=int, default=None)
    quota_cmd.add_argument("--token-limit", type=int, default=None)
    quota_cmd.add_argument("--token-window-seconds", type=int, default=None)
    _add_store_argument(quota_cmd)
    quota_cmd.set_defaults(handler=cmd_rate_limit_quota)

    cleanup_cmd = rate_subparsers.add_parser(
        "cleanup", help="Purge window entries older than the given age."
    )
    cleanup_cmd.add_argument("--older-than-seconds", type=float, default=3600.0)
    _add_store_argument(cleanup_cmd)
    cleanup_cmd.set_defaults(handler=cmd_rate_limit_cleanup)

    backfill_cmd = rate_subparsers.add_parser(
        "index-backfill", help="Add every identifier with state to its tenant index."
    )
    _add_store_argument(backfill_cmd)
    backfill_cmd.set_defaults(handler=cmd_index_backfill)

    prune_cmd = rate_subparsers.add_parser(
        "index-prune", help="Drop tenant index entries whose state has expired."
    )
    _add_store_argument(prune_cmd)
    prune_cmd.set_defaults(handler=cmd_index_prune)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
