from __future__ import annotations

import fnmatch
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Protocol

from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import from_url as redis_from_url

from open_llm_arbiter.config import RateLimitDefaults
from open_llm_arbiter.domain import ArbitrationContext, utc_now
from open_llm_arbiter.errors import RateLimitExceededError


class RateLimitType(str, Enum):
    REQUEST = "request"
    TOKEN = "token"


class RateLimitConfiguration(BaseModel):
    identifier: str
    limit_type: RateLimitType
    max_requests: int
    window_seconds: int = 60
    is_enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RateLimitQuota(BaseModel):
    identifier: str
    request_limit: int
    request_window_seconds: int = 60
    token_limit: int
    token_window_seconds: int = 60
    updated_at: datetime = Field(default_factory=utc_now)


class RateLimitViolation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    identifier: str
    limit_type: RateLimitType
    current_count: int
    max_count: int
    violated_at: datetime
    reset_time: datetime
    recorded_at: datetime = Field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    identifier: str
    limit_type: RateLimitType
    current_count: int
    max_count: int
    remaining: int
    reset_at_epoch: float
    window_seconds: int

    @property
    def message(self) -> str:
        return "Allowed" if self.allowed else "Rate limit exceeded"

    def to_error(self) -> RateLimitExceededError:
        return RateLimitExceededError(
            identifier=self.identifier,
            limit_type=self.limit_type.value,
            current_count=self.current_count,
            max_count=self.max_count,
            reset_at_epoch=self.reset_at_epoch,
        )


@dataclass(frozen=True, slots=True)
class RateLimitUsage:
    identifier: str
    limit_type: RateLimitType
    current_count: int
    max_count: int
    remaining: int
    window_start_epoch: float
    window_end_epoch: float
    checked_at_epoch: float

    @property
    def percentage_used(self) -> float:
        if self.max_count <= 0:
            return 0.0
        return self.current_count / self.max_count * 100.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "limit_type": self.limit_type.value,
            "current_count": self.current_count,
            "max_count": self.max_count,
            "remaining": self.remaining,
            "percentage_used": round(self.percentage_used, 2),
            "window_start_epoch": self.window_start_epoch,
            "window_end_epoch": self.window_end_epoch,
            "reset_at_epoch": self.window_end_epoch,
        }


def state_key(identifier: str, limit_type: RateLimitType) -> str:
    return f"{identifier}|state|{limit_type.value}"


def config_key(identifier: str, limit_type: RateLimitType) -> str:
    return f"{identifier}|config|{limit_type.value}"


def violations_key(identifier: str) -> str:
    return f"{identifier}|violations"


def tenant_index_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:identifiers"


def tenant_of(identifier: str) -> str:
    return identifier.split("|", 1)[0]


def identifier_from_key(key: str) -> str | None:
    """Recovers the identifier from a state, config or violations key."""
    if key.endswith("|violations"):
        return key[: -len("|violations")] or None
    for marker in ("|state|", "|config|"):
        head, sep, tail = key.rpartition(marker)
        if sep and head and tail:
            return head
    return None


def window_start_epoch(now_epoch: float, window_seconds: int) -> float:
    if window_seconds <= 0:
        return now_epoch
    whole_seconds = int(now_epoch)
    return float(whole_seconds - (whole_seconds % window_seconds))


class RateLimitStore(Protocol):
    async def purge_and_count(self, key: str, min_score: float) -> int: ...

    async def add_entries(
        self, key: str, members: dict[str, float], ttl_seconds: int
    ) -> None: ...

    async def entry_scores(self, key: str) -> list[float]: ...

    async def get_value(self, key: str) -> str | None: ...

    async def set_value(self, key: str, value: str) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def push_capped(
        self, key: str, value: str, max_length: int, ttl_seconds: int
    ) -> None: ...

    async def list_values(self, key: str) -> list[str]: ...

    async def add_to_set(self, key: str, *members: str) -> None: ...

    async def set_members(self, key: str) -> set[str]: ...

    async def remove_from_set(self, key: str, *members: str) -> int: ...

    def scan_keys(self, pattern: str, page_size: int = 1000) -> AsyncIterator[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class InMemoryRateLimitStore:
    """Single-process store.

    Each method completes without yielding to the event loop, so every
    operation is atomic with respect to other coroutines.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._sorted_sets: dict[str, dict[str, float]] = {}
        self._values: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self._sets: dict[str, set[str]] = {}
        self._expiry: dict[str, float] = {}

    def _evict_if_expired(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is None or expires_at > self._clock():
            return
        self._drop(key)

    def _drop(self, key: str) -> bool:
        removed = False
        for bucket in (self._sorted_sets, self._values, self._lists, self._sets):
            if key in bucket:
                del bucket[key]
                removed = True
        self._expiry.pop(key, None)
        return removed

    def _all_keys(self) -> list[str]:
        keys: set[str] = set()
        for bucket in (self._sorted_sets, self._values, self._lists, self._sets):
            keys.update(bucket.keys())
        return sorted(keys)

    async def purge_and_count(self, key: str, min_score: float) -> int:
        self._evict_if_expired(key)
        entries = self._sorted_sets.get(key)
        if entries is None:
            return 0
        for member, score in list(entries.items()):
            if score < min_score:
                del entries[member]
        if not entries:
            self._drop(key)
            return 0
        return len(entries)

    async def add_entries(
        self, key: str, members: dict[str, float], ttl_seconds: int
    ) -> None:
        self._evict_if_expired(key)
        self._sorted_sets.setdefault(key, {}).update(members)
        self._expiry[key] = self._clock() + ttl_seconds

    async def entry_scores(self, key: str) -> list[float]:
        self._evict_if_expired(key)
        return sorted(self._sorted_sets.get(key, {}).values())

    async def get_value(self, key: str) -> str | None:
        self._evict_if_expired(key)
        return self._values.get(key)

    async def set_value(self, key: str, value: str) -> None:
        self._values[key] = value
        self._expiry.pop(key, None)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._drop(key))

    async def exists(self, key: str) -> bool:
        self._evict_if_expired(key)
        return any(
            key in bucket
            for bucket in (self._sorted_sets, self._values, self._lists, self._sets)
        )

    async def push_capped(
        self, key: str, value: str, max_length: int, ttl_seconds: int
    ) -> None:
        self._evict_if_expired(key)
        items = self._lists.setdefault(key, [])
        items.insert(0, value)
        del items[max(0, max_length) :]
        self._expiry[key] = self._clock() + ttl_seconds

    async def list_values(self, key: str) -> list[str]:
        self._evict_if_expired(key)
        return list(self._lists.get(key, []))

    async def add_to_set(self, key: str, *members: str) -> None:
        if members:
            self._sets.setdefault(key, set()).update(members)

    async def set_members(self, key: str) -> set[str]:
        return set(self._sets.get(key, set()))

    async def remove_from_set(self, key: str, *members: str) -> int:
        current = self._sets.get(key)
        if not current:
            return 0
        removed = len(current.intersection(members))
        current.difference_update(members)
        if not current:
            del self._sets[key]
        return removed

    async def scan_keys(self, pattern: str, page_size: int = 1000) -> AsyncIterator[str]:
        for key in self._all_keys():
            self._evict_if_expired(key)
            if fnmatch.fnmatchcase(key, pattern) and await self.exists(key):
                yield key

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisRateLimitStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def purge_and_count(self, key: str, min_score: float) -> int:
        pipeline = self._redis.pipeline(transaction=True)
        pipeline.zremrangebyscore(key, "-inf", f"({min_score}")
        pipeline.zcard(key)
        _, count = await pipeline.execute()
        return int(count or 0)

    async def add_entries(
        self, key: str, members: dict[str, float], ttl_seconds: int
    ) -> None:
        if not members:
            return
        pipeline = self._redis.pipeline(transaction=True)
        pipeline.zadd(key, members)
        pipeline.expire(key, ttl_seconds)
        await pipeline.execute()

    async def entry_scores(self, key: str) -> list[float]:
        raw = await self._redis.zrange(key, 0, -1, withscores=True)
        return sorted(float(score) for _, score in raw)

    async def get_value(self, key: str) -> str | None:
        value = await self._redis.get(key)
        return _decode(value) if value is not None else None

    async def set_value(self, key: str, value: str) -> None:
        await self._redis.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def push_capped(
        self, key: str, value: str, max_length: int, ttl_seconds: int
    ) -> None:
        pipeline = self._redis.pipeline(transaction=True)
        pipeline.lpush(key, value)
        pipeline.ltrim(key, 0, max(0, max_length - 1))
        pipeline.expire(key, ttl_seconds)
        await pipeline.execute()

    async def list_values(self, key: str) -> list[str]:
        raw = await self._redis.lrange(key, 0, -1)
        return [_decode(item) for item in raw]

    async def add_to_set(self, key: str, *members: str) -> None:
        if members:
            await self._redis.sadd(key, *members)

    async def set_members(self, key: str) -> set[str]:
        raw = await self._redis.smembers(key)
        return {_decode(item) for item in raw}

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._redis.srem(key, *members))

    async def scan_keys(self, pattern: str, page_size: int = 1000) -> AsyncIterator[str]:
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(
                cursor=cursor, match=pattern, count=page_size
            )
            for key in keys:
                yield _decode(key)
            if int(cursor) == 0:
                break

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


RateLimitStoreFactory = Callable[[str], RateLimitStore]


def build_redis_rate_limit_store(redis_url: str) -> RateLimitStore:
    client = redis_from_url(redis_url, decode_responses=True)
    return RedisRateLimitStore(redis_client=client)


def build_rate_limit_store(
    redis_url: str | None,
    logger: logging.Logger | None = None,
    create_store: RateLimitStoreFactory | None = None,
) -> RateLimitStore:
    if not redis_url:
        return InMemoryRateLimitStore()
    factory = create_store or build_redis_rate_limit_store
    try:
        return factory(redis_url)
    except (RuntimeError, ValueError) as exc:
        if logger is not None:
            logger.warning(
                "rate_limit_redis_unavailable reason=%s fallback=in_memory", str(exc)
            )
        return InMemoryRateLimitStore()


class RateLimiter:
    """Window-aligned sliding-window admission control.

    Windows start on wall-clock multiples of ``window_seconds``, so every
    process sharing the store agrees on when a window resets. All shared
    state lives in the store; the count-then-insert sequence is not
    serialised, which lets a window overshoot by concurrent admissions.
    """

    def __init__(
        self,
        store: RateLimitStore,
        defaults: RateLimitDefaults | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._defaults = defaults or RateLimitDefaults()
        self._logger = logger or logging.getLogger("uvicorn.error")
        self._clock = clock

    @property
    def store(self) -> RateLimitStore:
        return self._store

    @property
    def defaults(self) -> RateLimitDefaults:
        return self._defaults

    @staticmethod
    def build_identifier(
        tenant_id: str,
        project_id: str | None = None,
        user_id: str | None = None,
    ) -> str:
        if project_id:
            return f"{tenant_id}|{project_id}"
        if user_id:
            return f"{tenant_id}|{user_id}"
        return tenant_id

    def identifier_for(self, context: ArbitrationContext) -> str:
        return self.build_identifier(
            context.tenant_id, context.project_id, context.user_id
        )

    async def check_context(self, context: ArbitrationContext) -> RateLimitResult:
        return await self.check(self.identifier_for(context), RateLimitType.REQUEST)

    async def check(
        self,
        identifier: str,
        limit_type: RateLimitType = RateLimitType.REQUEST,
    ) -> RateLimitResult:
        config = await self.get_configuration(identifier, limit_type)
        now = self._clock()
        window_start = window_start_epoch(now, config.window_seconds)
        reset_at = window_start + config.window_seconds
        key = state_key(identifier, limit_type)

        current_count = await self._store.purge_and_count(key, window_start * 1000.0)
        allowed = not config.is_enabled or current_count < config.max_requests
        result = RateLimitResult(
            allowed=allowed,
            identifier=identifier,
            limit_type=limit_type,
            current_count=current_count,
            max_count=config.max_requests,
            remaining=max(0, config.max_requests - current_count),
            reset_at_epoch=reset_at,
            window_seconds=config.window_seconds,
        )

        if allowed:
            await self._store.add_entries(
                key,
                {_entry_member(now): now * 1000.0},
                config.window_seconds + self._defaults.state_ttl_grace_seconds,
            )
            await self._index(identifier)
            self._logger.debug(
                "rate_limit_passed identifier=%s type=%s count=%d max=%d",
                identifier,
                limit_type.value,
                current_count + 1,
                config.max_requests,
            )
            return result

        self._logger.warning(
            "rate_limit_exceeded identifier=%s type=%s count=%d max=%d",
            identifier,
            limit_type.value,
            current_count,
            config.max_requests,
        )
        await self.record_violation(
            RateLimitViolation(
                identifier=identifier,
                limit_type=limit_type,
                current_count=current_count,
                max_count=config.max_requests,
                violated_at=_to_datetime(now),
                reset_time=_to_datetime(reset_at),
            )
        )
        return result

    async def check_tokens(self, identifier: str, tokens: int) -> RateLimitResult:
        """Checks whether ``tokens`` more tokens fit in the current window.

        Unlike ``check`` this does not consume anything; token usage is
        recorded after execution through ``record``.
        """
        usage = await self.get_usage(identifier, RateLimitType.TOKEN)
        config = await self.get_configuration(identifier, RateLimitType.TOKEN)
        allowed = not config.is_enabled or usage.current_count + tokens <= usage.max_count
        result = RateLimitResult(
            allowed=allowed,
            identifier=identifier,
            limit_type=RateLimitType.TOKEN,
            current_count=usage.current_count,
            max_count=usage.max_count,
            remaining=usage.remaining,
            reset_at_epoch=usage.window_end_epoch,
            window_seconds=config.window_seconds,
        )
        if not allowed:
            self._logger.warning(
                "rate_limit_exceeded identifier=%s type=%s count=%d requested=%d max=%d",
                identifier,
                RateLimitType.TOKEN.value,
                usage.current_count,
                tokens,
                usage.max_count,
            )
            await self.record_violation(
                RateLimitViolation(
                    identifier=identifier,
                    limit_type=RateLimitType.TOKEN,
                    current_count=usage.current_count,
                    max_count=usage.max_count,
                    violated_at=_to_datetime(usage.checked_at_epoch),
                    reset_time=_to_datetime(usage.window_end_epoch),
                )
            )
        return result

    async def record(
        self,
        identifier: str,
        limit_type: RateLimitType = RateLimitType.REQUEST,
        weight: int = 1,
    ) -> None:
        if weight <= 0:
            return
        config = await self.get_configuration(identifier, limit_type)
        now = self._clock()
        score = now * 1000.0
        members = {_entry_member(now): score for _ in range(weight)}
        await self._store.add_entries(
            state_key(identifier, limit_type),
            members,
            config.window_seconds + self._defaults.state_ttl_grace_seconds,
        )
        await self._index(identifier)
        self._logger.debug(
            "rate_limit_recorded identifier=%s type=%s weight=%d",
            identifier,
            limit_type.value,
            weight,
        )

    async def get_usage(
        self,
        identifier: str,
        limit_type: RateLimitType = RateLimitType.REQUEST,
    ) -> RateLimitUsage:
        config = await self.get_configuration(identifier, limit_type)
        now = self._clock()
        window_start = window_start_epoch(now, config.window_seconds)
        current = await self._store.purge_and_count(
            state_key(identifier, limit_type), window_start * 1000.0
        )
        return RateLimitUsage(
            identifier=identifier,
            limit_type=limit_type,
            current_count=current,
            max_count=config.max_requests,
            remaining=max(0, config.max_requests - current),
            window_start_epoch=window_start,
            window_end_epoch=window_start + config.window_seconds,
            checked_at_epoch=now,
        )

    async def get_usages(self, tenant_id: str) -> list[RateLimitUsage]:
        usages: list[RateLimitUsage] = []
        for identifier in sorted(await self.tenant_identifiers(tenant_id)):
            for limit_type in RateLimitType:
                if await self._store.exists(state_key(identifier, limit_type)):
                    usages.append(await self.get_usage(identifier, limit_type))
        return usages

    async def get_configuration(
        self,
        identifier: str,
        limit_type: RateLimitType = RateLimitType.REQUEST,
    ) -> RateLimitConfiguration:
        key = config_key(identifier, limit_type)
        raw = await self._store.get_value(key)
        if raw is not None:
            try:
                return RateLimitConfiguration.model_validate_json(raw)
            except ValidationError as exc:
                self._logger.error(
                    "rate_limit_config_invalid key=%s error=%s", key, str(exc)
                )
        max_requests = (
            self._defaults.requests_per_window
            if limit_type == RateLimitType.REQUEST
            else self._defaults.tokens_per_window
        )
        return RateLimitConfiguration(
            identifier=identifier,
            limit_type=limit_type,
            max_requests=max_requests,
            window_seconds=self._defaults.window_seconds,
        )

    async def update_configuration(
        self, identifier: str, configuration: RateLimitConfiguration
    ) -> RateLimitConfiguration:
        updated = configuration.model_copy(
            update={"identifier": identifier, "updated_at": utc_now()}
        )
        await self._store.set_value(
            config_key(identifier, updated.limit_type), updated.model_dump_json()
        )
        await self._index(identifier)
        self._logger.info(
            "rate_limit_config_updated identifier=%s type=%s max=%d window_seconds=%d",
            identifier,
            updated.limit_type.value,
            updated.max_requests,
            updated.window_seconds,
        )
        return updated

    async def get_quota(self, identifier: str) -> RateLimitQuota:
        request_config = await self.get_configuration(identifier, RateLimitType.REQUEST)
        token_config = await self.get_configuration(identifier, RateLimitType.TOKEN)
        return RateLimitQuota(
            identifier=identifier,
            request_limit=request_config.max_requests,
            request_window_seconds=request_config.window_seconds,
            token_limit=token_config.max_requests,
            token_window_seconds=token_config.window_seconds,
        )

    async def update_quota(self, identifier: str, quota: RateLimitQuota) -> None:
        await self.update_configuration(
            identifier,
            RateLimitConfiguration(
                identifier=identifier,
                limit_type=RateLimitType.REQUEST,
                max_requests=quota.request_limit,
                window_seconds=quota.request_window_seconds,
            ),
        )
        await self.update_configuration(
            identifier,
            RateLimitConfiguration(
                identifier=identifier,
                limit_type=RateLimitType.TOKEN,
                max_requests=quota.token_limit,
                window_seconds=quota.token_window_seconds,
            ),
        )

    async def record_violation(self, violation: RateLimitViolation) -> None:
        await self._store.push_capped(
            violations_key(violation.identifier),
            violation.model_dump_json(),
            self._defaults.violation_history_limit,
            self._defaults.violation_ttl_seconds,
        )
        await self._index(violation.identifier)

    async def get_violations(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[RateLimitViolation]:
        identifiers = await self.tenant_identifiers(tenant_id)
        results: list[RateLimitViolation] = []
        for identifier in identifiers:
            key = violations_key(identifier)
            for raw in await self._store.list_values(key):
                try:
                    violation = RateLimitViolation.model_validate_json(raw)
                except ValidationError as exc:
                    self._logger.error(
                        "rate_limit_violation_invalid key=%s error=%s", key, str(exc)
                    )
                    continue
                if start is not None and violation.violated_at < start:
                    continue
                if end is not None and violation.violated_at > end:
                    continue
                results.append(violation)
        results.sort(key=lambda item: item.violated_at, reverse=True)
        return results

    async def reset(
        self,
        identifier: str,
        limit_type: RateLimitType = RateLimitType.REQUEST,
    ) -> None:
        await self._store.delete(state_key(identifier, limit_type))
        self._logger.info(
            "rate_limit_reset identifier=%s type=%s", identifier, limit_type.value
        )

    async def cleanup(self, older_than_epoch: float) -> int:
        removed_keys = 0
        async for key in self._store.scan_keys(
            "*|state|*", self._defaults.scan_page_size
        ):
            remaining = await self._store.purge_and_count(key, older_than_epoch * 1000.0)
            if remaining == 0:
                # An emptied sorted set may already be gone; count it either way.
                await self._store.delete(key)
                removed_keys += 1
        self._logger.info(
            "rate_limit_cleanup_complete older_than=%s removed_keys=%d",
            older_than_epoch,
            removed_keys,
        )
        return removed_keys

    async def tenant_identifiers(self, tenant_id: str) -> set[str]:
        identifiers = await self._store.set_members(tenant_index_key(tenant_id))
        identifiers.add(tenant_id)
        return identifiers

    async def _index(self, identifier: str) -> None:
        await self._store.add_to_set(tenant_index_key(tenant_of(identifier)), identifier)


def _entry_member(now_epoch: float) -> str:
    return f"{int(now_epoch * 1000)}-{uuid.uuid4().hex}"


def _to_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)
