from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from open_llm_arbiter.rate_limiter import (
    RateLimitStore,
    RateLimitType,
    config_key,
    identifier_from_key,
    state_key,
    tenant_index_key,
    tenant_of,
    violations_key,
)

BACKFILL_PATTERNS = ("*|state|*", "*|config|*", "*|violations")
TENANT_INDEX_PATTERN = "tenant:*:identifiers"


@dataclass(slots=True)
class TenantIndexStatus:
    enabled: bool
    interval_seconds: float
    last_backfill_epoch: float | None = None
    last_backfill_indexed: int = 0
    last_prune_epoch: float | None = None
    last_prune_removed: int = 0
    last_error: str | None = None


class TenantIndexMaintainer:
    """Keeps ``tenant:{id}:identifiers`` in step with the rate-limit keys."""

    def __init__(
        self,
        *,
        store: RateLimitStore,
        logger: logging.Logger | None = None,
        enabled: bool = True,
        interval_seconds: float = 3600.0,
        scan_page_size: int = 1000,
    ) -> None:
        self._store = store
        self._logger = logger
        self._enabled = enabled
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._scan_page_size = max(1, int(scan_page_size))
        self._task: asyncio.Task[None] | None = None
        self._status = TenantIndexStatus(
            enabled=enabled, interval_seconds=self._interval_seconds
        )

    @property
    def status(self) -> TenantIndexStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="rate-limit-tenant-index")

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

    async def backfill(self) -> int:
        indexed = 0
        batch: list[str] = []
        for pattern in BACKFILL_PATTERNS:
            async for key in self._store.scan_keys(pattern, self._scan_page_size):
                batch.append(key)
                if len(batch) >= self._scan_page_size:
                    indexed += await self._index_keys(batch)
                    batch = []
        if batch:
            indexed += await self._index_keys(batch)
        self._status.last_backfill_epoch = time.time()
        self._status.last_backfill_indexed = indexed
        if self._logger is not None:
            self._logger.info("tenant_index_backfill_complete indexed=%d", indexed)
        return indexed

    async def prune(self) -> int:
        removed_total = 0
        index_keys = [
            key
            async for key in self._store.scan_keys(
                TENANT_INDEX_PATTERN, self._scan_page_size
            )
        ]
        for index_key in index_keys:
            members = await self._store.set_members(index_key)
            orphaned = [
                identifier
                for identifier in sorted(members)
                if not await self._has_rate_limit_keys(identifier)
            ]
            if not orphaned:
                continue
            removed = await self._store.remove_from_set(index_key, *orphaned)
            removed_total += removed
            if self._logger is not None:
                self._logger.info(
                    "tenant_index_pruned index=%s removed=%d", index_key, removed
                )
        self._status.last_prune_epoch = time.time()
        self._status.last_prune_removed = removed_total
        return removed_total

    async def _index_keys(self, keys: list[str]) -> int:
        indexed = 0
        for key in keys:
            identifier = identifier_from_key(key)
            if not identifier:
                continue
            await self._store.add_to_set(tenant_index_key(tenant_of(identifier)), identifier)
            indexed += 1
        return indexed

    async def _has_rate_limit_keys(self, identifier: str) -> bool:
        keys = [violations_key(identifier)]
        for limit_type in RateLimitType:
            keys.append(state_key(identifier, limit_type))
            keys.append(config_key(identifier, limit_type))
        for key in keys:
            if await self._store.exists(key):
                return True
        return False

    async def _run(self) -> None:
        try:
            await self.backfill()
        except Exception as exc:
            self._status.last_error = str(exc)
            if self._logger is not None:
                self._logger.warning("tenant_index_backfill_failed error=%s", str(exc))
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.prune()
                self._status.last_error = None
            except Exception as exc:
                self._status.last_error = str(exc)
                if self._logger is not None:
                    self._logger.warning("tenant_index_prune_failed error=%s", str(exc))
