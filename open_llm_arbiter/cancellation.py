from __future__ import annotations

import asyncio

from open_llm_arbiter.errors import OperationCancelledError


class CancellationToken:
    """Cooperative cancellation signal shared by the stages of one request.

    Stages call ``raise_if_cancelled`` at their boundaries. Work already in
    flight is allowed to finish; its result is dropped by the next check.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise OperationCancelledError(stage)


def raise_if_cancelled(token: CancellationToken | None, stage: str) -> None:
    if token is not None:
        token.raise_if_cancelled(stage)
