from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

from open_llm_arbiter.domain import (
    ArbitrationContext,
    ArbitrationResult,
    FailureRecord,
    ModelResponse,
)


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class DecisionAuditLog:
    """Append-only JSONL trail of arbitration decisions and executions.

    Records are queued and written by a single daemon thread so request
    handlers never block on disk. When the queue is full records are
    dropped and a summary line is written on close.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._dropped_lock = Lock()
        self._dropped = 0
        self._pending: Queue[str | None] | None = None
        self._writer: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._pending = Queue(maxsize=max(1, max_queue_size))
        self._writer = Thread(
            target=self._write_pending, name="arbiter-audit-writer", daemon=True
        )
        self._writer.start()

    @property
    def dropped_records(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def log(self, event: dict[str, Any]) -> None:
        if self._pending is None:
            return
        try:
            self._pending.put_nowait(_encode({"ts": int(time.time()), **event}))
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def record_decision(
        self, result: ArbitrationResult, context: ArbitrationContext
    ) -> None:
        self.log(
            {
                "event": "arbitration_decision",
                "decision_id": result.decision_id,
                "tenant_id": context.tenant_id,
                "user_id": context.user_id,
                "project_id": context.project_id,
                "request_id": context.request_id,
                "task_type": context.task_type,
                "selected_model": result.selected.model.id,
                "provider": result.selected.model.provider,
                "strategy": result.selection_strategy,
                "final_score": round(result.selected.final_score, 4),
                "fallback_models": [item.model.id for item in result.fallbacks],
                "candidate_count": len(result.candidates),
                "constraints_relaxed": result.constraints_relaxed,
                "selection_time_ms": round(result.selection_time_ms, 3),
            }
        )

    def record_execution(
        self, response: ModelResponse, context: ArbitrationContext
    ) -> None:
        self.log(
            {
                "event": "execution_succeeded",
                "request_id": response.request_id,
                "decision_id": response.decision_id,
                "tenant_id": context.tenant_id,
                "model": response.model_id,
                "provider": response.provider,
                "input_tokens": response.input_tokens,
                "output_tokens": response.output_tokens,
                "cost": round(response.cost, 8),
                "latency_ms": round(response.latency_ms, 3),
                "fallback_used": response.fallback_used,
                "attempted_models": list(response.attempted_models),
            }
        )

    def record_failure(self, failure: FailureRecord) -> None:
        self.log(
            {
                "event": "execution_failed",
                "request_id": failure.request_id,
                "tenant_id": failure.tenant_id,
                "model": failure.model_id,
                "provider": failure.provider,
                "error_type": failure.error_type,
                "error": failure.error_message,
                "elapsed_ms": round(failure.elapsed_ms, 3),
            }
        )

    def close(self) -> None:
        if self._pending is None or self._writer is None:
            return
        self._pending.put(None)
        self._writer.join(timeout=2.0)
        self._pending = None
        self._writer = None

    def _write_pending(self) -> None:
        pending = self._pending
        if pending is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = pending.get()
                if line is None:
                    pending.task_done()
                    break
                handle.write(line + "\n")
                handle.flush()
                pending.task_done()
            with self._dropped_lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "audit_records_dropped",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()
