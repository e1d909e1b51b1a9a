from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    rounds: int = 0
    processed: int = 0
    vectorized: int = 0
    failed_rounds: int = 0
    recovered: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "rounds": self.rounds,
            "processed": self.processed,
            "vectorized": self.vectorized,
            "failed_rounds": self.failed_rounds,
            "recovered": self.recovered,
        }


class WorkerRuntime:
    """Resident loop that keeps driving the ingest queue for long-lived deployments."""

    def __init__(
        self,
        *,
        service: Any,
        environments: list[str] | None = None,
        poll_interval_ms: int = 1000,
        stale_after_minutes: int = 10,
    ) -> None:
        self.service = service
        self.environments = [x for x in (environments or []) if x]
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.stale_after_minutes = max(0, int(stale_after_minutes))

    def _drive(self, environment: str | None, stats: WorkerRunStats) -> None:
        stats.rounds += 1
        try:
            summary = self.service.process_queued_jobs(environment)
        except Exception:
            # Keep worker loop alive on unexpected dispatcher failures.
            logger.exception("worker round failed for environment %s", environment or "*")
            stats.failed_rounds += 1
            return
        stats.processed += int(summary.get("processed", 0))
        stats.vectorized += int(summary.get("vectorized", 0))

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        if self.stale_after_minutes > 0:
            stats.recovered += len(self.service.recover_stale_jobs(older_than_minutes=self.stale_after_minutes))
        if self.environments:
            for environment in self.environments:
                self._drive(environment, stats)
        else:
            self._drive(None, stats)
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.rounds += int(current["rounds"])
            aggregate.processed += int(current["processed"])
            aggregate.vectorized += int(current["vectorized"])
            aggregate.failed_rounds += int(current["failed_rounds"])
            aggregate.recovered += int(current["recovered"])
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) + int(current["vectorized"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    service: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    environments_raw = str(env.get("WORKER_ENVIRONMENTS", "")).strip()
    environments = [x.strip() for x in environments_raw.split(",") if x.strip()]
    poll_interval_ms = _env_int(env, "WORKER_POLL_INTERVAL_MS", default=1000, minimum=1)
    stale_after_minutes = _env_int(env, "WORKER_STALE_AFTER_MINUTES", default=10, minimum=0)
    return WorkerRuntime(
        service=service,
        environments=environments,
        poll_interval_ms=poll_interval_ms,
        stale_after_minutes=stale_after_minutes,
    )
