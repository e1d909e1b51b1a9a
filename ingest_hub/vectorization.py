from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ingest_hub.errors import EmbeddingDimensionMismatchError

logger = logging.getLogger(__name__)

_DIMENSION_ERROR = re.compile(r"expected (\d+) dimensions, not (\d+)")


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass
class VectorizationSettings:
    batch_size: int = 50
    max_retries: int = 3
    backoff_seconds: float = 2.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> VectorizationSettings:
        env = os.environ if environ is None else environ
        return cls(
            batch_size=_env_int(env, "VECTORIZE_BATCH_SIZE", default=50, minimum=1),
            max_retries=_env_int(env, "VECTORIZE_MAX_RETRIES", default=3, minimum=1),
            backoff_seconds=_env_float(env, "VECTORIZE_BACKOFF_SECONDS", default=2.0),
        )

    @property
    def failure_message(self) -> str:
        return f"Failed to generate embedding after {self.max_retries} attempts"


@dataclass
class VectorizationResult:
    embedded: int = 0
    skipped: int = 0
    cancelled: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {"embedded": self.embedded, "skipped": self.skipped, "cancelled": self.cancelled}


class VectorizationWorker:
    """Backfills embeddings for one environment until no eligible record is left.

    Attempt counters live only for one ``run``; a record reaching the ceiling
    gets a permanent ``embeddingError`` marker and is never scanned again.
    """

    def __init__(
        self,
        *,
        records: Any,
        jobs: Any,
        embedder: Any,
        settings: VectorizationSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.records = records
        self.jobs = jobs
        self.embedder = embedder
        self.settings = settings or VectorizationSettings()
        self._sleep = sleep

    def _is_cancelled(self, job_id: str | None) -> bool:
        if job_id is None:
            return False
        job = self.jobs.get(job_id=job_id)
        return job is not None and job.get("status") == "CANCELLED"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = self.embedder.embed(texts)
        except Exception:
            logger.exception("embedder raised, counting batch of %s as failed", len(texts))
            return [[] for _ in texts]
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            return [[] for _ in texts]
        return vectors

    def _write(self, record_id: str, vector: list[float]) -> None:
        try:
            self.records.set_embedding(record_id=record_id, vector=vector)
        except Exception as exc:
            match = _DIMENSION_ERROR.search(str(exc))
            if match is None:
                raise
            raise EmbeddingDimensionMismatchError(
                expected=int(match.group(1)),
                actual=int(match.group(2)),
                table_name=getattr(self.records, "table_name", "data_records"),
            ) from exc

    def run(self, *, environment: str, job_id: str | None = None) -> dict[str, Any]:
        result = VectorizationResult()
        attempts: dict[str, int] = {}
        failed_ids: set[str] = set()

        while True:
            if self._is_cancelled(job_id):
                result.cancelled = True
                break

            batch = self.records.scan_missing_embeddings(
                environment=environment,
                limit=self.settings.batch_size,
                exclude_ids=failed_ids,
            )
            if not batch:
                break

            pending: list[dict[str, Any]] = []
            for row in batch:
                record_id = str(row["id"])
                if attempts.get(record_id, 0) >= self.settings.max_retries:
                    self.records.mark_embedding_error(record_id=record_id, message=self.settings.failure_message)
                    attempts.pop(record_id, None)
                    failed_ids.add(record_id)
                    result.skipped += 1
                else:
                    pending.append(row)

            if not pending:
                continue

            vectors = self._embed([str(row.get("content") or "") for row in pending])
            batch_success = 0
            for row, vector in zip(pending, vectors):
                record_id = str(row["id"])
                if vector:
                    self._write(record_id, vector)
                    attempts.pop(record_id, None)
                    batch_success += 1
                    result.embedded += 1
                else:
                    attempts[record_id] = attempts.get(record_id, 0) + 1

            if job_id is not None:
                self.jobs.touch(job_id=job_id)
            logger.info(
                "vectorize %s: %s/%s embedded in batch (total %s, skipped %s)",
                environment,
                batch_success,
                len(pending),
                result.embedded,
                result.skipped,
            )
            if batch_success == 0:
                logger.warning("vectorize %s: batch failed, backing off %.1fs", environment, self.settings.backoff_seconds)
                self._sleep(self.settings.backoff_seconds)

        return result.as_dict()
