"""
Two-phase ingest queue driven entirely through the job table.

Job lifecycle per environment:

  PENDING -> PROCESSING -> QUEUED_FOR_VEC -> VECTORIZING -> COMPLETED
                  |                               |
                  +--> COMPLETED (no embeddings)  +--> FAILED / CANCELLED

Any process may call ``process_queued_jobs``; single-flight per environment and
phase comes from the repository's conditional claim, not from process memory.
Every transition out of an active state is written conditionally on the state
the advancer expects, so a concurrent CANCELLED is never overwritten.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from ingest_hub.errors import IngestJobNotFoundError
from ingest_hub.payloads import SOURCE_KIND_API, SOURCE_KINDS, decode_payload
from ingest_hub.persistence import DEFAULT_CHUNK_SIZE, IngestOptions, process_and_store
from ingest_hub.record_parser import DEFAULT_ENVIRONMENT, RECORD_TYPE_TASK, RECORD_TYPES, infer_job_defaults
from ingest_hub.vectorization import VectorizationSettings, VectorizationWorker

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_QUEUED_FOR_VEC = "QUEUED_FOR_VEC"
STATUS_VECTORIZING = "VECTORIZING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
STATUS_CANCELLED = "CANCELLED"

ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_QUEUED_FOR_VEC, STATUS_VECTORIZING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)

PAYLOAD_MISSING_MESSAGE = "Job payload missing from database."
OPTIONS_MISSING_MESSAGE = "Job options missing from database."
STALE_JOB_MESSAGE = "Job killed by server crash - cleaned up automatically"
RETROACTIVE_SOURCE = "retroactive-vectorization"


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _parse_iso(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _no_remote_fetch(url: str) -> Any:
    raise ValueError(f"remote payload not inspected at submit time: {url}")


@dataclass
class DispatcherSettings:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    zombie_threshold_seconds: int = 180
    background_workers: int = 2
    background_enabled: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DispatcherSettings:
        env = os.environ if environ is None else environ
        return cls(
            chunk_size=_env_int(env, "INGEST_CHUNK_SIZE", default=DEFAULT_CHUNK_SIZE, minimum=1),
            zombie_threshold_seconds=_env_int(env, "INGEST_ZOMBIE_THRESHOLD_SECONDS", default=180, minimum=1),
            background_workers=_env_int(env, "INGEST_BACKGROUND_WORKERS", default=2, minimum=1),
            background_enabled=_env_bool(env, "INGEST_BACKGROUND_ENABLED", default=True),
        )


class IngestionService:
    def __init__(
        self,
        *,
        jobs: Any,
        records: Any,
        embedder: Any,
        settings: DispatcherSettings | None = None,
        vectorization_settings: VectorizationSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        fetch: Callable[[str], Any] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.jobs = jobs
        self.records = records
        self.settings = settings or DispatcherSettings()
        self.vectorizer = VectorizationWorker(
            records=records,
            jobs=jobs,
            embedder=embedder,
            settings=vectorization_settings,
            sleep=sleep,
        )
        self._fetch = fetch
        self._now = now or (lambda: datetime.now(UTC))
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def start_background_ingest(
        self,
        kind: str,
        payload: str,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        source_kind = str(kind).strip().upper()
        if source_kind not in SOURCE_KINDS:
            raise ValueError(f"unsupported ingestion type: {kind}")
        given = dict(options or {})
        environment = str(given.get("environment") or "").strip()
        record_type = str(given.get("type") or "").strip().upper()

        if not environment or not record_type:
            try:
                rows = decode_payload(source_kind, payload, fetch=_no_remote_fetch)
                inferred_env, inferred_type = infer_job_defaults(rows)
            except Exception as exc:
                logger.info("could not infer job defaults from payload (%s)", type(exc).__name__)
                inferred_env, inferred_type = None, None
            environment = environment or inferred_env or DEFAULT_ENVIRONMENT
            record_type = record_type or inferred_type or RECORD_TYPE_TASK
        if record_type not in RECORD_TYPES:
            record_type = RECORD_TYPE_TASK

        opts = IngestOptions.from_mapping(
            {**given, "environment": environment, "type": record_type, "ingestion_type": source_kind}
        )
        job_id = str(uuid.uuid4())
        self.jobs.create(
            job={
                "id": job_id,
                "environment": environment,
                "type": record_type,
                "status": STATUS_PENDING,
                "total_records": 0,
                "saved_count": 0,
                "skipped_count": 0,
                "skipped_details": {},
                "error": None,
                "payload": payload,
                "options": opts.as_dict(),
            }
        )
        logger.info("queued ingest job %s (%s) for environment %s", job_id, source_kind, environment)
        self._kick()
        return job_id

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.background_workers,
                    thread_name_prefix="ingest-bg",
                )
            return self._executor

    def _kick(self, environment: str | None = None) -> None:
        if not self.settings.background_enabled:
            return
        self._get_executor().submit(self.process_queued_jobs, environment)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Queue driving
    # ------------------------------------------------------------------

    def process_queued_jobs(self, environment: str | None = None) -> dict[str, Any]:
        """Advance both phases for one environment, or for every environment with waiting jobs.

        Rounds repeat while any advancer made progress, so a job that phase 1
        hands to QUEUED_FOR_VEC is picked up by phase 2 in the same call.
        Advancer errors are logged, never raised.
        """
        handled = {"processed": 0, "vectorized": 0}
        environments: list[str] = []
        while True:
            if environment is None:
                current = self.jobs.list_environments(statuses=(STATUS_PENDING, STATUS_QUEUED_FOR_VEC))
            else:
                current = [environment]
            if not current:
                break
            environments = sorted(set(environments) | set(current))
            progressed = 0
            with ThreadPoolExecutor(max_workers=2 * len(current), thread_name_prefix="ingest-adv") as pool:
                futures = {}
                for env in current:
                    futures[pool.submit(self._advance_processing, env)] = (env, "processed")
                    futures[pool.submit(self._advance_vectorizing, env)] = (env, "vectorized")
                for future in as_completed(futures):
                    env, phase = futures[future]
                    try:
                        count = int(future.result())
                    except Exception:
                        logger.exception("ingest advancer %s failed for environment %s", phase, env)
                        continue
                    handled[phase] += count
                    progressed += count
            if progressed == 0:
                break
        return {"environments": environments, **handled}

    def _advance_processing(self, environment: str) -> int:
        count = 0
        while True:
            job = self.jobs.claim_next(
                environment=environment,
                from_status=STATUS_PENDING,
                to_status=STATUS_PROCESSING,
            )
            if job is None:
                return count
            count += 1
            self._run_processing(job)

    def _run_processing(self, job: dict[str, Any]) -> None:
        job_id = str(job["id"])
        try:
            payload = job.get("payload")
            options = job.get("options")
            if payload is None:
                self._fail(job_id, PAYLOAD_MISSING_MESSAGE)
                return
            if options is None:
                self._fail(job_id, OPTIONS_MISSING_MESSAGE)
                return
            opts = IngestOptions.from_mapping(
                {**options, "environment": job["environment"], "type": job["type"]}
            )
            rows = decode_payload(opts.ingestion_type, payload, fetch=self._fetch)
            self.jobs.update(
                job_id=job_id,
                fields={"total_records": len(rows)},
                expected_status=STATUS_PROCESSING,
            )
            result = process_and_store(
                rows,
                opts,
                job_id,
                jobs=self.jobs,
                records=self.records,
                chunk_size=self.settings.chunk_size,
            )
            if result.get("cancelled"):
                self.jobs.update(job_id=job_id, fields={"payload": None}, expected_status=STATUS_CANCELLED)
                return
            if opts.generate_embeddings:
                next_fields: dict[str, Any] = {"status": STATUS_QUEUED_FOR_VEC}
            else:
                next_fields = {"status": STATUS_COMPLETED, "payload": None}
            if self.jobs.update(job_id=job_id, fields=next_fields, expected_status=STATUS_PROCESSING) is None:
                logger.info("ingest job %s left PROCESSING concurrently, keeping its state", job_id)
                return
            logger.info(
                "ingest job %s stored %s rows (skipped %s) -> %s",
                job_id,
                result["saved_count"],
                result["skipped_count"],
                next_fields["status"],
            )
        except Exception as exc:
            logger.exception("ingest job %s failed while processing", job_id)
            self._fail(job_id, str(exc) or type(exc).__name__)

    def _advance_vectorizing(self, environment: str) -> int:
        count = 0
        while True:
            job = self.jobs.claim_next(
                environment=environment,
                from_status=STATUS_QUEUED_FOR_VEC,
                to_status=STATUS_VECTORIZING,
            )
            if job is None:
                return count
            count += 1
            self._run_vectorizing(job)

    def _run_vectorizing(self, job: dict[str, Any]) -> None:
        job_id = str(job["id"])
        try:
            result = self.vectorizer.run(environment=str(job["environment"]), job_id=job_id)
            if result.get("cancelled"):
                self.jobs.update(job_id=job_id, fields={"payload": None}, expected_status=STATUS_CANCELLED)
                return
            self.jobs.update(
                job_id=job_id,
                fields={"status": STATUS_COMPLETED, "payload": None},
                expected_status=STATUS_VECTORIZING,
            )
            logger.info(
                "ingest job %s vectorized: embedded=%s skipped=%s",
                job_id,
                result["embedded"],
                result["skipped"],
            )
        except Exception as exc:
            logger.exception("ingest job %s failed while vectorizing", job_id)
            self._fail(job_id, str(exc) or type(exc).__name__)

    def _fail(self, job_id: str, message: str) -> None:
        self.jobs.update(
            job_id=job_id,
            fields={"status": STATUS_FAILED, "error": message, "payload": None},
            expected_status=ACTIVE_STATUSES,
        )

    def process_and_store(
        self,
        rows: list[Any],
        options: IngestOptions | Mapping[str, Any],
        job_id: str | None = None,
    ) -> dict[str, Any]:
        return process_and_store(
            rows,
            options,
            job_id,
            jobs=self.jobs,
            records=self.records,
            chunk_size=self.settings.chunk_size,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _is_zombie(self, job: Mapping[str, Any]) -> bool:
        updated_at = _parse_iso(job.get("updated_at"))
        if updated_at is None:
            return False
        return self._now() - updated_at > timedelta(seconds=self.settings.zombie_threshold_seconds)

    def get_ingest_status(self, job_id: str, *, advance: bool = False) -> dict[str, Any] | None:
        job = self.jobs.get(job_id=job_id)
        if job is None or not advance:
            return job
        status = job["status"]
        if status == STATUS_VECTORIZING and self._is_zombie(job):
            logger.warning("ingest job %s stuck in VECTORIZING since %s, requeueing", job_id, job.get("updated_at"))
            if self.jobs.update(
                job_id=job_id,
                fields={"status": STATUS_QUEUED_FOR_VEC},
                expected_status=STATUS_VECTORIZING,
            ):
                status = STATUS_QUEUED_FOR_VEC
        if status in (STATUS_PENDING, STATUS_QUEUED_FOR_VEC):
            self.process_queued_jobs(str(job["environment"]))
            job = self.jobs.get(job_id=job_id)
        return job

    def cancel_ingest(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id=job_id)
        if job is None:
            raise IngestJobNotFoundError(job_id)
        if job["status"] in TERMINAL_STATUSES:
            return job
        updated = self.jobs.update(
            job_id=job_id,
            fields={"status": STATUS_CANCELLED, "payload": None},
            expected_status=ACTIVE_STATUSES,
        )
        if updated is None:
            return self.jobs.get(job_id=job_id) or job
        logger.info("ingest job %s cancelled from %s", job_id, job["status"])
        return updated

    def delete_ingested_data(self, job_id: str) -> int:
        job = self.jobs.get(job_id=job_id)
        if job is not None and job["status"] in ACTIVE_STATUSES:
            self.cancel_ingest(job_id)
        deleted = int(self.records.delete_by_job(job_id=job_id))
        self.jobs.delete(job_id=job_id)
        logger.info("deleted %s records ingested by job %s", deleted, job_id)
        return deleted

    def list_ingest_jobs(self, environment: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        return self.jobs.list_recent(environment=environment, limit=limit)

    def recover_stale_jobs(self, older_than_minutes: int = 10) -> list[str]:
        cutoff = self._now() - timedelta(minutes=max(0, int(older_than_minutes)))
        stale = self.jobs.list_stale(
            statuses=(STATUS_PROCESSING, STATUS_VECTORIZING),
            updated_before=cutoff,
        )
        recovered: list[str] = []
        for job in stale:
            updated = self.jobs.update(
                job_id=str(job["id"]),
                fields={"status": STATUS_FAILED, "error": STALE_JOB_MESSAGE, "payload": None},
                expected_status=job["status"],
            )
            if updated is not None:
                recovered.append(str(job["id"]))
        if recovered:
            logger.warning("marked %s stale ingest jobs as FAILED", len(recovered))
        return recovered

    def queue_retroactive_vectorization(self, *, drive: bool = True) -> list[str]:
        """Queue a vectorization-only job per environment that has records without embeddings.

        Environments that already have a pending or running job are skipped.
        """
        created: list[str] = []
        for row in self.records.count_missing_embeddings():
            environment = str(row["environment"])
            if self.jobs.has_any_status(environment=environment, statuses=ACTIVE_STATUSES):
                continue
            total = int(row["total"])
            job_id = str(uuid.uuid4())
            self.jobs.create(
                job={
                    "id": job_id,
                    "environment": environment,
                    "type": RECORD_TYPE_TASK,
                    "status": STATUS_QUEUED_FOR_VEC,
                    "total_records": total,
                    "saved_count": total,
                    "skipped_count": 0,
                    "skipped_details": {},
                    "error": None,
                    "payload": None,
                    "options": IngestOptions(
                        environment=environment,
                        source=RETROACTIVE_SOURCE,
                        ingestion_type=SOURCE_KIND_API,
                    ).as_dict(),
                }
            )
            logger.info(
                "queued retroactive vectorization %s for %s (%s of %s records missing)",
                job_id,
                environment,
                row["missing"],
                total,
            )
            created.append(job_id)
        if created and drive:
            self.process_queued_jobs()
        return created
