from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ingest_hub.record_parser import (
    DEFAULT_ENVIRONMENT,
    IDENTITY_ID_FIELDS,
    IDENTITY_KEY_FIELD,
    RECORD_TYPE_TASK,
    SKIP_DUPLICATE_ID,
    ParseDefaults,
    ParsedRecord,
    parse_row,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100
STATUS_CANCELLED = "CANCELLED"

_FALSE_FLAGS = {"0", "false", "no", "off"}


def _as_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        raw = value.strip().lower()
        return default if not raw else raw not in _FALSE_FLAGS
    return bool(value)


@dataclass
class IngestOptions:
    environment: str = DEFAULT_ENVIRONMENT
    type: str = RECORD_TYPE_TASK
    source: str = ""
    ingestion_type: str = "CSV"
    filter_keywords: list[str] = field(default_factory=list)
    generate_embeddings: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> IngestOptions:
        data = data or {}
        keywords = data.get("filter_keywords") or []
        if isinstance(keywords, str):
            keywords = [x.strip() for x in keywords.split(",") if x.strip()]
        return cls(
            environment=str(data.get("environment") or DEFAULT_ENVIRONMENT),
            type=str(data.get("type") or RECORD_TYPE_TASK).upper(),
            source=str(data.get("source") or ""),
            ingestion_type=str(data.get("ingestion_type") or "CSV").upper(),
            filter_keywords=[str(x) for x in keywords],
            generate_embeddings=_as_flag(data.get("generate_embeddings"), default=True),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "type": self.type,
            "source": self.source,
            "ingestion_type": self.ingestion_type,
            "filter_keywords": list(self.filter_keywords),
            "generate_embeddings": self.generate_embeddings,
        }


class _SeenIdentities:
    """Identity values known to exist, partitioned by record type."""

    def __init__(self) -> None:
        self._ids: dict[str, set[str]] = {}
        self._keys: dict[str, set[str]] = {}

    def add_existing(self, row: Mapping[str, Any]) -> None:
        record_type = str(row.get("type") or "")
        ids = self._ids.setdefault(record_type, set())
        for name in IDENTITY_ID_FIELDS:
            value = row.get(name)
            if value:
                ids.add(str(value))
        key = row.get(IDENTITY_KEY_FIELD)
        if key:
            self._keys.setdefault(record_type, set()).add(str(key))

    def add(self, record: ParsedRecord) -> None:
        if record.identity_id:
            self._ids.setdefault(record.type, set()).add(record.identity_id)
        if record.identity_key:
            self._keys.setdefault(record.type, set()).add(record.identity_key)

    def contains(self, record: ParsedRecord) -> bool:
        if record.identity_id and record.identity_id in self._ids.get(record.type, set()):
            return True
        if record.identity_key and record.identity_key in self._keys.get(record.type, set()):
            return True
        return False


def _chunks(rows: list[Any], size: int):
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def process_and_store(
    rows: list[Any],
    options: IngestOptions | Mapping[str, Any],
    job_id: str | None,
    *,
    jobs: Any,
    records: Any,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> dict[str, Any]:
    """Parse, dedup and persist raw rows in chunks.

    Before each chunk the job is re-read; a CANCELLED job stops the run and the
    result carries ``cancelled=True``. Counters on the job are bumped once per
    chunk so a poller sees progress.
    """
    opts = options if isinstance(options, IngestOptions) else IngestOptions.from_mapping(options)
    defaults = ParseDefaults(
        type=opts.type,
        environment=opts.environment,
        filter_keywords=list(opts.filter_keywords),
    )
    size = max(1, int(chunk_size))
    saved_total = 0
    skipped_total = 0
    # Identities accepted earlier in this run, per environment.
    accepted: dict[str, _SeenIdentities] = {}

    for chunk in _chunks(list(rows), size):
        if job_id is not None:
            current = jobs.get(job_id=job_id)
            if current is not None and current.get("status") == STATUS_CANCELLED:
                logger.info("ingest job %s cancelled, stopping after %s saved rows", job_id, saved_total)
                return {"saved_count": saved_total, "skipped_count": skipped_total, "cancelled": True}

        skip_reasons: dict[str, int] = {}
        parsed: list[ParsedRecord] = []
        for row in chunk:
            outcome = parse_row(row, defaults)
            if outcome.record is None:
                reason = outcome.skip_reason or "Unknown"
                skip_reasons[reason] = skip_reasons.get(reason, 0) + 1
                continue
            parsed.append(outcome.record)

        by_environment: dict[str, list[ParsedRecord]] = {}
        for record in parsed:
            by_environment.setdefault(record.environment, []).append(record)

        to_insert: list[dict[str, Any]] = []
        for environment, env_records in by_environment.items():
            seen = _SeenIdentities()
            ids = {r.identity_id for r in env_records if r.identity_id}
            keys = {r.identity_key for r in env_records if r.identity_key}
            if ids or keys:
                for existing in records.find_identities(environment=environment, ids=ids, keys=keys):
                    seen.add_existing(existing)
            run_seen = accepted.setdefault(environment, _SeenIdentities())
            for record in env_records:
                if seen.contains(record) or run_seen.contains(record):
                    skip_reasons[SKIP_DUPLICATE_ID] = skip_reasons.get(SKIP_DUPLICATE_ID, 0) + 1
                    continue
                run_seen.add(record)
                to_insert.append(record.to_row(record_id=str(uuid.uuid4()), source=opts.source, job_id=job_id))

        if to_insert:
            records.insert_many(records=to_insert)
        skipped = sum(skip_reasons.values())
        saved_total += len(to_insert)
        skipped_total += skipped
        if job_id is not None:
            jobs.increment_counts(
                job_id=job_id,
                saved=len(to_insert),
                skipped=skipped,
                skipped_details=skip_reasons,
            )
        logger.debug("chunk stored: saved=%s skipped=%s job=%s", len(to_insert), skipped, job_id)

    return {"saved_count": saved_total, "skipped_count": skipped_total}
