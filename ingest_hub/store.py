from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any

from ingest_hub.db.postgres import PostgresTxRunner
from ingest_hub.dispatcher import DispatcherSettings, IngestionService
from ingest_hub.embedding_provider import EmbeddingConfig, EmbeddingProvider
from ingest_hub.repositories import (
    InMemoryDataRecordsRepository,
    InMemoryIngestJobsRepository,
    PostgresDataRecordsRepository,
    PostgresIngestJobsRepository,
)
from ingest_hub.runtime_profile import BACKEND_POSTGRES, resolve_store_backend
from ingest_hub.vectorization import VectorizationSettings


class IngestStore:
    """The job and record repositories of one storage backend."""

    def __init__(self, *, jobs: Any, records: Any, backend: str = "memory") -> None:
        self.jobs = jobs
        self.records = records
        self.backend = backend

    def reset(self) -> None:
        for repo in (self.jobs, self.records):
            reset = getattr(repo, "reset", None)
            if callable(reset):
                reset()


def _memory_dimensions(env: Mapping[str, str]) -> int | None:
    raw = str(env.get("EMBEDDING_DIMENSIONS", "")).strip()
    if not raw:
        return None
    try:
        return max(1, int(raw))
    except ValueError:
        return None


def create_store_from_env(environ: Mapping[str, str] | None = None) -> IngestStore:
    env = os.environ if environ is None else environ
    backend = resolve_store_backend(env)
    if backend == BACKEND_POSTGRES:
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when INGEST_STORE_BACKEND=postgres")
        runner = PostgresTxRunner.from_env(dsn, env)
        return IngestStore(
            jobs=PostgresIngestJobsRepository(
                tx_runner=runner,
                table_name=env.get("INGEST_JOBS_TABLE", "ingest_jobs"),
            ),
            records=PostgresDataRecordsRepository(
                tx_runner=runner,
                table_name=env.get("INGEST_RECORDS_TABLE", "data_records"),
            ),
            backend=BACKEND_POSTGRES,
        )
    return IngestStore(
        jobs=InMemoryIngestJobsRepository(),
        records=InMemoryDataRecordsRepository(embedding_dimensions=_memory_dimensions(env)),
    )


def create_ingestion_service_from_env(
    *,
    store: IngestStore,
    environ: Mapping[str, str] | None = None,
    embedder: Any = None,
) -> IngestionService:
    env = os.environ if environ is None else environ
    return IngestionService(
        jobs=store.jobs,
        records=store.records,
        embedder=embedder or EmbeddingProvider(EmbeddingConfig.from_env(env)),
        settings=DispatcherSettings.from_env(env),
        vectorization_settings=VectorizationSettings.from_env(env),
    )


store = create_store_from_env()
ingestion = create_ingestion_service_from_env(store=store)
