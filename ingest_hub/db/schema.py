from __future__ import annotations

from ingest_hub.db.postgres import _import_psycopg, validate_identifier


class PostgresSchemaManager:
    """Create the ingest job and data record tables (pgvector required for embeddings)."""

    def __init__(
        self,
        dsn: str,
        *,
        jobs_table: str = "ingest_jobs",
        records_table: str = "data_records",
        embedding_dimensions: int = 1536,
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        if embedding_dimensions <= 0:
            raise ValueError("embedding_dimensions must be positive")
        self._dsn = dsn.strip()
        self._jobs_table = validate_identifier(jobs_table)
        self._records_table = validate_identifier(records_table)
        self._embedding_dimensions = int(embedding_dimensions)

    def statements(self) -> list[str]:
        jobs = self._jobs_table
        records = self._records_table
        return [
            "CREATE EXTENSION IF NOT EXISTS vector",
            f"""
            CREATE TABLE IF NOT EXISTS {jobs} (
                id TEXT PRIMARY KEY,
                environment TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                total_records INTEGER NOT NULL DEFAULT 0,
                saved_count INTEGER NOT NULL DEFAULT 0,
                skipped_count INTEGER NOT NULL DEFAULT 0,
                skipped_details JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                error TEXT,
                payload TEXT,
                options JSONB,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{jobs}_status ON {jobs}(status, created_at)",
            f"CREATE INDEX IF NOT EXISTS idx_{jobs}_environment ON {jobs}(environment, status, created_at)",
            f"""
            CREATE TABLE IF NOT EXISTS {records} (
                id TEXT PRIMARY KEY,
                environment TEXT NOT NULL,
                type TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'STANDARD',
                source TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                embedding vector({self._embedding_dimensions}),
                created_by_id TEXT,
                created_by_name TEXT,
                created_by_email TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{records}_environment_type ON {records}(environment, type)",
            f"""
            CREATE INDEX IF NOT EXISTS idx_{records}_missing_embedding
            ON {records}(environment, id) WHERE embedding IS NULL
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{records}_ingest_job ON {records}((metadata->>'ingestJobId'))",
        ]

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.statements():
                    cur.execute(statement)
            conn.commit()
        return [self._jobs_table, self._records_table]
