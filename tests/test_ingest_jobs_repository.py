from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from ingest_hub.repositories import InMemoryIngestJobsRepository, PostgresIngestJobsRepository
from ingest_hub.repositories.ingest_jobs import JOB_COLUMNS


def _job(job_id: str = "job_1", **overrides) -> dict:
    job = {
        "id": job_id,
        "environment": "env1",
        "type": "TASK",
        "status": "PENDING",
        "payload": "a,b\n1,2\n",
        "options": {"source": "csv"},
    }
    job.update(overrides)
    return job


def test_inmemory_create_fills_defaults():
    repo = InMemoryIngestJobsRepository()
    created = repo.create(job=_job())

    assert created["saved_count"] == 0
    assert created["skipped_details"] == {}
    assert created["created_at"] == created["updated_at"]
    assert repo.get(job_id="job_1")["options"] == {"source": "csv"}
    assert repo.get(job_id="missing") is None


def test_inmemory_update_is_conditional_on_status():
    repo = InMemoryIngestJobsRepository()
    repo.create(job=_job(status="CANCELLED"))

    assert repo.update(job_id="job_1", fields={"status": "COMPLETED"}, expected_status="PROCESSING") is None
    assert repo.get(job_id="job_1")["status"] == "CANCELLED"
    assert repo.update(job_id="job_1", fields={"error": "x"}, expected_status=("CANCELLED", "FAILED"))["error"] == "x"


def test_inmemory_update_rejects_unknown_columns():
    repo = InMemoryIngestJobsRepository()
    repo.create(job=_job())
    with pytest.raises(ValueError, match="unknown ingest job columns"):
        repo.update(job_id="job_1", fields={"owner_id": "x"})


def test_inmemory_claim_next_is_oldest_first_and_single_flight():
    repo = InMemoryIngestJobsRepository()
    repo.create(job=_job("newer", created_at=datetime(2026, 1, 2, tzinfo=UTC)))
    repo.create(job=_job("older", created_at=datetime(2026, 1, 1, tzinfo=UTC)))
    repo.create(job=_job("other_env", environment="env2"))

    claimed = repo.claim_next(environment="env1", from_status="PENDING", to_status="PROCESSING")
    assert claimed["id"] == "older"
    assert repo.claim_next(environment="env1", from_status="PENDING", to_status="PROCESSING") is None
    assert repo.claim_next(environment="env2", from_status="PENDING", to_status="PROCESSING")["id"] == "other_env"


def test_inmemory_increment_counts_merges_skip_reasons():
    repo = InMemoryIngestJobsRepository()
    repo.create(job=_job())
    repo.increment_counts(job_id="job_1", saved=2, skipped=1, skipped_details={"Duplicate ID": 1})
    repo.increment_counts(
        job_id="job_1", saved=1, skipped=2, skipped_details={"Duplicate ID": 1, "Keyword Mismatch": 1}
    )

    job = repo.get(job_id="job_1")
    assert job["saved_count"] == 3
    assert job["skipped_count"] == 3
    assert job["skipped_details"] == {"Duplicate ID": 2, "Keyword Mismatch": 1}


def test_inmemory_listing_helpers():
    repo = InMemoryIngestJobsRepository()
    old = datetime.now(UTC) - timedelta(hours=1)
    repo.create(job=_job("a", status="PROCESSING", updated_at=old))
    repo.create(job=_job("b", environment="env2", status="QUEUED_FOR_VEC"))
    repo.create(job=_job("c", environment="env3", status="COMPLETED"))

    assert repo.list_environments(statuses=("PENDING", "QUEUED_FOR_VEC")) == ["env2"]
    assert [job["id"] for job in repo.list_recent()] == ["c", "b", "a"]
    assert [job["id"] for job in repo.list_recent(environment="env2")] == ["b"]
    stale = repo.list_stale(statuses=("PROCESSING",), updated_before=datetime.now(UTC) - timedelta(minutes=10))
    assert [job["id"] for job in stale] == ["a"]
    assert repo.has_status(environment="env1", status="PROCESSING") is True
    assert repo.delete(job_id="a") is True
    assert repo.delete(job_id="a") is False


def test_has_any_status_checks_all_given_statuses():
    repo = InMemoryIngestJobsRepository()
    repo.create(job=_job("a", status="VECTORIZING"))
    repo.create(job=_job("b", environment="env2", status="COMPLETED"))

    assert repo.has_any_status(environment="env1", statuses=("PENDING", "VECTORIZING")) is True
    assert repo.has_any_status(environment="env2", statuses=("PENDING", "VECTORIZING")) is False


def test_postgres_ingest_jobs_repository_rejects_invalid_table_name():
    class DummyRunner:
        def run_in_tx(self, *, fn, environment=None):
            return fn(None)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresIngestJobsRepository(tx_runner=DummyRunner(), table_name="jobs;drop table jobs")


class _FakeCursor:
    def __init__(self, statements: list, rows: list):
        self._statements = statements
        self._rows = rows
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._statements.append((query, params))
        self.rowcount = 1

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class _FakeRunner:
    def __init__(self, rows: list | None = None):
        self.statements: list[tuple[str, tuple | None]] = []
        self.rows = rows if rows is not None else []
        self.environments: list[str | None] = []

    def run_in_tx(self, *, fn, environment=None):
        self.environments.append(environment)
        runner = self

        class _Conn:
            def cursor(self):
                return _FakeCursor(runner.statements, runner.rows)

        return fn(_Conn())


def _db_row(**overrides) -> tuple:
    values = {
        "id": "job_1",
        "environment": "env1",
        "type": "TASK",
        "status": "PROCESSING",
        "total_records": 3,
        "saved_count": 1,
        "skipped_count": 0,
        "skipped_details": '{"Duplicate ID": 1}',
        "error": None,
        "payload": None,
        "options": {"source": "csv"},
        "created_at": datetime(2026, 1, 1, tzinfo=UTC),
        "updated_at": datetime(2026, 1, 1, 0, 5, tzinfo=UTC),
    }
    values.update(overrides)
    return tuple(values[column] for column in JOB_COLUMNS)


def test_postgres_create_encodes_json_columns():
    runner = _FakeRunner(rows=[_db_row(status="PENDING")])
    repo = PostgresIngestJobsRepository(tx_runner=runner, table_name="ingest_jobs")

    created = repo.create(job=_job())

    sql, params = runner.statements[0]
    assert "INSERT INTO ingest_jobs" in sql
    assert "%s::jsonb" in sql
    assert '{"source": "csv"}' in params
    assert created["skipped_details"] == {"Duplicate ID": 1}
    assert created["created_at"] == "2026-01-01T00:00:00+00:00"


def test_postgres_update_adds_status_guard():
    runner = _FakeRunner(rows=[_db_row(status="COMPLETED")])
    repo = PostgresIngestJobsRepository(tx_runner=runner)

    updated = repo.update(
        job_id="job_1",
        fields={"status": "COMPLETED", "payload": None},
        expected_status=("VECTORIZING", "PROCESSING"),
    )

    sql, params = runner.statements[0]
    assert "status = ANY(%s)" in sql
    assert "updated_at = NOW()" in sql
    assert params == ("COMPLETED", None, "job_1", ["PROCESSING", "VECTORIZING"])
    assert updated["status"] == "COMPLETED"


def test_postgres_claim_next_takes_advisory_lock_in_environment_scope():
    runner = _FakeRunner(rows=[_db_row()])
    repo = PostgresIngestJobsRepository(tx_runner=runner, table_name="ingest_jobs")

    claimed = repo.claim_next(environment="env1", from_status="PENDING", to_status="PROCESSING")

    assert claimed["id"] == "job_1"
    assert runner.environments == ["env1"]
    lock_sql, lock_params = runner.statements[0]
    assert "pg_advisory_xact_lock" in lock_sql
    assert lock_params == ("ingest_jobs:env1:PROCESSING",)
    claim_sql, claim_params = runner.statements[1]
    assert "NOT EXISTS" in claim_sql
    assert claim_params == ("PROCESSING", "env1", "PENDING", "env1", "PROCESSING", "PENDING")


def test_postgres_increment_counts_builds_jsonb_merge():
    runner = _FakeRunner()
    repo = PostgresIngestJobsRepository(tx_runner=runner)

    repo.increment_counts(job_id="job_1", saved=4, skipped=2, skipped_details={"Keyword Mismatch": 2})

    sql, params = runner.statements[0]
    assert "jsonb_build_object" in sql
    assert params == (4, 2, "Keyword Mismatch", "Keyword Mismatch", 2, "job_1")


def test_postgres_delete_reports_rowcount():
    runner = _FakeRunner()
    repo = PostgresIngestJobsRepository(tx_runner=runner)

    assert repo.delete(job_id="job_1") is True
    assert runner.statements[0] == ("DELETE FROM ingest_jobs WHERE id = %s", ("job_1",))


def test_postgres_has_any_status_uses_any_array():
    runner = _FakeRunner(rows=[(1,)])
    repo = PostgresIngestJobsRepository(tx_runner=runner, table_name="ingest_jobs")

    assert repo.has_any_status(environment="env1", statuses=("VECTORIZING", "PENDING")) is True

    sql, params = runner.statements[0]
    assert "status = ANY(%s)" in sql
    assert params == ("env1", ["PENDING", "VECTORIZING"])
    assert runner.environments == ["env1"]
