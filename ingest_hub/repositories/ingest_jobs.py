from __future__ import annotations

import itertools
import json
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from ingest_hub.db.postgres import PostgresTxRunner, validate_identifier

JOB_COLUMNS: tuple[str, ...] = (
    "id",
    "environment",
    "type",
    "status",
    "total_records",
    "saved_count",
    "skipped_count",
    "skipped_details",
    "error",
    "payload",
    "options",
    "created_at",
    "updated_at",
)

_JSON_COLUMNS = {"skipped_details", "options"}
_MUTABLE_COLUMNS = set(JOB_COLUMNS) - {"id", "created_at", "updated_at"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat()
    return str(value)


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _status_set(status: str | Iterable[str] | None) -> set[str] | None:
    if status is None:
        return None
    if isinstance(status, str):
        return {status}
    return set(status)


class InMemoryIngestJobsRepository:
    """Ingest job table kept in process memory; used for tests and single-process runs."""

    def __init__(self, jobs: dict[str, dict[str, Any]] | None = None) -> None:
        self._jobs = jobs if jobs is not None else {}
        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._order: dict[str, int] = {}

    def _sort_key(self, job: dict[str, Any]) -> tuple[str, int]:
        return (str(job.get("created_at") or ""), self._order.get(str(job["id"]), 0))

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = {column: job.get(column) for column in JOB_COLUMNS}
            now = _utcnow_iso()
            row["created_at"] = _as_iso(row["created_at"]) or now
            row["updated_at"] = _as_iso(row["updated_at"]) or row["created_at"]
            row["total_records"] = int(row["total_records"] or 0)
            row["saved_count"] = int(row["saved_count"] or 0)
            row["skipped_count"] = int(row["skipped_count"] or 0)
            row["skipped_details"] = dict(row["skipped_details"] or {})
            row["options"] = dict(row["options"]) if row["options"] is not None else None
            self._jobs[str(row["id"])] = row
            self._order[str(row["id"])] = next(self._sequence)
            return dict(row)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return None if row is None else dict(row)

    def update(
        self,
        *,
        job_id: str,
        fields: dict[str, Any],
        expected_status: str | Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unknown ingest job columns: {sorted(unknown)}")
        allowed = _status_set(expected_status)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                return None
            if allowed is not None and row["status"] not in allowed:
                return None
            row.update(fields)
            row["updated_at"] = _utcnow_iso()
            return dict(row)

    def touch(self, *, job_id: str) -> None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is not None:
                row["updated_at"] = _utcnow_iso()

    def has_status(self, *, environment: str, status: str) -> bool:
        with self._lock:
            return any(
                row["environment"] == environment and row["status"] == status for row in self._jobs.values()
            )

    def has_any_status(self, *, environment: str, statuses: Iterable[str]) -> bool:
        wanted = set(statuses)
        with self._lock:
            return any(row["environment"] == environment and row["status"] in wanted for row in self._jobs.values())

    def claim_next(self, *, environment: str, from_status: str, to_status: str) -> dict[str, Any] | None:
        with self._lock:
            if self.has_status(environment=environment, status=to_status):
                return None
            waiting = [
                row
                for row in self._jobs.values()
                if row["environment"] == environment and row["status"] == from_status
            ]
            if not waiting:
                return None
            row = min(waiting, key=self._sort_key)
            row["status"] = to_status
            row["updated_at"] = _utcnow_iso()
            return dict(row)

    def increment_counts(
        self,
        *,
        job_id: str,
        saved: int,
        skipped: int,
        skipped_details: dict[str, int],
    ) -> None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                return
            row["saved_count"] = int(row["saved_count"]) + int(saved)
            row["skipped_count"] = int(row["skipped_count"]) + int(skipped)
            details = dict(row.get("skipped_details") or {})
            for reason, count in skipped_details.items():
                details[reason] = int(details.get(reason, 0)) + int(count)
            row["skipped_details"] = details
            row["updated_at"] = _utcnow_iso()

    def list_environments(self, *, statuses: Iterable[str]) -> list[str]:
        wanted = set(statuses)
        with self._lock:
            return sorted({row["environment"] for row in self._jobs.values() if row["status"] in wanted})

    def list_recent(self, *, environment: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                row for row in self._jobs.values() if environment is None or row["environment"] == environment
            ]
            rows.sort(key=self._sort_key, reverse=True)
            return [dict(row) for row in rows[: max(0, int(limit))]]

    def list_stale(self, *, statuses: Iterable[str], updated_before: datetime) -> list[dict[str, Any]]:
        wanted = set(statuses)
        with self._lock:
            stale: list[dict[str, Any]] = []
            for row in self._jobs.values():
                if row["status"] not in wanted:
                    continue
                updated_at = _parse_iso(row.get("updated_at"))
                if updated_at is not None and updated_at < updated_before:
                    stale.append(dict(row))
            stale.sort(key=self._sort_key)
            return stale

    def delete(self, *, job_id: str) -> bool:
        with self._lock:
            self._order.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._order.clear()


class PostgresIngestJobsRepository:
    """Ingest job table on PostgreSQL; claims use an advisory lock plus a conditional update."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "ingest_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @property
    def _select_columns(self) -> str:
        return ", ".join(JOB_COLUMNS)

    @staticmethod
    def _row_to_job(row: tuple[Any, ...] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        job = dict(zip(JOB_COLUMNS, row))
        for column in _JSON_COLUMNS:
            value = job.get(column)
            if isinstance(value, str):
                try:
                    job[column] = json.loads(value)
                except json.JSONDecodeError:
                    job[column] = None
        job["skipped_details"] = job.get("skipped_details") if isinstance(job.get("skipped_details"), dict) else {}
        job["total_records"] = int(job.get("total_records") or 0)
        job["saved_count"] = int(job.get("saved_count") or 0)
        job["skipped_count"] = int(job.get("skipped_count") or 0)
        job["created_at"] = _as_iso(job.get("created_at"))
        job["updated_at"] = _as_iso(job.get("updated_at"))
        return job

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS:
            return None if value is None else json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        columns = [column for column in JOB_COLUMNS if column not in {"created_at", "updated_at"}]
        placeholders = ", ".join("%s::jsonb" if column in _JSON_COLUMNS else "%s" for column in columns)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(columns)})
            VALUES ({placeholders})
            RETURNING {self._select_columns}
        """
        defaults = {"total_records": 0, "saved_count": 0, "skipped_count": 0, "skipped_details": {}}
        params = tuple(self._encode(column, job.get(column, defaults.get(column))) for column in columns)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return self._row_to_job(cur.fetchone())

        created = self._tx_runner.run_in_tx(fn=_op)
        return created if created is not None else dict(job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_columns}
            FROM {self._table_name}
            WHERE id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                return self._row_to_job(cur.fetchone())

        return self._tx_runner.run_in_tx(fn=_op)

    def update(
        self,
        *,
        job_id: str,
        fields: dict[str, Any],
        expected_status: str | Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unknown ingest job columns: {sorted(unknown)}")
        assignments = [
            f"{column} = %s::jsonb" if column in _JSON_COLUMNS else f"{column} = %s" for column in fields
        ]
        assignments.append("updated_at = NOW()")
        params: list[Any] = [self._encode(column, value) for column, value in fields.items()]
        where = "id = %s"
        params.append(job_id)
        allowed = _status_set(expected_status)
        if allowed is not None:
            where += " AND status = ANY(%s)"
            params.append(sorted(allowed))
        sql = f"""
            UPDATE {self._table_name}
            SET {", ".join(assignments)}
            WHERE {where}
            RETURNING {self._select_columns}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return self._row_to_job(cur.fetchone())

        return self._tx_runner.run_in_tx(fn=_op)

    def touch(self, *, job_id: str) -> None:
        sql = f"UPDATE {self._table_name} SET updated_at = NOW() WHERE id = %s"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))

        self._tx_runner.run_in_tx(fn=_op)

    def has_status(self, *, environment: str, status: str) -> bool:
        sql = f"""
            SELECT 1 FROM {self._table_name}
            WHERE environment = %s AND status = %s
            LIMIT 1
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (environment, status))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(fn=_op, environment=environment)

    def has_any_status(self, *, environment: str, statuses: Iterable[str]) -> bool:
        sql = f"""
            SELECT 1 FROM {self._table_name}
            WHERE environment = %s AND status = ANY(%s)
            LIMIT 1
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (environment, sorted(set(statuses))))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(fn=_op, environment=environment)

    def claim_next(self, *, environment: str, from_status: str, to_status: str) -> dict[str, Any] | None:
        # The advisory lock serializes claimers of one (environment, phase) pair for the transaction.
        lock_sql = "SELECT pg_advisory_xact_lock(hashtext(%s))"
        claim_sql = f"""
            UPDATE {self._table_name}
            SET status = %s, updated_at = NOW()
            WHERE id = (
                SELECT id FROM {self._table_name}
                WHERE environment = %s AND status = %s
                AND NOT EXISTS (
                    SELECT 1 FROM {self._table_name} WHERE environment = %s AND status = %s
                )
                ORDER BY created_at ASC
                LIMIT 1
            )
            AND status = %s
            RETURNING {self._select_columns}
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (f"{self._table_name}:{environment}:{to_status}",))
                cur.execute(
                    claim_sql,
                    (to_status, environment, from_status, environment, to_status, from_status),
                )
                return self._row_to_job(cur.fetchone())

        return self._tx_runner.run_in_tx(fn=_op, environment=environment)

    def increment_counts(
        self,
        *,
        job_id: str,
        saved: int,
        skipped: int,
        skipped_details: dict[str, int],
    ) -> None:
        details_expr = "COALESCE(skipped_details, '{}'::jsonb)"
        params: list[Any] = [int(saved), int(skipped)]
        for reason, count in sorted(skipped_details.items()):
            details_expr = (
                f"({details_expr} || jsonb_build_object(%s::text, "
                f"COALESCE((skipped_details->>%s)::int, 0) + %s))"
            )
            params.extend([reason, reason, int(count)])
        params.append(job_id)
        sql = f"""
            UPDATE {self._table_name}
            SET saved_count = saved_count + %s,
                skipped_count = skipped_count + %s,
                skipped_details = {details_expr},
                updated_at = NOW()
            WHERE id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))

        self._tx_runner.run_in_tx(fn=_op)

    def list_environments(self, *, statuses: Iterable[str]) -> list[str]:
        sql = f"""
            SELECT DISTINCT environment FROM {self._table_name}
            WHERE status = ANY(%s)
            ORDER BY environment
        """

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (sorted(set(statuses)),))
                return [str(row[0]) for row in cur.fetchall()]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_recent(self, *, environment: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        if environment is None:
            sql = f"""
                SELECT {self._select_columns} FROM {self._table_name}
                ORDER BY created_at DESC
                LIMIT %s
            """
            params: tuple[Any, ...] = (max(0, int(limit)),)
        else:
            sql = f"""
                SELECT {self._select_columns} FROM {self._table_name}
                WHERE environment = %s
                ORDER BY created_at DESC
                LIMIT %s
            """
            params = (environment, max(0, int(limit)))

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [job for job in (self._row_to_job(row) for row in cur.fetchall()) if job is not None]

        return self._tx_runner.run_in_tx(fn=_op)

    def list_stale(self, *, statuses: Iterable[str], updated_before: datetime) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._select_columns} FROM {self._table_name}
            WHERE status = ANY(%s) AND updated_at < %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (sorted(set(statuses)), updated_before))
                return [job for job in (self._row_to_job(row) for row in cur.fetchall()) if job is not None]

        return self._tx_runner.run_in_tx(fn=_op)

    def delete(self, *, job_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                return int(getattr(cur, "rowcount", 0) or 0) > 0

        return self._tx_runner.run_in_tx(fn=_op)
