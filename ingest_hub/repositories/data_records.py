from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from ingest_hub.db.postgres import PostgresTxRunner, validate_identifier
from ingest_hub.record_parser import IDENTITY_ID_FIELDS, IDENTITY_KEY_FIELD

RECORD_COLUMNS: tuple[str, ...] = (
    "id",
    "environment",
    "type",
    "category",
    "source",
    "content",
    "metadata",
    "created_by_id",
    "created_by_name",
    "created_by_email",
    "created_at",
    "updated_at",
)

EMBEDDING_ERROR_FIELD = "embeddingError"
INGEST_JOB_FIELD = "ingestJobId"


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


def _identity_value(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def vector_literal(vector: list[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


class InMemoryDataRecordsRepository:
    """Data record table kept in process memory.

    When ``embedding_dimensions`` is set, embedding writes of another width fail
    with the same message shape pgvector uses ("expected N dimensions, not M").
    """

    def __init__(
        self,
        records: dict[str, dict[str, Any]] | None = None,
        *,
        embedding_dimensions: int | None = None,
    ) -> None:
        self._records = records if records is not None else {}
        self._lock = threading.RLock()
        self.embedding_dimensions = embedding_dimensions

    def insert_many(self, *, records: list[dict[str, Any]]) -> int:
        with self._lock:
            now = _utcnow_iso()
            for record in records:
                row = {column: record.get(column) for column in RECORD_COLUMNS}
                row["metadata"] = dict(record.get("metadata") or {})
                row["created_at"] = _as_iso(row["created_at"]) or now
                row["updated_at"] = _as_iso(row["updated_at"]) or now
                row["embedding"] = None
                self._records[str(row["id"])] = row
            return len(records)

    def get(self, *, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._records.get(record_id)
            if row is None:
                return None
            item = dict(row)
            item["metadata"] = dict(row["metadata"])
            return item

    def list_for_environment(self, *, environment: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [row for row in self._records.values() if row["environment"] == environment]
            rows.sort(key=lambda row: str(row["id"]))
            return [dict(row, metadata=dict(row["metadata"])) for row in rows]

    def find_identities(self, *, environment: str, ids: Iterable[str], keys: Iterable[str]) -> list[dict[str, Any]]:
        wanted_ids = set(ids)
        wanted_keys = set(keys)
        if not wanted_ids and not wanted_keys:
            return []
        with self._lock:
            matches: list[dict[str, Any]] = []
            for row in self._records.values():
                if row["environment"] != environment:
                    continue
                metadata = row["metadata"]
                identity = {field: _identity_value(metadata.get(field)) for field in IDENTITY_ID_FIELDS}
                identity[IDENTITY_KEY_FIELD] = _identity_value(metadata.get(IDENTITY_KEY_FIELD))
                hit_id = any(identity[field] in wanted_ids for field in IDENTITY_ID_FIELDS if identity[field])
                hit_key = identity[IDENTITY_KEY_FIELD] is not None and identity[IDENTITY_KEY_FIELD] in wanted_keys
                if hit_id or hit_key:
                    matches.append({"type": row["type"], **identity})
            return matches

    def scan_missing_embeddings(
        self,
        *,
        environment: str,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        excluded = set(exclude_ids)
        with self._lock:
            rows = [
                row
                for row in self._records.values()
                if row["environment"] == environment
                and row["embedding"] is None
                and row["metadata"].get(EMBEDDING_ERROR_FIELD) is None
                and row["id"] not in excluded
            ]
            rows.sort(key=lambda row: str(row["id"]))
            return [
                {"id": row["id"], "content": row["content"], "metadata": dict(row["metadata"])}
                for row in rows[: max(0, int(limit))]
            ]

    def set_embedding(self, *, record_id: str, vector: list[float]) -> None:
        with self._lock:
            row = self._records.get(record_id)
            if row is None:
                return
            if self.embedding_dimensions is not None and len(vector) != self.embedding_dimensions:
                raise ValueError(f"expected {self.embedding_dimensions} dimensions, not {len(vector)}")
            row["embedding"] = [float(x) for x in vector]
            row["updated_at"] = _utcnow_iso()

    def mark_embedding_error(self, *, record_id: str, message: str) -> None:
        with self._lock:
            row = self._records.get(record_id)
            if row is None:
                return
            row["metadata"] = {**row["metadata"], EMBEDDING_ERROR_FIELD: message}
            row["updated_at"] = _utcnow_iso()

    def delete_by_job(self, *, job_id: str) -> int:
        with self._lock:
            doomed = [
                record_id
                for record_id, row in self._records.items()
                if row["metadata"].get(INGEST_JOB_FIELD) == job_id
            ]
            for record_id in doomed:
                self._records.pop(record_id, None)
            return len(doomed)

    def count_missing_embeddings(self) -> list[dict[str, Any]]:
        with self._lock:
            totals: dict[str, dict[str, int]] = {}
            for row in self._records.values():
                bucket = totals.setdefault(row["environment"], {"total": 0, "missing": 0})
                bucket["total"] += 1
                if row["embedding"] is None:
                    bucket["missing"] += 1
            return [
                {"environment": environment, "total": counts["total"], "missing": counts["missing"]}
                for environment, counts in sorted(totals.items())
                if counts["missing"] > 0
            ]

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class PostgresDataRecordsRepository:
    """Data record table on PostgreSQL with a pgvector ``embedding`` column."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "data_records") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @property
    def table_name(self) -> str:
        return self._table_name

    def insert_many(self, *, records: list[dict[str, Any]]) -> int:
        if not records:
            return 0
        sql = f"""
            INSERT INTO {self._table_name} (
                id, environment, type, category, source, content, metadata,
                created_by_id, created_by_name, created_by_email, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, COALESCE(%s, NOW()), COALESCE(%s, NOW()))
        """
        rows = [
            (
                record["id"],
                record["environment"],
                record["type"],
                record.get("category", "STANDARD"),
                record.get("source", ""),
                record["content"],
                json.dumps(record.get("metadata") or {}, ensure_ascii=True, sort_keys=True, default=str),
                record.get("created_by_id"),
                record.get("created_by_name"),
                record.get("created_by_email"),
                record.get("created_at"),
                record.get("updated_at"),
            )
            for record in records
        ]

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.executemany(sql, rows)
            return len(rows)

        return self._tx_runner.run_in_tx(fn=_op)

    def find_identities(self, *, environment: str, ids: Iterable[str], keys: Iterable[str]) -> list[dict[str, Any]]:
        id_values = sorted(set(ids))
        key_values = sorted(set(keys))
        conditions: list[str] = []
        params: list[Any] = [environment]
        if id_values:
            for field in IDENTITY_ID_FIELDS:
                conditions.append(f"metadata->>'{field}' = ANY(%s)")
                params.append(id_values)
        if key_values:
            conditions.append(f"metadata->>'{IDENTITY_KEY_FIELD}' = ANY(%s)")
            params.append(key_values)
        if not conditions:
            return []
        selected = ", ".join(f"metadata->>'{field}'" for field in (*IDENTITY_ID_FIELDS, IDENTITY_KEY_FIELD))
        sql = f"""
            SELECT type, {selected}
            FROM {self._table_name}
            WHERE environment = %s
            AND ({" OR ".join(conditions)})
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                fetched = cur.fetchall()
            names = ("type", *IDENTITY_ID_FIELDS, IDENTITY_KEY_FIELD)
            return [dict(zip(names, row)) for row in fetched]

        return self._tx_runner.run_in_tx(fn=_op, environment=environment)

    def scan_missing_embeddings(
        self,
        *,
        environment: str,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        excluded = sorted(set(exclude_ids))
        sql = f"""
            SELECT id, content, metadata FROM {self._table_name}
            WHERE environment = %s
            AND embedding IS NULL
            AND (metadata->>'{EMBEDDING_ERROR_FIELD}' IS NULL)
            AND NOT (id = ANY(%s))
            ORDER BY id ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (environment, excluded, max(0, int(limit))))
                fetched = cur.fetchall()
            return [
                {
                    "id": row[0],
                    "content": row[1],
                    "metadata": row[2] if isinstance(row[2], dict) else {},
                }
                for row in fetched
            ]

        return self._tx_runner.run_in_tx(fn=_op, environment=environment)

    def set_embedding(self, *, record_id: str, vector: list[float]) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET embedding = %s::vector, updated_at = NOW()
            WHERE id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (vector_literal(vector), record_id))

        self._tx_runner.run_in_tx(fn=_op)

    def mark_embedding_error(self, *, record_id: str, message: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET metadata = COALESCE(metadata, '{{}}'::jsonb) || jsonb_build_object('{EMBEDDING_ERROR_FIELD}', %s::text),
                updated_at = NOW()
            WHERE id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (message, record_id))

        self._tx_runner.run_in_tx(fn=_op)

    def delete_by_job(self, *, job_id: str) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE metadata->>'{INGEST_JOB_FIELD}' = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                return int(getattr(cur, "rowcount", 0) or 0)

        return self._tx_runner.run_in_tx(fn=_op)

    def count_missing_embeddings(self) -> list[dict[str, Any]]:
        sql = f"""
            SELECT environment, COUNT(*) AS total, COUNT(*) - COUNT(embedding) AS missing
            FROM {self._table_name}
            GROUP BY environment
            HAVING COUNT(*) - COUNT(embedding) > 0
            ORDER BY environment
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql)
                fetched = cur.fetchall()
            return [{"environment": row[0], "total": int(row[1]), "missing": int(row[2])} for row in fetched]

        return self._tx_runner.run_in_tx(fn=_op)
