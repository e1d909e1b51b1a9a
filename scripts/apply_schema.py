#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ingest_hub.db.schema import PostgresSchemaManager


def main() -> int:
    parser = argparse.ArgumentParser(description="Create ingest job and data record tables on PostgreSQL")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument("--jobs-table", default=os.getenv("INGEST_JOBS_TABLE", "ingest_jobs"))
    parser.add_argument("--records-table", default=os.getenv("INGEST_RECORDS_TABLE", "data_records"))
    parser.add_argument(
        "--dimensions",
        type=int,
        default=int(os.getenv("EMBEDDING_DIMENSIONS", "1536")),
        help="width of the embedding vector column",
    )
    parser.add_argument("--dry-run", action="store_true", help="print the DDL without connecting")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn and not args.dry_run:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    manager = PostgresSchemaManager(
        dsn or "postgresql://dry-run",
        jobs_table=args.jobs_table,
        records_table=args.records_table,
        embedding_dimensions=args.dimensions,
    )
    if args.dry_run:
        print(";\n".join(" ".join(stmt.split()) for stmt in manager.statements()) + ";")
        return 0
    applied = manager.apply()
    print(json.dumps({"applied_tables": applied, "count": len(applied)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
