#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ingest_hub.store import ingestion


def main() -> int:
    parser = argparse.ArgumentParser(description="Queue vectorization jobs for records that have no embedding yet")
    parser.add_argument(
        "--queue-only",
        action="store_true",
        help="Only create the jobs; leave processing to the worker or status polls.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    missing = ingestion.records.count_missing_embeddings()
    job_ids = ingestion.queue_retroactive_vectorization(drive=not args.queue_only)
    jobs = [ingestion.get_ingest_status(job_id) for job_id in job_ids]
    print(
        json.dumps(
            {
                "environments": missing,
                "job_ids": job_ids,
                "statuses": {job["id"]: job["status"] for job in jobs if job is not None},
            },
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
