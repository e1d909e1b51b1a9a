#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ingest_hub.store import ingestion


def main() -> int:
    parser = argparse.ArgumentParser(description="Fail PROCESSING/VECTORIZING jobs whose worker stopped updating them")
    parser.add_argument("--older-than-minutes", type=int, default=10, help="staleness window in minutes")
    args = parser.parse_args()

    recovered = ingestion.recover_stale_jobs(older_than_minutes=args.older_than_minutes)
    print(json.dumps({"recovered_job_ids": recovered, "count": len(recovered)}, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
