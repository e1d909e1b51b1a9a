from __future__ import annotations

from fastapi import APIRouter, Query, Request

from ingest_hub.routes._deps import accepted_response, trace_id_from_request
from ingest_hub.schemas import success_envelope
from ingest_hub.store import ingestion

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/ingest/process")
def internal_process_ingest(request: Request, environment: str | None = Query(default=None)):
    summary = ingestion.process_queued_jobs(environment or None)
    return accepted_response(request, summary)


@router.post("/ingest/recover-stale")
def internal_recover_stale(request: Request, older_than_minutes: int = Query(default=10, ge=0)):
    recovered = ingestion.recover_stale_jobs(older_than_minutes=older_than_minutes)
    return success_envelope({"recovered_job_ids": recovered}, trace_id_from_request(request))
