from __future__ import annotations

from fastapi import APIRouter, Query, Request

from ingest_hub.errors import IngestJobNotFoundError
from ingest_hub.routes._deps import (
    accepted_response,
    read_json_ingest_request,
    read_upload_ingest_request,
    trace_id_from_request,
)
from ingest_hub.schemas import serialize_job, success_envelope
from ingest_hub.store import ingestion

router = APIRouter(prefix="/api/v1", tags=["ingest"])


@router.post("/ingest/csv")
async def ingest_csv(request: Request):
    body = await read_upload_ingest_request(request)
    job_id = ingestion.start_background_ingest("CSV", body.payload, body.to_options(default_source="csv-upload"))
    return accepted_response(request, {"job_id": job_id})


@router.post("/ingest/api")
async def ingest_api(request: Request):
    body = await read_json_ingest_request(request)
    job_id = ingestion.start_background_ingest("API", body.payload, body.to_options(default_source="api"))
    return accepted_response(request, {"job_id": job_id})


@router.get("/ingest/status")
def ingest_status(request: Request, job_id: str = Query(min_length=1)):
    job = ingestion.get_ingest_status(job_id, advance=True)
    if job is None:
        raise IngestJobNotFoundError(job_id)
    return success_envelope(serialize_job(job), trace_id_from_request(request))


@router.get("/ingest/jobs")
def list_ingest_jobs(
    request: Request,
    environment: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
):
    jobs = ingestion.list_ingest_jobs(environment=environment, limit=limit)
    return success_envelope(
        {"items": [serialize_job(job) for job in jobs], "total": len(jobs)},
        trace_id_from_request(request),
    )


@router.post("/ingest/jobs/{job_id}/cancel")
def cancel_ingest_job(job_id: str, request: Request):
    job = ingestion.cancel_ingest(job_id)
    return success_envelope(serialize_job(job), trace_id_from_request(request))


@router.delete("/ingest/jobs/{job_id}")
def delete_ingest_job(job_id: str, request: Request):
    deleted = ingestion.delete_ingested_data(job_id)
    return success_envelope({"job_id": job_id, "deleted_records": deleted}, trace_id_from_request(request))
