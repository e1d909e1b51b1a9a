from __future__ import annotations

import json
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ingest_hub.errors import ApiError
from ingest_hub.schemas import IngestRequest, error_envelope, success_envelope

_FORM_FIELDS = ("environment", "source", "type", "generate_embeddings")


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def accepted_response(request: Request, data: Any) -> JSONResponse:
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request)))


def invalid_request(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _validate(data: Any) -> IngestRequest:
    try:
        return IngestRequest.model_validate(data)
    except ValidationError:
        raise invalid_request("invalid payload")


async def read_json_ingest_request(request: Request) -> IngestRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise invalid_request("request body must be JSON")
    return _validate(body)


async def read_upload_ingest_request(request: Request) -> IngestRequest:
    """Multipart form with a ``file`` part; plain JSON bodies are accepted too."""
    if not request.headers.get("content-type", "").startswith("multipart/form-data"):
        return await read_json_ingest_request(request)
    form = await request.form()
    upload = form.get("file")
    if upload is None or isinstance(upload, str):
        raise invalid_request("file is required")
    raw = await upload.read()
    data: dict[str, Any] = {"payload": raw.decode("utf-8-sig", errors="replace")}
    for name in _FORM_FIELDS:
        value = form.get(name)
        if isinstance(value, str) and value.strip():
            data[name] = value.strip()
    keywords = form.get("filter_keywords")
    if isinstance(keywords, str):
        data["filter_keywords"] = [x.strip() for x in keywords.split(",") if x.strip()]
    return _validate(data)
