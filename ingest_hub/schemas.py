from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class IngestRequest(BaseModel):
    payload: str = Field(min_length=1)
    environment: str | None = None
    source: str = ""
    type: Literal["TASK", "FEEDBACK"] | None = None
    filter_keywords: list[str] = Field(default_factory=list)
    generate_embeddings: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if isinstance(value, str):
            return value.strip().upper()
        return value

    def to_options(self, *, default_source: str) -> dict[str, Any]:
        options: dict[str, Any] = {
            "source": self.source.strip() or default_source,
            "filter_keywords": [x.strip() for x in self.filter_keywords if x.strip()],
            "generate_embeddings": self.generate_embeddings,
        }
        if self.environment and self.environment.strip():
            options["environment"] = self.environment.strip()
        if self.type:
            options["type"] = self.type
        return options


def serialize_job(job: dict[str, Any]) -> dict[str, Any]:
    """Public view of an ingest job; the raw payload is reduced to ``has_payload``."""
    data = {key: value for key, value in job.items() if key != "payload"}
    data["has_payload"] = job.get("payload") is not None
    return data


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
