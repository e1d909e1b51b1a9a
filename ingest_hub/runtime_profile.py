from __future__ import annotations

from collections.abc import Mapping
import os

BACKEND_MEMORY = "memory"
BACKEND_POSTGRES = "postgres"
STORE_BACKENDS = (BACKEND_MEMORY, BACKEND_POSTGRES)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("INGEST_REQUIRE_TRUESTACK", "false"))


def resolve_store_backend(environ: Mapping[str, str] | None = None) -> str:
    """Storage backend named by INGEST_STORE_BACKEND, checked against the deployment profile."""
    env = os.environ if environ is None else environ
    backend = env.get("INGEST_STORE_BACKEND", BACKEND_MEMORY).strip().lower() or BACKEND_MEMORY
    if backend not in STORE_BACKENDS:
        raise ValueError(f"unsupported INGEST_STORE_BACKEND: {backend}")
    if true_stack_required(env) and backend != BACKEND_POSTGRES:
        raise RuntimeError("INGEST_STORE_BACKEND must be postgres when INGEST_REQUIRE_TRUESTACK=true")
    return backend
