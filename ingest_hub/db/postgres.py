from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from typing import Any

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def validate_identifier(name: str) -> str:
    if not _IDENTIFIER.fullmatch(name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresTxRunner:
    """One PostgreSQL transaction per callback.

    When ``environment`` is given it is published as the transaction-local
    setting ``app.current_environment`` before the callback runs, so row level
    policies and logging can see which environment a statement belongs to.
    """

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout_s: int = 10,
        application_name: str = "ingest-hub",
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect_kwargs: dict[str, Any] = {
            "connect_timeout": max(1, int(connect_timeout_s)),
            "application_name": application_name,
        }

    @classmethod
    def from_env(cls, dsn: str, environ: Mapping[str, str] | None = None) -> PostgresTxRunner:
        env = os.environ if environ is None else environ
        raw_timeout = str(env.get("POSTGRES_CONNECT_TIMEOUT_SECONDS", "")).strip()
        try:
            timeout = int(raw_timeout) if raw_timeout else 10
        except ValueError:
            timeout = 10
        return cls(
            dsn,
            connect_timeout_s=timeout,
            application_name=str(env.get("POSTGRES_APPLICATION_NAME", "ingest-hub")).strip() or "ingest-hub",
        )

    @property
    def connect_kwargs(self) -> dict[str, Any]:
        return dict(self._connect_kwargs)

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        environment: str | None = None,
    ) -> Any:
        if environment is not None and not environment.strip():
            raise ValueError("environment must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn, **self._connect_kwargs) as conn:
            if environment is not None:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_environment', %s, true)", (environment,))
            result = fn(conn)
            conn.commit()
            return result
