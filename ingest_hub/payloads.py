from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Callable
from typing import Any
from urllib import request

logger = logging.getLogger(__name__)

SOURCE_KIND_CSV = "CSV"
SOURCE_KIND_API = "API"
SOURCE_KINDS = (SOURCE_KIND_CSV, SOURCE_KIND_API)

PAYLOAD_FETCH_TIMEOUT_S = 30.0


def parse_csv_rows(payload: str) -> list[dict[str, str]]:
    """Parse CSV text with a header row into trimmed row mappings.

    Blank lines are skipped. Short rows keep only the cells they have and
    surplus cells beyond the header are dropped.
    """
    text = payload.lstrip("\ufeff")
    reader = csv.reader(io.StringIO(text))
    header: list[str] | None = None
    rows: list[dict[str, str]] = []
    for cells in reader:
        if not cells or all(not cell.strip() for cell in cells):
            continue
        if header is None:
            header = [cell.strip() for cell in cells]
            continue
        row: dict[str, str] = {}
        for name, cell in zip(header, cells):
            if name:
                row[name] = cell.strip()
        rows.append(row)
    return rows


def fetch_json(url: str, *, timeout_s: float = PAYLOAD_FETCH_TIMEOUT_S) -> Any:
    req = request.Request(url, method="GET", headers={"Accept": "application/json"})
    with request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8")
    return json.loads(raw)


def decode_payload(
    kind: str,
    payload: str,
    *,
    fetch: Callable[[str], Any] | None = None,
) -> list[Any]:
    """Turn a stored job payload into raw rows.

    API payloads are JSON text (an array or a single object). Text that is not
    JSON is treated as a URL whose response body is JSON.
    """
    if kind.upper() == SOURCE_KIND_CSV:
        return list(parse_csv_rows(payload))
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        url = payload.strip()
        logger.info("payload is not JSON, fetching rows from %s", url)
        data = (fetch or fetch_json)(url)
    if isinstance(data, list):
        return data
    return [data]
