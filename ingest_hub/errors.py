from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class IngestJobNotFoundError(ApiError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            code="INGEST_JOB_NOT_FOUND",
            message=f"ingest job not found: {job_id}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.job_id = job_id


class EmbeddingDimensionMismatchError(RuntimeError):
    """Storage column width and embedding model output width disagree."""

    def __init__(self, *, expected: int, actual: int, table_name: str = "data_records") -> None:
        super().__init__(
            f"Vector dimension mismatch: database expects {expected} dimensions, "
            f"but embedding model returned {actual} dimensions. "
            f"Update the schema: ALTER TABLE {table_name} ALTER COLUMN embedding TYPE vector({actual});"
        )
        self.expected = expected
        self.actual = actual
        self.table_name = table_name
