"""Error taxonomy of the telemetry store.

Every error carries a stable ``code`` so the HTTP layer can surface it as a
structured error instead of a raw exception.
"""

from datetime import datetime


class StoreError(Exception):
    """Base class for telemetry store errors."""

    code = "store_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RecordValidationError(StoreError):
    """A single record failed validation and was rejected."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class StorageError(StoreError):
    """A chunk was unavailable for the requested operation."""

    code = "storage_error"


class ChunkImmutableError(StorageError):
    """A write targeted a compressed (read-only) chunk."""

    code = "chunk_immutable"

    def __init__(self, chunk_id: str, chunk_start: datetime, chunk_end: datetime):
        super().__init__(
            f"Chunk {chunk_id} [{chunk_start.isoformat()}, {chunk_end.isoformat()}) "
            "is compressed; use the correction maintenance operation"
        )
        self.chunk_id = chunk_id
        self.chunk_start = chunk_start
        self.chunk_end = chunk_end


class QueryTooExpensiveError(StoreError):
    """Predicted scan size exceeded the configured bound."""

    code = "query_too_expensive"

    def __init__(self, estimated_rows: int, max_rows: int):
        super().__init__(
            f"Query would scan an estimated {estimated_rows} rows (limit {max_rows})"
        )
        self.estimated_rows = estimated_rows
        self.max_rows = max_rows


class InvalidRangeError(StoreError):
    """Malformed time window (start after end)."""

    code = "invalid_range"


class PolicyViolationError(StoreError):
    """Retention/compression durations are inconsistent."""

    code = "policy_violation"


class OperationTimeoutError(StoreError):
    """A sub-batch or query exceeded its time budget."""

    code = "timeout"
