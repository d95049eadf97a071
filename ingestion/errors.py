"""Exception types raised by the ingestion engine.

Only ``ValidationError`` ever reaches the caller of ``ingest``; the rest
are caught inside the service and folded into the structured result.
"""

from __future__ import annotations

from dataclasses import dataclass


class IngestionError(Exception):
    """Base class for ingestion failures."""


class ValidationError(IngestionError):
    """The uploaded file cannot be ingested at all (empty, oversized, unparsable)."""

    def __init__(self, message: str, defects: list[str] | None = None) -> None:
        super().__init__(message)
        self.defects = defects or [message]


class ParseError(ValidationError):
    """Raised by the raw parser."""


class RowError(IngestionError):
    """A single row failed coercion or persistence."""

    def __init__(self, row_index: int, message: str) -> None:
        # row_index is 0-based; the message uses 1-based numbering
        self.row_index = row_index
        self.row_number = row_index + 1
        self.detail = message
        super().__init__(f"Row {self.row_number}: {message}")


class NonTradeRow(IngestionError):
    """Row is a cash movement (dividend, deposit, ...) rather than a trade; skipped."""


class AdapterFailure(IngestionError):
    """The AI mapping adapter failed or timed out."""


class InvalidTransition(IngestionError):
    """A batch or upload log was moved to a state it cannot reach."""


class BatchNotFound(IngestionError):
    pass


class BatchStateError(IngestionError):
    """A follow-up operation was attempted on a batch in the wrong state."""


@dataclass
class MappingConflict:
    """Two source columns targeted the same field; the loser is recorded here.

    Never raised. Collected by the pipeline for diagnostics.
    """

    target_field: str
    kept_column: str
    skipped_column: str

    def __str__(self) -> str:
        return (
            f"'{self.skipped_column}' skipped for '{self.target_field}' "
            f"(already filled by '{self.kept_column}')"
        )
