"""Data model shared by every ingestion stage."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ImportType(str, Enum):
    STANDARD = "STANDARD"
    CUSTOM = "CUSTOM"


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UploadStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    MAPPED = "MAPPED"
    IMPORTED = "IMPORTED"
    FAILED = "FAILED"


class ParseMethod(str, Enum):
    STANDARD = "STANDARD"
    AI_MAPPED = "AI_MAPPED"
    USER_CORRECTED = "USER_CORRECTED"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CORRECTED = "CORRECTED"
    REJECTED = "REJECTED"


class FeedbackIssue(str, Enum):
    WRONG_FIELD = "WRONG_FIELD"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    SHOULD_BE_METADATA = "SHOULD_BE_METADATA"


# ─── Mappings ────────────────────────────────────────────────────────────────


@dataclass
class ColumnMapping:
    """Intent for one source column: where its value goes and how to read it."""

    source_column: str
    target_column: str
    confidence: float = 1.0
    priority: int = 0  # higher wins when two columns target one field
    data_type: str = "string"
    transformer: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnMapping:
        return cls(
            source_column=data["source_column"],
            target_column=data["target_column"],
            confidence=float(data.get("confidence", 1.0)),
            priority=int(data.get("priority", 0)),
            data_type=data.get("data_type") or "string",
            transformer=data.get("transformer"),
        )


@dataclass
class MappingProposal:
    """What the AI mapping adapter returns for one file."""

    mappings: dict[str, dict[str, Any]]  # column -> {"field", "confidence", "reasoning"?}
    overall_confidence: float
    unmapped_fields: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    source: str = "claude"  # "claude" | "heuristic"

    def to_dict(self) -> dict[str, Any]:
        return {
            "mappings": self.mappings,
            "overall_confidence": self.overall_confidence,
            "unmapped_fields": self.unmapped_fields,
        }


# ─── Normalized output rows ──────────────────────────────────────────────────


@dataclass
class NormalizedOrder:
    symbol: str
    side: str  # BUY | SELL
    order_quantity: float
    order_executed_time: datetime
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    order_type: Optional[str] = None
    order_status: Optional[str] = None
    time_in_force: Optional[str] = None
    order_placed_time: Optional[datetime] = None
    order_updated_time: Optional[datetime] = None
    order_cancelled_time: Optional[datetime] = None
    order_id: Optional[str] = None
    parent_order_id: Optional[str] = None
    trade_id: Optional[str] = None
    account_id: Optional[str] = None
    order_account: Optional[str] = None
    order_route: Optional[str] = None
    broker_metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    broker_type: str = "GENERIC_CSV"
    import_batch_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class NormalizedTrade:
    symbol: str
    side: str  # BUY | SELL | SHORT | COVER
    quantity: float
    executed_time: datetime
    price: Optional[float] = None
    commission: Optional[float] = None
    fees: Optional[float] = None
    account: Optional[str] = None
    broker_metadata: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    broker_type: str = "GENERIC_CSV"
    import_batch_id: Optional[str] = None
    user_id: Optional[str] = None


# ─── Batch / audit records ───────────────────────────────────────────────────


@dataclass
class ImportBatch:
    user_id: str
    filename: str
    file_size: int
    broker_type: str = "GENERIC_CSV"
    import_type: ImportType = ImportType.CUSTOM
    status: BatchStatus = BatchStatus.PENDING
    total_records: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    ai_mapping_used: bool = False
    mapping_confidence: Optional[float] = None
    column_mappings: list[dict[str, Any]] = field(default_factory=list)
    user_review_required: bool = False
    requires_broker_selection: bool = False
    temp_file_content: Optional[str] = None
    broker_format_id: Optional[str] = None
    account_tags: list[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None


@dataclass
class CsvUploadLog:
    user_id: str
    filename: str
    original_headers: list[str]
    row_count: int
    upload_status: UploadStatus = UploadStatus.UPLOADED
    parse_method: ParseMethod = ParseMethod.STANDARD
    import_batch_id: Optional[str] = None
    error_message: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class PendingReview:
    import_batch_id: str
    user_id: str
    headers: list[str]
    sample_rows: list[dict[str, str]]
    proposed_mappings: dict[str, dict[str, Any]]
    overall_confidence: float
    question: str
    broker_name: Optional[str] = None
    upload_log_id: Optional[str] = None
    status: ReviewStatus = ReviewStatus.PENDING
    resolved_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class MappingFeedback:
    review_id: str
    csv_header: str
    ai_field: Optional[str]
    ai_confidence: float
    corrected_field: str
    issue_type: FeedbackIssue


# ─── Results returned to callers ─────────────────────────────────────────────


@dataclass
class IngestionResult:
    success: bool
    import_batch_id: Optional[str]
    import_type: ImportType
    total_records: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    requires_user_review: bool = False
    requires_broker_selection: bool = False
    mapping_result: Optional[dict[str, Any]] = None
    broker_format_used: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["import_type"] = self.import_type.value
        return data


@dataclass
class ValidationResult:
    is_valid: bool
    headers: list[str]
    sample_rows: list[dict[str, str]]
    row_count: int
    file_size: int
    size_tier: str
    errors: list[str] = field(default_factory=list)
    detected_format: Optional[str] = None
    detected_format_name: Optional[str] = None
    format_confidence: float = 0.0
    reasoning: list[str] = field(default_factory=list)
    is_standard_schema: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
