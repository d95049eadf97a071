"""Outbound persistence for the ingestion engine.

``IngestionStore`` is everything the engine needs from a database:
batches, upload logs, pending reviews, normalized rows, duplicate lookups
and mapping feedback. Two implementations:

- ``InMemoryIngestionStore`` – local dev and tests
- ``SupabaseIngestionStore`` – tables ``import_batches``, ``csv_upload_logs``,
  ``pending_reviews``, ``orders``, ``trades``, ``mapping_feedback``

Unlike the format registry, Supabase errors here propagate: the service
counts a failed row insert as a row error, and a failed batch write must
fail the request.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, fields
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ingestion.models import (
    BatchStatus,
    CsvUploadLog,
    ImportBatch,
    ImportType,
    MappingFeedback,
    NormalizedOrder,
    NormalizedTrade,
    ParseMethod,
    PendingReview,
    ReviewStatus,
    UploadStatus,
)
from storage.supabase_client import (
    BATCHES_TABLE,
    FEEDBACK_TABLE,
    ORDERS_TABLE,
    REVIEWS_TABLE,
    TRADES_TABLE,
    UPLOAD_LOGS_TABLE,
    require_client,
)

logger = logging.getLogger(__name__)

_ENUM_FIELDS = {
    "status": {ImportBatch: BatchStatus, PendingReview: ReviewStatus},
    "import_type": {ImportBatch: ImportType},
    "upload_status": {CsvUploadLog: UploadStatus},
    "parse_method": {CsvUploadLog: ParseMethod},
}
_DATETIME_FIELDS = {"created_at", "updated_at", "completed_at", "resolved_at"}


def to_row(record: Any) -> dict[str, Any]:
    """Dataclass → JSON-safe dict (enums by value, datetimes ISO)."""
    row = asdict(record)
    for key, value in row.items():
        if isinstance(value, Enum):
            row[key] = value.value
        elif isinstance(value, datetime):
            row[key] = value.isoformat()
    return row


def from_row(cls: type, row: dict[str, Any]) -> Any:
    """Inverse of ``to_row`` for batches, upload logs and reviews."""
    names = {f.name for f in fields(cls)}
    data = {k: v for k, v in row.items() if k in names}
    for key, by_cls in _ENUM_FIELDS.items():
        if key in data and cls in by_cls and data[key] is not None:
            data[key] = by_cls[cls](data[key])
    for key in _DATETIME_FIELDS & data.keys():
        if isinstance(data[key], str):
            data[key] = datetime.fromisoformat(data[key].replace("Z", "+00:00"))
    return cls(**data)


def _same_instant(a: datetime, b: datetime) -> bool:
    return a.replace(tzinfo=None) == b.replace(tzinfo=None)


class IngestionStore(ABC):
    """Persistence operations the ingestion service depends on."""

    # ── Import batches ────────────────────────────────────────────────────
    @abstractmethod
    def create_batch(self, batch: ImportBatch) -> ImportBatch: ...

    @abstractmethod
    def update_batch(self, batch: ImportBatch) -> None: ...

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[ImportBatch]: ...

    # ── Upload logs ───────────────────────────────────────────────────────
    @abstractmethod
    def create_upload_log(self, log: CsvUploadLog) -> CsvUploadLog: ...

    @abstractmethod
    def update_upload_log(self, log: CsvUploadLog) -> None: ...

    @abstractmethod
    def get_upload_log_for_batch(self, batch_id: str) -> Optional[CsvUploadLog]: ...

    # ── Pending reviews ───────────────────────────────────────────────────
    @abstractmethod
    def create_review(self, review: PendingReview) -> PendingReview: ...

    @abstractmethod
    def update_review(self, review: PendingReview) -> None: ...

    @abstractmethod
    def get_review_for_batch(self, batch_id: str) -> Optional[PendingReview]: ...

    # ── Normalized rows ───────────────────────────────────────────────────
    @abstractmethod
    def insert_order(self, order: NormalizedOrder) -> str: ...

    @abstractmethod
    def insert_trade(self, trade: NormalizedTrade) -> str: ...

    @abstractmethod
    def order_exists(
        self, user_id: str, symbol: str, quantity: float,
        executed_time: datetime, broker_type: str,
    ) -> bool: ...

    @abstractmethod
    def trade_exists(
        self, user_id: str, symbol: str, quantity: float,
        executed_time: datetime, broker_type: str,
    ) -> bool: ...

    # ── Feedback ──────────────────────────────────────────────────────────
    @abstractmethod
    def record_feedback(self, items: list[MappingFeedback]) -> None: ...


class InMemoryIngestionStore(IngestionStore):
    def __init__(self) -> None:
        self.batches: dict[str, ImportBatch] = {}
        self.upload_logs: dict[str, CsvUploadLog] = {}
        self.reviews: dict[str, PendingReview] = {}
        self.orders: list[NormalizedOrder] = []
        self.trades: list[NormalizedTrade] = []
        self.feedback: list[MappingFeedback] = []

    def create_batch(self, batch: ImportBatch) -> ImportBatch:
        self.batches[batch.id] = batch
        return batch

    def update_batch(self, batch: ImportBatch) -> None:
        self.batches[batch.id] = batch

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        return self.batches.get(batch_id)

    def create_upload_log(self, log: CsvUploadLog) -> CsvUploadLog:
        self.upload_logs[log.id] = log
        return log

    def update_upload_log(self, log: CsvUploadLog) -> None:
        self.upload_logs[log.id] = log

    def get_upload_log_for_batch(self, batch_id: str) -> Optional[CsvUploadLog]:
        for log in self.upload_logs.values():
            if log.import_batch_id == batch_id:
                return log
        return None

    def create_review(self, review: PendingReview) -> PendingReview:
        self.reviews[review.id] = review
        return review

    def update_review(self, review: PendingReview) -> None:
        self.reviews[review.id] = review

    def get_review_for_batch(self, batch_id: str) -> Optional[PendingReview]:
        for review in self.reviews.values():
            if review.import_batch_id == batch_id:
                return review
        return None

    def insert_order(self, order: NormalizedOrder) -> str:
        self.orders.append(order)
        return str(uuid.uuid4())

    def insert_trade(self, trade: NormalizedTrade) -> str:
        self.trades.append(trade)
        return str(uuid.uuid4())

    def order_exists(self, user_id, symbol, quantity, executed_time, broker_type) -> bool:
        return any(
            o.user_id == user_id
            and o.symbol == symbol
            and o.order_quantity == quantity
            and _same_instant(o.order_executed_time, executed_time)
            and o.broker_type == broker_type
            for o in self.orders
        )

    def trade_exists(self, user_id, symbol, quantity, executed_time, broker_type) -> bool:
        return any(
            t.user_id == user_id
            and t.symbol == symbol
            and t.quantity == quantity
            and _same_instant(t.executed_time, executed_time)
            and t.broker_type == broker_type
            for t in self.trades
        )

    def record_feedback(self, items: list[MappingFeedback]) -> None:
        self.feedback.extend(items)


class SupabaseIngestionStore(IngestionStore):
    def __init__(self, client: Any = None) -> None:
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = require_client()
        return self._client

    def _select_one(self, table: str, column: str, value: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table(table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = resp.data or []
        return rows[0] if rows else None

    # ── Import batches ────────────────────────────────────────────────────

    def create_batch(self, batch: ImportBatch) -> ImportBatch:
        self.client.table(BATCHES_TABLE).insert(to_row(batch)).execute()
        logger.info("[Store] Created import batch %s", batch.id)
        return batch

    def update_batch(self, batch: ImportBatch) -> None:
        batch.updated_at = datetime.now(batch.created_at.tzinfo)
        self.client.table(BATCHES_TABLE).update(to_row(batch)).eq("id", batch.id).execute()

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        row = self._select_one(BATCHES_TABLE, "id", batch_id)
        return from_row(ImportBatch, row) if row else None

    # ── Upload logs ───────────────────────────────────────────────────────

    def create_upload_log(self, log: CsvUploadLog) -> CsvUploadLog:
        self.client.table(UPLOAD_LOGS_TABLE).insert(to_row(log)).execute()
        return log

    def update_upload_log(self, log: CsvUploadLog) -> None:
        self.client.table(UPLOAD_LOGS_TABLE).update(to_row(log)).eq("id", log.id).execute()

    def get_upload_log_for_batch(self, batch_id: str) -> Optional[CsvUploadLog]:
        row = self._select_one(UPLOAD_LOGS_TABLE, "import_batch_id", batch_id)
        return from_row(CsvUploadLog, row) if row else None

    # ── Pending reviews ───────────────────────────────────────────────────

    def create_review(self, review: PendingReview) -> PendingReview:
        self.client.table(REVIEWS_TABLE).insert(to_row(review)).execute()
        logger.info("[Store] Review %s opened for batch %s", review.id, review.import_batch_id)
        return review

    def update_review(self, review: PendingReview) -> None:
        self.client.table(REVIEWS_TABLE).update(to_row(review)).eq("id", review.id).execute()

    def get_review_for_batch(self, batch_id: str) -> Optional[PendingReview]:
        row = self._select_one(REVIEWS_TABLE, "import_batch_id", batch_id)
        return from_row(PendingReview, row) if row else None

    # ── Normalized rows ───────────────────────────────────────────────────

    def insert_order(self, order: NormalizedOrder) -> str:
        row = to_row(order)
        row["id"] = str(uuid.uuid4())
        self.client.table(ORDERS_TABLE).insert(row).execute()
        return row["id"]

    def insert_trade(self, trade: NormalizedTrade) -> str:
        row = to_row(trade)
        row["id"] = str(uuid.uuid4())
        self.client.table(TRADES_TABLE).insert(row).execute()
        return row["id"]

    def order_exists(self, user_id, symbol, quantity, executed_time, broker_type) -> bool:
        resp = (
            self.client.table(ORDERS_TABLE)
            .select("id")
            .eq("user_id", user_id)
            .eq("symbol", symbol)
            .eq("order_quantity", quantity)
            .eq("order_executed_time", executed_time.isoformat())
            .eq("broker_type", broker_type)
            .limit(1)
            .execute()
        )
        return bool(resp.data)

    def trade_exists(self, user_id, symbol, quantity, executed_time, broker_type) -> bool:
        resp = (
            self.client.table(TRADES_TABLE)
            .select("id")
            .eq("user_id", user_id)
            .eq("symbol", symbol)
            .eq("quantity", quantity)
            .eq("executed_time", executed_time.isoformat())
            .eq("broker_type", broker_type)
            .limit(1)
            .execute()
        )
        return bool(resp.data)

    # ── Feedback ──────────────────────────────────────────────────────────

    def record_feedback(self, items: list[MappingFeedback]) -> None:
        if not items:
            return
        try:
            self.client.table(FEEDBACK_TABLE).insert([to_row(i) for i in items]).execute()
            logger.info("[Store] Stored %d mapping feedback items", len(items))
        except Exception:
            # Feedback only improves future detection; never fail an import on it
            logger.warning("[Store] Mapping feedback insert failed", exc_info=True)
