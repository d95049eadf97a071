"""Batch and upload-log state machines.

Import batch:
    PENDING ──▶ PROCESSING ──▶ COMPLETED | FAILED
    PENDING ──▶ FAILED           (rejected or cancelled review)

Upload log (audit only, forward-only):
    UPLOADED ──▶ PARSING ──▶ MAPPED ──▶ IMPORTED
    any non-terminal state ──▶ FAILED

Every change goes through the tracker so illegal moves raise
``InvalidTransition`` instead of silently corrupting the audit trail.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from ingestion.errors import InvalidTransition
from ingestion.models import BatchStatus, CsvUploadLog, ImportBatch, UploadStatus
from storage.ingestion_store import IngestionStore

logger = logging.getLogger(__name__)

_BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {BatchStatus.PROCESSING, BatchStatus.FAILED},
    BatchStatus.PROCESSING: {BatchStatus.COMPLETED, BatchStatus.FAILED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.FAILED: set(),
}

_UPLOAD_ORDER = [
    UploadStatus.UPLOADED,
    UploadStatus.PARSING,
    UploadStatus.MAPPED,
    UploadStatus.IMPORTED,
]
_UPLOAD_TERMINAL = {UploadStatus.IMPORTED, UploadStatus.FAILED}


def can_transition_batch(current: BatchStatus, target: BatchStatus) -> bool:
    return target in _BATCH_TRANSITIONS[current]


def can_transition_upload(current: UploadStatus, target: UploadStatus) -> bool:
    if current in _UPLOAD_TERMINAL:
        return False
    if target == UploadStatus.FAILED:
        return True
    return _UPLOAD_ORDER.index(target) > _UPLOAD_ORDER.index(current)


def final_status(total: int, error_count: int) -> BatchStatus:
    """COMPLETED while at least one row did not fail; an empty run is FAILED."""
    if total > 0 and error_count < total:
        return BatchStatus.COMPLETED
    return BatchStatus.FAILED


class BatchTracker:
    """Moves one batch (and its upload log) through the lifecycle, persisting each step."""

    def __init__(
        self,
        store: IngestionStore,
        batch: ImportBatch,
        upload_log: Optional[CsvUploadLog] = None,
    ) -> None:
        self.store = store
        self.batch = batch
        self.upload_log = upload_log

    # ── Batch ─────────────────────────────────────────────────────────────

    def _move(self, target: BatchStatus) -> None:
        current = self.batch.status
        if not can_transition_batch(current, target):
            raise InvalidTransition(
                f"Batch {self.batch.id}: {current.value} -> {target.value} is not allowed"
            )
        self.batch.status = target
        self.batch.updated_at = datetime.now(timezone.utc)
        if target in (BatchStatus.COMPLETED, BatchStatus.FAILED):
            self.batch.completed_at = self.batch.updated_at
        logger.info("[BatchTracker] %s: %s -> %s", self.batch.id, current.value, target.value)

    def start_processing(self) -> None:
        self._move(BatchStatus.PROCESSING)
        self.store.update_batch(self.batch)

    def finish(self, total: int, success_count: int, errors: list[str]) -> BatchStatus:
        """Record final counts and close the batch."""
        self.batch.total_records = total
        self.batch.success_count = success_count
        self.batch.error_count = len(errors)
        self.batch.errors = list(errors)
        status = final_status(total, len(errors))
        self._move(status)
        self.store.update_batch(self.batch)

        if status == BatchStatus.COMPLETED:
            self.log_status(UploadStatus.IMPORTED)
        else:
            self.log_status(UploadStatus.FAILED, errors[0] if errors else "No rows imported")
        return status

    def fail(self, reason: str) -> None:
        """Terminate the batch as FAILED (from PENDING or PROCESSING)."""
        self._move(BatchStatus.FAILED)
        self.batch.errors = list(self.batch.errors) + [reason]
        self.store.update_batch(self.batch)
        self.log_status(UploadStatus.FAILED, reason)

    def park(self) -> None:
        """Persist a PENDING batch awaiting a human (review or broker choice)."""
        if self.batch.status != BatchStatus.PENDING:
            raise InvalidTransition(
                f"Batch {self.batch.id} is {self.batch.status.value}; only PENDING batches can wait"
            )
        self.batch.updated_at = datetime.now(timezone.utc)
        self.store.update_batch(self.batch)

    # ── Upload log ────────────────────────────────────────────────────────

    def log_status(self, target: UploadStatus, error_message: Optional[str] = None) -> None:
        log = self.upload_log
        if log is None:
            return
        if log.upload_status == target:
            return
        if not can_transition_upload(log.upload_status, target):
            raise InvalidTransition(
                f"Upload log {log.id}: {log.upload_status.value} -> {target.value} is not allowed"
            )
        log.upload_status = target
        if error_message:
            log.error_message = error_message
        self.store.update_upload_log(log)
