"""Review gate for AI-proposed column mappings.

An AI proposal is never applied straight to persistence. It is parked as
a ``PendingReview`` with a plain-language question; once the user approves
or corrects it, the resolution becomes the final column mappings plus
feedback items describing where the proposal was wrong.

Supabase table: ``pending_reviews`` / ``mapping_feedback`` (via the store)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ingestion.fields import BROKER_METADATA, CRITICAL_FIELDS, ORDER_FIELDS
from ingestion.models import (
    ColumnMapping,
    CsvUploadLog,
    FeedbackIssue,
    ImportBatch,
    MappingFeedback,
    MappingProposal,
    PendingReview,
    ReviewStatus,
)
from storage.ingestion_store import IngestionStore

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_FEEDBACK = 0.5

_DATE_FIELDS = {
    "order_placed_time", "order_executed_time",
    "order_updated_time", "order_cancelled_time",
}
_NUMBER_FIELDS = {"order_quantity", "limit_price", "stop_price"}


def flag_for_review(
    store: IngestionStore,
    batch: ImportBatch,
    upload_log: Optional[CsvUploadLog],
    proposal: MappingProposal,
    headers: list[str],
    sample_rows: list[dict[str, str]],
    broker_name: Optional[str] = None,
) -> PendingReview:
    """Persist a pending review for an AI proposal and return it."""
    review = PendingReview(
        import_batch_id=batch.id,
        user_id=batch.user_id,
        headers=list(headers),
        sample_rows=list(sample_rows),
        proposed_mappings=proposal.mappings,
        overall_confidence=proposal.overall_confidence,
        question=_build_question(proposal, broker_name),
        broker_name=broker_name,
        upload_log_id=upload_log.id if upload_log else None,
    )
    store.create_review(review)
    logger.info(
        "[Review] Batch %s flagged for review (confidence %.2f)",
        batch.id, proposal.overall_confidence,
    )
    return review


def refresh_review(
    store: IngestionStore,
    review: PendingReview,
    proposal: MappingProposal,
    broker_name: Optional[str],
) -> PendingReview:
    """Replace the proposal on an open review (e.g. after a broker was picked)."""
    review.proposed_mappings = proposal.mappings
    review.overall_confidence = proposal.overall_confidence
    review.broker_name = broker_name
    review.question = _build_question(proposal, broker_name)
    review.status = ReviewStatus.PENDING
    store.update_review(review)
    return review


def resolve_review(
    review: PendingReview,
    approved: bool,
    corrections: Optional[dict[str, str]] = None,
) -> tuple[list[ColumnMapping], list[MappingFeedback]]:
    """Close a review and produce the mappings to apply.

    Parameters
    ----------
    review:
        The pending review being resolved. Its status is updated in place.
    approved:
        False rejects the proposal; no mappings are returned.
    corrections:
        ``{csv_header: field}`` overrides chosen by the user.
    """
    corrections = corrections or {}
    review.resolved_at = datetime.now(timezone.utc)

    if not approved:
        review.status = ReviewStatus.REJECTED
        return [], []

    mappings: list[ColumnMapping] = []
    feedback: list[MappingFeedback] = []

    for header in review.headers:
        proposed = review.proposed_mappings.get(header) or {}
        ai_field = proposed.get("field")
        ai_confidence = float(proposed.get("confidence") or 0.0)

        if header in corrections:
            final_field = corrections[header]
            confidence = 1.0
        else:
            final_field = ai_field or BROKER_METADATA
            confidence = ai_confidence

        issue = _feedback_issue(ai_field, ai_confidence, final_field, header in corrections)
        if issue:
            feedback.append(MappingFeedback(
                review_id=review.id,
                csv_header=header,
                ai_field=ai_field,
                ai_confidence=ai_confidence,
                corrected_field=final_field,
                issue_type=issue,
            ))

        mappings.append(ColumnMapping(
            source_column=header,
            target_column=final_field,
            confidence=confidence,
            data_type=_data_type(final_field),
        ))

    review.status = ReviewStatus.CORRECTED if corrections else ReviewStatus.APPROVED
    logger.info(
        "[Review] %s resolved as %s (%d feedback items)",
        review.id, review.status.value, len(feedback),
    )
    return mappings, feedback


def _feedback_issue(
    ai_field: Optional[str],
    ai_confidence: float,
    final_field: str,
    corrected: bool,
) -> Optional[FeedbackIssue]:
    if corrected and final_field != ai_field:
        if final_field == BROKER_METADATA:
            return FeedbackIssue.SHOULD_BE_METADATA
        return FeedbackIssue.WRONG_FIELD
    if ai_field and ai_field != BROKER_METADATA and ai_confidence < LOW_CONFIDENCE_FEEDBACK:
        return FeedbackIssue.LOW_CONFIDENCE
    return None


def _data_type(field: str) -> str:
    if field in _DATE_FIELDS:
        return "date"
    if field in _NUMBER_FIELDS:
        return "number"
    return "string"


# ---------------------------------------------------------------------------
# Human-readable description builders
# ---------------------------------------------------------------------------


def _describe_mapping(proposal: MappingProposal) -> list[str]:
    lines = []
    for header, entry in proposal.mappings.items():
        field = entry.get("field")
        if field == BROKER_METADATA:
            continue
        lines.append(f"'{header}' → {field} ({entry.get('confidence', 0):.0%})")
    return lines


def _build_question(proposal: MappingProposal, broker_name: Optional[str]) -> str:
    """Build a question for the user about the proposed mapping."""
    missing = [f for f in proposal.unmapped_fields if f in CRITICAL_FIELDS]
    source = f"this {broker_name} export" if broker_name else "this file"

    if not _describe_mapping(proposal):
        return f"We could not recognise any columns in {source}. Which column holds the symbol?"
    if "symbol" in missing or "side" in missing or "order_quantity" in missing:
        labels = ", ".join(ORDER_FIELDS[f].split(" (")[0].lower() for f in missing[:3])
        return f"We could not find a column for {labels} in {source}. Can you point us to it?"
    return f"Does this column mapping for {source} look correct?"


def summarize(review: PendingReview) -> dict[str, Any]:
    """Review payload for display."""
    return {
        "review_id": review.id,
        "question": review.question,
        "status": review.status.value,
        "overall_confidence": review.overall_confidence,
        "mappings": review.proposed_mappings,
    }
