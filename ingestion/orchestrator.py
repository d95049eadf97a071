"""IngestionService: main entry point for trade CSV imports.

Pipeline per upload:
  1. Raw parser: text -> headers + rows (multi-section exports split by section)
  2. Mapping resolver: special parser / standard layout / registry / learned
     layout / AI proposal / user mappings
  3. Registry and user paths: rows run through the transformer pipeline,
     the duplicate guard and the store; the batch completes or fails
  4. AI paths: one adapter call, then the batch parks at PENDING with the
     raw content stored until a human approves (``finalize_mappings``) or,
     without a broker hint, picks a broker (``process_with_broker``)

Only ``ValidationError`` escapes ``ingest``; every other failure ends up
in the returned ``IngestionResult`` or on the batch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional, Union

from ingestion.ai_mapper import MappingAdapter, get_mapping_adapter
from ingestion.batch_tracker import BatchTracker
from ingestion.duplicate_guard import DuplicateGuard
from ingestion.errors import (
    AdapterFailure,
    BatchNotFound,
    BatchStateError,
    NonTradeRow,
    RowError,
    ValidationError,
)
from ingestion.fields import ALL_FIELDS
from ingestion.format_detector import FormatDetector
from ingestion.format_registry import (
    GENERIC_BROKER_TYPE,
    FormatRepository,
    InMemoryFormatRepository,
    SupabaseFormatRepository,
    create_format_from_mapping,
    find_broker_type,
)
from ingestion.mapping_resolver import MappingResolver, Resolution, Strategy
from ingestion.models import (
    BatchStatus,
    ColumnMapping,
    CsvUploadLog,
    ImportBatch,
    IngestionResult,
    MappingProposal,
    NormalizedOrder,
    NormalizedTrade,
    ParseMethod,
    UploadStatus,
    ValidationResult,
)
from ingestion.pipeline import TransformerPipeline
from ingestion.raw_parser import ParsedCsv, parse_csv
from ingestion.review_queue import flag_for_review, refresh_review, resolve_review, summarize
from ingestion.schwab_activity import section_defaults
from ingestion.settings import ALWAYS_REVIEW_AI_MAPPINGS, IngestionSettings, size_tier
from ingestion.standard_schema import is_standard_format, to_trade
from storage.ingestion_store import (
    IngestionStore,
    InMemoryIngestionStore,
    SupabaseIngestionStore,
)

logger = logging.getLogger(__name__)

REPORT_ERROR_REASON = "User reported error with AI-generated mappings"
CANCEL_REASON = "User cancelled import during mapping review"
DEFAULT_LEARNED_BROKER = "Custom Broker"


def _default_store() -> IngestionStore:
    from storage.supabase_client import is_configured
    return SupabaseIngestionStore() if is_configured() else InMemoryIngestionStore()


def _default_repository() -> FormatRepository:
    from storage.supabase_client import is_configured
    return SupabaseFormatRepository() if is_configured() else InMemoryFormatRepository()


def _proposal_snapshot(proposal: MappingProposal) -> list[dict[str, Any]]:
    return [
        {"source_column": header, "target_column": m["field"], "confidence": m["confidence"]}
        for header, m in proposal.mappings.items()
    ]


class IngestionService:
    def __init__(
        self,
        store: Optional[IngestionStore] = None,
        repository: Optional[FormatRepository] = None,
        adapter: Optional[MappingAdapter] = None,
        settings: Optional[IngestionSettings] = None,
    ) -> None:
        self.settings = settings or IngestionSettings.from_env()
        self.store = store or _default_store()
        self.repository = repository or _default_repository()
        self.adapter = adapter or get_mapping_adapter(self.settings)
        self.detector = FormatDetector(self.repository)
        self.resolver = MappingResolver(self.detector)

    # ─── Preview ─────────────────────────────────────────────────────────────

    def validate(self, file_content: str, file_name: str = "upload.csv") -> ValidationResult:
        """Parse and detect only; nothing is persisted."""
        try:
            parsed = parse_csv(file_content, file_name, max_bytes=self.settings.max_file_bytes)
        except ValidationError as e:
            file_size = len((file_content or "").encode("utf-8"))
            return ValidationResult(
                is_valid=False,
                headers=[],
                sample_rows=[],
                row_count=0,
                file_size=file_size,
                size_tier=size_tier(file_size, self.settings.max_file_bytes),
                errors=list(e.defects),
            )

        result = ValidationResult(
            is_valid=True,
            headers=parsed.headers,
            sample_rows=parsed.sample_rows,
            row_count=parsed.row_count,
            file_size=parsed.file_size,
            size_tier=parsed.size_tier,
        )

        if not parsed.is_sectioned and is_standard_format(parsed.headers):
            result.is_standard_schema = True
            result.format_confidence = 1.0
            result.reasoning = ["Headers match the standard trade layout"]
            return result

        detection = self.detector.detect(parsed.headers, parsed.sample_rows, file_content)
        result.reasoning = detection.reasoning
        if detection.format is not None:
            result.detected_format = detection.format.id
            result.detected_format_name = detection.format.name
            result.format_confidence = detection.confidence
        return result

    # ─── Import ──────────────────────────────────────────────────────────────

    async def ingest(
        self,
        file_content: str,
        file_name: str,
        user_id: str,
        account_tags: Iterable[str] = (),
        user_mappings: Optional[list[ColumnMapping]] = None,
        broker_name_hint: Optional[str] = None,
    ) -> IngestionResult:
        """Import one CSV upload.

        Raises:
            ValidationError: the file cannot be ingested at all. No batch
                is created.
        """
        parsed = parse_csv(file_content, file_name, max_bytes=self.settings.max_file_bytes)
        resolution = self.resolver.resolve(parsed, file_content, user_mappings, broker_name_hint)

        if user_mappings:
            unknown = sorted({m.target_column for m in user_mappings} - ALL_FIELDS)
            if unknown:
                raise ValidationError(
                    f"Invalid column mapping: unknown target field(s) {', '.join(unknown)}"
                )

        pipeline: Optional[TransformerPipeline] = None
        if resolution.mappings:
            try:
                pipeline = TransformerPipeline(resolution.mappings)
            except ValueError as e:
                raise ValidationError(f"Invalid column mapping: {e}") from None

        batch = ImportBatch(
            user_id=user_id,
            filename=file_name,
            file_size=parsed.file_size,
            broker_type=self._broker_type(resolution, broker_name_hint),
            import_type=resolution.import_type,
            total_records=parsed.row_count,
            mapping_confidence=resolution.confidence,
            column_mappings=[m.to_dict() for m in resolution.mappings],
            broker_format_id=resolution.format.id if resolution.format else None,
            account_tags=list(account_tags),
        )
        self.store.create_batch(batch)

        upload_log = CsvUploadLog(
            user_id=user_id,
            filename=file_name,
            original_headers=parsed.headers,
            row_count=parsed.row_count,
            parse_method=self._parse_method(resolution),
            import_batch_id=batch.id,
        )
        self.store.create_upload_log(upload_log)

        tracker = BatchTracker(self.store, batch, upload_log)
        tracker.log_status(UploadStatus.PARSING)

        logger.info(
            "[Ingest] %s: %d rows, strategy=%s, user=%s",
            file_name, parsed.row_count, resolution.strategy.value, user_id,
        )

        if resolution.strategy.uses_ai:
            return await self._propose_and_park(
                tracker, parsed, file_content, resolution, broker_name_hint,
            )

        tracker.log_status(UploadStatus.MAPPED)
        return self._run_import(tracker, parsed, pipeline, resolution.format.id if resolution.format else None)

    async def process_with_broker(
        self, batch_id: str, user_id: str, broker_name: str,
    ) -> IngestionResult:
        """Re-run the AI proposal for a parked batch now that the broker is known."""
        batch = self._load_batch(batch_id, user_id)
        if batch.status != BatchStatus.PENDING or not batch.temp_file_content:
            raise BatchStateError(f"Batch {batch_id} is not awaiting broker selection")

        parsed = parse_csv(batch.temp_file_content, batch.filename, max_bytes=self.settings.max_file_bytes)
        tracker = BatchTracker(self.store, batch, self.store.get_upload_log_for_batch(batch_id))

        batch.broker_type = find_broker_type(broker_name)
        try:
            proposal = await self._propose(parsed, broker_name)
        except AdapterFailure as e:
            return self._adapter_failed(tracker, e)

        review = self.store.get_review_for_batch(batch_id)
        if review is None:
            flag_for_review(
                self.store, batch, tracker.upload_log, proposal,
                parsed.headers, parsed.sample_rows, broker_name,
            )
        else:
            refresh_review(self.store, review, proposal, broker_name)

        batch.requires_broker_selection = False
        self._apply_proposal(tracker, proposal)
        logger.info("[Ingest] Batch %s re-mapped for broker '%s'", batch_id, broker_name)
        return self._parked_result(batch, proposal)

    def finalize_mappings(
        self,
        batch_id: str,
        user_id: str,
        *,
        approved: bool,
        corrections: Optional[dict[str, str]] = None,
        report_error: bool = False,
    ) -> IngestionResult:
        """Approve, correct, reject or cancel the mapping a batch is waiting on."""
        batch = self._load_batch(batch_id, user_id)
        if batch.status != BatchStatus.PENDING:
            raise BatchStateError(f"Batch {batch_id} is {batch.status.value}, not awaiting review")
        review = self.store.get_review_for_batch(batch_id)
        if review is None:
            raise BatchStateError(f"Batch {batch_id} has no mapping awaiting review")

        tracker = BatchTracker(self.store, batch, self.store.get_upload_log_for_batch(batch_id))

        if not approved:
            resolve_review(review, approved=False)
            self.store.update_review(review)
            reason = REPORT_ERROR_REASON if report_error else CANCEL_REASON
            batch.temp_file_content = None
            tracker.fail(reason)
            logger.info("[Ingest] Batch %s rejected: %s", batch_id, reason)
            return self._result(batch, errors=[reason])

        if batch.requires_broker_selection:
            raise BatchStateError(f"Batch {batch_id} needs a broker selected before approval")
        if not batch.temp_file_content:
            raise BatchStateError(f"Batch {batch_id} has no stored file content")

        mappings, feedback = resolve_review(review, approved=True, corrections=corrections)
        self.store.update_review(review)
        self.store.record_feedback(feedback)

        pipeline = TransformerPipeline(mappings)
        parsed = parse_csv(batch.temp_file_content, batch.filename, max_bytes=self.settings.max_file_bytes)
        broker_name = review.broker_name or DEFAULT_LEARNED_BROKER
        learned = create_format_from_mapping(
            mappings,
            broker_name,
            parsed.headers,
            parsed.sample_rows,
            existing=self.repository.list(),
            source="user" if corrections else "ai",
            confidence=1.0 if corrections else review.overall_confidence,
        )
        self.repository.add(learned)
        logger.info("[Ingest] Registered learned format '%s' (%s)", learned.id, learned.name)

        batch.broker_format_id = learned.id
        batch.broker_type = find_broker_type(broker_name)
        batch.column_mappings = [m.to_dict() for m in mappings]
        batch.user_review_required = False
        batch.temp_file_content = None
        if tracker.upload_log is not None and corrections:
            tracker.upload_log.parse_method = ParseMethod.USER_CORRECTED

        return self._run_import(tracker, parsed, pipeline, learned.id)

    def get_import_status(self, batch_id: str, user_id: str) -> dict[str, Any]:
        batch = self._load_batch(batch_id, user_id)
        status: dict[str, Any] = {
            "import_batch_id": batch.id,
            "status": batch.status.value,
            "filename": batch.filename,
            "import_type": batch.import_type.value,
            "broker_type": batch.broker_type,
            "total_records": batch.total_records,
            "success_count": batch.success_count,
            "error_count": batch.error_count,
            "errors": batch.errors,
            "ai_mapping_used": batch.ai_mapping_used,
            "mapping_confidence": batch.mapping_confidence,
            "requires_user_review": batch.user_review_required,
            "requires_broker_selection": batch.requires_broker_selection,
            "broker_format_id": batch.broker_format_id,
            "created_at": batch.created_at.isoformat(),
            "completed_at": batch.completed_at.isoformat() if batch.completed_at else None,
        }
        review = self.store.get_review_for_batch(batch_id)
        if review is not None:
            status["review"] = summarize(review)
        return status

    # ─── AI proposal ─────────────────────────────────────────────────────────

    async def _propose(self, parsed: ParsedCsv, broker_name_hint: Optional[str]) -> MappingProposal:
        """One adapter call, bounded by the configured timeout."""
        timeout = self.settings.ai_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.adapter.propose_mapping,
                    parsed.headers,
                    parsed.sample_rows,
                    broker_name_hint,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise AdapterFailure(f"AI mapping timed out after {timeout:.0f}s") from None
        except AdapterFailure:
            raise
        except Exception as e:
            logger.warning("[Ingest] Mapping adapter raised unexpectedly", exc_info=True)
            raise AdapterFailure(f"AI mapping service failed: {e}") from e

    async def _propose_and_park(
        self,
        tracker: BatchTracker,
        parsed: ParsedCsv,
        file_content: str,
        resolution: Resolution,
        broker_name_hint: Optional[str],
    ) -> IngestionResult:
        batch = tracker.batch
        batch.temp_file_content = file_content
        batch.ai_mapping_used = True
        batch.requires_broker_selection = resolution.requires_broker_selection

        try:
            proposal = await self._propose(parsed, broker_name_hint)
        except AdapterFailure as e:
            return self._adapter_failed(tracker, e)

        flag_for_review(
            self.store, batch, tracker.upload_log, proposal,
            parsed.headers, parsed.sample_rows, broker_name_hint,
        )
        self._apply_proposal(tracker, proposal)
        logger.info(
            "[Ingest] Batch %s parked for review (confidence %.2f, broker selection %s)",
            batch.id, proposal.overall_confidence, batch.requires_broker_selection,
        )
        return self._parked_result(batch, proposal)

    def _apply_proposal(self, tracker: BatchTracker, proposal: MappingProposal) -> None:
        batch = tracker.batch
        batch.ai_mapping_used = True
        batch.user_review_required = ALWAYS_REVIEW_AI_MAPPINGS
        batch.mapping_confidence = proposal.overall_confidence
        batch.column_mappings = _proposal_snapshot(proposal)
        tracker.log_status(UploadStatus.MAPPED)
        tracker.park()

    def _adapter_failed(self, tracker: BatchTracker, error: AdapterFailure) -> IngestionResult:
        batch = tracker.batch
        message = str(error)
        batch.errors = list(batch.errors) + [message]
        tracker.park()
        logger.warning("[Ingest] Batch %s kept PENDING after adapter failure: %s", batch.id, message)
        return self._result(batch, errors=[message])

    def _parked_result(self, batch: ImportBatch, proposal: MappingProposal) -> IngestionResult:
        return IngestionResult(
            success=True,
            import_batch_id=batch.id,
            import_type=batch.import_type,
            total_records=batch.total_records,
            requires_user_review=batch.user_review_required,
            requires_broker_selection=batch.requires_broker_selection,
            mapping_result=proposal.to_dict(),
        )

    # ─── Row import ──────────────────────────────────────────────────────────

    def _run_import(
        self,
        tracker: BatchTracker,
        parsed: ParsedCsv,
        pipeline: Optional[TransformerPipeline],
        format_id: Optional[str],
    ) -> IngestionResult:
        batch = tracker.batch
        tracker.start_processing()

        guard = DuplicateGuard(self.store)
        success_count = 0
        skipped_non_trade = 0
        errors: list[str] = []

        for index, bucket, row in self._iter_rows(parsed):
            try:
                record = self._normalize(pipeline, batch, index, bucket, row)
            except NonTradeRow:
                skipped_non_trade += 1
                continue
            except RowError as e:
                errors.append(str(e))
                continue

            try:
                if guard.is_duplicate(record):
                    continue
            except Exception as e:
                logger.warning("[Ingest] Duplicate lookup failed for row %d", index + 1, exc_info=True)
                errors.append(str(RowError(index, f"duplicate check failed: {e}")))
                continue

            try:
                if isinstance(record, NormalizedTrade):
                    self.store.insert_trade(record)
                else:
                    self.store.insert_order(record)
            except Exception as e:
                logger.warning("[Ingest] Insert failed for row %d", index + 1, exc_info=True)
                errors.append(str(RowError(index, f"insert failed: {e}")))
                continue
            success_count += 1

        if pipeline is not None and pipeline.conflicts:
            logger.info("[Ingest] %d mapping conflicts resolved by priority", len(pipeline.conflicts))

        status = tracker.finish(parsed.row_count, success_count, errors)
        logger.info(
            "[Ingest] Batch %s %s: %d imported, %d errors, %d duplicates, %d non-trade rows",
            batch.id, status.value, success_count, len(errors), guard.skipped, skipped_non_trade,
        )

        if format_id:
            try:
                self.repository.record_usage(format_id, status == BatchStatus.COMPLETED)
            except Exception:
                logger.warning("[Ingest] Usage update failed for format %s", format_id, exc_info=True)

        return self._result(batch, errors=errors, format_id=format_id)

    @staticmethod
    def _iter_rows(parsed: ParsedCsv):
        if parsed.sections is not None:
            for index, (bucket, row) in enumerate(parsed.sections.rows()):
                yield index, bucket, row
        else:
            for index, row in enumerate(parsed.rows):
                yield index, None, row

    def _normalize(
        self,
        pipeline: Optional[TransformerPipeline],
        batch: ImportBatch,
        index: int,
        bucket: Optional[str],
        row: dict[str, str],
    ) -> Union[NormalizedOrder, NormalizedTrade]:
        if pipeline is None:
            return to_trade(
                row, index,
                user_id=batch.user_id,
                batch_id=batch.id,
                account_tags=batch.account_tags,
            )
        return pipeline.to_order(
            row, index,
            user_id=batch.user_id,
            broker_type=batch.broker_type,
            batch_id=batch.id,
            account_tags=batch.account_tags,
            defaults=section_defaults(bucket) if bucket else None,
        )

    # ─── Helpers ─────────────────────────────────────────────────────────────

    def _load_batch(self, batch_id: str, user_id: str) -> ImportBatch:
        batch = self.store.get_batch(batch_id)
        if batch is None or batch.user_id != user_id:
            raise BatchNotFound(f"Import batch {batch_id} not found")
        return batch

    @staticmethod
    def _broker_type(resolution: Resolution, broker_name_hint: Optional[str]) -> str:
        if resolution.format is not None:
            return resolution.format.broker_type
        if broker_name_hint:
            return find_broker_type(broker_name_hint)
        return GENERIC_BROKER_TYPE

    @staticmethod
    def _parse_method(resolution: Resolution) -> ParseMethod:
        if resolution.strategy.uses_ai:
            return ParseMethod.AI_MAPPED
        if resolution.strategy == Strategy.USER_MAPPINGS:
            return ParseMethod.USER_CORRECTED
        return ParseMethod.STANDARD

    @staticmethod
    def _result(
        batch: ImportBatch,
        errors: Optional[list[str]] = None,
        format_id: Optional[str] = None,
    ) -> IngestionResult:
        return IngestionResult(
            success=batch.status == BatchStatus.COMPLETED,
            import_batch_id=batch.id,
            import_type=batch.import_type,
            total_records=batch.total_records,
            success_count=batch.success_count,
            error_count=batch.error_count,
            errors=list(errors if errors is not None else batch.errors),
            requires_user_review=batch.user_review_required,
            requires_broker_selection=batch.requires_broker_selection,
            broker_format_used=format_id,
        )
