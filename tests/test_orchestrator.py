"""End-to-end tests for IngestionService with in-memory storage.

No network: the mapping adapter is either the heuristic one or a fake.

Run from repo root:
    python -m pytest tests/test_orchestrator.py -v
"""

from __future__ import annotations

import time
from datetime import datetime

import pytest

from conftest import IBKR_CSV, SCHWAB_ACTIVITY_CSV, STANDARD_CSV, UNKNOWN_CSV, run
from ingestion.ai_mapper import HeuristicMappingAdapter, MappingAdapter
from ingestion.errors import BatchNotFound, BatchStateError, ValidationError
from ingestion.format_registry import InMemoryFormatRepository
from ingestion.models import (
    BatchStatus,
    ColumnMapping,
    ImportType,
    MappingProposal,
    ParseMethod,
    ReviewStatus,
    UploadStatus,
)
from ingestion.orchestrator import (
    CANCEL_REASON,
    REPORT_ERROR_REASON,
    IngestionService,
)
from ingestion.settings import IngestionSettings
from storage.ingestion_store import InMemoryIngestionStore

CUSTOM_CSV = (
    "Ticker Symbol,Direction,Units,When\n"
    "AAPL,Buy,10,2025-03-01 10:00:00\n"
    "MSFT,Sell,5,2025-03-02 11:30:00\n"
)

CORRECTIONS = {
    "Ticker Symbol": "symbol",
    "Units": "order_quantity",
    "When": "order_executed_time",
}


class FakeAdapter(MappingAdapter):
    """Proposes a perfect mapping for CUSTOM_CSV."""

    source = "fake"

    def __init__(self):
        self.calls = []

    def propose_mapping(self, headers, sample_rows, broker_name_hint=None):
        self.calls.append(broker_name_hint)
        fields = {
            "Ticker Symbol": "symbol",
            "Direction": "side",
            "Units": "order_quantity",
            "When": "order_executed_time",
        }
        return MappingProposal(
            mappings={h: {"field": fields.get(h, "broker_metadata"), "confidence": 1.0} for h in headers},
            overall_confidence=1.0,
        )


class FailingAdapter(MappingAdapter):
    def propose_mapping(self, headers, sample_rows, broker_name_hint=None):
        raise RuntimeError("model overloaded")


class SlowAdapter(MappingAdapter):
    def propose_mapping(self, headers, sample_rows, broker_name_hint=None):
        time.sleep(0.5)
        return HeuristicMappingAdapter().propose_mapping(headers, sample_rows)


def _service(adapter=None, **settings) -> IngestionService:
    return IngestionService(
        store=InMemoryIngestionStore(),
        repository=InMemoryFormatRepository(),
        adapter=adapter or HeuristicMappingAdapter(),
        settings=IngestionSettings(**settings),
    )


def _ingest(service, content, name="upload.csv", user="u1", **kw):
    return run(service.ingest(content, name, user, **kw))


# ---------------------------------------------------------------------------
# Registry path
# ---------------------------------------------------------------------------


class TestKnownBrokerExport:
    def test_ibkr_import(self):
        service = _service()
        result = _ingest(service, IBKR_CSV, "ibkr.csv", account_tags=["ira"])

        assert result.success
        assert result.import_type == ImportType.CUSTOM
        assert result.total_records == 3
        assert result.success_count == 3
        assert result.error_count == 0
        assert not result.requires_user_review
        assert result.broker_format_used == "interactive-brokers-flex"

        orders = service.store.orders
        assert [o.side for o in orders] == ["BUY", "SELL", "BUY"]
        assert orders[1].order_quantity == 100.0
        assert orders[0].order_executed_time == datetime(2025, 1, 15)
        assert orders[0].limit_price == 185.5
        assert orders[0].broker_type == "INTERACTIVE_BROKERS"
        assert orders[0].broker_metadata["commission"] == -1.0
        assert orders[0].tags == ["ira"]

    def test_batch_and_upload_log_recorded(self):
        service = _service()
        result = _ingest(service, IBKR_CSV, "ibkr.csv")
        batch = service.store.get_batch(result.import_batch_id)
        log = service.store.get_upload_log_for_batch(batch.id)

        assert batch.status == BatchStatus.COMPLETED
        assert batch.completed_at is not None
        assert batch.broker_format_id == "interactive-brokers-flex"
        assert not batch.ai_mapping_used
        assert batch.column_mappings[0]["source_column"] == "Date"
        assert log.upload_status == UploadStatus.IMPORTED
        assert log.parse_method == ParseMethod.STANDARD

    def test_usage_recorded_on_format(self):
        service = _service()
        _ingest(service, IBKR_CSV, "ibkr.csv")
        fmt = service.repository.get("interactive-brokers-flex")
        assert fmt.usage_count == 1
        assert fmt.success_rate == 1.0

    def test_second_import_is_all_duplicates(self):
        service = _service()
        _ingest(service, IBKR_CSV, "ibkr.csv")
        again = _ingest(service, IBKR_CSV, "ibkr.csv")

        assert again.total_records == 3
        assert again.success_count == 0
        assert again.error_count == 0
        assert len(service.store.orders) == 3

    def test_other_user_is_not_a_duplicate(self):
        service = _service()
        _ingest(service, IBKR_CSV, "ibkr.csv", user="u1")
        other = _ingest(service, IBKR_CSV, "ibkr.csv", user="u2")
        assert other.success_count == 3

    def test_bad_and_cash_rows(self):
        content = (
            "Date,Symbol,Buy/Sell,Quantity,T. Price\n"
            "2025-01-15,AAPL,BOT,100,185.50\n"
            "2025-01-15,AAPL,DIV,0,0\n"
            "2025-01-16,,SLD,100,190.00\n"
            "2025-01-16,AAPL,SLD,100,190.00\n"
        )
        service = _service()
        result = _ingest(service, content, "ibkr.csv")

        assert result.success
        assert result.total_records == 4
        assert result.success_count == 2
        assert result.error_count == 1
        assert result.errors == ["Row 3: Missing symbol"]

    def test_every_row_failing_fails_the_batch(self):
        content = (
            "Date,Symbol,Buy/Sell,Quantity\n"
            "2025-01-15,,BOT,100\n"
            "2025-01-16,,SLD,100\n"
        )
        service = _service()
        result = _ingest(service, content, "ibkr.csv")
        batch = service.store.get_batch(result.import_batch_id)

        assert not result.success
        assert result.error_count == 2
        assert batch.status == BatchStatus.FAILED
        assert service.store.get_upload_log_for_batch(batch.id).upload_status == UploadStatus.FAILED
        assert service.repository.get("interactive-brokers-flex").success_rate == 0.0

    def test_insert_failure_counts_as_row_error(self, monkeypatch):
        service = _service()
        calls = {"n": 0}
        original = service.store.insert_order

        def flaky(order):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("write timeout")
            return original(order)

        monkeypatch.setattr(service.store, "insert_order", flaky)
        result = _ingest(service, IBKR_CSV, "ibkr.csv")
        assert result.success_count == 2
        assert result.errors == ["Row 2: insert failed: write timeout"]

    def test_duplicate_lookup_failure_counts_as_row_error(self, monkeypatch):
        service = _service()
        original = service.store.order_exists

        def flaky(user_id, symbol, quantity, executed_time, broker_type):
            if symbol == "TSLA":
                raise ConnectionError("supabase timeout")
            return original(user_id, symbol, quantity, executed_time, broker_type)

        monkeypatch.setattr(service.store, "order_exists", flaky)
        result = _ingest(service, IBKR_CSV, "ibkr.csv")
        batch = service.store.get_batch(result.import_batch_id)

        assert result.success
        assert result.success_count == 2
        assert result.errors == ["Row 3: duplicate check failed: supabase timeout"]
        assert batch.status == BatchStatus.COMPLETED

    def test_trade_duplicate_lookup_failure_counts_as_row_error(self, monkeypatch):
        service = _service()
        original = service.store.trade_exists

        def flaky(user_id, symbol, quantity, executed_time, broker_type):
            if quantity == 20:
                raise ConnectionError("supabase timeout")
            return original(user_id, symbol, quantity, executed_time, broker_type)

        monkeypatch.setattr(service.store, "trade_exists", flaky)
        result = _ingest(service, STANDARD_CSV, "std.csv")

        assert result.success_count == 2
        assert result.errors == ["Row 1: duplicate check failed: supabase timeout"]
        assert [t.side for t in service.store.trades] == ["SHORT", "COVER"]

    def test_duplicate_lookup_outage_fails_batch(self, monkeypatch):
        service = _service()

        def down(*args, **kwargs):
            raise ConnectionError("supabase timeout")

        monkeypatch.setattr(service.store, "order_exists", down)
        result = _ingest(service, IBKR_CSV, "ibkr.csv")

        assert not result.success
        assert result.error_count == 3
        assert service.store.get_batch(result.import_batch_id).status == BatchStatus.FAILED
        assert service.store.orders == []


class TestStandardLayout:
    def test_trades_keep_short_and_cover(self):
        service = _service()
        result = _ingest(service, STANDARD_CSV, "std.csv")

        assert result.success
        assert result.import_type == ImportType.STANDARD
        assert result.success_count == 3
        assert service.store.orders == []
        trades = service.store.trades
        assert [t.side for t in trades] == ["BUY", "SHORT", "COVER"]
        assert trades[1].executed_time == datetime(2025, 2, 3, 14, 5, 12)
        assert trades[0].fees == 0.01


class TestMultiSectionExport:
    def test_schwab_activity(self):
        service = _service()
        result = _ingest(service, SCHWAB_ACTIVITY_CSV, "schwab.csv")
        batch = service.store.get_batch(result.import_batch_id)

        assert result.success
        assert result.import_type == ImportType.CUSTOM
        assert result.total_records == 4
        assert result.success_count == 4
        assert not batch.ai_mapping_used
        assert batch.broker_type == "CHARLES_SCHWAB"

        by_symbol = {}
        for order in service.store.orders:
            by_symbol.setdefault(order.symbol, []).append(order)

        working = by_symbol["AAPL"][0]
        assert working.order_status == "WORKING"
        assert working.order_executed_time == datetime(2024, 9, 25, 10, 15, 2)
        assert working.broker_metadata["section"] == "working"
        assert working.broker_metadata["Mark"] == 151.2
        assert working.limit_price == 150.0

        filled = by_symbol["OCTO"]
        assert [o.order_status for o in filled] == ["FILLED", "FILLED"]
        assert [o.side for o in filled] == ["BUY", "SELL"]
        assert filled[1].order_type == "MARKET"
        assert filled[0].broker_metadata["position_effect"] == "TO OPEN"

        canceled = by_symbol["TSLA"][0]
        assert canceled.order_status == "CANCELED"
        assert canceled.order_cancelled_time == datetime(2024, 9, 25, 9, 33, 45)
        assert canceled.order_quantity == 25.0


# ---------------------------------------------------------------------------
# AI path and review
# ---------------------------------------------------------------------------


class TestUnknownLayout:
    def test_parks_for_broker_selection(self):
        service = _service()
        result = _ingest(service, UNKNOWN_CSV, "mystery.csv")
        batch = service.store.get_batch(result.import_batch_id)

        assert result.success
        assert result.requires_user_review
        assert result.requires_broker_selection
        assert result.success_count == 0
        assert set(result.mapping_result) == {"mappings", "overall_confidence", "unmapped_fields"}
        assert batch.status == BatchStatus.PENDING
        assert batch.temp_file_content == UNKNOWN_CSV
        assert batch.total_records == 2
        assert batch.ai_mapping_used
        assert service.store.orders == []
        assert service.store.get_upload_log_for_batch(batch.id).parse_method == ParseMethod.AI_MAPPED

    def test_perfect_proposal_still_needs_review(self):
        adapter = FakeAdapter()
        service = _service(adapter)
        result = _ingest(service, CUSTOM_CSV, "custom.csv", broker_name_hint="Tradier")

        assert result.requires_user_review
        assert not result.requires_broker_selection
        assert result.mapping_result["overall_confidence"] == 1.0
        assert adapter.calls == ["Tradier"]
        assert service.store.orders == []
        review = service.store.get_review_for_batch(result.import_batch_id)
        assert review.status == ReviewStatus.PENDING
        assert review.broker_name == "Tradier"

    def test_adapter_failure_keeps_batch_pending(self):
        service = _service(FailingAdapter())
        result = _ingest(service, CUSTOM_CSV, "custom.csv", broker_name_hint="Tradier")
        batch = service.store.get_batch(result.import_batch_id)

        assert not result.success
        assert not result.requires_user_review
        assert "model overloaded" in result.errors[0]
        assert batch.status == BatchStatus.PENDING
        assert batch.temp_file_content == CUSTOM_CSV
        assert service.store.get_review_for_batch(batch.id) is None

    def test_adapter_timeout(self):
        service = _service(SlowAdapter(), ai_timeout_seconds=0.05)
        result = _ingest(service, CUSTOM_CSV, "custom.csv", broker_name_hint="Tradier")
        assert not result.success
        assert "timed out" in result.errors[0]
        assert service.store.get_batch(result.import_batch_id).status == BatchStatus.PENDING

    def test_retry_after_adapter_failure(self):
        service = _service(FailingAdapter())
        failed = _ingest(service, CUSTOM_CSV, "custom.csv")
        service.adapter = FakeAdapter()

        retried = run(service.process_with_broker(failed.import_batch_id, "u1", "Tradier"))
        assert retried.success
        assert retried.requires_user_review
        assert service.store.get_review_for_batch(failed.import_batch_id) is not None


class TestProcessWithBroker:
    def test_broker_selection_refreshes_review(self):
        adapter = FakeAdapter()
        service = _service(adapter)
        parked = _ingest(service, CUSTOM_CSV, "custom.csv")
        assert parked.requires_broker_selection

        result = run(service.process_with_broker(parked.import_batch_id, "u1", "Interactive Brokers"))
        batch = service.store.get_batch(parked.import_batch_id)
        review = service.store.get_review_for_batch(batch.id)

        assert result.requires_user_review
        assert not result.requires_broker_selection
        assert batch.broker_type == "INTERACTIVE_BROKERS"
        assert batch.status == BatchStatus.PENDING
        assert review.broker_name == "Interactive Brokers"
        assert adapter.calls == [None, "Interactive Brokers"]
        assert len(service.store.reviews) == 1

    def test_wrong_user(self):
        service = _service()
        parked = _ingest(service, UNKNOWN_CSV, "mystery.csv")
        with pytest.raises(BatchNotFound):
            run(service.process_with_broker(parked.import_batch_id, "someone-else", "Schwab"))

    def test_completed_batch_rejected(self):
        service = _service()
        done = _ingest(service, IBKR_CSV, "ibkr.csv")
        with pytest.raises(BatchStateError):
            run(service.process_with_broker(done.import_batch_id, "u1", "Schwab"))


class TestFinalizeMappings:
    def _parked(self, adapter=None, hint="Tradier"):
        service = _service(adapter)
        parked = _ingest(service, CUSTOM_CSV, "custom.csv", broker_name_hint=hint)
        return service, parked.import_batch_id

    def test_approve_imports_rows_and_learns_format(self):
        service, batch_id = self._parked(FakeAdapter())
        result = service.finalize_mappings(batch_id, "u1", approved=True)
        batch = service.store.get_batch(batch_id)

        assert result.success
        assert result.success_count == 2
        assert batch.status == BatchStatus.COMPLETED
        assert batch.temp_file_content is None
        assert not batch.user_review_required
        assert service.store.get_review_for_batch(batch_id).status == ReviewStatus.APPROVED

        learned = service.repository.get(batch.broker_format_id)
        assert learned.source == "ai"
        assert learned.name == "Tradier Format 1"
        assert learned.usage_count == 1
        assert result.broker_format_used == learned.id

        orders = service.store.orders
        assert [o.symbol for o in orders] == ["AAPL", "MSFT"]
        assert orders[1].order_executed_time == datetime(2025, 3, 2, 11, 30)

    def test_corrections_record_feedback(self):
        service, batch_id = self._parked(hint="Interactive Brokers")
        result = service.finalize_mappings(batch_id, "u1", approved=True, corrections=CORRECTIONS)
        batch = service.store.get_batch(batch_id)

        assert result.success
        assert result.success_count == 2
        assert service.store.get_review_for_batch(batch_id).status == ReviewStatus.CORRECTED
        assert {f.csv_header for f in service.store.feedback} == set(CORRECTIONS)
        assert service.store.get_upload_log_for_batch(batch_id).parse_method == ParseMethod.USER_CORRECTED

        learned = service.repository.get(batch.broker_format_id)
        assert learned.source == "user"
        assert learned.broker_type == "INTERACTIVE_BROKERS"
        assert batch.broker_type == "INTERACTIVE_BROKERS"

    def test_learned_format_recognises_next_upload(self):
        service, batch_id = self._parked(FakeAdapter())
        service.finalize_mappings(batch_id, "u1", approved=True)
        learned_id = service.store.get_batch(batch_id).broker_format_id

        again = _ingest(service, CUSTOM_CSV, "custom.csv")
        assert not again.requires_user_review
        assert again.broker_format_used == learned_id
        assert again.total_records == 2
        assert again.success_count == 0

    def test_reject_with_error_report(self):
        service, batch_id = self._parked(FakeAdapter())
        result = service.finalize_mappings(batch_id, "u1", approved=False, report_error=True)
        batch = service.store.get_batch(batch_id)

        assert not result.success
        assert result.errors == [REPORT_ERROR_REASON]
        assert batch.status == BatchStatus.FAILED
        assert batch.temp_file_content is None
        assert service.store.get_review_for_batch(batch_id).status == ReviewStatus.REJECTED
        assert service.store.get_upload_log_for_batch(batch_id).error_message == REPORT_ERROR_REASON
        assert service.store.orders == []

    def test_cancel(self):
        service, batch_id = self._parked(FakeAdapter())
        result = service.finalize_mappings(batch_id, "u1", approved=False)
        assert result.errors == [CANCEL_REASON]
        assert service.store.get_batch(batch_id).status == BatchStatus.FAILED

    def test_finalized_batch_cannot_be_finalized_again(self):
        service, batch_id = self._parked(FakeAdapter())
        service.finalize_mappings(batch_id, "u1", approved=False)
        with pytest.raises(BatchStateError):
            service.finalize_mappings(batch_id, "u1", approved=True)

    def test_approve_blocked_until_broker_selected(self):
        service = _service(FakeAdapter())
        parked = _ingest(service, CUSTOM_CSV, "custom.csv")
        with pytest.raises(BatchStateError, match="broker"):
            service.finalize_mappings(parked.import_batch_id, "u1", approved=True)

    def test_no_review_after_adapter_failure(self):
        service, batch_id = self._parked(FailingAdapter())
        with pytest.raises(BatchStateError, match="no mapping"):
            service.finalize_mappings(batch_id, "u1", approved=True)


# ---------------------------------------------------------------------------
# User mappings, validation, status
# ---------------------------------------------------------------------------


class TestUserMappings:
    def test_user_mappings_bypass_detection(self):
        service = _service()
        mappings = [
            ColumnMapping("Ticker Symbol", "symbol"),
            ColumnMapping("Direction", "side", transformer="standard_side"),
            ColumnMapping("Units", "order_quantity", data_type="number"),
            ColumnMapping("When", "order_executed_time", data_type="date"),
        ]
        result = _ingest(service, CUSTOM_CSV, "custom.csv", user_mappings=mappings)
        batch = service.store.get_batch(result.import_batch_id)

        assert result.success
        assert result.success_count == 2
        assert not batch.ai_mapping_used
        assert service.store.get_upload_log_for_batch(batch.id).parse_method == ParseMethod.USER_CORRECTED

    def test_unknown_transformer_rejected_before_batch(self):
        service = _service()
        mappings = [ColumnMapping("Ticker Symbol", "symbol", transformer="shout")]
        with pytest.raises(ValidationError, match="Invalid column mapping"):
            _ingest(service, CUSTOM_CSV, "custom.csv", user_mappings=mappings)
        assert service.store.batches == {}

    def test_unknown_target_field_rejected_before_batch(self):
        service = _service()
        mappings = [
            ColumnMapping("Ticker Symbol", "symbl"),
            ColumnMapping("Direction", "side"),
        ]
        with pytest.raises(ValidationError, match="symbl"):
            _ingest(service, CUSTOM_CSV, "custom.csv", user_mappings=mappings)
        assert service.store.batches == {}


class TestValidation:
    def test_invalid_file_raises_without_batch(self):
        service = _service()
        with pytest.raises(ValidationError):
            _ingest(service, "", "empty.csv")
        assert service.store.batches == {}

    def test_validate_known_format(self):
        result = _service().validate(IBKR_CSV, "ibkr.csv")
        assert result.is_valid
        assert result.detected_format == "interactive-brokers-flex"
        assert result.format_confidence >= 0.95
        assert result.row_count == 3

    def test_validate_standard_layout(self):
        result = _service().validate(STANDARD_CSV, "std.csv")
        assert result.is_standard_schema
        assert result.format_confidence == 1.0

    def test_validate_defects(self):
        result = _service().validate("", "notes.txt")
        assert not result.is_valid
        assert len(result.errors) == 2

    def test_validate_persists_nothing(self):
        service = _service()
        service.validate(IBKR_CSV, "ibkr.csv")
        assert service.store.batches == {}


class TestImportStatus:
    def test_status_payload(self):
        service = _service()
        result = _ingest(service, IBKR_CSV, "ibkr.csv")
        status = service.get_import_status(result.import_batch_id, "u1")
        assert status["status"] == "COMPLETED"
        assert status["success_count"] == 3
        assert status["completed_at"] is not None
        assert "review" not in status

    def test_status_includes_review(self):
        service = _service()
        parked = _ingest(service, UNKNOWN_CSV, "mystery.csv")
        status = service.get_import_status(parked.import_batch_id, "u1")
        assert status["status"] == "PENDING"
        assert status["requires_broker_selection"]
        assert status["review"]["status"] == "PENDING"

    def test_unknown_batch(self):
        with pytest.raises(BatchNotFound):
            _service().get_import_status("missing", "u1")
