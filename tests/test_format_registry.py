"""Tests for the broker format registry, learned formats and repositories."""

from __future__ import annotations

import pytest

from conftest import make_mock_supabase
from ingestion.format_registry import (
    GENERIC_BROKER_TYPE,
    BrokerFormat,
    InMemoryFormatRepository,
    SupabaseFormatRepository,
    create_format_from_mapping,
    find_broker_type,
    header_signature,
    updated_success_rate,
)
from ingestion.models import ColumnMapping
from ingestion.seed_formats import get_seed_formats


def _mappings():
    return [
        ColumnMapping("Ticker", "symbol"),
        ColumnMapping("Direction", "side"),
        ColumnMapping("Units", "order_quantity", data_type="number"),
        ColumnMapping("Memo", "broker_metadata"),
    ]


HEADERS = ["Ticker", "Direction", "Units", "Memo"]
SAMPLE = [
    {"Ticker": "AAPL", "Direction": "Buy", "Units": "10", "Memo": ""},
    {"Ticker": "MSFT", "Direction": "Sell", "Units": "5", "Memo": "hedge"},
]


class TestBrokerTypes:
    @pytest.mark.parametrize("name, expected", [
        ("Interactive Brokers", "INTERACTIVE_BROKERS"),
        ("ibkr", "INTERACTIVE_BROKERS"),
        ("  Schwab ", "CHARLES_SCHWAB"),
        ("thinkorswim", "TD_AMERITRADE"),
        ("E*TRADE", "E_TRADE"),
        ("trading_212", GENERIC_BROKER_TYPE),
        ("Some Local Broker", GENERIC_BROKER_TYPE),
        (None, GENERIC_BROKER_TYPE),
    ])
    def test_find_broker_type(self, name, expected):
        assert find_broker_type(name) == expected

    def test_header_signature_is_order_and_case_insensitive(self):
        assert header_signature(["Symbol", "Qty"]) == header_signature(["qty", " SYMBOL"])


class TestSeedFormats:
    def test_ids_are_unique(self):
        ids = [f.id for f in get_seed_formats()]
        assert len(ids) == len(set(ids))

    def test_detection_order(self):
        assert get_seed_formats()[0].id == "interactive-brokers-flex"

    def test_every_seed_names_required_headers(self):
        for fmt in get_seed_formats():
            assert fmt.detection.required_headers, fmt.id

    def test_column_mappings_keep_declaration_priority(self):
        fmt = next(f for f in get_seed_formats() if f.id == "schwab-todays-trades")
        by_col = {m.source_column: m for m in fmt.column_mappings()}
        assert by_col["Price"].priority > by_col["PRICE"].priority
        assert by_col["Qty"].transformer == "absolute_quantity"

    def test_dict_round_trip(self):
        fmt = get_seed_formats()[0]
        again = BrokerFormat.from_dict(fmt.to_dict())
        assert again.id == fmt.id
        assert again.field_mappings["Buy/Sell"].transformer == "ibkr_side"
        assert again.detection.value_patterns == fmt.detection.value_patterns


class TestLearnedFormats:
    def test_create_from_mapping(self):
        fmt = create_format_from_mapping(_mappings(), "Interactive Brokers", HEADERS, SAMPLE, source="ai", confidence=0.8)
        assert fmt.id.startswith("custom-")
        assert len(fmt.id) == len("custom-") + 10
        assert fmt.name == "Interactive Brokers Format 1"
        assert fmt.broker_type == "INTERACTIVE_BROKERS"
        assert fmt.source == "ai"
        assert fmt.confidence == 0.8
        assert fmt.headers == HEADERS
        assert fmt.detection.required_headers == ["Ticker", "Direction", "Units"]
        assert not fmt.field_mappings["Memo"].required
        assert fmt.field_mappings["Ticker"].examples == ["AAPL", "MSFT"]
        assert fmt.field_mappings["Memo"].examples == ["hedge"]

    def test_id_is_stable_for_same_layout(self):
        a = create_format_from_mapping(_mappings(), "Tradier", HEADERS, SAMPLE)
        b = create_format_from_mapping(list(reversed(_mappings())), "tradier", HEADERS, [])
        assert a.id == b.id

    def test_name_counts_existing_formats_for_broker(self):
        first = create_format_from_mapping(_mappings(), "Tradier", HEADERS, SAMPLE)
        second = create_format_from_mapping(
            _mappings()[:2], "Tradier", HEADERS[:2], SAMPLE, existing=[first],
        )
        assert second.name == "Tradier Format 2"
        assert second.id != first.id


class TestUsage:
    def test_success_rate_math(self):
        assert updated_success_rate(1.0, 0, True) == 1.0
        assert updated_success_rate(1.0, 1, False) == 0.5
        assert updated_success_rate(0.5, 2, True) == pytest.approx(2 / 3)

    def test_record_usage(self):
        repo = InMemoryFormatRepository()
        repo.record_usage("interactive-brokers-flex", True)
        fmt = repo.record_usage("interactive-brokers-flex", False)
        assert fmt.usage_count == 2
        assert fmt.success_rate == 0.5
        assert fmt.last_used_at is not None

    def test_record_usage_unknown_format(self):
        assert InMemoryFormatRepository().record_usage("nope", True) is None


class TestInMemoryRepository:
    def test_seeded_by_default(self):
        assert len(InMemoryFormatRepository().list()) == len(get_seed_formats())

    def test_unseeded(self):
        assert InMemoryFormatRepository(seed=False).list() == []

    def test_added_formats_come_after_seeds(self):
        repo = InMemoryFormatRepository()
        learned = repo.add(create_format_from_mapping(_mappings(), "Tradier", HEADERS, SAMPLE))
        assert repo.list()[-1].id == learned.id
        assert repo.get(learned.id) is learned


class TestSupabaseRepository:
    def test_loads_seeds_and_stored_rows(self):
        client, tables = make_mock_supabase()
        learned = create_format_from_mapping(_mappings(), "Tradier", HEADERS, SAMPLE)
        tables["broker_formats"] = [learned.to_dict()]

        repo = SupabaseFormatRepository(client=client)
        ids = [f.id for f in repo.list()]
        assert ids[0] == "interactive-brokers-flex"
        assert learned.id in ids

    def test_stored_row_overrides_seed(self):
        client, tables = make_mock_supabase()
        row = get_seed_formats()[0].to_dict()
        row["usage_count"] = 42
        tables["broker_formats"] = [row]

        repo = SupabaseFormatRepository(client=client)
        assert repo.get("interactive-brokers-flex").usage_count == 42

    def test_invalid_rows_skipped(self):
        client, tables = make_mock_supabase()
        tables["broker_formats"] = [{"name": "no id"}]
        repo = SupabaseFormatRepository(client=client)
        assert len(repo.list()) == len(get_seed_formats())

    def test_add_upserts(self):
        client, tables = make_mock_supabase()
        repo = SupabaseFormatRepository(client=client)
        learned = repo.add(create_format_from_mapping(_mappings(), "Tradier", HEADERS, SAMPLE))
        assert tables["broker_formats"][0]["id"] == learned.id

        repo.record_usage(learned.id, True)
        assert len(tables["broker_formats"]) == 1
        assert tables["broker_formats"][0]["usage_count"] == 1

    def test_supabase_outage_is_non_fatal(self):
        class BrokenClient:
            def table(self, name):
                raise ConnectionError("supabase down")

        repo = SupabaseFormatRepository(client=BrokenClient())
        assert len(repo.list()) == len(get_seed_formats())
        learned = repo.add(create_format_from_mapping(_mappings(), "Tradier", HEADERS, SAMPLE))
        assert repo.get(learned.id) is learned
