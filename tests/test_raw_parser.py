"""Tests for raw CSV parsing and the Schwab multi-section export parser."""

from __future__ import annotations

import pytest

from conftest import IBKR_CSV, SCHWAB_ACTIVITY_CSV
from ingestion.errors import ParseError, ValidationError
from ingestion.raw_parser import parse_csv
from ingestion.schwab_activity import (
    SchwabActivityParser,
    is_schwab_activity,
    section_defaults,
)
from ingestion.settings import (
    SIZE_TIER_BACKGROUND,
    SIZE_TIER_INLINE,
    SIZE_TIER_OVERSIZED,
    size_tier,
)


class TestFlatCsv:
    def test_headers_and_rows(self):
        parsed = parse_csv(IBKR_CSV, "trades.csv")
        assert parsed.headers == ["Date", "Symbol", "Buy/Sell", "Quantity", "T. Price", "Comm/Fee"]
        assert parsed.row_count == 3
        assert parsed.rows[0]["Symbol"] == "AAPL"
        assert parsed.rows[1]["Quantity"] == "-100"
        assert not parsed.is_sectioned

    def test_cells_stay_strings(self):
        parsed = parse_csv("Symbol,Qty,Price\nAAPL,0010,1.50\n", "a.csv")
        assert parsed.rows[0] == {"Symbol": "AAPL", "Qty": "0010", "Price": "1.50"}

    def test_strips_bom(self):
        parsed = parse_csv("\ufeffSymbol,Qty\nAAPL,1\n", "a.csv")
        assert parsed.headers == ["Symbol", "Qty"]

    def test_trailing_delimiter_columns_dropped(self):
        parsed = parse_csv("Symbol,Qty,\nAAPL,1,\nMSFT,2,\n", "a.csv")
        assert parsed.headers == ["Symbol", "Qty"]
        assert parsed.row_count == 2

    def test_blank_rows_skipped(self):
        parsed = parse_csv("Symbol,Qty\nAAPL,1\n,\nMSFT,2\n", "a.csv")
        assert [r["Symbol"] for r in parsed.rows] == ["AAPL", "MSFT"]

    def test_whitespace_trimmed(self):
        parsed = parse_csv(" Symbol , Qty \n AAPL , 1 \n", "a.csv")
        assert parsed.headers == ["Symbol", "Qty"]
        assert parsed.rows[0]["Symbol"] == "AAPL"

    def test_sample_rows_capped(self):
        body = "\n".join(f"S{i},{i}" for i in range(20))
        parsed = parse_csv("Symbol,Qty\n" + body + "\n", "a.csv")
        assert parsed.row_count == 20
        assert len(parsed.sample_rows) == 5

    def test_size_reported(self):
        parsed = parse_csv(IBKR_CSV, "a.csv")
        assert parsed.file_size == len(IBKR_CSV.encode("utf-8"))
        assert parsed.size_tier == SIZE_TIER_INLINE


class TestParseDefects:
    def test_empty_file(self):
        with pytest.raises(ParseError) as exc:
            parse_csv("", "a.csv")
        assert "File is empty" in exc.value.defects

    def test_whitespace_only_file(self):
        with pytest.raises(ParseError):
            parse_csv("   \n\n", "a.csv")

    def test_header_only(self):
        with pytest.raises(ParseError, match="no data rows"):
            parse_csv("Symbol,Qty\n", "a.csv")

    def test_wrong_extension(self):
        with pytest.raises(ParseError, match="not a .csv"):
            parse_csv(IBKR_CSV, "trades.xlsx")

    def test_extension_case_insensitive(self):
        assert parse_csv(IBKR_CSV, "TRADES.CSV").row_count == 3

    def test_oversized(self):
        with pytest.raises(ParseError, match="maximum"):
            parse_csv(IBKR_CSV, "a.csv", max_bytes=10)

    def test_every_defect_listed(self):
        with pytest.raises(ParseError) as exc:
            parse_csv("", "notes.txt")
        assert len(exc.value.defects) == 2

    def test_parse_error_is_validation_error(self):
        with pytest.raises(ValidationError):
            parse_csv("", "a.csv")


class TestSizeTier:
    def test_tiers(self):
        assert size_tier(1024) == SIZE_TIER_INLINE
        assert size_tier(10 * 1024 * 1024) == SIZE_TIER_BACKGROUND
        assert size_tier(200 * 1024 * 1024) == SIZE_TIER_OVERSIZED

    def test_custom_cap(self):
        assert size_tier(2048, max_bytes=1024) == SIZE_TIER_OVERSIZED


class TestSchwabActivity:
    def test_signature(self):
        assert is_schwab_activity(SCHWAB_ACTIVITY_CSV)
        assert not is_schwab_activity(IBKR_CSV)

    def test_sections_split(self):
        activity = SchwabActivityParser().parse_string(SCHWAB_ACTIVITY_CSV)
        assert activity.account == "12345678SCHW"
        assert activity.report_date == "9/25/24"
        assert len(activity.working) == 1
        assert len(activity.filled) == 2
        assert len(activity.canceled) == 1
        assert activity.sections_found == ["working", "filled", "canceled"]

    def test_each_section_uses_its_own_headers(self):
        activity = SchwabActivityParser().parse_string(SCHWAB_ACTIVITY_CSV)
        assert activity.working[0]["Time Placed"] == "9/25/24 10:15:02"
        assert activity.filled[0]["Exec Time"] == "9/25/24 09:31:36"
        assert "Exec Time" not in activity.working[0]
        assert activity.canceled[0]["Time Canceled"] == "9/25/24 09:33:45"

    def test_blank_header_cells_ignored(self):
        activity = SchwabActivityParser().parse_string(SCHWAB_ACTIVITY_CSV)
        assert "" not in activity.filled[0]
        assert "" not in activity.headers

    def test_stops_at_rolling_strategies(self):
        activity = SchwabActivityParser().parse_string(SCHWAB_ACTIVITY_CSV)
        symbols = [row["Symbol"] for _, row in activity.rows()]
        assert symbols == ["AAPL", "OCTO", "OCTO", "TSLA"]
        assert "Covered Call Position" not in activity.headers

    def test_raw_parser_routes_sectioned_exports(self):
        parsed = parse_csv(SCHWAB_ACTIVITY_CSV, "schwab.csv")
        assert parsed.is_sectioned
        assert parsed.row_count == 4
        assert "Exec Time" in parsed.headers and "Time Placed" in parsed.headers
        buckets = [bucket for bucket, _ in parsed.sections.rows()]
        assert buckets == ["working", "filled", "filled", "canceled"]

    def test_section_defaults(self):
        assert section_defaults("filled") == {
            "order_status": "FILLED",
            "broker_metadata": {"section": "filled"},
        }
        assert section_defaults("canceled")["order_status"] == "CANCELLED"

    def test_no_sections_is_parse_error(self):
        content = "Today's Trade Activity for 123SCHW (Individual) on 9/25/24 10:56:32\nnothing,here\n"
        with pytest.raises(ParseError, match="no order sections"):
            parse_csv(content, "schwab.csv")
