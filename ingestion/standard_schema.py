"""The standard (canonical) trade CSV layout.

Files already in this layout skip detection entirely. Rows are validated
with pydantic and become trade-level records, which keep SHORT / COVER.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaValidationError

from ingestion.errors import RowError
from ingestion.models import NormalizedTrade
from ingestion.transformers import (
    normalize_side,
    parse_datetime,
    parse_number,
    parse_time_of_day,
)

logger = logging.getLogger(__name__)

STANDARD_COLUMNS = [
    "Date", "Time", "Symbol", "Buy/Sell", "Shares",
    "Price", "Commission", "Fees", "Account",
]
REQUIRED_COLUMNS = ["Date", "Symbol", "Buy/Sell", "Shares"]

MIN_COLUMN_COVERAGE = 0.6


def is_standard_format(headers: list[str]) -> bool:
    """All required standard columns present and ≥60% of all of them."""
    present = {h.strip().lower() for h in headers}
    if not all(c.lower() in present for c in REQUIRED_COLUMNS):
        return False
    coverage = sum(1 for c in STANDARD_COLUMNS if c.lower() in present)
    return coverage / len(STANDARD_COLUMNS) >= MIN_COLUMN_COVERAGE


class StandardCsvRow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    date: datetime = Field(alias="Date")
    time: Optional[str] = Field(default=None, alias="Time")
    symbol: str = Field(alias="Symbol", min_length=1)
    side: str = Field(alias="Buy/Sell")
    shares: float = Field(alias="Shares", gt=0)
    price: Optional[float] = Field(default=None, alias="Price")
    commission: Optional[float] = Field(default=None, alias="Commission")
    fees: Optional[float] = Field(default=None, alias="Fees")
    account: Optional[str] = Field(default=None, alias="Account")

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, v: Any) -> datetime:
        parsed = parse_datetime(v)
        if parsed is None:
            raise ValueError(f"invalid date '{v}'")
        return parsed

    @field_validator("shares", mode="before")
    @classmethod
    def _parse_shares(cls, v: Any) -> float:
        n = parse_number(v)
        if n is None:
            raise ValueError(f"invalid share quantity '{v}'")
        return abs(n)

    @field_validator("price", "commission", "fees", mode="before")
    @classmethod
    def _parse_optional_number(cls, v: Any) -> Optional[float]:
        # Unparseable optional numbers are dropped, not fatal
        return parse_number(v)

    @field_validator("side", mode="before")
    @classmethod
    def _parse_side(cls, v: Any) -> str:
        return normalize_side(v)

    @field_validator("symbol", mode="after")
    @classmethod
    def _upper_symbol(cls, v: str) -> str:
        return v.upper()

    @field_validator("time", "account", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Optional[str]:
        s = str(v or "").strip()
        return s or None

    def executed_time(self) -> datetime:
        hms = parse_time_of_day(self.time) if self.time else None
        if hms and self.date.hour == self.date.minute == self.date.second == 0:
            return self.date.replace(hour=hms[0], minute=hms[1], second=hms[2])
        return self.date


def _canonical_keys(row: dict[str, str]) -> dict[str, str]:
    by_lower = {c.lower(): c for c in STANDARD_COLUMNS}
    out: dict[str, str] = {}
    for key, value in row.items():
        canonical = by_lower.get(key.strip().lower())
        if canonical and canonical not in out:
            out[canonical] = value
    return out


def to_trade(
    row: dict[str, str],
    row_index: int,
    *,
    user_id: str,
    batch_id: str,
    account_tags: list[str],
) -> NormalizedTrade:
    """Validate one standard-layout row.

    Raises:
        RowError: the row fails validation.
        NonTradeRow: the side is a cash-movement code.
    """
    try:
        parsed = StandardCsvRow.model_validate(_canonical_keys(row))
    except SchemaValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise RowError(row_index, problems) from None

    extra = {
        k: v for k, v in row.items()
        if k.strip().lower() not in {c.lower() for c in STANDARD_COLUMNS} and v
    }

    return NormalizedTrade(
        symbol=parsed.symbol,
        side=parsed.side,
        quantity=parsed.shares,
        executed_time=parsed.executed_time(),
        price=parsed.price,
        commission=parsed.commission,
        fees=parsed.fees,
        account=parsed.account,
        broker_metadata=extra,
        tags=list(account_tags),
        broker_type="GENERIC_CSV",
        import_batch_id=batch_id,
        user_id=user_id,
    )
