"""Named value transformers and type coercion for CSV cells.

Broker formats refer to transformers by name; names resolve through the
``Transformer`` enum to plain functions when a mapping is applied. Every
function takes the raw cell string and returns a typed value, or ``None``
when the cell carries nothing usable (the field is then left unfilled).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

import pandas as pd

from ingestion.errors import NonTradeRow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Primitive coercion
# ---------------------------------------------------------------------------

_CURRENCY_CHARS = re.compile(r"[$€£¥₹,\s]")
_CURRENCY_CODES = re.compile(r"^(USD|GBP|EUR|CAD|AUD|JPY)\s*|\s*(USD|GBP|EUR|CAD|AUD|JPY)$", re.IGNORECASE)

_FALSE_STRINGS = {"", "false", "0", "no", "n", "f"}

_DATETIME_FORMATS = (
    "%m/%d/%y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y%m%d;%H%M%S",
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y%m%d",
)

_TIME_FORMATS = ("%H:%M:%S", "%H:%M", "%I:%M:%S %p", "%I:%M %p", "%H%M%S")


def parse_number(value: Any) -> Optional[float]:
    """Parse '$1,234.50', '(12.00)', 'USD 3.2', '+25' → float. None if not a number."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return None if pd.isna(value) else float(value)

    s = str(value).strip()
    if not s:
        return None
    s = _CURRENCY_CODES.sub("", s)
    s = _CURRENCY_CHARS.sub("", s)
    # Parenthetical negatives: (123.45) -> -123.45
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1]
    # "-$5" arrives as "-5" after stripping; "$-5" as well
    try:
        return float(s)
    except ValueError:
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a broker date/time string. None when unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value

    s = str(value).strip()
    if not s:
        return None

    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue

    ts = pd.to_datetime(s, errors="coerce")
    if ts is pd.NaT or pd.isna(ts):
        return None
    result = ts.to_pydatetime()
    if result.tzinfo is not None:
        result = result.replace(tzinfo=None)
    return result


def parse_time_of_day(value: Any) -> Optional[tuple[int, int, int]]:
    s = str(value or "").strip()
    if not s:
        return None
    for fmt in _TIME_FORMATS:
        try:
            t = datetime.strptime(s.upper(), fmt)
            return t.hour, t.minute, t.second
        except ValueError:
            continue
    return None


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() not in _FALSE_STRINGS


def coerce(value: Any, data_type: str) -> Any:
    """Coerce a raw cell by declared data type. None means 'skip this field'."""
    if data_type == "number":
        return parse_number(value)
    if data_type == "date":
        return parse_datetime(value)
    if data_type == "boolean":
        return parse_boolean(value)
    if value is None:
        return None
    s = str(value).strip()
    return s or None


# ---------------------------------------------------------------------------
# Side vocabulary
# ---------------------------------------------------------------------------

_SIDE_WORDS: dict[str, str] = {
    "BUY": "BUY",
    "B": "BUY",
    "BOT": "BUY",
    "BOUGHT": "BUY",
    "YOU BOUGHT": "BUY",
    "SELL": "SELL",
    "S": "SELL",
    "SLD": "SELL",
    "SOLD": "SELL",
    "YOU SOLD": "SELL",
    "SHORT": "SHORT",
    "SS": "SHORT",
    "SELL SHORT": "SHORT",
    "SELL_SHORT": "SHORT",
    "COVER": "COVER",
    "BTC": "COVER",
    "BUY TO COVER": "COVER",
    "BUY_TO_COVER": "COVER",
}

_ORDER_SIDE = {"BUY": "BUY", "SELL": "SELL", "SHORT": "SELL", "COVER": "BUY"}

# Activity codes that are cash movements, not trades
NON_TRADE_ACTIONS = {
    "DIV", "DIVIDEND", "CASH DIVIDEND", "QUAL DIV REINVEST", "REINVEST",
    "INT", "INTEREST", "BANK INTEREST", "CDEP", "CWIT", "ACH", "DEPOSIT",
    "WITHDRAWAL", "TOP-UP", "CURRENCY CONVERSION", "JOURNAL", "WIRE",
    "TRANSFER", "FEE",
}


def normalize_side(value: Any) -> str:
    """Map broker side vocabulary onto BUY / SELL / SHORT / COVER.

    Raises:
        NonTradeRow: the value is a cash-movement code.
        ValueError: the value is not a recognisable side.
    """
    v = str(value or "").strip().upper()
    if v in _SIDE_WORDS:
        return _SIDE_WORDS[v]
    if v in NON_TRADE_ACTIONS:
        raise NonTradeRow(f"'{value}' is not a trade")
    # "Market buy", "Buy to Open", "Sell to Close", ...
    if "BUY" in v:
        return "BUY"
    if "SELL" in v:
        return "SELL"
    raise ValueError(f"Unrecognized side '{value}'")


def order_side(side: str) -> str:
    """Collapse a trade-level side onto the order vocabulary (BUY / SELL)."""
    return _ORDER_SIDE[side]


# ---------------------------------------------------------------------------
# Named transformers
# ---------------------------------------------------------------------------


class Transformer(str, Enum):
    REMOVE_CURRENCY = "remove_currency"
    IBKR_SIDE = "ibkr_side"
    STANDARD_SIDE = "standard_side"
    ORDER_EXECUTION_SIDE = "order_execution_side"
    ORDER_TYPE = "order_type"
    PARSE_DATE = "parse_date"
    PARSE_ORDER_DATETIME = "parse_order_datetime"
    PARSE_SCHWAB_DATETIME = "parse_schwab_datetime"
    SCHWAB_SIDE = "schwab_side"
    ABSOLUTE_QUANTITY = "absolute_quantity"
    SCHWAB_PRICE = "schwab_price"
    SCHWAB_ORDER_TYPE = "schwab_order_type"


# Names used by formats stored before transformer names were normalized
_LEGACY_NAMES = {
    "removeCurrency": Transformer.REMOVE_CURRENCY,
    "ibkrSideMapping": Transformer.IBKR_SIDE,
    "standardSideMapping": Transformer.STANDARD_SIDE,
    "orderExecutionSideMapping": Transformer.ORDER_EXECUTION_SIDE,
    "orderTypeMapping": Transformer.ORDER_TYPE,
    "parseDate": Transformer.PARSE_DATE,
    "parseOrderDateTime": Transformer.PARSE_ORDER_DATETIME,
    "parseSchwabDateTime": Transformer.PARSE_SCHWAB_DATETIME,
    "schwabSideMapping": Transformer.SCHWAB_SIDE,
    "parseAbsoluteQuantity": Transformer.ABSOLUTE_QUANTITY,
    "parseSchwabPrice": Transformer.SCHWAB_PRICE,
    "schwabOrderTypeMapping": Transformer.SCHWAB_ORDER_TYPE,
}

_ORDER_TYPES = {
    "LMT": "LIMIT",
    "LIMIT": "LIMIT",
    "MKT": "MARKET",
    "MARKET": "MARKET",
    "STP": "STOP",
    "STOP": "STOP",
    "STP LMT": "STOP_LIMIT",
    "STOP LIMIT": "STOP_LIMIT",
}


def _side(value: str) -> Optional[str]:
    return normalize_side(value) if str(value).strip() else None


def _order_type(value: str) -> Optional[str]:
    v = str(value).strip().upper()
    if not v:
        return None
    return _ORDER_TYPES.get(v, v)


def _schwab_order_type(value: str) -> str:
    v = str(value or "").strip().upper()
    if not v:
        return "MARKET"
    return _ORDER_TYPES.get(v, v)


def _order_datetime(value: str) -> Optional[datetime]:
    s = str(value).strip()
    try:
        return datetime.strptime(s, "%m/%d/%y %H:%M:%S")
    except ValueError:
        return parse_datetime(s)


def _schwab_datetime(value: str) -> Optional[datetime]:
    # "9/25/24 10:15:02"; two-digit years are 20xx
    s = str(value).strip()
    for fmt in ("%m/%d/%y %H:%M:%S", "%m/%d/%y"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return parse_datetime(s)


def _absolute_quantity(value: str) -> Optional[float]:
    n = parse_number(str(value).replace("+", ""))
    return abs(n) if n is not None else None


def _schwab_price(value: str) -> Optional[float]:
    s = str(value).strip()
    if not s or s == "~":
        return None
    return parse_number(s)


_TRANSFORMERS: dict[Transformer, Callable[[str], Any]] = {
    Transformer.REMOVE_CURRENCY: parse_number,
    Transformer.IBKR_SIDE: _side,
    Transformer.STANDARD_SIDE: _side,
    Transformer.ORDER_EXECUTION_SIDE: _side,
    Transformer.ORDER_TYPE: _order_type,
    Transformer.PARSE_DATE: parse_datetime,
    Transformer.PARSE_ORDER_DATETIME: _order_datetime,
    Transformer.PARSE_SCHWAB_DATETIME: _schwab_datetime,
    Transformer.SCHWAB_SIDE: _side,
    Transformer.ABSOLUTE_QUANTITY: _absolute_quantity,
    Transformer.SCHWAB_PRICE: _schwab_price,
    Transformer.SCHWAB_ORDER_TYPE: _schwab_order_type,
}


def resolve_transformer(name: Optional[str]) -> Optional[Callable[[str], Any]]:
    """Look up a transformer function by name.

    Raises:
        ValueError: for a name that is not a known transformer.
    """
    if not name:
        return None
    if name in _LEGACY_NAMES:
        return _TRANSFORMERS[_LEGACY_NAMES[name]]
    try:
        return _TRANSFORMERS[Transformer(name)]
    except ValueError:
        raise ValueError(f"Unknown transformer '{name}'") from None
