"""Canonical order/trade fields that CSV columns can be mapped onto."""

from __future__ import annotations

import re

BROKER_METADATA = "broker_metadata"

# Order table fields. Descriptions are shown to Claude in mapping prompts.
ORDER_FIELDS: dict[str, str] = {
    # Critical
    "symbol": "Stock ticker symbol (e.g. AAPL, MSFT)",
    "side": "Buy or Sell action (BUY/SELL)",
    "order_quantity": "Number of shares or contracts",
    "order_placed_time": "When the order was placed/submitted",
    "order_executed_time": "When the order was executed/filled",
    # Important
    "limit_price": "Limit order price per share",
    "order_type": "Order type (MARKET, LIMIT, STOP, STOP_LIMIT)",
    "order_status": "Order status (FILLED, CANCELLED, PENDING, REJECTED)",
    "order_id": "Broker-assigned order identifier",
    # Optional
    "parent_order_id": "Parent order ID for multi-leg strategies",
    "time_in_force": "Time in force (DAY, GTC, IOC, FOK)",
    "stop_price": "Stop price for stop orders",
    "order_updated_time": "Last time order was modified",
    "order_cancelled_time": "When order was cancelled",
    "account_id": "Broker account identifier/number",
    "order_account": "Account name or description",
    "order_route": "Order routing destination (ARCA, NASDAQ, etc.)",
    "tags": "User-defined tags or categories",
    "trade_id": "Associated trade group identifier",
}

# Fields only registry formats target (never proposed by the AI adapter)
AUXILIARY_FIELDS: dict[str, str] = {
    "trade_time": "Time of day, combined with a date-only timestamp",
    "commission": "Commission or fees charged",
    "net_amount": "Net cash amount of the fill",
    "realized_pnl": "Realized profit/loss reported by the broker",
    "position_effect": "TO OPEN / TO CLOSE",
    "asset_class": "STOCK, CALL, PUT, ...",
    "expiration": "Option expiration",
    "strike": "Option strike price",
    "spread": "Broker spread/strategy label",
    "order_notes": "Free-form broker notes",
}

CRITICAL_FIELDS = (
    "symbol",
    "side",
    "order_quantity",
    "order_placed_time",
    "order_executed_time",
)

ALL_FIELDS = set(ORDER_FIELDS) | set(AUXILIARY_FIELDS) | {BROKER_METADATA}

DATA_TYPES = ("string", "number", "date", "boolean")

# Headers that really describe an execution (fill) timestamp
_EXEC_TERMS = re.compile(r"exec|fill|trade", re.IGNORECASE)
_TIME_TERMS = re.compile(r"time|date", re.IGNORECASE)


def is_execution_header(header: str) -> bool:
    """True for headers like 'Exec Time', 'FillDate', 'Trade Time'."""
    return bool(_EXEC_TERMS.search(header) and _TIME_TERMS.search(header))


def field_weight(field: str) -> int:
    return 3 if field in CRITICAL_FIELDS else 1
