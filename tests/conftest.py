"""Shared fixtures: sample broker exports and a fake Supabase client.

Run from repo root:
    python -m pytest tests -v
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure imports resolve without an editable install
_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def run(coro):
    """Run an async function from sync test code."""
    return asyncio.run(coro)


IBKR_CSV = (
    "Date,Symbol,Buy/Sell,Quantity,T. Price,Comm/Fee\n"
    "2025-01-15,AAPL,BOT,100,185.50,-1.00\n"
    "2025-01-16,AAPL,SLD,-100,190.25,-1.00\n"
    "2025-01-17,TSLA,BOT,10,240.10,-0.35\n"
)

STANDARD_CSV = (
    "Date,Time,Symbol,Buy/Sell,Shares,Price,Commission,Fees,Account\n"
    "2025-02-03,09:31:00,NVDA,Buy,20,700.00,0,0.01,Main\n"
    "2025-02-03,14:05:12,NVDA,Sell Short,5,705.50,0,0.01,Main\n"
    "2025-02-04,10:00:00,NVDA,Cover,5,698.00,0,0.01,Main\n"
)

UNKNOWN_CSV = (
    "foo,bar,baz\n"
    "1,2,3\n"
    "4,5,6\n"
)

SCHWAB_ACTIVITY_CSV = (
    "Today's Trade Activity for 12345678SCHW (Individual) on 9/25/24 10:56:32\n"
    "\n"
    "Working Orders\n"
    "Notes,,Time Placed,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,PRICE,Order Type,TIF,Mark,Status\n"
    ",,9/25/24 10:15:02,STOCK,BUY,+100,TO OPEN,AAPL,,,STOCK,150.00,LMT,DAY,151.20,WORKING\n"
    "\n"
    "Filled Orders\n"
    ",,Exec Time,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,Price,Net Price,Price Improvement,Order Type\n"
    ",,9/25/24 09:31:36,STOCK,BUY,+50,TO OPEN,OCTO,,,STOCK,4.29,4.29,,LMT\n"
    ",,9/25/24 09:45:10,STOCK,SELL,-50,TO CLOSE,OCTO,,,STOCK,4.50,4.50,,MKT\n"
    "\n"
    "Canceled Orders\n"
    "Notes,,Time Canceled,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,PRICE,Order Type,TIF,Status\n"
    ",,9/25/24 09:33:45,STOCK,SELL,-25,TO CLOSE,TSLA,,,STOCK,250.00,LMT,DAY,CANCELED\n"
    "\n"
    "Rolling Strategies\n"
    "Covered Call Position,New Exp,Call By,Days Bef\n"
    "AAPL 100,10/18/24,STRIKE,1\n"
)


@pytest.fixture
def ibkr_csv() -> str:
    return IBKR_CSV


@pytest.fixture
def standard_csv() -> str:
    return STANDARD_CSV


@pytest.fixture
def unknown_csv() -> str:
    return UNKNOWN_CSV


@pytest.fixture
def schwab_csv() -> str:
    return SCHWAB_ACTIVITY_CSV


def make_mock_supabase():
    """Create a mock Supabase client with in-memory tables.

    Supports the query shapes the stores use: select/eq/order/limit,
    insert (dict or list), update + eq, upsert.
    """
    tables: dict[str, list[dict[str, Any]]] = {}

    class MockResponse:
        def __init__(self, data):
            self.data = data

    class MockTable:
        def __init__(self, name):
            self.name = name
            self._filters: dict[str, Any] = {}
            self._limit = None
            self._order = None
            self._op = "select"
            self._payload: Any = None

        def select(self, cols="*"):
            self._op = "select"
            return self

        def eq(self, col, val):
            self._filters[col] = val
            return self

        def order(self, col, desc=False):
            self._order = (col, desc)
            return self

        def limit(self, n):
            self._limit = n
            return self

        def insert(self, data):
            self._op = "insert"
            self._payload = data
            return self

        def update(self, data):
            self._op = "update"
            self._payload = data
            return self

        def upsert(self, data):
            self._op = "upsert"
            self._payload = data
            return self

        def _matches(self, row):
            return all(row.get(k) == v for k, v in self._filters.items())

        def execute(self):
            rows = tables.setdefault(self.name, [])
            if self._op == "insert":
                new = self._payload if isinstance(self._payload, list) else [self._payload]
                rows.extend(dict(r) for r in new)
                return MockResponse(new)
            if self._op == "upsert":
                rows[:] = [r for r in rows if r.get("id") != self._payload.get("id")]
                rows.append(dict(self._payload))
                return MockResponse([self._payload])
            if self._op == "update":
                hit = [r for r in rows if self._matches(r)]
                for r in hit:
                    r.update(self._payload)
                return MockResponse(hit)

            out = [r for r in rows if self._matches(r)]
            if self._order:
                col, desc = self._order
                out.sort(key=lambda r: r.get(col) or 0, reverse=desc)
            if self._limit is not None:
                out = out[: self._limit]
            return MockResponse(out)

    class MockClient:
        def table(self, name):
            return MockTable(name)

    return MockClient(), tables
