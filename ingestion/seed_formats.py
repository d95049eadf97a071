"""Seed broker formats for known export layouts.

Loaded into every repository on first use so known layouts are detected
without any Claude API call. List order is detection tie-break order.
"""

from __future__ import annotations

from ingestion.format_registry import BrokerFormat, DetectionPatterns, FieldMapping
from ingestion.schwab_activity import FILE_SIGNATURE, SECTION_TITLES


def get_seed_formats() -> list[BrokerFormat]:
    """Return all seed broker formats (fresh copies)."""
    return [
        _ibkr_format(),
        _td_ameritrade_format(),
        _etrade_format(),
        _trade_voyager_format(),
        _schwab_todays_trades_format(),
        _schwab_transactions_format(),
        _robinhood_format(),
        _trading212_new_format(),
        _trading212_classic_format(),
    ]


def _ibkr_format() -> BrokerFormat:
    return BrokerFormat(
        id="interactive-brokers-flex",
        name="Interactive Brokers Flex Query",
        broker_name="Interactive Brokers",
        broker_type="INTERACTIVE_BROKERS",
        description="IBKR Flex Query trade confirmation export",
        confidence=0.95,
        field_mappings={
            "Date": FieldMapping("order_executed_time", "date", True, "parse_date", ["2025-01-15", "20250115"]),
            "Time": FieldMapping("trade_time", "string", False, None, ["09:30:00"]),
            "Symbol": FieldMapping("symbol", "string", True, None, ["AAPL", "TSLA"]),
            "Buy/Sell": FieldMapping("side", "string", True, "ibkr_side", ["BOT", "SLD"]),
            "Quantity": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["100", "-50"]),
            "T. Price": FieldMapping("limit_price", "number", False, None, ["150.25"]),
            "Comm/Fee": FieldMapping("commission", "number", False, None, ["-1.00"]),
            "Realized P&L": FieldMapping("realized_pnl", "number", False, None, ["125.50"]),
            "Account": FieldMapping("account_id", "string", False, None, ["U1234567"]),
        },
        detection=DetectionPatterns(
            required_headers=["Date", "Symbol", "Buy/Sell", "Quantity"],
            value_patterns={"Buy/Sell": r"(?i)^(BOT|SLD|BUY|SELL)$"},
        ),
    )


def _td_ameritrade_format() -> BrokerFormat:
    return BrokerFormat(
        id="td-ameritrade-history",
        name="TD Ameritrade Transaction History",
        broker_name="TD Ameritrade",
        broker_type="TD_AMERITRADE",
        description="TD Ameritrade transaction export",
        confidence=0.95,
        field_mappings={
            "DATE": FieldMapping("order_executed_time", "date", True, "parse_date", ["01/15/2025"]),
            "TIME": FieldMapping("trade_time", "string", False, None, ["09:30:00 AM"]),
            "SYMBOL": FieldMapping("symbol", "string", True, None, ["AAPL"]),
            "SIDE": FieldMapping("side", "string", True, "standard_side", ["BUY", "SELL"]),
            "QTY": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["100"]),
            "PRICE": FieldMapping("limit_price", "number", False, "remove_currency", ["$150.25"]),
            "NET AMT": FieldMapping("net_amount", "number", False, "remove_currency", ["-$15,026.00"]),
            "FEES": FieldMapping("commission", "number", False, "remove_currency", ["$1.00"]),
            "ACCOUNT": FieldMapping("account_id", "string", False, None, ["123456789"]),
        },
        detection=DetectionPatterns(
            required_headers=["DATE", "SYMBOL", "SIDE", "QTY"],
            value_patterns={
                "SIDE": r"(?i)^(BUY|SELL|B|S)$",
                "PRICE": r"^\$?[\d,]+\.?\d*$",
            },
        ),
    )


def _etrade_format() -> BrokerFormat:
    return BrokerFormat(
        id="etrade-transactions",
        name="E*TRADE Transaction Export",
        broker_name="E*TRADE",
        broker_type="E_TRADE",
        description="E*TRADE transaction history",
        confidence=0.9,
        field_mappings={
            "TransactionDate": FieldMapping("order_executed_time", "date", True, "parse_date", ["01/15/2025"]),
            "TransactionTime": FieldMapping("trade_time", "string", False, None, ["9:30:00 AM"]),
            "Symbol": FieldMapping("symbol", "string", True, None, ["AAPL"]),
            "Action": FieldMapping("side", "string", True, "standard_side", ["Buy", "Sell"]),
            "Quantity": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["100"]),
            "Price": FieldMapping("limit_price", "number", False, None, ["150.25"]),
            "Amount": FieldMapping("net_amount", "number", False, None, ["15025.00"]),
            "Commission": FieldMapping("commission", "number", False, None, ["4.95"]),
            "AccountNumber": FieldMapping("account_id", "string", False, None, ["12345-6789"]),
        },
        detection=DetectionPatterns(
            required_headers=["TransactionDate", "Symbol", "Action", "Quantity"],
            value_patterns={"Action": r"(?i)^(Buy|Sell|Short|Cover)$"},
        ),
    )


def _trade_voyager_format() -> BrokerFormat:
    return BrokerFormat(
        id="trade-voyager-orders",
        name="Trade Voyager Orders",
        broker_name="Trade Voyager",
        broker_type="TRADE_VOYAGER",
        description="Trade Voyager order executions with account and routing",
        confidence=0.95,
        field_mappings={
            "TradeID": FieldMapping("order_id", "string", True, None, ["75003"]),
            "OrderID": FieldMapping("parent_order_id", "string", False, None, ["74769"]),
            "Trader": FieldMapping("account_id", "string", False, None, ["15414"]),
            "Account": FieldMapping("order_account", "string", True, None, ["15414"]),
            "Branch": FieldMapping("tags", "string", False, None, ["STG"]),
            "route": FieldMapping("order_route", "string", False, None, ["ARCA"]),
            "bkrsym": FieldMapping("broker_metadata", "string", False, None, ["ARCX"]),
            "rrno": FieldMapping("broker_metadata", "string", False, None, [""]),
            "B/S": FieldMapping("side", "string", True, "order_execution_side", ["B", "S"]),
            "SHORT": FieldMapping("broker_metadata", "string", False, None, ["N", "Y"]),
            "Market": FieldMapping("order_type", "string", False, "order_type", ["Lmt", "Mkt"]),
            "symb": FieldMapping("symbol", "string", True, None, ["HOOD"]),
            "qty": FieldMapping("order_quantity", "number", True, None, ["14"]),
            "price": FieldMapping("limit_price", "number", False, None, ["43.23"]),
            "time": FieldMapping("order_executed_time", "date", True, "parse_order_datetime", ["04/22/25 12:08:30"]),
        },
        detection=DetectionPatterns(
            required_headers=["TradeID", "Account", "B/S", "symb", "qty", "time"],
            value_patterns={
                "B/S": r"(?i)^(B|S)$",
                "Market": r"(?i)^(Lmt|Mkt|Stp)$",
                "time": r"^\d{2}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}$",
            },
        ),
    )


def _schwab_todays_trades_format() -> BrokerFormat:
    return BrokerFormat(
        id="schwab-todays-trades",
        name="Schwab Today's Trade Activity",
        broker_name="Charles Schwab",
        broker_type="CHARLES_SCHWAB",
        description="Multi-section Today's Trade Activity export",
        confidence=0.95,
        field_mappings={
            "Time Placed": FieldMapping("order_placed_time", "date", False, "parse_schwab_datetime", ["9/25/24 10:15:02"]),
            "Exec Time": FieldMapping("order_executed_time", "date", False, "parse_schwab_datetime", ["9/25/24 09:31:36"]),
            "Time Canceled": FieldMapping("order_cancelled_time", "date", False, "parse_schwab_datetime", ["9/25/24 09:33:45"]),
            "Spread": FieldMapping("spread", "string", False, None, ["STOCK"]),
            "Side": FieldMapping("side", "string", True, "schwab_side", ["BUY", "SELL"]),
            "Qty": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["+100", "-25"]),
            "Pos Effect": FieldMapping("position_effect", "string", False, None, ["TO OPEN"]),
            "Symbol": FieldMapping("symbol", "string", True, None, ["OCTO"]),
            "Exp": FieldMapping("expiration", "string", False, None, ["12/20/24"]),
            "Strike": FieldMapping("strike", "number", False, None, ["150"]),
            "Type": FieldMapping("asset_class", "string", False, None, ["STOCK", "CALL"]),
            "Price": FieldMapping("limit_price", "number", False, "schwab_price", ["4.29", "~"]),
            "PRICE": FieldMapping("limit_price", "number", False, "schwab_price", ["4.50", "~"]),
            "Net Price": FieldMapping("broker_metadata", "number", False, "schwab_price", ["4.29"]),
            "Order Type": FieldMapping("order_type", "string", False, "schwab_order_type", ["LMT", "STP"]),
            "TIF": FieldMapping("time_in_force", "string", False, None, ["DAY", "GTC"]),
            "Status": FieldMapping("order_status", "string", False, None, ["OPEN", "CANCELED"]),
            "Mark": FieldMapping("broker_metadata", "number", False, None, ["4.50"]),
            "Notes": FieldMapping("order_notes", "string", False, None, [""]),
        },
        detection=DetectionPatterns(
            required_headers=["Spread", "Side", "Qty", "Symbol"],
            value_patterns={
                "Side": r"(?i)^(BUY|SELL)$",
                "Qty": r"^[+\-]?\d+$",
                "Pos Effect": r"(?i)^TO (OPEN|CLOSE)$",
                "TIF": r"(?i)^(DAY|GTC|IOC|FOK)$",
                "Spread": r"(?i)^(STOCK|OPTION)$",
            },
            file_pattern=FILE_SIGNATURE.pattern,
            section_markers=list(SECTION_TITLES),
        ),
    )


def _schwab_transactions_format() -> BrokerFormat:
    return BrokerFormat(
        id="schwab-transactions",
        name="Charles Schwab CSV export",
        broker_name="Charles Schwab",
        broker_type="CHARLES_SCHWAB",
        description="Schwab account history (transactions) export",
        confidence=0.9,
        field_mappings={
            "Date": FieldMapping("order_executed_time", "date", True, "parse_date", ["01/15/2025"]),
            "Action": FieldMapping("side", "string", True, "standard_side", ["Buy", "Sell to Close"]),
            "Symbol": FieldMapping("symbol", "string", True, None, ["AAPL"]),
            "Description": FieldMapping("broker_metadata", "string", False, None, ["APPLE INC"]),
            "Quantity": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["100"]),
            "Price": FieldMapping("limit_price", "number", True, "remove_currency", ["$150.25"]),
            "Fees & Comm": FieldMapping("commission", "number", False, "remove_currency", ["$0.65"]),
            "Amount": FieldMapping("net_amount", "number", False, "remove_currency", ["-$15,025.00"]),
        },
        detection=DetectionPatterns(
            required_headers=["Date", "Action", "Symbol", "Quantity", "Price"],
            value_patterns={"Action": r"(?i)^(Buy|Sell)( to (Open|Close))?$"},
        ),
    )


def _robinhood_format() -> BrokerFormat:
    return BrokerFormat(
        id="robinhood-activity",
        name="Robinhood CSV export",
        broker_name="Robinhood",
        broker_type="ROBINHOOD",
        description="Robinhood account activity report",
        confidence=0.9,
        field_mappings={
            "Activity Date": FieldMapping("order_executed_time", "date", True, "parse_date", ["1/15/2025"]),
            "Process Date": FieldMapping("broker_metadata", "string", False, None, ["1/16/2025"]),
            "Settle Date": FieldMapping("broker_metadata", "string", False, None, ["1/17/2025"]),
            "Instrument": FieldMapping("symbol", "string", True, None, ["AAPL"]),
            "Description": FieldMapping("broker_metadata", "string", False, None, ["Apple"]),
            "Trans Code": FieldMapping("side", "string", True, "standard_side", ["Buy", "Sell"]),
            "Quantity": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["10"]),
            "Price": FieldMapping("limit_price", "number", True, "remove_currency", ["$150.25"]),
            "Amount": FieldMapping("net_amount", "number", False, "remove_currency", ["($1,502.50)"]),
        },
        detection=DetectionPatterns(
            required_headers=["Activity Date", "Instrument", "Trans Code", "Quantity", "Price"],
            value_patterns={"Trans Code": r"(?i)^(BUY|SELL|B|S|SLD)$"},
        ),
    )


def _trading212_new_format() -> BrokerFormat:
    return BrokerFormat(
        id="trading212-2024",
        name="Trading212 (2024+ format)",
        broker_name="Trading212",
        broker_type="TRADING212",
        confidence=0.9,
        field_mappings={
            "Date": FieldMapping("order_executed_time", "date", True, "parse_date", ["2024-03-01 14:02:11"]),
            "Ticker": FieldMapping("symbol", "string", True, None, ["AAPL"]),
            "Type": FieldMapping("side", "string", True, "standard_side", ["Market buy"]),
            "Quantity": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["1.5"]),
            "Price per share": FieldMapping("limit_price", "number", True, "remove_currency", ["USD 150.25"]),
            "Total Amount": FieldMapping("net_amount", "number", False, "remove_currency", ["225.37"]),
            "Currency": FieldMapping("broker_metadata", "string", False, None, ["USD"]),
        },
        detection=DetectionPatterns(
            required_headers=["Date", "Ticker", "Type", "Quantity", "Price per share"],
            value_patterns={"Type": r"(?i)^((market|limit|stop) )?(buy|sell)$"},
        ),
    )


def _trading212_classic_format() -> BrokerFormat:
    return BrokerFormat(
        id="trading212-classic",
        name="Trading212 (classic format)",
        broker_name="Trading212",
        broker_type="TRADING212",
        confidence=0.9,
        field_mappings={
            "Action": FieldMapping("side", "string", True, "standard_side", ["Market buy"]),
            "Time": FieldMapping("order_executed_time", "date", True, "parse_date", ["2023-05-02 15:31:02"]),
            "ISIN": FieldMapping("broker_metadata", "string", False, None, ["US0378331005"]),
            "Ticker": FieldMapping("symbol", "string", True, None, ["AAPL"]),
            "Name": FieldMapping("broker_metadata", "string", False, None, ["Apple"]),
            "No. of shares": FieldMapping("order_quantity", "number", True, "absolute_quantity", ["2"]),
            "Price / share": FieldMapping("limit_price", "number", True, "remove_currency", ["169.59"]),
            "Currency (Price / share)": FieldMapping("broker_metadata", "string", False, None, ["USD"]),
            "ID": FieldMapping("order_id", "string", False, None, ["EOF123"]),
        },
        detection=DetectionPatterns(
            required_headers=["Time", "Ticker", "Action", "No. of shares", "Price / share"],
            value_patterns={"Action": r"(?i)^((market|limit|stop) )?(buy|sell)$"},
        ),
    )
