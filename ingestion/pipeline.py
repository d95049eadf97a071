"""Apply a resolved column mapping to raw CSV rows.

The TransformerPipeline turns ``{column: cell}`` dicts into
``NormalizedOrder`` records:

- Mappings run in priority order (then confidence); the first mapping to
  fill a field wins and later ones for that field are logged as conflicts
- ``broker_metadata`` mappings accumulate into a side-channel dict
- Cells are typed by the mapping's transformer, else by its data type;
  a cell that fails coercion leaves its field unfilled
- Executed time falls back to placed time, then cancel time, then now;
  a cancelled order with no placed time keeps a stable key for the
  duplicate guard
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ingestion.errors import MappingConflict, RowError
from ingestion.fields import BROKER_METADATA
from ingestion.models import ColumnMapping, NormalizedOrder
from ingestion.transformers import (
    coerce,
    normalize_side,
    order_side,
    parse_datetime,
    parse_number,
    parse_time_of_day,
    resolve_transformer,
)

logger = logging.getLogger(__name__)

_NUMBER_FIELDS = {
    "order_quantity", "limit_price", "stop_price", "commission",
    "net_amount", "realized_pnl", "strike",
}
_DATE_FIELDS = {
    "order_placed_time", "order_executed_time", "order_updated_time",
    "order_cancelled_time",
}
_STRING_FIELDS = {
    "order_type", "order_status", "time_in_force", "order_id",
    "parent_order_id", "trade_id", "account_id", "order_account",
    "order_route",
}
_UPPER_FIELDS = {"order_type", "order_status", "time_in_force"}

# Targets that have no column on NormalizedOrder; kept in broker_metadata
_EXTRA_FIELDS = {
    "commission", "net_amount", "realized_pnl", "position_effect",
    "asset_class", "expiration", "strike", "spread", "order_notes",
}


def order_mappings(mappings: list[ColumnMapping]) -> list[ColumnMapping]:
    """Priority desc, confidence desc, then column name for a stable order."""
    return sorted(
        mappings,
        key=lambda m: (-m.priority, -m.confidence, m.source_column),
    )


class TransformerPipeline:
    """Map rows through one resolved set of column mappings."""

    def __init__(self, mappings: list[ColumnMapping]) -> None:
        self.mappings = order_mappings(mappings)
        # Resolve transformer names up front so a bad name fails the mapping,
        # not every row
        self._transformers: list[Optional[Callable[[str], Any]]] = [
            resolve_transformer(m.transformer) for m in self.mappings
        ]
        self.conflicts: list[MappingConflict] = []

    def map_row(self, row: dict[str, str]) -> dict[str, Any]:
        """Apply mappings to one row; returns {field: typed value}."""
        lookup = {k.strip().lower(): k for k in row}
        values: dict[str, Any] = {}
        filled_by: dict[str, str] = {}
        metadata: dict[str, Any] = {}
        tags: list[str] = []

        for position, m in enumerate(self.mappings):
            key = m.source_column if m.source_column in row else lookup.get(m.source_column.strip().lower())
            if key is None:
                continue
            raw = row.get(key)
            if raw is None or str(raw).strip() == "":
                continue

            target = m.target_column
            if target in filled_by:
                conflict = MappingConflict(target, filled_by[target], m.source_column)
                self.conflicts.append(conflict)
                logger.debug("[Pipeline] Mapping conflict: %s", conflict)
                continue

            value = self._apply(position, m, raw)

            if target == BROKER_METADATA:
                metadata[m.source_column] = value if value is not None else str(raw).strip()
                continue
            if target == "tags":
                if value is not None:
                    tags.append(str(value))
                continue
            if value is None:
                continue

            values[target] = value
            filled_by[target] = m.source_column

        values[BROKER_METADATA] = metadata
        values["tags"] = tags
        return values

    def _apply(self, position: int, mapping: ColumnMapping, raw: str) -> Any:
        fn = self._transformers[position]
        if fn is not None:
            value = fn(raw)
        else:
            value = coerce(raw, mapping.data_type)

        # Canonical fields get their canonical type whatever was declared
        target = mapping.target_column
        if isinstance(value, str):
            if target in _NUMBER_FIELDS:
                return parse_number(value)
            if target in _DATE_FIELDS:
                return parse_datetime(value)
        return value

    def to_order(
        self,
        row: dict[str, str],
        row_index: int,
        *,
        user_id: str,
        broker_type: str,
        batch_id: str,
        account_tags: list[str] = (),
        defaults: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> NormalizedOrder:
        """Map one row into an order.

        Raises:
            RowError: missing/invalid symbol, side or quantity.
            NonTradeRow: the row is a cash movement.
        """
        try:
            values = self.map_row(row)
        except (TypeError, ValueError) as e:
            raise RowError(row_index, str(e)) from None

        for key, value in (defaults or {}).items():
            if key == BROKER_METADATA:
                for mk, mv in value.items():
                    values[BROKER_METADATA].setdefault(mk, mv)
            else:
                values.setdefault(key, value)

        symbol = str(values.get("symbol") or "").strip().upper()
        if not symbol:
            raise RowError(row_index, "Missing symbol")

        raw_side = values.get("side")
        if raw_side is None:
            raise RowError(row_index, "Missing side")
        try:
            side = order_side(normalize_side(raw_side))
        except ValueError as e:
            raise RowError(row_index, str(e)) from None

        quantity = values.get("order_quantity")
        if quantity is None or abs(quantity) == 0:
            raise RowError(row_index, "Missing or zero quantity")

        executed = _derive_executed_time(values, now)

        metadata = dict(values[BROKER_METADATA])
        for extra in _EXTRA_FIELDS:
            if extra in values:
                v = values[extra]
                metadata[extra] = v.isoformat() if isinstance(v, datetime) else v

        order = NormalizedOrder(
            symbol=symbol,
            side=side,
            order_quantity=abs(float(quantity)),
            order_executed_time=executed,
            limit_price=values.get("limit_price"),
            stop_price=values.get("stop_price"),
            order_placed_time=values.get("order_placed_time"),
            order_updated_time=values.get("order_updated_time"),
            order_cancelled_time=values.get("order_cancelled_time"),
            broker_metadata=metadata,
            tags=list(account_tags) + values["tags"],
            broker_type=broker_type,
            import_batch_id=batch_id,
            user_id=user_id,
        )
        for name in _STRING_FIELDS:
            if name in values:
                text = str(values[name]).strip()
                setattr(order, name, text.upper() if name in _UPPER_FIELDS else text)
        return order


def _derive_executed_time(values: dict[str, Any], now: Optional[datetime]) -> datetime:
    """Executed time if mapped, else placed time (or cancel time), else now."""
    executed = values.get("order_executed_time")
    if not isinstance(executed, datetime):
        executed = values.get("order_placed_time") or values.get("order_cancelled_time")
    if not isinstance(executed, datetime):
        return now or datetime.now()

    # Date-only column plus a separate time-of-day column
    trade_time = values.get("trade_time")
    if trade_time and executed.hour == executed.minute == executed.second == 0:
        hms = parse_time_of_day(trade_time)
        if hms:
            executed = executed.replace(hour=hms[0], minute=hms[1], second=hms[2])
    return executed
