"""Skip rows that were already imported for this user.

The key is (user, symbol, quantity, executed time, broker type). The
lookup goes to the store at write time, so a second import of the same
file, or a Schwab order repeated across sections, is a no-op.
"""

from __future__ import annotations

import logging
from typing import Union

from ingestion.models import NormalizedOrder, NormalizedTrade
from storage.ingestion_store import IngestionStore

logger = logging.getLogger(__name__)


class DuplicateGuard:
    def __init__(self, store: IngestionStore) -> None:
        self.store = store
        self.skipped = 0

    def is_duplicate(self, record: Union[NormalizedOrder, NormalizedTrade]) -> bool:
        if isinstance(record, NormalizedOrder):
            found = self.store.order_exists(
                record.user_id, record.symbol, record.order_quantity,
                record.order_executed_time, record.broker_type,
            )
        else:
            found = self.store.trade_exists(
                record.user_id, record.symbol, record.quantity,
                record.executed_time, record.broker_type,
            )
        if found:
            self.skipped += 1
            logger.debug(
                "[DuplicateGuard] Skipping %s %s already imported for %s",
                record.side, record.symbol, record.user_id,
            )
        return found
