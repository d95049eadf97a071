"""Trade CSV ingestion and broker-format detection.

Turns an arbitrary brokerage CSV export into normalized orders/trades:
1. Parse the file (flat CSV or Schwab multi-section activity export)
2. Score it against the broker format registry
3. Pick a mapping strategy (registry, standard layout, learned layout, AI, user)
4. Transform rows, skip duplicates, persist, track the batch lifecycle
"""

from ingestion.errors import (
    AdapterFailure,
    IngestionError,
    ParseError,
    RowError,
    ValidationError,
)
from ingestion.models import ColumnMapping, IngestionResult, ValidationResult

# The service pulls in storage + the anthropic SDK; import it directly:
#   from ingestion.orchestrator import IngestionService

__all__ = [
    "AdapterFailure",
    "ColumnMapping",
    "IngestionError",
    "IngestionResult",
    "ParseError",
    "RowError",
    "ValidationError",
    "ValidationResult",
]
