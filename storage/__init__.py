"""Persistence for import batches, upload logs, reviews and normalized rows."""

from storage.ingestion_store import (
    IngestionStore,
    InMemoryIngestionStore,
    SupabaseIngestionStore,
)

__all__ = ["IngestionStore", "InMemoryIngestionStore", "SupabaseIngestionStore"]
