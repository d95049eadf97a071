"""Supabase connection shared by the ingestion stores and the format registry.

Environment:
    SUPABASE_URL          – project URL (e.g. https://xxx.supabase.co)
    SUPABASE_SERVICE_KEY  – service_role key (writes bypass RLS)

Two ways to get a client:
- ``_get_client()`` returns None when unconfigured; the format registry
  uses it and keeps working from its seeds
- ``require_client()`` raises instead; batch and order writes must not be
  dropped silently
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

# ─── Tables ──────────────────────────────────────────────────────────────────
BATCHES_TABLE = "import_batches"
UPLOAD_LOGS_TABLE = "csv_upload_logs"
REVIEWS_TABLE = "pending_reviews"
ORDERS_TABLE = "orders"
TRADES_TABLE = "trades"
FEEDBACK_TABLE = "mapping_feedback"
BROKER_FORMATS_TABLE = "broker_formats"

_client = None
_initialized = False


class SupabaseNotConfigured(RuntimeError):
    pass


def _get_client():
    """Lazy-init the client once per process. None if credentials are missing."""
    global _client, _initialized
    if _initialized:
        return _client
    _initialized = True

    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_KEY")
    if not url or not key:
        logger.info("[Supabase] Not configured; batches and formats stay in memory")
        return None

    try:
        from supabase import create_client
        _client = create_client(url, key)
        logger.info("[Supabase] Client ready for %s", url)
    except Exception:
        logger.exception("[Supabase] Client init failed for %s", url)
        _client = None
    return _client


def require_client():
    client = _get_client()
    if client is None:
        raise SupabaseNotConfigured("SUPABASE_URL / SUPABASE_SERVICE_KEY are not set")
    return client


def is_configured() -> bool:
    return _get_client() is not None


def reset_client() -> None:
    """Forget the cached client so the next call re-reads the environment."""
    global _client, _initialized
    _client = None
    _initialized = False
