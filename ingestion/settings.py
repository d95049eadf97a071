"""Runtime configuration for the ingestion engine.

Reads from environment:
    ANTHROPIC_API_KEY           – enables the Claude mapping adapter
    INGEST_CLAUDE_MODEL         – model id for mapping proposals
    INGEST_AI_TIMEOUT_SECONDS   – upper bound on one adapter call
    INGEST_MAX_FILE_BYTES       – optional lower hard cap on upload size

Supabase credentials are read by ``storage.supabase_client``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ─── File size tiers ─────────────────────────────────────────────────────────
INLINE_MAX_BYTES = 5 * 1024 * 1024
BACKGROUND_MAX_BYTES = 50 * 1024 * 1024
HARD_MAX_BYTES = 100 * 1024 * 1024

SIZE_TIER_INLINE = "inline"
SIZE_TIER_BACKGROUND = "background"
SIZE_TIER_OVERSIZED = "oversized"

# ─── Review policy ───────────────────────────────────────────────────────────
# AI-proposed mappings are never persisted without a human approving them.
ALWAYS_REVIEW_AI_MAPPINGS = True

SAMPLE_ROW_COUNT = 5

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_AI_TIMEOUT_SECONDS = 30.0


def size_tier(num_bytes: int, max_bytes: int = HARD_MAX_BYTES) -> str:
    """Classify an upload size into a processing tier.

    Anything above ``BACKGROUND_MAX_BYTES`` but within the hard cap is
    still reported as background; the caller decides how to schedule it.
    """
    if num_bytes > max_bytes:
        return SIZE_TIER_OVERSIZED
    if num_bytes <= INLINE_MAX_BYTES:
        return SIZE_TIER_INLINE
    return SIZE_TIER_BACKGROUND


@dataclass(frozen=True)
class IngestionSettings:
    anthropic_api_key: str | None = None
    claude_model: str = DEFAULT_CLAUDE_MODEL
    ai_timeout_seconds: float = DEFAULT_AI_TIMEOUT_SECONDS
    max_file_bytes: int = HARD_MAX_BYTES

    @classmethod
    def from_env(cls) -> IngestionSettings:
        timeout = DEFAULT_AI_TIMEOUT_SECONDS
        raw_timeout = os.environ.get("INGEST_AI_TIMEOUT_SECONDS")
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                logger.warning(
                    "[Settings] Ignoring invalid INGEST_AI_TIMEOUT_SECONDS=%r",
                    raw_timeout,
                )

        max_bytes = HARD_MAX_BYTES
        raw_max = os.environ.get("INGEST_MAX_FILE_BYTES")
        if raw_max:
            try:
                # Can only tighten the hard cap, never raise it
                max_bytes = min(int(raw_max), HARD_MAX_BYTES)
            except ValueError:
                logger.warning(
                    "[Settings] Ignoring invalid INGEST_MAX_FILE_BYTES=%r", raw_max,
                )

        return cls(
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
            claude_model=os.environ.get("INGEST_CLAUDE_MODEL", DEFAULT_CLAUDE_MODEL),
            ai_timeout_seconds=timeout,
            max_file_bytes=max_bytes,
        )
