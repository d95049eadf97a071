"""Broker format registry: known CSV layouts and where they are stored.

A ``BrokerFormat`` describes one broker export layout: which columns map
to which canonical fields, how to recognise the layout, and how often it
has been used successfully. Formats come from two places:

1. Seed formats shipped in ``ingestion.seed_formats``
2. Learned formats created when a user approves an AI/user mapping

Storage is behind ``FormatRepository`` so the detector never cares where
formats live. ``SupabaseFormatRepository`` persists to the
``broker_formats`` table; ``InMemoryFormatRepository`` serves local dev
and tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ingestion.fields import BROKER_METADATA
from ingestion.models import ColumnMapping
from storage.supabase_client import BROKER_FORMATS_TABLE, _get_client

logger = logging.getLogger(__name__)

GENERIC_BROKER_TYPE = "GENERIC_CSV"

# Canonical broker type -> names/aliases users type in
_BROKER_ALIASES: dict[str, tuple[str, ...]] = {
    "INTERACTIVE_BROKERS": ("interactive brokers", "ibkr", "ib", "interactivebrokers"),
    "TD_AMERITRADE": ("td ameritrade", "tda", "td", "ameritrade", "thinkorswim"),
    "E_TRADE": ("e*trade", "etrade", "e-trade", "e trade"),
    "CHARLES_SCHWAB": ("charles schwab", "schwab", "schw"),
    "TRADE_VOYAGER": ("trade voyager", "tradevoyager"),
    "ROBINHOOD": ("robinhood",),
    "TRADING212": ("trading212", "trading 212", "t212"),
}


def find_broker_type(broker_name: Optional[str]) -> str:
    """Resolve a free-text broker name or alias to a broker type."""
    if not broker_name:
        return GENERIC_BROKER_TYPE
    key = broker_name.strip().lower()
    for broker_type, aliases in _BROKER_ALIASES.items():
        if key in aliases or key == broker_type.lower():
            return broker_type
    return GENERIC_BROKER_TYPE


def header_signature(headers: list[str]) -> str:
    """Lowercase, sort and pipe-join column names into a fingerprint."""
    return "|".join(sorted(h.strip().lower() for h in headers))


def updated_success_rate(rate: float, count: int, success: bool) -> float:
    """Fold one more use into a running success rate."""
    successes = round(rate * count) + (1 if success else 0)
    return successes / (count + 1)


# ---------------------------------------------------------------------------
# Format model
# ---------------------------------------------------------------------------


@dataclass
class FieldMapping:
    target_field: str
    data_type: str = "string"
    required: bool = False
    transformer: Optional[str] = None
    examples: list[str] = field(default_factory=list)


@dataclass
class DetectionPatterns:
    required_headers: list[str]
    # column -> regex source; use inline (?i) for case-insensitive rules
    value_patterns: dict[str, str] = field(default_factory=dict)
    # whole-file signature + section titles for multi-section exports
    file_pattern: Optional[str] = None
    section_markers: list[str] = field(default_factory=list)

    def compiled_value_patterns(self) -> dict[str, re.Pattern]:
        return {col: re.compile(p) for col, p in self.value_patterns.items()}


@dataclass
class BrokerFormat:
    id: str
    name: str
    broker_name: str
    field_mappings: dict[str, FieldMapping]
    detection: DetectionPatterns
    broker_type: str = GENERIC_BROKER_TYPE
    confidence: float = 0.95
    version: int = 1
    description: str = ""
    fingerprint: str = ""
    headers: list[str] = field(default_factory=list)
    usage_count: int = 0
    success_rate: float = 1.0
    source: str = "seed"  # seed | user | ai
    last_used_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = header_signature(self.detection.required_headers)

    @property
    def is_sectioned(self) -> bool:
        return bool(self.detection.file_pattern)

    @property
    def known_headers(self) -> list[str]:
        return self.headers or list(self.field_mappings)

    def column_mappings(self) -> list[ColumnMapping]:
        """Expand field mappings into pipeline mappings.

        Declaration order is priority order: when two columns target the
        same field, the one declared first wins.
        """
        total = len(self.field_mappings)
        return [
            ColumnMapping(
                source_column=col,
                target_column=fm.target_field,
                confidence=self.confidence,
                priority=total - i,
                data_type=fm.data_type,
                transformer=fm.transformer,
            )
            for i, (col, fm) in enumerate(self.field_mappings.items())
        ]

    def to_dict(self) -> dict[str, Any]:
        """Row shape for the ``broker_formats`` table."""
        return {
            "id": self.id,
            "name": self.name,
            "broker_name": self.broker_name,
            "broker_type": self.broker_type,
            "description": self.description,
            "version": self.version,
            "fingerprint": self.fingerprint,
            "confidence": self.confidence,
            "field_mappings": {
                col: {
                    "target_field": fm.target_field,
                    "data_type": fm.data_type,
                    "required": fm.required,
                    "transformer": fm.transformer,
                    "examples": fm.examples,
                }
                for col, fm in self.field_mappings.items()
            },
            "detection_patterns": {
                "required_headers": self.detection.required_headers,
                "value_patterns": self.detection.value_patterns,
                "file_pattern": self.detection.file_pattern,
                "section_markers": self.detection.section_markers,
            },
            "headers": self.headers,
            "usage_count": self.usage_count,
            "success_rate": self.success_rate,
            "source": self.source,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> BrokerFormat:
        mappings = row.get("field_mappings") or {}
        if isinstance(mappings, str):
            mappings = json.loads(mappings)
        patterns = row.get("detection_patterns") or {}
        if isinstance(patterns, str):
            patterns = json.loads(patterns)

        return cls(
            id=row["id"],
            name=row.get("name", row["id"]),
            broker_name=row.get("broker_name", ""),
            broker_type=row.get("broker_type") or GENERIC_BROKER_TYPE,
            description=row.get("description") or "",
            version=int(row.get("version") or 1),
            fingerprint=row.get("fingerprint") or "",
            confidence=float(row.get("confidence") or 0.95),
            field_mappings={
                col: FieldMapping(
                    target_field=m["target_field"],
                    data_type=m.get("data_type") or "string",
                    required=bool(m.get("required", False)),
                    transformer=m.get("transformer"),
                    examples=list(m.get("examples") or []),
                )
                for col, m in mappings.items()
            },
            detection=DetectionPatterns(
                required_headers=list(patterns.get("required_headers") or []),
                value_patterns=dict(patterns.get("value_patterns") or {}),
                file_pattern=patterns.get("file_pattern"),
                section_markers=list(patterns.get("section_markers") or []),
            ),
            headers=list(row.get("headers") or []),
            usage_count=int(row.get("usage_count") or 0),
            success_rate=float(row.get("success_rate", 1.0) or 0.0),
            source=row.get("source") or "seed",
            last_used_at=row.get("last_used_at"),
        )


def create_format_from_mapping(
    mappings: list[ColumnMapping],
    broker_name: str,
    headers: list[str],
    sample_rows: list[dict[str, str]],
    *,
    existing: list[BrokerFormat] = (),
    source: str = "user",
    confidence: float = 1.0,
) -> BrokerFormat:
    """Build a learned format from an approved column mapping.

    Metadata-only columns stay in ``headers`` (so the layout is still
    recognised) but do not become required.
    """
    field_mappings: dict[str, FieldMapping] = {}
    for m in mappings:
        examples = [
            str(row.get(m.source_column))
            for row in sample_rows
            if row.get(m.source_column)
        ][:3]
        field_mappings[m.source_column] = FieldMapping(
            target_field=m.target_column,
            data_type=m.data_type,
            required=m.target_column != BROKER_METADATA,
            transformer=m.transformer,
            examples=examples,
        )

    required = [col for col, fm in field_mappings.items() if fm.required]
    fingerprint = header_signature(required)
    digest = hashlib.sha256(
        f"{broker_name.strip().lower()}|{fingerprint}".encode()
    ).hexdigest()[:10]

    same_broker = [f for f in existing if f.broker_name.lower() == broker_name.lower()]

    return BrokerFormat(
        id=f"custom-{digest}",
        name=f"{broker_name} Format {len(same_broker) + 1}",
        broker_name=broker_name,
        broker_type=find_broker_type(broker_name),
        description=f"Learned from a {source} mapping",
        field_mappings=field_mappings,
        detection=DetectionPatterns(required_headers=required),
        fingerprint=fingerprint,
        confidence=confidence,
        headers=list(headers),
        source=source,
        last_used_at=datetime.now(timezone.utc).isoformat(),
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class FormatRepository(ABC):
    """Where broker formats live. Order of ``list()`` is detection order."""

    @abstractmethod
    def list(self) -> list[BrokerFormat]:
        ...

    @abstractmethod
    def add(self, fmt: BrokerFormat) -> BrokerFormat:
        """Insert or replace a format (keyed by id)."""

    def get(self, format_id: str) -> Optional[BrokerFormat]:
        for fmt in self.list():
            if fmt.id == format_id:
                return fmt
        return None

    def record_usage(self, format_id: str, success: bool) -> Optional[BrokerFormat]:
        """Bump usage count and fold the outcome into the success rate."""
        fmt = self.get(format_id)
        if fmt is None:
            logger.warning("[FormatRegistry] Usage for unknown format %s", format_id)
            return None
        fmt.success_rate = updated_success_rate(fmt.success_rate, fmt.usage_count, success)
        fmt.usage_count += 1
        fmt.last_used_at = datetime.now(timezone.utc).isoformat()
        return self.add(fmt)


class InMemoryFormatRepository(FormatRepository):
    def __init__(self, formats: Optional[list[BrokerFormat]] = None, *, seed: bool = True) -> None:
        self._formats: dict[str, BrokerFormat] = {}
        if seed:
            from ingestion.seed_formats import get_seed_formats
            for fmt in get_seed_formats():
                self._formats[fmt.id] = fmt
        for fmt in formats or []:
            self._formats[fmt.id] = fmt

    def list(self) -> list[BrokerFormat]:
        return list(self._formats.values())

    def add(self, fmt: BrokerFormat) -> BrokerFormat:
        self._formats[fmt.id] = fmt
        return fmt


class SupabaseFormatRepository(FormatRepository):
    """Seeds + ``broker_formats`` rows, cached in memory after first load.

    Stored rows override seeds with the same id. Writes go to the cache
    first and to Supabase best-effort, so a Supabase outage never blocks
    an import.
    """

    def __init__(self, client: Any = None) -> None:
        self._client = client
        self._cache: dict[str, BrokerFormat] = {}
        self._loaded = False

    def _get_supabase(self):
        if self._client is not None:
            return self._client
        return _get_client()

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        from ingestion.seed_formats import get_seed_formats
        for fmt in get_seed_formats():
            self._cache[fmt.id] = fmt

        try:
            stored = self._load_stored()
            for fmt in stored:
                self._cache[fmt.id] = fmt
            if stored:
                logger.info("[FormatRegistry] Loaded %d formats from Supabase", len(stored))
        except Exception:
            logger.warning("[FormatRegistry] Supabase format load failed (non-fatal)", exc_info=True)

        self._loaded = True
        logger.info("[FormatRegistry] %d broker formats loaded (seed + stored)", len(self._cache))

    def _load_stored(self) -> list[BrokerFormat]:
        client = self._get_supabase()
        if client is None:
            return []

        resp = (
            client.table(BROKER_FORMATS_TABLE)
            .select("*")
            .order("usage_count", desc=True)
            .execute()
        )
        formats = []
        for row in resp.data or []:
            try:
                formats.append(BrokerFormat.from_dict(row))
            except (KeyError, TypeError, ValueError, json.JSONDecodeError):
                logger.debug("[FormatRegistry] Skipping invalid format row: %s", row.get("id"))
        return formats

    def list(self) -> list[BrokerFormat]:
        self._ensure_loaded()
        return list(self._cache.values())

    def add(self, fmt: BrokerFormat) -> BrokerFormat:
        self._ensure_loaded()
        self._cache[fmt.id] = fmt

        try:
            client = self._get_supabase()
            if client:
                client.table(BROKER_FORMATS_TABLE).upsert(fmt.to_dict()).execute()
                logger.info("[FormatRegistry] Saved format '%s' to Supabase", fmt.id)
        except Exception:
            logger.warning("[FormatRegistry] Supabase format save failed for %s", fmt.id, exc_info=True)
        return fmt
