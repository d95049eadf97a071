"""AI-assisted column mapping for layouts the registry does not know.

Two adapters behind one interface:

- ``ClaudeMappingAdapter`` – asks Claude to map each CSV header onto an
  order field, one call per file
- ``HeuristicMappingAdapter`` – header-name lookup table, used when no
  ``ANTHROPIC_API_KEY`` is configured

Both apply the same post-processing:
    * mappings below 0.5 (or onto unknown fields) go to broker_metadata
    * a header mapped to order_executed_time that does not look like an
      execution timestamp is demoted to order_placed_time
    * overall confidence weights critical fields 3x

Whatever either adapter proposes is only ever a proposal: the service
parks the batch for human review before a single row is written.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from ingestion.errors import AdapterFailure
from ingestion.fields import (
    BROKER_METADATA,
    CRITICAL_FIELDS,
    ORDER_FIELDS,
    field_weight,
    is_execution_header,
)
from ingestion.models import MappingProposal
from ingestion.settings import (
    DEFAULT_AI_TIMEOUT_SECONDS,
    DEFAULT_CLAUDE_MODEL,
    IngestionSettings,
)

logger = logging.getLogger(__name__)

MIN_FIELD_CONFIDENCE = 0.5
METADATA_CONFIDENCE = 0.1
HEURISTIC_CONFIDENCE = 0.3


class MappingAdapter(ABC):
    """Proposes a column → field mapping for an unrecognised layout."""

    source = "adapter"

    @abstractmethod
    def propose_mapping(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name_hint: Optional[str] = None,
    ) -> MappingProposal:
        ...


# ─── Shared post-processing ──────────────────────────────────────────────────


def _finalize_mappings(
    headers: list[str], raw: dict[str, Any],
) -> dict[str, dict[str, Any]]:
    """Apply the metadata floor and execution-time demotion to raw proposals."""
    out: dict[str, dict[str, Any]] = {}
    for header in headers:
        entry = raw.get(header)
        if not isinstance(entry, dict):
            entry = {}
        field = entry.get("field")
        try:
            confidence = float(entry.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))
        reasoning = entry.get("reasoning") or ""

        if field not in ORDER_FIELDS or confidence < MIN_FIELD_CONFIDENCE:
            out[header] = {
                "field": BROKER_METADATA,
                "confidence": confidence if field else METADATA_CONFIDENCE,
                "reasoning": reasoning or "Low confidence mapping - storing in broker_metadata",
            }
            continue

        if field == "order_executed_time" and not is_execution_header(header):
            logger.info(
                "[AIMapper] '%s' is not an execution timestamp; mapping to order_placed_time",
                header,
            )
            field = "order_placed_time"

        out[header] = {"field": field, "confidence": confidence, "reasoning": reasoning}
    return out


def overall_confidence(mappings: dict[str, dict[str, Any]]) -> float:
    """Confidence averaged over headers, critical fields weighted 3x."""
    total = 0.0
    weight_sum = 0
    for entry in mappings.values():
        w = field_weight(entry["field"])
        total += entry["confidence"] * w
        weight_sum += w
    return round(total / weight_sum, 4) if weight_sum else 0.0


def _unmapped_critical(mappings: dict[str, dict[str, Any]]) -> list[str]:
    covered = {m["field"] for m in mappings.values()}
    return [f for f in CRITICAL_FIELDS if f not in covered]


# ─── Claude ──────────────────────────────────────────────────────────────────


class ClaudeMappingAdapter(MappingAdapter):
    source = "claude"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_CLAUDE_MODEL,
        timeout: float = DEFAULT_AI_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def propose_mapping(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name_hint: Optional[str] = None,
    ) -> MappingProposal:
        prompt = self._build_prompt(headers, sample_rows, broker_name_hint)

        try:
            response_text = self._call_claude(prompt)
        except Exception as e:
            logger.warning("[AIMapper] Claude call failed: %s", e, exc_info=True)
            raise AdapterFailure(f"AI mapping service failed: {e}") from e

        parsed = self._parse_response(response_text)
        if not parsed or not isinstance(parsed.get("mappings"), dict):
            raise AdapterFailure("AI mapping service returned an unreadable response")

        mappings = _finalize_mappings(headers, parsed["mappings"])
        proposal = MappingProposal(
            mappings=mappings,
            overall_confidence=overall_confidence(mappings),
            unmapped_fields=_unmapped_critical(mappings),
            suggestions=[str(s) for s in parsed.get("suggestions") or []],
            source=self.source,
        )
        logger.info(
            "[AIMapper] Claude mapped %d/%d headers (overall %.2f)",
            sum(1 for m in mappings.values() if m["field"] != BROKER_METADATA),
            len(headers), proposal.overall_confidence,
        )
        return proposal

    def _call_claude(self, prompt: str) -> str:
        import anthropic

        client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
        response = client.messages.create(
            model=self.model,
            max_tokens=2048,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text

    def _build_prompt(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name_hint: Optional[str],
    ) -> str:
        entries = list(ORDER_FIELDS.items())

        def _section(chunk: list[tuple[str, str]]) -> str:
            return "\n".join(f"- {name}: {desc}" for name, desc in chunk)

        broker_line = (
            f"The file was exported from {broker_name_hint}.\n\n"
            if broker_name_hint else ""
        )
        sample = ""
        if sample_rows:
            first = sample_rows[0]
            sample = "\n## SAMPLE DATA (first row)\n" + "\n".join(
                f'{h}: "{first.get(h, "")}"' for h in headers
            ) + "\n"

        return f"""You are mapping the columns of a brokerage trade CSV onto order fields.

{broker_line}## ORDER FIELDS

Critical:
{_section(entries[:5])}

Important:
{_section(entries[5:9])}

Optional:
{_section(entries[9:])}

## CSV HEADERS
{json.dumps(headers)}
{sample}
## RULES
- Map critical fields first: {", ".join(CRITICAL_FIELDS)}
- Use only field names from the list above
- Confidence 0.9-1.0 for a perfect match, 0.7-0.9 for a clear match,
  0.5-0.7 for a reasonable match, below 0.5 when unsure
- Headers below 0.5 are kept as broker metadata
- Only map to order_executed_time when the header names an execution
  (exec, execution, fill, filled, trade) time or date; otherwise prefer
  order_placed_time
- Return ONLY the JSON object, no markdown fences or explanation

## RESPONSE FORMAT
{{
  "mappings": {{
    "CSV_HEADER": {{"field": "order_field", "confidence": 0.95, "reasoning": "short reason"}}
  }},
  "overall_confidence": 0.85,
  "suggestions": ["anything notable about this format"]
}}
"""

    def _parse_response(self, text: str) -> dict[str, Any] | None:
        """Parse Claude's JSON response, handling markdown fences."""
        text = text.strip()
        if text.startswith("```"):
            first_newline = text.find("\n")
            text = text[first_newline + 1:] if first_newline != -1 else ""
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            match = re.search(r'\{[\s\S]*\}', text)
            if match:
                try:
                    return json.loads(match.group())
                except json.JSONDecodeError:
                    pass
            logger.warning("[AIMapper] Could not parse Claude response as JSON")
            return None


# ─── Heuristic fallback ──────────────────────────────────────────────────────

# lowercased header -> (field, confidence)
_HEURISTIC_MAPPINGS: dict[str, tuple[str, float]] = {
    # Symbol
    "symbol": ("symbol", 0.9),
    "ticker": ("symbol", 0.8),
    "instrument": ("symbol", 0.7),
    "stock": ("symbol", 0.7),
    # Side
    "side": ("side", 0.9),
    "buy/sell": ("side", 0.9),
    "b/s": ("side", 0.8),
    "action": ("side", 0.7),
    "direction": ("side", 0.6),
    # Quantity
    "quantity": ("order_quantity", 0.9),
    "qty": ("order_quantity", 0.9),
    "shares": ("order_quantity", 0.8),
    "volume": ("order_quantity", 0.7),
    "amount": ("order_quantity", 0.6),
    "size": ("order_quantity", 0.6),
    # Prices
    "price": ("limit_price", 0.8),
    "limit price": ("limit_price", 0.9),
    "limitprice": ("limit_price", 0.9),
    "limit": ("limit_price", 0.8),
    "execution price": ("limit_price", 0.7),
    "stop price": ("stop_price", 0.9),
    "stopprice": ("stop_price", 0.9),
    "stop": ("stop_price", 0.8),
    # Type / status
    "order type": ("order_type", 0.9),
    "ordertype": ("order_type", 0.9),
    "type": ("order_type", 0.7),
    "status": ("order_status", 0.8),
    "order status": ("order_status", 0.9),
    "orderstatus": ("order_status", 0.9),
    "state": ("order_status", 0.7),
    # Placed time
    "time placed": ("order_placed_time", 0.9),
    "timeplaced": ("order_placed_time", 0.9),
    "placed time": ("order_placed_time", 0.9),
    "order time": ("order_placed_time", 0.8),
    "submitted time": ("order_placed_time", 0.8),
    "created time": ("order_placed_time", 0.7),
    # Executed time
    "exec time": ("order_executed_time", 0.9),
    "exectime": ("order_executed_time", 0.9),
    "executed time": ("order_executed_time", 0.9),
    "executedtime": ("order_executed_time", 0.9),
    "execution time": ("order_executed_time", 0.9),
    "executiontime": ("order_executed_time", 0.9),
    "exec date": ("order_executed_time", 0.8),
    "execdate": ("order_executed_time", 0.8),
    "execution date": ("order_executed_time", 0.8),
    "executiondate": ("order_executed_time", 0.8),
    "fill time": ("order_executed_time", 0.8),
    "filltime": ("order_executed_time", 0.8),
    "filled time": ("order_executed_time", 0.8),
    "filledtime": ("order_executed_time", 0.8),
    "fill date": ("order_executed_time", 0.8),
    "filldate": ("order_executed_time", 0.8),
    "filled date": ("order_executed_time", 0.8),
    "filleddate": ("order_executed_time", 0.8),
    "trade time": ("order_executed_time", 0.7),
    "tradetime": ("order_executed_time", 0.7),
    "trade date": ("order_executed_time", 0.7),
    "tradedate": ("order_executed_time", 0.7),
    # Updated / cancelled
    "updated time": ("order_updated_time", 0.9),
    "last modified": ("order_updated_time", 0.8),
    "modified time": ("order_updated_time", 0.8),
    "cancelled time": ("order_cancelled_time", 0.9),
    "cancel time": ("order_cancelled_time", 0.8),
    # Identifiers
    "order id": ("order_id", 0.9),
    "orderid": ("order_id", 0.9),
    "id": ("order_id", 0.7),
    "order number": ("order_id", 0.8),
    "order ref": ("order_id", 0.8),
    "parent order": ("parent_order_id", 0.9),
    "parent id": ("parent_order_id", 0.8),
    "original order": ("parent_order_id", 0.7),
    "trade id": ("trade_id", 0.9),
    "tradeid": ("trade_id", 0.9),
    "group id": ("trade_id", 0.7),
    # Time in force
    "time in force": ("time_in_force", 0.9),
    "tif": ("time_in_force", 0.8),
    "duration": ("time_in_force", 0.7),
    # Account
    "account": ("account_id", 0.8),
    "account id": ("account_id", 0.9),
    "account number": ("account_id", 0.9),
    "acct": ("order_account", 0.7),
    "account name": ("order_account", 0.8),
    # Route
    "route": ("order_route", 0.8),
    "exchange": ("order_route", 0.7),
    "venue": ("order_route", 0.7),
    # Tags
    "tags": ("tags", 0.9),
    "tag": ("tags", 0.8),
    "category": ("tags", 0.6),
}


class HeuristicMappingAdapter(MappingAdapter):
    """Header-name lookup used when no API key is configured. Reports a flat low confidence."""

    source = "heuristic"

    def propose_mapping(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        broker_name_hint: Optional[str] = None,
    ) -> MappingProposal:
        raw: dict[str, Any] = {}
        for header in headers:
            hit = _HEURISTIC_MAPPINGS.get(header.strip().lower())
            if hit:
                raw[header] = {
                    "field": hit[0],
                    "confidence": hit[1],
                    "reasoning": "Heuristic pattern match",
                }
        mappings = _finalize_mappings(headers, raw)
        logger.info(
            "[AIMapper] Heuristic mapping for %d headers (no ANTHROPIC_API_KEY)", len(headers),
        )
        return MappingProposal(
            mappings=mappings,
            overall_confidence=HEURISTIC_CONFIDENCE,
            unmapped_fields=_unmapped_critical(mappings),
            suggestions=[
                "AI mapping not available - using heuristic mapping. "
                "Set ANTHROPIC_API_KEY for better accuracy."
            ],
            source=self.source,
        )


def get_mapping_adapter(settings: Optional[IngestionSettings] = None) -> MappingAdapter:
    settings = settings or IngestionSettings.from_env()
    if settings.anthropic_api_key:
        return ClaudeMappingAdapter(
            settings.anthropic_api_key,
            model=settings.claude_model,
            timeout=settings.ai_timeout_seconds,
        )
    logger.warning("[AIMapper] No ANTHROPIC_API_KEY - falling back to heuristic mapping")
    return HeuristicMappingAdapter()
