"""Score uploaded CSV headers against the broker format registry.

Two scorers, one set of named tiers:

Layout scorer (every format):
    header term   0.6  required headers present (case-insensitive substring)
    value term    0.3  sample values matching per-column regexes (≥80% each)
    exact term    0.1  uploaded headers equal to a mapped column name
  A file with more than 2 headers beyond the format's mapped columns is
  rejected for that format outright. Multi-section formats score 0.8 for
  the whole-file signature plus up to 0.2 for their section titles.

Header-set similarity scorer (learned layouts):
  Jaccard similarity between the uploaded header set and the header set a
  format was learned from. Catches a known layout that has grown a few
  columns since, which the layout scorer rejects.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from ingestion.format_registry import BrokerFormat, FormatRepository

logger = logging.getLogger(__name__)

# ─── Confidence tiers ────────────────────────────────────────────────────────
HIGH_CONFIDENCE = 0.8        # registry match applied with full trust
DETECTION_THRESHOLD = 0.7    # detector reports a format as matched
MEDIUM_CONFIDENCE = 0.6      # registry match applied with lower trust
LEGACY_THRESHOLD = 0.7       # similarity scorer match applied

HEADER_WEIGHT = 0.6
VALUE_WEIGHT = 0.3
EXACT_WEIGHT = 0.1
SIGNATURE_WEIGHT = 0.8
SECTION_WEIGHT = 0.2

VALUE_MATCH_RATIO = 0.8
MAX_EXTRA_COLUMNS = 2
SAMPLE_LIMIT = 5

SIMILARITY_FLOOR = 0.7
SIMILAR_MATCH_DISCOUNT = 0.8


def meets(confidence: float, tier: float) -> bool:
    """Tier check shared by detector and resolver (inclusive)."""
    return round(confidence, 4) >= tier


@dataclass
class FormatScore:
    format: BrokerFormat
    confidence: float
    reasoning: list[str] = field(default_factory=list)


@dataclass
class DetectionResult:
    format: Optional[BrokerFormat]
    confidence: float
    reasoning: list[str]
    # Best candidate even when below DETECTION_THRESHOLD
    candidate: Optional[BrokerFormat] = None
    candidate_confidence: float = 0.0
    scores: list[tuple[str, float]] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.format is not None


class FormatDetector:
    """Pick the best registry format for an upload."""

    def __init__(self, repository: FormatRepository) -> None:
        self.repository = repository

    # ── Layout scorer ──────────────────────────────────────────────────────

    def detect(
        self,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        file_content: Optional[str] = None,
    ) -> DetectionResult:
        formats = self.repository.list()
        best: Optional[FormatScore] = None
        reasoning: list[str] = []
        scores: list[tuple[str, float]] = []

        for fmt in formats:
            scored = self.score_format(fmt, headers, sample_rows, file_content)
            scores.append((fmt.id, scored.confidence))
            reasoning.append(
                f"{fmt.name}: {scored.confidence:.0%} ({'; '.join(scored.reasoning)})"
            )
            # Strict > keeps registry order on ties
            if best is None or scored.confidence > best.confidence:
                best = scored

        if best is None:
            return DetectionResult(None, 0.0, ["No broker formats registered"])

        if meets(best.confidence, DETECTION_THRESHOLD):
            logger.info(
                "[Detector] Matched '%s' at %.2f", best.format.id, best.confidence,
            )
            reasoning.insert(0, f"Selected {best.format.name} at {best.confidence:.0%}")
            return DetectionResult(
                format=best.format,
                confidence=best.confidence,
                reasoning=reasoning,
                candidate=best.format,
                candidate_confidence=best.confidence,
                scores=scores,
            )

        logger.info(
            "[Detector] No format matched (best '%s' at %.2f)",
            best.format.id, best.confidence,
        )
        reasoning.insert(
            0,
            f"No format reached {DETECTION_THRESHOLD:.0%}; "
            f"closest was {best.format.name} at {best.confidence:.0%}",
        )
        return DetectionResult(
            format=None,
            confidence=0.0,
            reasoning=reasoning,
            candidate=best.format,
            candidate_confidence=best.confidence,
            scores=scores,
        )

    def score_format(
        self,
        fmt: BrokerFormat,
        headers: list[str],
        sample_rows: list[dict[str, str]],
        file_content: Optional[str] = None,
    ) -> FormatScore:
        if fmt.is_sectioned and file_content is not None:
            return self._score_sectioned(fmt, file_content)

        reasons: list[str] = []

        mapped_count = len(fmt.field_mappings)
        if len(headers) > mapped_count + MAX_EXTRA_COLUMNS:
            reasons.append(
                f"rejected: {len(headers)} columns vs {mapped_count} known"
            )
            return FormatScore(fmt, 0.0, reasons)

        score = 0.0
        max_score = 0.0
        headers_lower = [h.lower() for h in headers]

        required = fmt.detection.required_headers
        if required:
            found = sum(
                1 for req in required
                if any(req.lower() in h for h in headers_lower)
            )
            score += found / len(required) * HEADER_WEIGHT
            max_score += HEADER_WEIGHT
            reasons.append(f"{found}/{len(required)} required headers")

        patterns = fmt.detection.compiled_value_patterns()
        if patterns:
            matched = sum(
                1 for col, pattern in patterns.items()
                if _column_matches(col, pattern, headers, sample_rows)
            )
            score += matched / len(patterns) * VALUE_WEIGHT
            max_score += VALUE_WEIGHT
            reasons.append(f"{matched}/{len(patterns)} value patterns")

        if headers:
            exact = sum(1 for h in headers if h in fmt.field_mappings)
            score += exact / len(headers) * EXACT_WEIGHT
            reasons.append(f"{exact}/{len(headers)} exact headers")
        max_score += EXACT_WEIGHT

        confidence = round(score / max_score, 4) if max_score else 0.0
        return FormatScore(fmt, confidence, reasons)

    def _score_sectioned(self, fmt: BrokerFormat, file_content: str) -> FormatScore:
        reasons: list[str] = []
        score = 0.0

        if re.search(fmt.detection.file_pattern, file_content, re.IGNORECASE):
            score += SIGNATURE_WEIGHT
            reasons.append("file signature matched")
        else:
            reasons.append("file signature not found")

        markers = fmt.detection.section_markers
        if markers:
            lines = {line.strip().strip(",").strip() for line in file_content.splitlines()}
            present = sum(1 for m in markers if m in lines)
            score += present / len(markers) * SECTION_WEIGHT
            reasons.append(f"{present}/{len(markers)} sections")

        return FormatScore(fmt, round(score, 4), reasons)

    # ── Header-set similarity scorer ───────────────────────────────────────

    def match_similar(self, headers: list[str]) -> Optional[FormatScore]:
        """Best learned layout by header-set similarity, if any clears the floor."""
        upload = {h.strip().lower() for h in headers}
        if not upload:
            return None

        best: Optional[FormatScore] = None
        for fmt in self.repository.list():
            if fmt.is_sectioned:
                continue
            known = {h.strip().lower() for h in fmt.known_headers}
            if not known:
                continue

            if known == upload:
                scored = FormatScore(fmt, 1.0, ["identical header set"])
            else:
                similarity = len(upload & known) / len(upload | known)
                if similarity <= SIMILARITY_FLOOR:
                    continue
                scored = FormatScore(
                    fmt,
                    round(similarity * SIMILAR_MATCH_DISCOUNT, 4),
                    [f"header similarity {similarity:.0%}"],
                )

            if best is None or scored.confidence > best.confidence:
                best = scored

        if best:
            logger.info(
                "[Detector] Similar layout '%s' at %.2f", best.format.id, best.confidence,
            )
        return best


def _column_matches(
    column: str,
    pattern: re.Pattern,
    headers: list[str],
    sample_rows: list[dict[str, str]],
) -> bool:
    """True when ≥80% of the column's sampled non-empty values match."""
    actual = _resolve_header(column, headers)
    if actual is None:
        return False
    values = [
        str(row.get(actual, "")).strip()
        for row in sample_rows[:SAMPLE_LIMIT]
    ]
    values = [v for v in values if v]
    if not values:
        return False
    hits = sum(1 for v in values if pattern.search(v))
    return hits / len(values) >= VALUE_MATCH_RATIO


def _resolve_header(column: str, headers: list[str]) -> Optional[str]:
    if column in headers:
        return column
    lower = column.strip().lower()
    for h in headers:
        if h.strip().lower() == lower:
            return h
    return None
