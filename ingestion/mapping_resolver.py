"""Decide how one upload gets its column mapping.

Strategies are tried in order; the first that applies wins:

    1. SPECIAL_PARSER       multi-section export signature matched
    2. STANDARD_SCHEMA      headers already in the standard layout
    3. REGISTRY_HIGH        registry format at >= 0.8
    4. REGISTRY_MEDIUM      registry format at >= 0.6
    5. LEGACY_MATCH         learned layout by header similarity >= 0.7
    6. AI_WITH_HINT         AI proposal, broker name supplied
    7. AI_BROKER_SELECTION  AI proposal, broker must be chosen first
    8. USER_MAPPINGS        caller supplied mappings

User-supplied mappings bypass detection entirely, so step 8 is checked
first in code. Steps 1-5 and 8 resolve to concrete mappings here; steps 6
and 7 only name the strategy and the service calls the AI adapter.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ingestion.format_detector import (
    HIGH_CONFIDENCE,
    LEGACY_THRESHOLD,
    MEDIUM_CONFIDENCE,
    DetectionResult,
    FormatDetector,
    meets,
)
from ingestion.format_registry import BrokerFormat
from ingestion.models import ColumnMapping, ImportType
from ingestion.raw_parser import ParsedCsv
from ingestion.settings import ALWAYS_REVIEW_AI_MAPPINGS
from ingestion.standard_schema import is_standard_format

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    SPECIAL_PARSER = "SPECIAL_PARSER"
    STANDARD_SCHEMA = "STANDARD_SCHEMA"
    REGISTRY_HIGH = "REGISTRY_HIGH"
    REGISTRY_MEDIUM = "REGISTRY_MEDIUM"
    LEGACY_MATCH = "LEGACY_MATCH"
    AI_WITH_HINT = "AI_WITH_HINT"
    AI_BROKER_SELECTION = "AI_BROKER_SELECTION"
    USER_MAPPINGS = "USER_MAPPINGS"

    @property
    def uses_ai(self) -> bool:
        return self in (Strategy.AI_WITH_HINT, Strategy.AI_BROKER_SELECTION)


@dataclass
class Resolution:
    strategy: Strategy
    format: Optional[BrokerFormat] = None
    confidence: float = 0.0
    mappings: list[ColumnMapping] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    detection: Optional[DetectionResult] = None

    @property
    def import_type(self) -> ImportType:
        if self.strategy == Strategy.STANDARD_SCHEMA:
            return ImportType.STANDARD
        return ImportType.CUSTOM

    @property
    def requires_review(self) -> bool:
        return self.strategy.uses_ai and ALWAYS_REVIEW_AI_MAPPINGS

    @property
    def requires_broker_selection(self) -> bool:
        return self.strategy == Strategy.AI_BROKER_SELECTION


class MappingResolver:
    def __init__(self, detector: FormatDetector) -> None:
        self.detector = detector

    def resolve(
        self,
        parsed: ParsedCsv,
        file_content: str,
        user_mappings: Optional[list[ColumnMapping]] = None,
        broker_name_hint: Optional[str] = None,
    ) -> Resolution:
        if user_mappings:
            return self._chosen(
                Resolution(
                    strategy=Strategy.USER_MAPPINGS,
                    confidence=1.0,
                    mappings=list(user_mappings),
                    reasoning=[f"{len(user_mappings)} user-supplied mappings"],
                )
            )

        # 1. Multi-section export
        if parsed.is_sectioned:
            special = self._special_format(parsed, file_content)
            if special is not None:
                return self._chosen(special)

        # 2. Standard layout
        if is_standard_format(parsed.headers):
            return self._chosen(
                Resolution(
                    strategy=Strategy.STANDARD_SCHEMA,
                    confidence=1.0,
                    reasoning=["Headers match the standard trade layout"],
                )
            )

        # 3/4. Registry layout scorer
        detection = self.detector.detect(parsed.headers, parsed.sample_rows, file_content)
        candidate = detection.candidate
        if candidate is not None and not candidate.is_sectioned:
            for strategy, tier in (
                (Strategy.REGISTRY_HIGH, HIGH_CONFIDENCE),
                (Strategy.REGISTRY_MEDIUM, MEDIUM_CONFIDENCE),
            ):
                if meets(detection.candidate_confidence, tier):
                    return self._chosen(
                        Resolution(
                            strategy=strategy,
                            format=candidate,
                            confidence=detection.candidate_confidence,
                            mappings=candidate.column_mappings(),
                            reasoning=detection.reasoning,
                            detection=detection,
                        )
                    )

        # 5. Learned layout by header similarity
        similar = self.detector.match_similar(parsed.headers)
        if similar is not None and meets(similar.confidence, LEGACY_THRESHOLD):
            return self._chosen(
                Resolution(
                    strategy=Strategy.LEGACY_MATCH,
                    format=similar.format,
                    confidence=similar.confidence,
                    mappings=similar.format.column_mappings(),
                    reasoning=detection.reasoning + similar.reasoning,
                    detection=detection,
                )
            )

        # 6/7. AI proposal
        strategy = Strategy.AI_WITH_HINT if broker_name_hint else Strategy.AI_BROKER_SELECTION
        return self._chosen(
            Resolution(
                strategy=strategy,
                confidence=detection.candidate_confidence,
                reasoning=detection.reasoning,
                detection=detection,
            )
        )

    def _special_format(self, parsed: ParsedCsv, file_content: str) -> Optional[Resolution]:
        best: Optional[Resolution] = None
        for fmt in self.detector.repository.list():
            if not fmt.is_sectioned:
                continue
            if not re.search(fmt.detection.file_pattern, file_content, re.IGNORECASE):
                continue
            scored = self.detector.score_format(fmt, parsed.headers, parsed.sample_rows, file_content)
            if best is None or scored.confidence > best.confidence:
                best = Resolution(
                    strategy=Strategy.SPECIAL_PARSER,
                    format=fmt,
                    confidence=scored.confidence,
                    mappings=fmt.column_mappings(),
                    reasoning=scored.reasoning,
                )
        if best is None:
            logger.warning("[Resolver] Sectioned export but no sectioned format registered")
        return best

    def _chosen(self, resolution: Resolution) -> Resolution:
        logger.info(
            "[Resolver] Strategy %s (format=%s, confidence=%.2f)",
            resolution.strategy.value,
            resolution.format.id if resolution.format else None,
            resolution.confidence,
        )
        return resolution
