"""Turn uploaded file text into headers + row dicts.

Two shapes are recognised:
1. Schwab "Today's Trade Activity" multi-section exports (whole-file
   signature) → handed to ``SchwabActivityParser``
2. Everything else → one flat delimited table read with pandas

Every cell comes back as a stripped string; typing happens later in the
transformer pipeline.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Optional

import pandas as pd

from ingestion.errors import ParseError
from ingestion.schwab_activity import (
    SchwabActivity,
    SchwabActivityParser,
    is_schwab_activity,
)
from ingestion.settings import (
    HARD_MAX_BYTES,
    SAMPLE_ROW_COUNT,
    SIZE_TIER_OVERSIZED,
    size_tier,
)

logger = logging.getLogger(__name__)

_BOM = "\ufeff"


@dataclass
class ParsedCsv:
    headers: list[str]
    rows: list[dict[str, str]]
    file_size: int
    size_tier: str
    sections: Optional[SchwabActivity] = None
    sample_rows: list[dict[str, str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def is_sectioned(self) -> bool:
        return self.sections is not None


def parse_csv(
    file_content: str,
    filename: str = "upload.csv",
    *,
    max_bytes: int = HARD_MAX_BYTES,
) -> ParsedCsv:
    """Parse raw CSV text.

    Raises:
        ParseError: listing every defect found (empty, oversized,
            wrong extension, unparsable, no data rows).
    """
    defects: list[str] = []

    if filename and not filename.lower().endswith(".csv"):
        defects.append(f"'{filename}' is not a .csv file")

    content = (file_content or "")
    if content.startswith(_BOM):
        content = content[len(_BOM):]

    file_size = len((file_content or "").encode("utf-8"))
    tier = size_tier(file_size, max_bytes)
    if tier == SIZE_TIER_OVERSIZED:
        defects.append(
            f"File is {file_size} bytes; the maximum is {max_bytes} bytes"
        )

    if not content.strip():
        defects.append("File is empty")

    if defects:
        raise ParseError("; ".join(defects), defects)

    if is_schwab_activity(content):
        return _parse_sectioned(content, file_size, tier)

    return _parse_flat(content, file_size, tier)


def _parse_sectioned(content: str, file_size: int, tier: str) -> ParsedCsv:
    activity = SchwabActivityParser().parse_string(content)
    rows = [row for _, row in activity.rows()]
    if not activity.sections_found:
        raise ParseError("Trade activity export contains no order sections")

    logger.info(
        "[RawParser] Multi-section export: sections=%s, %d orders",
        activity.sections_found, len(rows),
    )
    return ParsedCsv(
        headers=activity.headers,
        rows=rows,
        file_size=file_size,
        size_tier=tier,
        sections=activity,
        sample_rows=rows[:SAMPLE_ROW_COUNT],
    )


def _parse_flat(content: str, file_size: int, tier: str) -> ParsedCsv:
    try:
        df = pd.read_csv(
            io.StringIO(content),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
        )
    except pd.errors.EmptyDataError:
        raise ParseError("File is empty")
    except pd.errors.ParserError as e:
        raise ParseError(f"Unable to parse CSV: {e}")

    if df.empty:
        raise ParseError("CSV has a header row but no data rows")

    df = df.fillna("").astype(str)
    df.columns = [str(c).strip() for c in df.columns]
    for col in df.columns:
        df[col] = df[col].str.strip()

    # Trailing delimiters produce "Unnamed: N" columns with nothing in them
    unnamed = [
        c for c in df.columns
        if c.startswith("Unnamed:") and not (df[c] != "").any()
    ]
    if unnamed:
        df = df.drop(columns=unnamed)

    df = df[(df != "").any(axis=1)]
    if df.empty:
        raise ParseError("CSV has a header row but no data rows")

    headers = list(df.columns)
    rows = df.to_dict(orient="records")

    logger.info(
        "[RawParser] Parsed %d rows x %d columns (%d bytes, tier=%s)",
        len(rows), len(headers), file_size, tier,
    )
    return ParsedCsv(
        headers=headers,
        rows=rows,
        file_size=file_size,
        size_tier=tier,
        sample_rows=rows[:SAMPLE_ROW_COUNT],
    )
