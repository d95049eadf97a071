"""
Charles Schwab "Today's Trade Activity" export parser.

These exports are not one flat table:
- First line is a dated banner: "Today's Trade Activity for 1234SCHW ... on 9/25/24 10:56:32"
- The file is split into titled sections (Working / Filled / Canceled Orders)
- The line right after each title is that section's own header row
- Header rows carry blank cells (",,Exec Time,...") that hold no data
- Everything from "Rolling Strategies" onward is not order data
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

FILE_SIGNATURE = re.compile(
    r"Today's Trade Activity for \d+\w*\s+.*on\s+\d{1,2}/\d{1,2}/\d{2,4}",
    re.IGNORECASE,
)

_BANNER = re.compile(
    r"Today's Trade Activity for\s+(\S+).*?on\s+(\d{1,2}/\d{1,2}/\d{2,4})",
    re.IGNORECASE,
)

# Section title -> bucket name
SECTION_TITLES: dict[str, str] = {
    "Working Orders": "working",
    "Filled Orders": "filled",
    "Canceled Orders": "canceled",
}

STOP_TITLE = "Rolling Strategies"

# Order status implied by the section when the row has no Status cell
SECTION_ORDER_STATUS: dict[str, str] = {
    "working": "WORKING",
    "filled": "FILLED",
    "canceled": "CANCELLED",
}


def section_defaults(bucket: str) -> dict:
    """Pipeline defaults for one row of the given section."""
    return {
        "order_status": SECTION_ORDER_STATUS[bucket],
        "broker_metadata": {"section": bucket},
    }


def is_schwab_activity(content: str) -> bool:
    """Whole-file predicate for the multi-section export."""
    return bool(FILE_SIGNATURE.search(content))


@dataclass
class SchwabActivity:
    """One parsed export, bucketed by section."""

    account: Optional[str] = None
    report_date: Optional[str] = None
    working: list[dict[str, str]] = field(default_factory=list)
    filled: list[dict[str, str]] = field(default_factory=list)
    canceled: list[dict[str, str]] = field(default_factory=list)
    section_headers: dict[str, list[str]] = field(default_factory=dict)

    @property
    def sections_found(self) -> list[str]:
        return list(self.section_headers)

    def rows(self) -> list[tuple[str, dict[str, str]]]:
        """All rows in file order, tagged with their section bucket."""
        out: list[tuple[str, dict[str, str]]] = []
        for bucket in SECTION_TITLES.values():
            out.extend((bucket, row) for row in getattr(self, bucket))
        return out

    @property
    def headers(self) -> list[str]:
        """Union of every section's headers, first-seen order."""
        seen: dict[str, None] = {}
        for cols in self.section_headers.values():
            for col in cols:
                seen.setdefault(col, None)
        return list(seen)


class SchwabActivityParser:
    """Split a Today's Trade Activity export into its order sections."""

    def parse_string(self, content: str) -> SchwabActivity:
        activity = SchwabActivity()

        banner = _BANNER.search(content)
        if banner:
            activity.account = banner.group(1)
            activity.report_date = banner.group(2)

        reader = csv.reader(io.StringIO(content))
        current: Optional[str] = None
        headers: list[str] = []
        expect_header = False

        for row in reader:
            cells = [c.strip() for c in row]
            if not any(cells):
                continue

            title = _section_title(cells)
            if title == STOP_TITLE:
                break
            if title in SECTION_TITLES:
                current = SECTION_TITLES[title]
                expect_header = True
                continue

            if current is None:
                # Banner and anything before the first section
                continue

            if expect_header:
                headers = cells
                activity.section_headers[current] = [h for h in headers if h]
                expect_header = False
                continue

            record = {
                header: cells[i] if i < len(cells) else ""
                for i, header in enumerate(headers)
                if header
            }
            getattr(activity, current).append(record)

        logger.info(
            "[SchwabActivity] Parsed %d working, %d filled, %d canceled orders",
            len(activity.working), len(activity.filled), len(activity.canceled),
        )
        return activity


def _section_title(cells: list[str]) -> Optional[str]:
    """Return the title if this row is a lone section title line."""
    non_empty = [c for c in cells if c]
    if len(non_empty) != 1:
        return None
    text = non_empty[0]
    if text in SECTION_TITLES or text == STOP_TITLE:
        return text
    return None
