"""
Date format detection and conversion for imported columns.

A column's format is detected once from sample values and then applied to
every value of that column. Converted dates use the canonical
``YYYY-MM-DD HH:MM:SS`` representation in UTC.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

import pandas as pd

logger = logging.getLogger(__name__)

AUTO_FORMAT = "auto"
CANONICAL_FORMAT = "%Y-%m-%d %H:%M:%S"

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

# Candidate formats in detection order: label -> (regex pre-filter, strptime pattern)
DATE_FORMATS: Dict[str, tuple] = {
    "Y-m-d": (r"^\d{4}-\d{2}-\d{2}$", "%Y-%m-%d"),
    "m/d/Y": (r"^\d{2}/\d{2}/\d{4}$", "%m/%d/%Y"),
    "d/m/Y": (r"^\d{2}/\d{2}/\d{4}$", "%d/%m/%Y"),
    "d-m-Y": (r"^\d{2}-\d{2}-\d{4}$", "%d-%m-%Y"),
    "Y/m/d": (r"^\d{4}/\d{2}/\d{2}$", "%Y/%m/%d"),
    "m-d-Y": (r"^\d{2}-\d{2}-\d{4}$", "%m-%d-%Y"),
    "d.m.Y": (r"^\d{2}\.\d{2}\.\d{4}$", "%d.%m.%Y"),
    "Y-m-d H:i:s": (r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$", "%Y-%m-%d %H:%M:%S"),
    "Y-m-d H:i": (r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}$", "%Y-%m-%d %H:%M"),
    "m/d/Y H:i": (r"^\d{2}/\d{2}/\d{4} \d{2}:\d{2}$", "%m/%d/%Y %H:%M"),
    "d/m/Y H:i": (r"^\d{2}/\d{2}/\d{4} \d{2}:\d{2}$", "%d/%m/%Y %H:%M"),
    "m/d/Y H:i:s": (r"^\d{2}/\d{2}/\d{4} \d{2}:\d{2}:\d{2}$", "%m/%d/%Y %H:%M:%S"),
    "d/m/Y H:i:s": (r"^\d{2}/\d{2}/\d{4} \d{2}:\d{2}:\d{2}$", "%d/%m/%Y %H:%M:%S"),
    "d.m.Y H:i": (r"^\d{2}\.\d{2}\.\d{4} \d{2}:\d{2}$", "%d.%m.%Y %H:%M"),
    "d.m.Y H:i:s": (r"^\d{2}\.\d{2}\.\d{4} \d{2}:\d{2}:\d{2}$", "%d.%m.%Y %H:%M:%S"),
}

_COMPILED_FORMATS = {label: (re.compile(regex), pattern) for label, (regex, pattern) in DATE_FORMATS.items()}

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    # Emit a single summary when suppression starts, then periodically.
    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _round_trips(value: str, label: str) -> bool:
    regex, pattern = _COMPILED_FORMATS[label]
    if not regex.match(value):
        return False
    try:
        parsed = datetime.strptime(value, pattern)
    except ValueError:
        return False
    return parsed.strftime(pattern) == value


def parse_free_form(value: str) -> Optional[pd.Timestamp]:
    """Parse a date in any layout pandas understands; None when it cannot."""
    try:
        parsed = pd.to_datetime(value, utc=True, errors="raise")
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed is pd.NaT or pd.isna(parsed):
        return None
    return parsed


def _infer_from_free_form(value: str) -> Optional[str]:
    parsed = parse_free_form(value)
    if parsed is None:
        return None

    year = str(parsed.year)
    if len(year) != 4 or not year.startswith("2"):
        return None

    if "-" in value:
        return "Y-m-d"
    if "/" in value:
        parts = re.split(r"[/\s]", value)
        try:
            first = int(parts[0])
        except (ValueError, IndexError):
            return None
        # Month-first when the leading component can be a month.
        return "m/d/Y" if first <= 12 else "d/m/Y"
    return None


def detect_date_format(values: Iterable[Any]) -> str:
    """
    Detect the date format of a column from sample values.

    Each non-empty sample is tried against the candidate formats in order; the
    first format whose pattern matches and whose parse reproduces the value
    exactly wins. Otherwise a free-form parse is attempted to guess the
    layout from its separators. Returns ``"auto"`` when nothing fits.

    Args:
        values: Raw sample values from the column

    Returns:
        A format label such as ``"Y-m-d"`` or ``"auto"``
    """
    for raw in values:
        if raw is None:
            continue
        value = str(raw).strip()
        if not value:
            continue

        for label in _COMPILED_FORMATS:
            if _round_trips(value, label):
                return label

        inferred = _infer_from_free_form(value)
        if inferred:
            return inferred

    return AUTO_FORMAT


def convert_date(value: Any, date_format: str = AUTO_FORMAT, *, log_context: Optional[str] = None) -> Any:
    """
    Convert a raw date value to ``YYYY-MM-DD HH:MM:SS`` (UTC).

    With a detected format the value is parsed strictly first, then with the
    free-form parser. Values nothing can parse are passed through unchanged.
    """
    if value is None:
        return value
    text_value = str(value).strip()
    if not text_value:
        return value

    if date_format and date_format != AUTO_FORMAT and date_format in _COMPILED_FORMATS:
        _, pattern = _COMPILED_FORMATS[date_format]
        try:
            return datetime.strptime(text_value, pattern).strftime(CANONICAL_FORMAT)
        except ValueError:
            pass

    parsed = parse_free_form(text_value)
    if parsed is None:
        _record_parse_failure(text_value, log_context, ValueError(f"no format matched ({date_format})"))
        return value

    return parsed.tz_convert("UTC").strftime(CANONICAL_FORMAT)
