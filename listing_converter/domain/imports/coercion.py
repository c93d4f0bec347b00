"""
Pure value coercion helpers used by the column mapping engine.
"""
import re
from typing import Iterable, List, Optional

_COORDINATE_NOISE = re.compile(r"[^0-9.\-]")


def split_terms(value: str) -> List[str]:
    """Split a comma separated term list, trimming and de-duplicating in order."""
    seen = set()
    terms: List[str] = []
    for part in value.split(","):
        term = part.strip()
        if term and term not in seen:
            seen.add(term)
            terms.append(term)
    return terms


def split_options(value: str) -> List[str]:
    """
    Split an option value on commas, or on newlines when there is no comma.
    """
    if "," in value:
        parts = value.split(",")
    elif "\n" in value:
        parts = value.split("\n")
    else:
        parts = [value]
    return [part.strip() for part in parts if part.strip()]


def merge_options(existing: Iterable[str], incoming: Iterable[str]) -> List[str]:
    """Union ``incoming`` into ``existing`` keeping the first-seen order."""
    merged: List[str] = []
    for option in list(existing) + list(incoming):
        option = option.strip()
        if option and option not in merged:
            merged.append(option)
    return merged


def split_urls(value: str) -> List[str]:
    return [url.strip() for url in value.split(",") if url.strip()]


def parse_coordinate(value: Optional[str]) -> Optional[float]:
    """Strip everything but digits, dots and minus signs and parse a float."""
    if value is None:
        return None
    cleaned = _COORDINATE_NOISE.sub("", str(value))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None
