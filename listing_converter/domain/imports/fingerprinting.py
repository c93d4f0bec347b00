import hashlib
import json
from typing import Any, Dict


def canonicalize_row(row: Dict[str, Any]) -> str:
    """
    Serialize a source row deterministically.

    Keys are sorted and values stringified so the same export row always
    produces the same text regardless of how it was parsed.
    """
    normalized = {str(key): "" if value is None else str(value) for key, value in row.items()}
    return json.dumps(normalized, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def calculate_row_fingerprint(row: Dict[str, Any]) -> str:
    """
    Calculate the dedup fingerprint of a source row.

    Two rows with identical content collide on purpose, which makes
    re-importing the same export file update instead of duplicate.
    """
    content = canonicalize_row(row)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def fingerprint_field(importer_id: str) -> str:
    """Name of the record field that stores the fingerprint for an importer."""
    return f"{importer_id}_id"
