import csv
import io
import logging
import re
from typing import Dict, List, Optional, Tuple

import pandas as pd

from listing_converter.core.config import settings
from listing_converter.domain.imports.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_LINE_LENGTH = 1048576  # 1MB per row
SAMPLE_VALUE_LENGTH = 150

_FALLBACK_ENCODINGS = ("utf-8", "cp1252", "latin-1")
_FIELD_COUNT_PATTERN = re.compile(r"Expected (\d+) fields in line (\d+), saw (\d+)")


def _file_error(message: str) -> ValidationError:
    return ValidationError([{"field": "file", "message": message}], message)


def detect_csv_encoding(file_content: bytes) -> str:
    """
    Detect the text encoding of a CSV export.

    A UTF-8 byte order mark wins; otherwise the first encoding that decodes
    the leading 10KB cleanly is used.
    """
    if file_content.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"

    head = file_content[:10000]
    for encoding in _FALLBACK_ENCODINGS:
        try:
            head.decode(encoding)
            return encoding
        except UnicodeDecodeError:
            # A multi-byte character may be cut at the 10KB boundary
            if encoding == "utf-8":
                try:
                    file_content.decode(encoding)
                    return encoding
                except UnicodeDecodeError:
                    pass
            continue
    return "latin-1"


def extract_raw_csv_rows(file_content: bytes, delimiter: str = ",", num_rows: int = 20) -> List[List[str]]:
    """
    Extract raw CSV rows without making any assumptions about headers.

    Args:
        file_content: CSV file content as bytes
        delimiter: Single character column delimiter
        num_rows: Number of rows to extract (default 20)

    Returns:
        List of rows, where each row is a list of string values
    """
    if not delimiter or len(delimiter) > 1:
        delimiter = ","
    text_content = file_content.decode(detect_csv_encoding(file_content))
    reader = csv.reader(io.StringIO(text_content), delimiter=delimiter)

    raw_rows = []
    for i, row in enumerate(reader):
        if i >= num_rows:
            break
        raw_rows.append(row)

    logger.info(f"Extracted {len(raw_rows)} raw CSV rows for preview")
    return raw_rows


def _parser_error_message(exc: Exception) -> str:
    match = _FIELD_COUNT_PATTERN.search(str(exc))
    if match:
        expected, line_number, seen = match.groups()
        return (
            f"Row {line_number} has {seen} columns while the header has {expected} columns. "
            "Please ensure all rows have the correct number of columns."
        )
    return f"Error parsing CSV: {exc}"


def process_csv(
    file_content: bytes,
    delimiter: str = ",",
    max_rows: Optional[int] = None,
) -> Tuple[List[Dict[str, str]], List[str]]:
    """
    Parse a CSV export into source rows keyed by header.

    Headers must be non-empty and unique, and no data row may have more cells
    than the header. Short rows are padded with empty values and blank rows are
    skipped. Every value is kept as a string.

    Returns:
        Tuple of (rows, headers)

    Raises:
        ValidationError: when the file cannot be used as an import source,
            including files with more than ``max_rows`` data rows
    """
    if not delimiter or len(delimiter) > 1:
        delimiter = ","
    max_rows = max_rows if max_rows is not None else settings.import_max_rows

    if not file_content:
        raise _file_error("CSV file is empty.")

    encoding = detect_csv_encoding(file_content)

    # The header row is read as data so pandas does not rename duplicate or empty names
    try:
        df = pd.read_csv(
            io.BytesIO(file_content),
            sep=delimiter,
            header=None,
            dtype=str,
            keep_default_na=False,
            encoding=encoding,
            skip_blank_lines=True,
            on_bad_lines="error",
        )
    except pd.errors.EmptyDataError:
        raise _file_error("CSV file has invalid or missing headers.")
    except pd.errors.ParserError as e:
        raise _file_error(_parser_error_message(e))

    if df.empty:
        raise _file_error("CSV file has invalid or missing headers.")

    df = df.fillna("")
    headers = [str(header).strip() for header in df.iloc[0].tolist()]
    if not any(headers):
        raise _file_error("CSV file has invalid or missing headers.")
    if not all(headers):
        raise _file_error("CSV headers contain empty values. Please ensure all columns have headers.")
    if len(headers) != len(set(headers)):
        raise _file_error("CSV headers contain duplicate values. Each column must have a unique header.")

    data = df.iloc[1:].copy()
    data.columns = headers
    data = data[(data.apply(lambda column: column.str.strip()) != "").any(axis=1)]

    if data.empty:
        raise _file_error("CSV file contains no valid data rows.")
    if len(data) > max_rows:
        raise _file_error(
            f"CSV file has {len(data)} data rows, more than the limit of {max_rows}. "
            "Please split the file into smaller exports."
        )
    if data.apply(lambda column: column.str.len()).sum(axis=1).max() > MAX_LINE_LENGTH:
        raise _file_error("CSV contains excessively long rows. Please check your data format.")

    rows = data.to_dict("records")
    logger.info(f"Processed CSV ({encoding}) with {len(rows)} rows, columns: {headers}")
    return rows, headers


def build_sample_data(rows: List[Dict[str, str]], headers: List[str]) -> Dict[str, str]:
    """First non-empty value per column, truncated for display."""
    sample: Dict[str, str] = {}
    for header in headers:
        for row in rows:
            value = (row.get(header) or "").strip()
            if value:
                if len(value) > SAMPLE_VALUE_LENGTH:
                    value = value[:SAMPLE_VALUE_LENGTH] + "..."
                sample[header] = value
                break
    return sample
