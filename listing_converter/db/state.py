"""
Persistent per-importer import state.

Every importer owns one slot: independent option keys (settings, queue,
stats, start time, abort flag), the stored source rows and the append-only
job log. Keys live in separate rows so a status poll never has to parse one
oversized blob.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, text
from sqlalchemy.exc import OperationalError, ProgrammingError

from listing_converter.db.session import get_engine

logger = logging.getLogger(__name__)

metadata = MetaData()

import_state_table = Table(
    "import_state",
    metadata,
    Column("importer_id", String(100), primary_key=True),
    Column("option_key", String(100), primary_key=True),
    Column("value", Text),
)

import_rows_table = Table(
    "import_rows",
    metadata,
    Column("importer_id", String(100), primary_key=True),
    Column("row_index", Integer, primary_key=True),
    Column("data", Text, nullable=False),
)

import_logs_table = Table(
    "import_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("importer_id", String(100), nullable=False, index=True),
    Column("message", Text, nullable=False),
    Column("status", String(20), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Upper bound for one log page; polling clients pass the number already shown.
LOG_PAGE_LIMIT = 100000

_tables_initialized = False
_table_init_lock = threading.Lock()


def ensure_import_state_tables() -> None:
    """Create the import state tables on-demand."""
    global _tables_initialized
    if _tables_initialized:
        return

    with _table_init_lock:
        if _tables_initialized:
            return
        metadata.create_all(get_engine(), checkfirst=True)
        _tables_initialized = True
        logger.info("import state tables created/verified successfully")


def _reset_table_flag() -> None:
    global _tables_initialized
    with _table_init_lock:
        _tables_initialized = False


def _is_missing_table_error(error: Exception) -> bool:
    origin = getattr(error, "orig", None)
    if getattr(origin, "pgcode", None) == "42P01":
        return True
    return "no such table" in str(origin or error)


def _run_with_table_retry(operation: Callable[[], Any]) -> Any:
    ensure_import_state_tables()
    try:
        return operation()
    except (ProgrammingError, OperationalError) as error:
        if not _is_missing_table_error(error):
            raise
        _reset_table_flag()
        ensure_import_state_tables()
        return operation()


UPSERT_OPTION_SQL = """
INSERT INTO import_state (importer_id, option_key, value)
VALUES (:importer_id, :option_key, :value)
ON CONFLICT (importer_id, option_key) DO UPDATE
SET value = EXCLUDED.value
"""


def get_option(importer_id: str, key: str, default: Any = None) -> Any:
    """Read one JSON-encoded option for an importer."""
    query_sql = """
    SELECT value FROM import_state
    WHERE importer_id = :importer_id AND option_key = :option_key
    """

    def _fetch() -> Any:
        with get_engine().connect() as conn:
            row = conn.execute(
                text(query_sql), {"importer_id": importer_id, "option_key": key}
            ).fetchone()
        if row is None or row[0] is None:
            return default
        return json.loads(row[0])

    return _run_with_table_retry(_fetch)


def update_option(importer_id: str, key: str, value: Any) -> None:
    """Write one option, replacing any previous value."""
    params = {"importer_id": importer_id, "option_key": key, "value": json.dumps(value)}

    def _write() -> None:
        with get_engine().begin() as conn:
            conn.execute(text(UPSERT_OPTION_SQL), params)

    _run_with_table_retry(_write)


def delete_options(importer_id: str, keys: Iterable[str]) -> None:
    keys = list(keys)
    if not keys:
        return

    def _delete() -> None:
        with get_engine().begin() as conn:
            for key in keys:
                conn.execute(
                    text("DELETE FROM import_state WHERE importer_id = :importer_id AND option_key = :option_key"),
                    {"importer_id": importer_id, "option_key": key},
                )

    _run_with_table_retry(_delete)


def increment_counters(importer_id: str, key: str, increments: Dict[str, int]) -> Dict[str, int]:
    """
    Atomically add ``increments`` to a JSON counter map stored under ``key``.

    The counter row is seeded, then locked for the read-modify-write: FOR UPDATE
    on PostgreSQL, while on SQLite the seeding insert takes the write lock.
    """
    seed_sql = """
    INSERT INTO import_state (importer_id, option_key, value)
    VALUES (:importer_id, :option_key, '{}')
    ON CONFLICT (importer_id, option_key) DO NOTHING
    """
    query_sql = """
    SELECT value FROM import_state
    WHERE importer_id = :importer_id AND option_key = :option_key
    """
    params = {"importer_id": importer_id, "option_key": key}

    def _increment() -> Dict[str, int]:
        with get_engine().begin() as conn:
            conn.execute(text(seed_sql), params)
            lock_clause = " FOR UPDATE" if conn.engine.dialect.name == "postgresql" else ""
            row = conn.execute(text(query_sql + lock_clause), params).fetchone()
            counters: Dict[str, int] = json.loads(row[0]) if row and row[0] else {}
            for field, amount in increments.items():
                counters[field] = int(counters.get(field, 0)) + int(amount)
            conn.execute(
                text("UPDATE import_state SET value = :value WHERE importer_id = :importer_id AND option_key = :option_key"),
                dict(params, value=json.dumps(counters)),
            )
            return counters

    return _run_with_table_retry(_increment)


def store_rows(importer_id: str, rows: List[Dict[str, Any]]) -> int:
    """Replace the stored source rows of an importer; returns the row count."""
    insert_sql = """
    INSERT INTO import_rows (importer_id, row_index, data)
    VALUES (:importer_id, :row_index, :data)
    """
    params = [
        {"importer_id": importer_id, "row_index": index, "data": json.dumps(row)}
        for index, row in enumerate(rows)
    ]

    def _store() -> int:
        with get_engine().begin() as conn:
            conn.execute(text("DELETE FROM import_rows WHERE importer_id = :importer_id"), {"importer_id": importer_id})
            if params:
                conn.execute(text(insert_sql), params)
        return len(params)

    return _run_with_table_retry(_store)


def count_rows(importer_id: str) -> int:
    def _count() -> int:
        with get_engine().connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM import_rows WHERE importer_id = :importer_id"),
                {"importer_id": importer_id},
            )
            return int(result.scalar() or 0)

    return _run_with_table_retry(_count)


def fetch_rows(importer_id: str, start: int, end: int) -> List[Dict[str, Any]]:
    """Return stored rows with ``start <= row_index < end`` in source order."""
    query_sql = """
    SELECT data FROM import_rows
    WHERE importer_id = :importer_id AND row_index >= :start AND row_index < :end
    ORDER BY row_index
    """

    def _fetch() -> List[Dict[str, Any]]:
        with get_engine().connect() as conn:
            result = conn.execute(text(query_sql), {"importer_id": importer_id, "start": start, "end": end})
            return [json.loads(row[0]) for row in result]

    return _run_with_table_retry(_fetch)


def clear_rows(importer_id: str) -> None:
    def _clear() -> None:
        with get_engine().begin() as conn:
            conn.execute(text("DELETE FROM import_rows WHERE importer_id = :importer_id"), {"importer_id": importer_id})

    _run_with_table_retry(_clear)


def append_log_entry(importer_id: str, message: str, status: str, created_at: str) -> None:
    insert_sql = """
    INSERT INTO import_logs (importer_id, message, status, created_at)
    VALUES (:importer_id, :message, :status, :created_at)
    """
    params = {"importer_id": importer_id, "message": message, "status": status, "created_at": created_at}

    def _insert() -> None:
        with get_engine().begin() as conn:
            conn.execute(text(insert_sql), params)

    _run_with_table_retry(_insert)


def fetch_log_entries(importer_id: str, skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return log entries after the first ``skip`` ones, oldest first."""
    query_sql = """
    SELECT message, status, created_at FROM import_logs
    WHERE importer_id = :importer_id
    ORDER BY id
    LIMIT :limit OFFSET :skip
    """
    params = {
        "importer_id": importer_id,
        "skip": max(0, int(skip)),
        "limit": limit if limit is not None else LOG_PAGE_LIMIT,
    }

    def _fetch() -> List[Dict[str, Any]]:
        with get_engine().connect() as conn:
            rows = conn.execute(text(query_sql), params).mappings().all()
            return [
                {"message": row["message"], "status": row["status"], "timestamp": row["created_at"]}
                for row in rows
            ]

    return _run_with_table_retry(_fetch)


def clear_log_entries(importer_id: str) -> None:
    def _clear() -> None:
        with get_engine().begin() as conn:
            conn.execute(text("DELETE FROM import_logs WHERE importer_id = :importer_id"), {"importer_id": importer_id})

    _run_with_table_retry(_clear)
