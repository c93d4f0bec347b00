"""
Named column-mapping presets shared by every import run of the installation.
"""
from __future__ import annotations

import json
import logging
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from sqlalchemy import text
from sqlalchemy.exc import OperationalError, ProgrammingError

from listing_converter.api.schemas.shared import MappingTemplate
from listing_converter.db.session import get_engine
from listing_converter.domain.imports.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_table_initialized = False
_table_init_lock = threading.Lock()

_SLUG_NOISE = re.compile(r"[^a-z0-9_\-]")


def create_mapping_templates_table() -> None:
    """Create the mapping_templates table on-demand."""
    global _table_initialized
    if _table_initialized:
        return

    with _table_init_lock:
        if _table_initialized:
            return
        create_sql = """
        CREATE TABLE IF NOT EXISTS mapping_templates (
            id VARCHAR(255) PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            mapping TEXT NOT NULL,
            created_at VARCHAR(32) NOT NULL,
            created_ts DOUBLE PRECISION NOT NULL
        )
        """
        with get_engine().begin() as conn:
            conn.execute(text(create_sql))
        _table_initialized = True
        logger.info("mapping_templates table created/verified successfully")


def _run_with_table_retry(operation: Callable[[], Any]) -> Any:
    global _table_initialized
    create_mapping_templates_table()
    try:
        return operation()
    except (ProgrammingError, OperationalError) as error:
        origin = getattr(error, "orig", None)
        if getattr(origin, "pgcode", None) != "42P01" and "no such table" not in str(origin or error):
            raise
        with _table_init_lock:
            _table_initialized = False
        create_mapping_templates_table()
        return operation()


def sanitize_key(name: str) -> str:
    """Lowercase and keep only letters, digits, underscores and dashes."""
    return _SLUG_NOISE.sub("", name.strip().lower())


def _row_to_template(row: Any) -> MappingTemplate:
    return MappingTemplate(
        id=row["id"],
        name=row["name"],
        mapping=json.loads(row["mapping"]),
        created_at=row["created_at"],
    )


class MappingTemplateStore:
    """CRUD over mapping templates."""

    def __init__(self, clock=time.time):
        self._clock = clock

    def save(self, name: str, mapping: Dict[str, str]) -> MappingTemplate:
        name = (name or "").strip()
        mapping = {
            str(column).strip(): str(target).strip()
            for column, target in (mapping or {}).items()
            if str(column).strip() and str(target or "").strip()
        }

        errors = []
        if not name:
            errors.append({"field": "name", "message": "Template name is required."})
        if not mapping:
            errors.append({"field": "mapping", "message": "Template mapping is required."})
        if errors:
            raise ValidationError(errors, "Template name and mapping are required.")

        now = self._clock()
        base_id = f"{sanitize_key(name) or 'template'}_{int(now)}"
        created_at = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        insert_sql = """
        INSERT INTO mapping_templates (id, name, mapping, created_at, created_ts)
        VALUES (:id, :name, :mapping, :created_at, :created_ts)
        """

        def _insert() -> str:
            with get_engine().begin() as conn:
                template_id = base_id
                suffix = 2
                while conn.execute(
                    text("SELECT 1 FROM mapping_templates WHERE id = :id"), {"id": template_id}
                ).fetchone():
                    template_id = f"{base_id}_{suffix}"
                    suffix += 1
                conn.execute(
                    text(insert_sql),
                    {
                        "id": template_id,
                        "name": name,
                        "mapping": json.dumps(mapping),
                        "created_at": created_at,
                        "created_ts": now,
                    },
                )
                return template_id

        template_id = _run_with_table_retry(_insert)
        logger.info("Saved mapping template '%s' as %s", name, template_id)
        return MappingTemplate(id=template_id, name=name, mapping=mapping, created_at=created_at)

    def load(self, template_id: str) -> MappingTemplate:
        def _fetch():
            with get_engine().connect() as conn:
                return conn.execute(
                    text("SELECT id, name, mapping, created_at FROM mapping_templates WHERE id = :id"),
                    {"id": template_id},
                ).mappings().first()

        row = _run_with_table_retry(_fetch)
        if not row:
            raise NotFoundError(f"Template '{template_id}' not found.")
        return _row_to_template(row)

    def delete(self, template_id: str) -> bool:
        def _delete() -> int:
            with get_engine().begin() as conn:
                result = conn.execute(text("DELETE FROM mapping_templates WHERE id = :id"), {"id": template_id})
                return result.rowcount

        if not _run_with_table_retry(_delete):
            raise NotFoundError(f"Template '{template_id}' not found.")
        logger.info("Deleted mapping template %s", template_id)
        return True

    def list(self) -> List[MappingTemplate]:
        def _fetch():
            with get_engine().connect() as conn:
                return conn.execute(
                    text(
                        "SELECT id, name, mapping, created_at FROM mapping_templates "
                        "ORDER BY created_ts, id"
                    )
                ).mappings().all()

        return [_row_to_template(row) for row in _run_with_table_retry(_fetch)]
