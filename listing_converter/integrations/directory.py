"""
In-process listing directory.

Implements the record store, taxonomy store and field registry the import
pipeline writes into. Used by the HTTP app when no external directory is
wired in, and by the tests.
"""
import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from listing_converter.core.config import settings
from listing_converter.domain.imports.errors import CollaboratorError

logger = logging.getLogger(__name__)


class InMemoryDirectory:
    def __init__(
        self,
        post_types: Optional[List[str]] = None,
        taxonomies: Optional[List[str]] = None,
        field_types: Optional[Dict[str, Dict[str, str]]] = None,
        field_options: Optional[Dict[str, Dict[str, List[str]]]] = None,
    ):
        self._post_types = list(post_types or settings.default_post_types)
        if taxonomies is None:
            taxonomies = []
            for post_type in self._post_types:
                taxonomies.extend([f"{post_type}category", f"{post_type}_tags"])
        self._taxonomies = set(taxonomies)
        # post_type -> field_key -> type
        self._field_types = copy.deepcopy(field_types or {})
        self._field_options = copy.deepcopy(field_options or {})
        self._records: Dict[int, Dict[str, Any]] = {}
        self._terms: Dict[str, Dict[str, int]] = {}
        self._next_record_id = 1
        self._next_term_id = 1
        self._lock = threading.RLock()

    # RecordStore

    def post_types(self) -> List[str]:
        return list(self._post_types)

    def find_by_fingerprint(self, fingerprint: str, post_type: str, key: str) -> Optional[int]:
        with self._lock:
            for record_id, record in self._records.items():
                if record.get("post_type") == post_type and record.get(key) == fingerprint:
                    return record_id
        return None

    def create(self, record: Dict[str, Any]) -> int:
        if record.get("post_type") not in self._post_types:
            raise CollaboratorError(f"Unknown post type '{record.get('post_type')}'")
        with self._lock:
            record_id = self._next_record_id
            self._next_record_id += 1
            self._records[record_id] = copy.deepcopy(record)
        logger.debug("Created record #%d", record_id)
        return record_id

    def update(self, record_id: int, record: Dict[str, Any]) -> None:
        with self._lock:
            if record_id not in self._records:
                raise CollaboratorError(f"Record #{record_id} does not exist")
            self._records[record_id].update(copy.deepcopy(record))

    def clear_media(self, record_id: int, slot: str) -> None:
        with self._lock:
            if record_id in self._records:
                self._records[record_id].pop(slot, None)

    def get_record(self, record_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(copy.deepcopy(record), id=record_id) for record_id, record in self._records.items()]

    # TaxonomyStore

    def taxonomy_exists(self, name: str) -> bool:
        return name in self._taxonomies

    def term_exists(self, name: str, taxonomy: str) -> Optional[int]:
        with self._lock:
            return self._terms.get(taxonomy, {}).get(name)

    def create_term(self, name: str, taxonomy: str) -> int:
        if taxonomy not in self._taxonomies:
            raise CollaboratorError(f"Invalid taxonomy '{taxonomy}'")
        with self._lock:
            terms = self._terms.setdefault(taxonomy, {})
            if name in terms:
                return terms[name]
            term_id = self._next_term_id
            self._next_term_id += 1
            terms[name] = term_id
        return term_id

    # FieldRegistry

    def get_field_type(self, field_key: str, post_type: str) -> Optional[str]:
        return self._field_types.get(post_type, {}).get(field_key)

    def get_option_values(self, field_key: str, post_type: str) -> List[str]:
        with self._lock:
            return list(self._field_options.get(post_type, {}).get(field_key, []))

    def register_option_values(self, field_key: str, post_type: str, options: List[str]) -> None:
        with self._lock:
            self._field_options.setdefault(post_type, {})[field_key] = list(options)

    def register_field(self, field_key: str, post_type: str, field_type: str) -> None:
        with self._lock:
            self._field_types.setdefault(post_type, {})[field_key] = field_type

    def list_fields(self, post_type: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._field_types.get(post_type, {}))
