"""
Interfaces of the external collaborators the import pipeline calls.

Implementations raise ``CollaboratorError`` for failures; the pipeline
degrades the affected sub-value instead of failing the row where it can.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass
class ImportCollaborators:
    """Bundle of collaborators injected into every stage handler."""
    records: "RecordStore"
    taxonomies: "TaxonomyStore"
    fields: "FieldRegistry"
    media: "MediaImporter"
    geocoder: Optional["Geocoder"] = None


class RecordStore(Protocol):
    def post_types(self) -> List[str]:
        ...

    def find_by_fingerprint(self, fingerprint: str, post_type: str, key: str) -> Optional[int]:
        ...

    def create(self, record: Dict[str, Any]) -> int:
        ...

    def update(self, record_id: int, record: Dict[str, Any]) -> None:
        ...

    def clear_media(self, record_id: int, slot: str) -> None:
        ...


class TaxonomyStore(Protocol):
    def taxonomy_exists(self, name: str) -> bool:
        ...

    def term_exists(self, name: str, taxonomy: str) -> Optional[int]:
        ...

    def create_term(self, name: str, taxonomy: str) -> int:
        ...


class MediaImporter(Protocol):
    def fetch_and_attach(self, url: str) -> Dict[str, Any]:
        """Return ``{"id": ..., "url": ...}`` for the stored attachment."""
        ...


class Geocoder(Protocol):
    def reverse_geocode(self, latitude: float, longitude: float) -> Dict[str, Any]:
        """Return at least ``address``; may include city/region/zip/country."""
        ...


class FieldRegistry(Protocol):
    def get_field_type(self, field_key: str, post_type: str) -> Optional[str]:
        ...

    def get_option_values(self, field_key: str, post_type: str) -> List[str]:
        ...

    def register_option_values(self, field_key: str, post_type: str, options: List[str]) -> None:
        ...

    def register_field(self, field_key: str, post_type: str, field_type: str) -> None:
        ...

    def list_fields(self, post_type: str) -> Dict[str, str]:
        """Custom field key to field type, in registration order."""
        ...
