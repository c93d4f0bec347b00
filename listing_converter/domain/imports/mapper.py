"""
Column mapping engine.

Translates a source row into a listing record using a column mapping. Every
destination field is classified once into a ``FieldTarget`` when the mapping
plan is built, so per-value handling is a dispatch on a closed set of kinds.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from listing_converter.api.schemas.shared import ImportSettings
from listing_converter.domain.imports.coercion import merge_options, split_options, split_terms
from listing_converter.domain.imports.collaborators import FieldRegistry, ImportCollaborators
from listing_converter.domain.imports.errors import CollaboratorError, RowRejected, RowSkipped
from listing_converter.domain.imports.location import LOCATION_FIELDS, build_location
from listing_converter.domain.imports.taxonomy import resolve_taxonomy_terms
from listing_converter.utils.date import AUTO_FORMAT, convert_date

logger = logging.getLogger(__name__)

LogFn = Callable[[str, str], object]

CORE_FIELDS = ("post_title", "post_content", "post_excerpt", "post_status")
DATE_FIELDS = ("post_date",)
MEDIA_FIELDS = ("featured_image", "post_images")
TAX_INPUT_PATTERN = re.compile(r"^tax_input\[(.+?)\]$")

DATE_FIELD_TYPES = {"datepicker"}
SINGLE_OPTION_TYPES = {"select", "radio"}
MULTI_OPTION_TYPES = {"multiselect"}
RAW_OPTION_TYPES = {"checkbox"}


class FieldKind(str, Enum):
    SCALAR = "scalar"
    CORE = "core"
    DATE = "date"
    TAXONOMY = "taxonomy"
    OPTION = "option"
    LOCATION = "location"
    MEDIA = "media"


class OptionMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"
    RAW = "raw"  # options are registered, the value is stored verbatim


@dataclass(frozen=True)
class FieldTarget:
    field: str
    kind: FieldKind
    taxonomy: Optional[str] = None
    option_mode: Optional[OptionMode] = None


@dataclass(frozen=True)
class MappingPlan:
    post_type: str
    columns: Tuple[Tuple[str, FieldTarget], ...]

    def date_columns(self) -> List[str]:
        return [column for column, target in self.columns if target.kind is FieldKind.DATE]


@dataclass
class MappedRow:
    record: Dict[str, Any]
    taxonomy_terms: Dict[str, List[Any]] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.record.get("post_title") or "")


def taxonomy_for_field(destination: str, post_type: str) -> Optional[str]:
    """Return the taxonomy a destination field addresses, if any."""
    match = TAX_INPUT_PATTERN.match(destination)
    if match:
        return match.group(1)
    if destination == "post_tags":
        return f"{post_type}_tags"
    if destination == "post_category":
        return f"{post_type}category"
    return None


def classify_field(destination: str, post_type: str, registry: FieldRegistry) -> FieldTarget:
    taxonomy = taxonomy_for_field(destination, post_type)
    if taxonomy:
        return FieldTarget(destination, FieldKind.TAXONOMY, taxonomy=taxonomy)
    if destination in DATE_FIELDS:
        return FieldTarget(destination, FieldKind.DATE)
    if destination in CORE_FIELDS:
        return FieldTarget(destination, FieldKind.CORE)
    if destination in LOCATION_FIELDS:
        return FieldTarget(destination, FieldKind.LOCATION)
    if destination in MEDIA_FIELDS:
        return FieldTarget(destination, FieldKind.MEDIA)

    try:
        field_type = (registry.get_field_type(destination, post_type) or "").lower()
    except CollaboratorError as exc:
        logger.warning("Field type lookup for '%s' failed, treating it as plain text: %s", destination, exc.message)
        field_type = ""
    if field_type in DATE_FIELD_TYPES:
        return FieldTarget(destination, FieldKind.DATE)
    if field_type in SINGLE_OPTION_TYPES:
        return FieldTarget(destination, FieldKind.OPTION, option_mode=OptionMode.SINGLE)
    if field_type in MULTI_OPTION_TYPES:
        return FieldTarget(destination, FieldKind.OPTION, option_mode=OptionMode.MULTI)
    if field_type in RAW_OPTION_TYPES:
        return FieldTarget(destination, FieldKind.OPTION, option_mode=OptionMode.RAW)
    return FieldTarget(destination, FieldKind.SCALAR)


def build_mapping_plan(mapping: Dict[str, str], post_type: str, registry: FieldRegistry) -> MappingPlan:
    """Classify every mapped destination field once, keeping the mapping order."""
    columns = tuple(
        (column, classify_field(destination, post_type, registry))
        for column, destination in mapping.items()
        if column and destination
    )
    return MappingPlan(post_type=post_type, columns=columns)


def _register_new_options(
    target: FieldTarget,
    tokens: List[str],
    post_type: str,
    registry: FieldRegistry,
    log: LogFn,
) -> None:
    try:
        existing = registry.get_option_values(target.field, post_type) or []
    except CollaboratorError as exc:
        log(f'Could not read options of field "{target.field}": {exc.message}', "warning")
        return
    new_options = [token for token in tokens if token not in existing]
    if not new_options:
        return

    merged = merge_options(existing, new_options)
    try:
        registry.register_option_values(target.field, post_type, merged)
    except CollaboratorError as exc:
        log(f'Could not update options of field "{target.field}": {exc.message}', "warning")
        return

    log(f'Updated field "{target.field}" with {len(new_options)} new option(s).', "info")


def _format_option_value(target: FieldTarget, value: str, tokens: List[str]) -> str:
    if target.option_mode is OptionMode.MULTI:
        return ",".join(tokens)
    if target.option_mode is OptionMode.SINGLE:
        return tokens[0] if tokens else value
    return value


def map_row(
    row: Dict[str, Any],
    plan: MappingPlan,
    import_settings: ImportSettings,
    collaborators: ImportCollaborators,
    *,
    log: LogFn,
) -> MappedRow:
    """
    Map one source row into a listing record and its taxonomy terms.

    Raises:
        RowSkipped: no mapped column produced a value
        RowRejected: the record has no usable title
    """
    post_type = plan.post_type
    record: Dict[str, Any] = {
        "post_type": post_type,
        "post_status": import_settings.post_status,
    }
    if import_settings.author_id:
        record["post_author"] = import_settings.author_id

    tax_input: Dict[str, List[str]] = {}
    location_values: Dict[str, str] = {}
    produced = False

    for column, target in plan.columns:
        raw = row.get(column)
        if raw is None:
            continue
        value = str(raw).strip()
        if value == "":
            continue
        produced = True

        if target.kind is FieldKind.TAXONOMY:
            tax_input[target.taxonomy] = split_terms(value)
        elif target.kind is FieldKind.DATE:
            date_format = import_settings.date_formats.get(column, AUTO_FORMAT)
            record[target.field] = convert_date(value, date_format, log_context=column)
        elif target.kind is FieldKind.OPTION:
            tokens = split_options(value)
            if not import_settings.test_mode:
                _register_new_options(target, tokens, post_type, collaborators.fields, log)
            record[target.field] = _format_option_value(target, value, tokens)
        elif target.kind is FieldKind.LOCATION:
            location_values[target.field] = value
        else:
            record[target.field] = value

    if not produced:
        raise RowSkipped("No mapped column produced a value.")

    if not record.get("post_title"):
        raise RowRejected("The row has no title.")

    taxonomy_terms = resolve_taxonomy_terms(
        tax_input,
        collaborators.taxonomies,
        test_mode=import_settings.test_mode,
        log=log,
    )

    record.update(build_location(location_values, collaborators.geocoder, log=log))

    return MappedRow(record=record, taxonomy_terms=taxonomy_terms)


def mapping_fields(
    post_type: str,
    registry: FieldRegistry,
    hidden_types: Tuple[str, ...] = ("hidden",),
) -> List[Dict[str, Any]]:
    """
    List the destination fields a column can be mapped to for ``post_type``.

    Built-in fields come first, followed by the registry's custom fields with
    their classification. Hidden bookkeeping fields are left out.
    """
    destinations = list(CORE_FIELDS) + list(DATE_FIELDS) + ["post_category", "post_tags"]
    destinations += list(MEDIA_FIELDS) + list(LOCATION_FIELDS)

    fields: List[Dict[str, Any]] = []
    for destination in destinations:
        target = classify_field(destination, post_type, registry)
        fields.append({"field": destination, "kind": target.kind.value, "type": None})

    for field_key, field_type in registry.list_fields(post_type).items():
        if field_key in destinations or field_type in hidden_types:
            continue
        target = classify_field(field_key, post_type, registry)
        fields.append({"field": field_key, "kind": target.kind.value, "type": field_type})

    return fields
