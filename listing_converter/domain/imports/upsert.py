"""
Dedup and upsert of mapped listings.

A source row's fingerprint is stored on the record it produced, so importing
the same export again finds that record and updates it instead of creating a
duplicate.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from listing_converter.domain.imports.coercion import split_urls
from listing_converter.domain.imports.collaborators import ImportCollaborators, MediaImporter
from listing_converter.domain.imports.errors import CollaboratorError
from listing_converter.domain.imports.fingerprinting import fingerprint_field

logger = logging.getLogger(__name__)

LogFn = Callable[[str, str], object]

GALLERY_SLOT = "post_images"


class ImportStatus(str, Enum):
    SUCCESS = "success"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class UpsertResult:
    status: ImportStatus
    id: Optional[int] = None
    message: Optional[str] = None


def _attach_featured_image(payload: Dict[str, Any], media: MediaImporter, log: LogFn) -> None:
    url = payload.get("featured_image")
    if not url:
        payload.pop("featured_image", None)
        return

    log(f"Importing featured image: {url}", "info")
    try:
        attachment = media.fetch_and_attach(url)
    except CollaboratorError as exc:
        log(f"Dropped featured image {url}: {exc.message}", "warning")
        payload.pop("featured_image", None)
        return

    payload["featured_image"] = attachment["url"]


def _attach_gallery(payload: Dict[str, Any], media: MediaImporter, log: LogFn) -> None:
    urls = split_urls(payload.get(GALLERY_SLOT) or "")
    if not urls:
        payload.pop(GALLERY_SLOT, None)
        return

    log(f"Importing {len(urls)} post images", "info")
    images: List[Dict[str, Any]] = []
    for url in urls:
        try:
            attachment = media.fetch_and_attach(url)
        except CollaboratorError as exc:
            log(f"Dropped image {url}: {exc.message}", "warning")
            continue
        images.append({"id": attachment["id"], "url": attachment["url"], "weight": len(images)})

    if images:
        payload[GALLERY_SLOT] = images
    else:
        payload.pop(GALLERY_SLOT, None)


def upsert(
    record: Dict[str, Any],
    taxonomy_terms: Dict[str, List[Any]],
    fingerprint: str,
    post_type: str,
    test_mode: bool,
    *,
    importer_id: str,
    collaborators: ImportCollaborators,
    log: LogFn,
) -> UpsertResult:
    """
    Create or update the listing for one mapped row.

    Test mode returns ``success`` before any lookup or write.
    """
    if not record:
        return UpsertResult(ImportStatus.SKIPPED, message="Nothing to import after mapping.")

    if test_mode:
        return UpsertResult(ImportStatus.SUCCESS)

    records = collaborators.records
    key = fingerprint_field(importer_id)

    try:
        existing_id = records.find_by_fingerprint(fingerprint, post_type, key)
    except CollaboratorError as exc:
        log(exc.message, "error")
        return UpsertResult(ImportStatus.FAILED, message=exc.message)

    payload = dict(record)
    payload["post_type"] = post_type
    payload[key] = fingerprint
    if taxonomy_terms:
        payload["tax_input"] = taxonomy_terms

    if existing_id is not None:
        try:
            records.clear_media(existing_id, GALLERY_SLOT)
        except CollaboratorError as exc:
            log(f"Could not clear previous images of listing #{existing_id}: {exc.message}", "warning")

    _attach_featured_image(payload, collaborators.media, log)
    _attach_gallery(payload, collaborators.media, log)

    try:
        if existing_id is not None:
            records.update(existing_id, payload)
            return UpsertResult(ImportStatus.UPDATED, id=existing_id)
        record_id = records.create(payload)
    except CollaboratorError as exc:
        log(exc.message, "error")
        return UpsertResult(ImportStatus.FAILED, message=exc.message)

    return UpsertResult(ImportStatus.SUCCESS, id=record_id)
