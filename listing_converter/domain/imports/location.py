"""
Location assembly for imported listings.

Source location fields are layered over the installation default location.
When the source carries usable coordinates the address is backfilled with a
reverse geocode lookup; the coordinates themselves are never replaced.
"""
import logging
from typing import Any, Callable, Dict, Optional

from listing_converter.core.config import settings
from listing_converter.domain.imports.coercion import parse_coordinate
from listing_converter.domain.imports.collaborators import Geocoder
from listing_converter.domain.imports.errors import CollaboratorError

logger = logging.getLogger(__name__)

LOCATION_FIELDS = (
    "street",
    "street2",
    "city",
    "region",
    "country",
    "zip",
    "latitude",
    "longitude",
)

ADDRESS_FIELDS = ("city", "region", "zip", "country")


def get_default_location() -> Dict[str, Any]:
    location: Dict[str, Any] = {field: "" for field in LOCATION_FIELDS}
    location.update(
        {
            "city": settings.default_location_city,
            "region": settings.default_location_region,
            "country": settings.default_location_country,
            "latitude": settings.default_location_latitude,
            "longitude": settings.default_location_longitude,
            "mapview": "",
            "mapzoom": "",
        }
    )
    return location


def build_location(
    values: Dict[str, str],
    geocoder: Optional[Geocoder],
    *,
    log: Callable[[str, str], object],
    default_location: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Merge mapped location ``values`` over the default location."""
    location = dict(default_location if default_location is not None else get_default_location())

    for field in ("street", "street2", "city", "region", "country", "zip"):
        if values.get(field):
            location[field] = values[field]

    latitude = parse_coordinate(values.get("latitude")) if values.get("latitude") else None
    longitude = parse_coordinate(values.get("longitude")) if values.get("longitude") else None
    if latitude is None or longitude is None:
        return location

    location["latitude"] = latitude
    location["longitude"] = longitude

    if geocoder is None:
        return location

    log(f"Resolving address from coordinates {latitude},{longitude}", "info")
    try:
        lookup = geocoder.reverse_geocode(latitude, longitude)
    except CollaboratorError as exc:
        log(f"Could not resolve address for {latitude},{longitude}: {exc.message}", "warning")
        return location

    if lookup.get("address"):
        location["street"] = lookup["address"]
    for field in ADDRESS_FIELDS:
        if lookup.get(field):
            location[field] = lookup[field]

    return location
