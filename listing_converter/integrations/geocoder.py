"""
Reverse geocoding against a Nominatim-compatible endpoint.
"""
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests

from listing_converter.core.config import settings
from listing_converter.domain.imports.errors import CollaboratorError

logger = logging.getLogger(__name__)

# Countries whose Nominatim results often lack a state; county stands in for it
FALLBACK_STATE_COUNTRIES = {"gb", "bm", "no", "se", "ro"}

CITY_KEYS = ("village", "town", "city", "county", "city_district", "state_district")
STATE_KEYS = ("province", "state", "region")


def parse_location_data(latitude: float, longitude: float, data: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a Nominatim reverse lookup into listing location fields."""
    address = dict(data.get("address") or {})

    city = next((address[key] for key in CITY_KEYS if address.get(key)), "")

    if address.get("country_code") in FALLBACK_STATE_COUNTRIES and not address.get("state"):
        address["state"] = address.get("county") or address.get("state_district") or ""

    state = next((address[key] for key in STATE_KEYS if address.get(key)), "")
    state = state.replace(" (state)", "")

    country = address.get("country", "")
    if country == "New Zealand / Aotearoa":
        country = "New Zealand"

    return {
        "latitude": latitude,
        "longitude": longitude,
        "address": data.get("display_name", ""),
        "city": city,
        "region": state,
        "zip": address.get("postcode", ""),
        "country": country,
    }


class NominatimGeocoder:
    """Reverse geocoder with a per-process result cache."""

    def __init__(
        self,
        url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        session: Optional[requests.Session] = None,
        clock=time.time,
    ):
        self.url = url or settings.geocoder_url
        self.user_agent = user_agent or settings.geocoder_user_agent
        self.timeout = timeout if timeout is not None else settings.geocoder_timeout_seconds
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.geocoder_cache_ttl_seconds
        self.session = session or requests.Session()
        self._clock = clock
        self._cache: Dict[Tuple[float, float], Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _cached(self, key: Tuple[float, float]) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, location = entry
            if self._clock() - stored_at > self.cache_ttl:
                del self._cache[key]
                return None
            return dict(location)

    def reverse_geocode(self, latitude: float, longitude: float) -> Dict[str, Any]:
        key = (round(float(latitude), 7), round(float(longitude), 7))
        cached = self._cached(key)
        if cached is not None:
            return cached

        try:
            response = self.session.get(
                self.url,
                params={"lat": latitude, "lon": longitude, "format": "json", "addressdetails": 1},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning("Reverse geocode failed for %s,%s: %s", latitude, longitude, exc)
            raise CollaboratorError("Failed to retrieve location data", {"error": str(exc)})

        if not isinstance(data, dict) or not data.get("address"):
            raise CollaboratorError("Invalid location data")

        location = parse_location_data(latitude, longitude, data)
        with self._lock:
            self._cache[key] = (self._clock(), location)
        return dict(location)
