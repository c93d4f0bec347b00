"""
Test doubles for the external collaborators and the clock.
"""

from typing import Any, Dict, List, Optional

from listing_converter.domain.imports.errors import CollaboratorError


class FakeClock:
    """Deterministic clock; ``advance`` moves time forward."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMediaImporter:
    def __init__(self, failing_urls: Optional[List[str]] = None):
        self.failing_urls = set(failing_urls or [])
        self.fetched: List[str] = []

    def fetch_and_attach(self, url: str) -> Dict[str, Any]:
        self.fetched.append(url)
        if url in self.failing_urls:
            raise CollaboratorError(f"Failed to download {url}")
        return {"id": len(self.fetched), "url": url}


class FakeGeocoder:
    def __init__(self, result: Optional[Dict[str, Any]] = None, fail: bool = False):
        self.result = result or {
            "address": "1 Harbour St, Sydney",
            "city": "Sydney",
            "region": "New South Wales",
            "zip": "2000",
            "country": "Australia",
            "latitude": 0.0,
            "longitude": 0.0,
        }
        self.fail = fail
        self.calls: List[tuple] = []

    def reverse_geocode(self, latitude: float, longitude: float) -> Dict[str, Any]:
        self.calls.append((latitude, longitude))
        if self.fail:
            raise CollaboratorError("Failed to retrieve location data")
        return dict(self.result)


def log_lines(entries: List[Any]) -> List[str]:
    """Strip the elapsed-time prefix from job log messages."""
    return [entry.message.split(" - ", 1)[1] for entry in entries]
