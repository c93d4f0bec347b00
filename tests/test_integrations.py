import os

import pytest
import requests

from listing_converter.domain.imports.errors import CollaboratorError
from listing_converter.integrations.directory import InMemoryDirectory
from listing_converter.integrations.geocoder import NominatimGeocoder, parse_location_data
from listing_converter.integrations.media import HttpMediaImporter
from tests.utils.fakes import FakeClock

NOMINATIM_RESPONSE = {
    "display_name": "1 Queen St, Auckland Central, Auckland, 1010, New Zealand / Aotearoa",
    "address": {
        "road": "Queen St",
        "city": "Auckland",
        "state": "Auckland (state)",
        "postcode": "1010",
        "country": "New Zealand / Aotearoa",
        "country_code": "nz",
    },
}


class FakeResponse:
    def __init__(self, payload=None, content=b"", status_code=200):
        self.payload = payload
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


class TestGeocoder:

    def test_parse_location_data(self):
        location = parse_location_data(-36.85, 174.76, NOMINATIM_RESPONSE)

        assert location == {
            "latitude": -36.85,
            "longitude": 174.76,
            "address": NOMINATIM_RESPONSE["display_name"],
            "city": "Auckland",
            "region": "Auckland",
            "zip": "1010",
            "country": "New Zealand",
        }

    def test_village_wins_over_city(self):
        location = parse_location_data(0, 0, {"address": {"village": "Hamlet", "city": "Big City"}})
        assert location["city"] == "Hamlet"

    def test_county_stands_in_for_missing_state(self):
        location = parse_location_data(
            0, 0, {"address": {"town": "Bergen", "county": "Vestland", "country_code": "no"}}
        )
        assert location["region"] == "Vestland"

    def test_lookup_sends_identifying_request_and_caches(self):
        session = FakeSession(FakeResponse(NOMINATIM_RESPONSE))
        geocoder = NominatimGeocoder(url="https://geo.test/reverse", user_agent="tests", session=session)

        first = geocoder.reverse_geocode(-36.85, 174.76)
        second = geocoder.reverse_geocode(-36.85, 174.76)

        assert first == second
        assert len(session.calls) == 1
        url, kwargs = session.calls[0]
        assert url == "https://geo.test/reverse"
        assert kwargs["params"]["format"] == "json"
        assert kwargs["headers"] == {"User-Agent": "tests"}
        assert kwargs["timeout"] == geocoder.timeout

    def test_cache_expires(self):
        clock = FakeClock()
        session = FakeSession(FakeResponse(NOMINATIM_RESPONSE))
        geocoder = NominatimGeocoder(session=session, cache_ttl=60, clock=clock)

        geocoder.reverse_geocode(1.0, 2.0)
        clock.advance(61)
        geocoder.reverse_geocode(1.0, 2.0)

        assert len(session.calls) == 2

    def test_network_failure_raises_collaborator_error(self):
        session = FakeSession(error=requests.exceptions.ConnectTimeout("timed out"))
        geocoder = NominatimGeocoder(session=session)

        with pytest.raises(CollaboratorError):
            geocoder.reverse_geocode(1.0, 2.0)

    def test_response_without_address_is_invalid(self):
        geocoder = NominatimGeocoder(session=FakeSession(FakeResponse({"error": "Unable to geocode"})))

        with pytest.raises(CollaboratorError) as excinfo:
            geocoder.reverse_geocode(1.0, 2.0)
        assert excinfo.value.message == "Invalid location data"


class TestMediaImporter:

    def test_download_is_stored_once(self, tmp_path):
        session = FakeSession(FakeResponse(content=b"\x89PNG"))
        importer = HttpMediaImporter(media_root=str(tmp_path), session=session)

        first = importer.fetch_and_attach("https://img.test/photos/cafe.png")
        second = importer.fetch_and_attach("https://img.test/photos/cafe.png")

        assert first["id"] == second["id"] == 1
        assert first["url"] == "https://img.test/photos/cafe.png"
        assert first["path"].endswith("_cafe.png")
        assert os.path.exists(first["path"])
        assert len(session.calls) == 1

    def test_http_error_raises_collaborator_error(self, tmp_path):
        importer = HttpMediaImporter(media_root=str(tmp_path), session=FakeSession(FakeResponse(status_code=404)))

        with pytest.raises(CollaboratorError):
            importer.fetch_and_attach("https://img.test/missing.png")

    def test_non_http_url_is_rejected(self, tmp_path):
        session = FakeSession(FakeResponse(content=b""))
        importer = HttpMediaImporter(media_root=str(tmp_path), session=session)

        with pytest.raises(CollaboratorError):
            importer.fetch_and_attach("file:///etc/passwd")
        assert session.calls == []


class TestInMemoryDirectory:

    def test_default_taxonomies_follow_post_types(self):
        directory = InMemoryDirectory(post_types=["gd_place"])

        assert directory.taxonomy_exists("gd_placecategory")
        assert directory.taxonomy_exists("gd_place_tags")
        assert not directory.taxonomy_exists("gd_eventcategory")

    def test_find_by_fingerprint_is_scoped_by_post_type(self):
        directory = InMemoryDirectory(post_types=["gd_place", "gd_event"])
        record_id = directory.create({"post_type": "gd_place", "csv_id": "fp"})

        assert directory.find_by_fingerprint("fp", "gd_place", "csv_id") == record_id
        assert directory.find_by_fingerprint("fp", "gd_event", "csv_id") is None

    def test_update_of_missing_record_fails(self):
        with pytest.raises(CollaboratorError):
            InMemoryDirectory().update(42, {"post_title": "Ghost"})

    def test_registered_fields_are_listed_per_post_type(self):
        directory = InMemoryDirectory(post_types=["gd_place"], field_types={"gd_place": {"phone": "phone"}})

        directory.register_field("csv_id", "gd_place", "hidden")

        assert directory.list_fields("gd_place") == {"phone": "phone", "csv_id": "hidden"}
        assert directory.get_field_type("csv_id", "gd_place") == "hidden"
        assert directory.list_fields("gd_event") == {}
