"""
Pytest configuration and fixtures for the listing converter tests.

Tests run against a throwaway SQLite database; the environment is set before
any application module reads its settings.
"""

import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="listing-converter-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ["GEOCODER_ENABLED"] = "false"
os.environ["MEDIA_ROOT"] = os.path.join(_TEST_DB_DIR, "media")
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest

from listing_converter.api import dependencies
from listing_converter.db.session import reset_engine
from listing_converter.domain.imports.collaborators import ImportCollaborators
from listing_converter.domain.imports.importers import CsvImporter
from listing_converter.domain.imports.scheduler import Scheduler
from listing_converter.integrations.directory import InMemoryDirectory
from tests.utils.fakes import FakeClock, FakeGeocoder, FakeMediaImporter
from tests.utils.system_tables import clear_system_tables, ensure_system_tables_ready


@pytest.fixture(scope="session", autouse=True)
def initialize_test_database():
    """Create the system tables once per session on the SQLite test database."""
    reset_engine()
    ensure_system_tables_ready()
    yield
    reset_engine()


@pytest.fixture(autouse=True)
def clean_system_tables():
    clear_system_tables()
    yield
    dependencies.set_collaborators(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory():
    return InMemoryDirectory(
        post_types=["gd_place", "gd_event"],
        field_types={
            "gd_place": {
                "opening_date": "datepicker",
                "price_range": "select",
                "features": "multiselect",
                "amenities": "checkbox",
                "phone": "phone",
            }
        },
        field_options={"gd_place": {"price_range": ["$", "$$"]}},
    )


@pytest.fixture
def media():
    return FakeMediaImporter()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def collaborators(directory, media, geocoder):
    return ImportCollaborators(
        records=directory,
        taxonomies=directory,
        fields=directory,
        media=media,
        geocoder=geocoder,
    )


@pytest.fixture
def scheduler(collaborators, clock):
    return Scheduler(CsvImporter(), collaborators, clock=clock)
