"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import Any, Dict

from crmlinker.database import Business, init_database, sqlite_url
from crmlinker.errors import SourceNotFound
from crmlinker.logger import StructuredLogger, get_logger, reset_logger
from crmlinker.matcher import Matcher
from crmlinker.reconciler import Reconciler
from crmlinker.records import IncomingRecord
from crmlinker.repositories import BusinessRepository, LinkRepository


class FakeFetcher:
    """Stands in for CrmClient: serves records from a dict, counts calls."""

    def __init__(self, records=None, errors=None):
        self.records: Dict[str, IncomingRecord] = dict(records or {})
        self.errors: Dict[str, Exception] = dict(errors or {})
        self.calls = []

    def add(self, record: IncomingRecord):
        self.records[record.record_id] = record

    def fetch_record(self, record_id: str) -> IncomingRecord:
        self.calls.append(record_id)
        if record_id in self.errors:
            raise self.errors[record_id]
        if record_id not in self.records:
            raise SourceNotFound(record_id)
        return self.records[record_id]


@pytest.fixture(autouse=True)
def quiet_logger(tmp_path):
    """Route the global logger to the test's temp dir, no console output."""
    reset_logger()
    logger = get_logger(log_dir=tmp_path / "logs", enable_console=False)
    yield logger
    reset_logger()


@pytest.fixture
def test_logger(tmp_path) -> StructuredLogger:
    return StructuredLogger(
        name="crmlinker.test",
        log_dir=tmp_path / "logs",
        enable_console=False,
    )


@pytest.fixture
def database(tmp_path):
    """File-backed SQLite database with the schema in place."""
    db = init_database(sqlite_url(tmp_path / "test.db"))
    yield db
    db.dispose()


@pytest.fixture
def businesses(database):
    """Seed the authoritative businesses table."""
    rows = [
        Business(
            id=1,
            name="Acme Plumbing",
            website="https://acme.com",
            phone="+1 (555) 123-4567",
            email="info@acme.com",
            full_address="12 Main St, Springfield",
            legacy_id="PIN-001",
        ),
        Business(
            id=2,
            name="Beta Bakery",
            website="http://www.betabakery.net/home",
            phone="555 987 6543",
            email="hello@betabakery.net",
            full_address="4 Oak Ave, Shelbyville",
            legacy_id="PIN-002",
        ),
        # Two businesses share a website and a name -> fallback is ambiguous
        Business(
            id=3,
            name="Gamma Garage North",
            website="https://gammagarage.com/north",
            phone="555 000 1111",
            full_address="1 North Rd",
            legacy_id="PIN-DUP",
        ),
        Business(
            id=4,
            name="Gamma Garage South",
            website="https://gammagarage.com/south",
            phone="555 000 2222",
            full_address="2 South Rd",
            legacy_id="PIN-DUP",
        ),
    ]
    with database.session() as session:
        session.add_all(rows)
        session.commit()
    return rows


@pytest.fixture
def business_repo(database) -> BusinessRepository:
    return BusinessRepository(database)


@pytest.fixture
def link_repo(database) -> LinkRepository:
    return LinkRepository(database)


@pytest.fixture
def matcher(business_repo, test_logger) -> Matcher:
    return Matcher(business_repo, logger=test_logger)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def reconciler(fetcher, link_repo, matcher, test_logger) -> Reconciler:
    return Reconciler(fetcher, link_repo, matcher, logger=test_logger)


@pytest.fixture
def api_payload() -> Dict[str, Any]:
    """A CRM record as the API returns it."""
    return {
        "_id": "1699999999999x123",
        "name_1": "Acme Plumbing",
        "site_1": "https://www.acme.com/contact",
        "phone_1": "555-123-4567",
        "email_1": "info@acme.com",
        "full_address_1": "12 Main St, Springfield",
        "Unique_ID_1": "PIN-001",
    }
