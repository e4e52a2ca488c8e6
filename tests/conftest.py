"""Shared test fixtures."""
from typing import Any, Dict, Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from yardsync.models.records import Customer, Package, Profile  # noqa: F401
from yardsync.models.sync import (  # noqa: F401
    AutoSyncConfigRow,
    RateLimitAttempt,
    SyncLog,
    SyncSession,
)
from yardsync.remote.client import RemotePage
from yardsync.remote.normalizer import shipment_id
from yardsync.sync.errors import RemoteRejected


def make_shipment(
    sid: str,
    name: str = "Maria Lopez",
    address: str = "12 Harbour Rd, Kingston",
    **overrides: Any,
) -> Dict[str, Any]:
    """A raw shipment shaped like the warehouse system's list response."""
    raw = {
        "shipment_id": sid,
        "reference_number": f"REF-{sid}",
        "tracking_number": f"TRK-{sid}",
        "status": "in_warehouse",
        "warehouse_location": "Miami A3",
        "description": "Household goods",
        "weight": "4.5",
        "dimensions": "30x20x15",
        "value": 120,
        "sender": {"name": "Acme Supplies", "address": "1 Port Blvd, Miami"},
        "receiver": {"name": name, "address": address, "email": "maria@example.com"},
    }
    raw.update(overrides)
    return raw


class FakeRemoteSource:
    """
    In-memory RemoteSyncSource.

    Pages are served by offset; page tokens are the string offset of the next
    page. Exceptions queued in list_failures / fetch_failures are raised (one
    per call) before a call is served.
    """

    def __init__(self, shipments: Optional[List[Dict[str, Any]]] = None, page_size: int = 10, report_total: bool = True):
        self.shipments = list(shipments or [])
        self.page_size = page_size
        self.report_total = report_total
        self.list_failures: List[BaseException] = []
        self.fetch_failures: List[BaseException] = []
        self.list_calls: List[Optional[str]] = []
        self.fetch_calls: List[str] = []
        self.before_page = None  # optional async hook, awaited with the page offset

    async def list_since(self, filter_key: str, page_token: Optional[str] = None) -> RemotePage:
        self.list_calls.append(page_token)
        if self.list_failures:
            raise self.list_failures.pop(0)
        start = int(page_token or 0)
        if self.before_page is not None:
            await self.before_page(start)
        records = self.shipments[start:start + self.page_size]
        end = start + len(records)
        return RemotePage(
            records=records,
            next_page_token=str(end) if end < len(self.shipments) else None,
            total_hint=len(self.shipments) if self.report_total else None,
        )

    async def fetch_one(self, external_id: str) -> Dict[str, Any]:
        self.fetch_calls.append(external_id)
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        for raw in self.shipments:
            if shipment_id(raw) == external_id:
                return raw
        raise RemoteRejected(f"Shipment {external_id} not found", status_code=404)


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="remote")
def remote_fixture() -> FakeRemoteSource:
    return FakeRemoteSource()


@pytest.fixture(name="shipment")
def shipment_fixture():
    """The make_shipment factory, for tests that build remote data."""
    return make_shipment


@pytest.fixture(name="seeded_package")
def seeded_package_fixture(test_session: Session) -> Package:
    """A persisted customer with one package linked to remote shipment S-100."""
    customer = Customer(external_id="C-1", full_name="Maria Lopez", address="12 Harbour Rd, Kingston")
    test_session.add(customer)
    test_session.commit()
    test_session.refresh(customer)

    package = Package(
        external_id="S-100",
        customer_id=customer.id,
        tracking_number="TRK-S-100",
        description="Household goods",
        status="in_transit",
    )
    test_session.add(package)
    test_session.commit()
    test_session.refresh(package)
    return package
