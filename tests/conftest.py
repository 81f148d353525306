"""Shared fixtures: a fresh SQLite store per test, an in-process change feed
and a gateway that records what it was asked to send."""
import threading
import time
from decimal import Decimal

import pytest
from sqlmodel import Session

from kitchen_relay.change_feed import InMemoryChangeFeed
from kitchen_relay.coordinator import OrderingCoordinator
from kitchen_relay.database import build_engine, init_db
from kitchen_relay.errors import DispatchError
from kitchen_relay.models import MenuItem
from kitchen_relay.notifier import NotificationDispatcher
from kitchen_relay.repository import OrderRepository

CUSTOMER_PHONE = "+34611111111"


class RecordingGateway:
    """Stands in for WhatsApp; can be told to fail the next N sends."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls = 0
        self.sent: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def send(self, to: str, body: str) -> None:
        with self._lock:
            self.calls += 1
            if self.fail_times:
                self.fail_times -= 1
                raise DispatchError("gateway unavailable")
            self.sent.append((to, body))

    @property
    def bodies(self) -> list[str]:
        with self._lock:
            return [body for _, body in self.sent]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}", timeout=5)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def menu(engine):
    """Two available dishes and one that is off the menu."""
    rows = {
        "margarita": MenuItem(name="Pizza Margarita", price=Decimal("8.50"), category="Pizzas"),
        "tarta": MenuItem(name="Tarta de Queso", price=Decimal("6.00"), category="Postres"),
        "burger": MenuItem(name="Hamburguesa Clásica", price=Decimal("9.00"), category="Burgers"),
        "retired": MenuItem(name="Pizza Hawaiana", price=Decimal("9.50"), category="Pizzas", available=False),
    }
    with Session(engine) as session:
        for item in rows.values():
            session.add(item)
        session.commit()
        for item in rows.values():
            session.refresh(item)
    return rows


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def repository(engine, feed):
    return OrderRepository(engine, feed, order_number_offset=1000)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def dispatcher(gateway):
    dispatcher = NotificationDispatcher(gateway, default_recipient="+34600000000", workers=2)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def coordinator(repository, dispatcher):
    return OrderingCoordinator(repository, dispatcher, default_customer_phone=CUSTOMER_PHONE)


@pytest.fixture
def wait_for():
    def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait_for


@pytest.fixture
def make_gateway():
    return RecordingGateway
