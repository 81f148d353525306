from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import psycopg
from psycopg import sql

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: str
    row_id: Optional[int] = None


def encode_event(event: ChangeEvent) -> str:
    return json.dumps(asdict(event))


def decode_event(payload: str) -> Optional[ChangeEvent]:
    try:
        data = json.loads(payload)
        return ChangeEvent(table=data["table"], operation=data["operation"], row_id=data.get("row_id"))
    except (ValueError, KeyError, TypeError):
        logger.warning("Ignoring malformed change feed payload: %r", payload)
        return None


class Subscription(Protocol):
    table: str

    def get(self, timeout: float | None = None) -> Optional[ChangeEvent]:
        ...

    def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    def subscribe(self, table: str) -> Subscription:
        ...

    def publish(self, event: ChangeEvent) -> None:
        ...


# -------------------------
# In-process feed
# -------------------------

class InMemorySubscription:
    def __init__(self, feed: "InMemoryChangeFeed", table: str) -> None:
        self.table = table
        self._feed = feed
        self._queue: "queue.Queue[ChangeEvent]" = queue.Queue()
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> Optional[ChangeEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._remove(self)


class InMemoryChangeFeed:
    """Feed for a single process; used in development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[InMemorySubscription] = []

    def subscribe(self, table: str) -> InMemorySubscription:
        subscription = InMemorySubscription(self, table)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.table == event.table]
        for subscription in targets:
            subscription.deliver(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription: InMemorySubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)


# -------------------------
# Postgres LISTEN/NOTIFY feed
# -------------------------

def _libpq_url(url: str) -> str:
    # psycopg does not understand SQLAlchemy's "+driver" suffix.
    scheme, sep, rest = url.partition("://")
    return f"{scheme.split('+', 1)[0]}{sep}{rest}"


class PostgresSubscription:
    def __init__(self, conninfo: str, channel: str, table: str, *, connect_timeout: int = 5) -> None:
        self.table = table
        self._conn = psycopg.connect(conninfo, autocommit=True, connect_timeout=connect_timeout)
        self._conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))

    def get(self, timeout: float | None = None) -> Optional[ChangeEvent]:
        for notify in self._conn.notifies(timeout=timeout, stop_after=1):
            event = decode_event(notify.payload)
            if event is not None and event.table == self.table:
                return event
        return None

    def close(self) -> None:
        if not self._conn.closed:
            self._conn.close()


class PostgresChangeFeed:
    """Feed shared by every process connected to the same database."""

    def __init__(self, database_url: str, channel: str, *, timeout: float = 5.0) -> None:
        self.conninfo = _libpq_url(database_url)
        self.channel = channel
        # libpq only takes whole seconds.
        self.connect_timeout = max(1, int(timeout))

    def subscribe(self, table: str) -> PostgresSubscription:
        return PostgresSubscription(self.conninfo, self.channel, table, connect_timeout=self.connect_timeout)

    def publish(self, event: ChangeEvent) -> None:
        with psycopg.connect(self.conninfo, autocommit=True, connect_timeout=self.connect_timeout) as conn:
            conn.execute("SELECT pg_notify(%s, %s)", (self.channel, encode_event(event)))


def build_change_feed(settings) -> ChangeFeed:
    if settings.change_feed_backend == "postgres":
        return PostgresChangeFeed(settings.database_url, settings.change_feed_channel, timeout=settings.store_timeout)
    return InMemoryChangeFeed()
