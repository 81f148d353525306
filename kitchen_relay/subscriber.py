from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Tuple, Union

from .change_feed import ChangeEvent, ChangeFeed, Subscription
from .errors import PersistenceError
from .schemas import OrderRead

logger = logging.getLogger(__name__)

MAX_RESUBSCRIBE_DELAY = 30.0


@dataclass(frozen=True)
class Snapshot:
    """Active orders as read from the store; ``seq`` orders the reads."""

    seq: int
    orders: Tuple[OrderRead, ...]


@dataclass(frozen=True)
class Projection:
    orders: Tuple[OrderRead, ...] = ()
    seq: int = 0
    stale: bool = True
    last_event: Optional[ChangeEvent] = field(default=None, compare=False)

    def get(self, order_id: int) -> Optional[OrderRead]:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None


Message = Union[ChangeEvent, Snapshot]


def reduce(projection: Projection, message: Message) -> Projection:
    if isinstance(message, ChangeEvent):
        return replace(projection, stale=True, last_event=message)
    if isinstance(message, Snapshot):
        if message.seq <= projection.seq:
            # A newer read already landed.
            return projection
        return replace(projection, orders=message.orders, seq=message.seq, stale=False)
    raise TypeError(f"Unsupported projection message: {message!r}")


Observer = Callable[[Projection], None]


class ChangeFeedSubscriber:
    """Follows the change feed for one table and republishes active orders.

    Use it as a context manager, or call :meth:`start` and :meth:`close`;
    closing always releases the feed subscription.
    """

    def __init__(self, repository, feed: ChangeFeed, *, table: str = "orders", poll_interval: float = 0.5) -> None:
        self.repository = repository
        self.feed = feed
        self.table = table
        self.poll_interval = poll_interval
        self._projection = Projection()
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._observers: list[Observer] = []
        self._subscription: Subscription | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def projection(self) -> Projection:
        with self._lock:
            return self._projection

    def add_observer(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def remove() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return remove

    def start(self) -> "ChangeFeedSubscriber":
        if self._thread is not None:
            return self
        self._subscription = self.feed.subscribe(self.table)
        self._stop.clear()
        try:
            self.refresh()
        except PersistenceError as exc:
            logger.warning("Initial refresh of %s failed: %s", self.table, exc)
        self._thread = threading.Thread(target=self._run, name=f"feed-{self.table}", daemon=True)
        self._thread.start()
        return self

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self.poll_interval * 4, 1.0))
            self._thread = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        with self._lock:
            self._observers.clear()

    def __enter__(self) -> "ChangeFeedSubscriber":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def refresh(self) -> Projection:
        """Re-read the active orders and publish them to observers."""
        seq = next(self._seq)
        orders = tuple(self.repository.list_active_orders())
        return self._apply(Snapshot(seq=seq, orders=orders))

    def _apply(self, message: Message) -> Projection:
        with self._lock:
            previous = self._projection
            self._projection = reduce(previous, message)
            current = self._projection
            observers = list(self._observers)
        if isinstance(message, Snapshot) and current is not previous:
            for observer in observers:
                try:
                    observer(current)
                except Exception:  # noqa: BLE001
                    logger.exception("Order observer failed")
        return current

    def _run(self) -> None:
        subscription = self._subscription
        while not self._stop.is_set():
            try:
                event = subscription.get(timeout=self.poll_interval)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Change feed read on %s failed, resubscribing: %s", self.table, exc)
                subscription = self._resubscribe(subscription)
                if subscription is None:
                    return
                continue
            if event is None:
                continue
            self._apply(event)
            # Collapse a burst of events into a single re-read.
            extra = subscription.get(timeout=0)
            while extra is not None:
                self._apply(extra)
                extra = subscription.get(timeout=0)
            try:
                self.refresh()
            except PersistenceError as exc:
                logger.warning("Refresh after %s on %s failed: %s", event.operation, self.table, exc)

    def _resubscribe(self, broken: Subscription) -> Subscription | None:
        """Swap a failed subscription for a fresh one, then catch up with a re-read.

        Returns None once the subscriber is closing.
        """
        try:
            broken.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Closing failed subscription on %s: %s", self.table, exc)
        delay = max(self.poll_interval, 0.05)
        while not self._stop.wait(delay):
            try:
                subscription = self.feed.subscribe(self.table)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Resubscribing to %s failed: %s", self.table, exc)
                delay = min(delay * 2, MAX_RESUBSCRIBE_DELAY)
                continue
            self._subscription = subscription
            # Events published while disconnected are lost.
            try:
                self.refresh()
            except PersistenceError as exc:
                logger.warning("Refresh after resubscribing to %s failed: %s", self.table, exc)
            return subscription
        return None
