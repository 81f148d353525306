from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterable, List

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import crud
from .change_feed import ChangeEvent, ChangeFeed
from .errors import Conflict, NotFound, PersistenceError
from .models import MenuItem, Order
from .schemas import OrderCandidate, OrderRead, TodaySummary
from .state_machine import parse_status

logger = logging.getLogger(__name__)

ORDERS_TABLE = Order.__tablename__


class OrderRepository:
    def __init__(self, engine: Engine, feed: ChangeFeed | None = None, *, order_number_offset: int = 1000) -> None:
        self.engine = engine
        self.feed = feed
        self.order_number_offset = order_number_offset

    def create_order(self, candidate: OrderCandidate) -> OrderRead:
        if not candidate.items:
            raise ValueError("An order needs at least one line item")
        total = crud.compute_total(candidate.items)
        if candidate.total_amount is not None and Decimal(candidate.total_amount) != total:
            logger.warning(
                "Order total hint %s does not match line items (%s); using %s",
                candidate.total_amount,
                total,
                total,
            )
        try:
            with Session(self.engine) as session:
                order = crud.create_order(
                    session,
                    candidate,
                    total_amount=total,
                    number_offset=self.order_number_offset,
                )
                created = crud.to_read_models(session, [order])[0]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not store order: {exc}") from exc
        logger.info("Stored order #%s (id=%s, total=%s)", created.order_number, created.id, created.total_amount)
        self._announce("INSERT", created.id)
        return created

    def list_active_orders(self) -> List[OrderRead]:
        try:
            with Session(self.engine) as session:
                return crud.to_read_models(session, crud.list_active_orders(session))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not list active orders: {exc}") from exc

    def get_order(self, order_id: int) -> OrderRead:
        try:
            with Session(self.engine) as session:
                order = crud.get_order(session, order_id)
                if order is None:
                    raise NotFound(order_id)
                return crud.to_read_models(session, [order])[0]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read order {order_id}: {exc}") from exc

    def get_order_by_number(self, order_number: int) -> OrderRead | None:
        try:
            with Session(self.engine) as session:
                order = crud.get_order_by_number(session, order_number)
                if order is None:
                    return None
                return crud.to_read_models(session, [order])[0]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read order #{order_number}: {exc}") from exc

    def update_status(self, order_id: int, new_status, expected_status=None) -> OrderRead:
        """Persist ``new_status``.

        With ``expected_status`` the write only lands if the stored status
        still equals it; otherwise :class:`Conflict` is raised and nothing
        changes.
        """
        new_status = parse_status(new_status)
        expected = parse_status(expected_status) if expected_status is not None else None
        try:
            with Session(self.engine) as session:
                changed = crud.update_status(session, order_id, new_status, expected)
                if not changed:
                    session.rollback()
                    current = crud.get_order(session, order_id)
                    if current is None:
                        raise NotFound(order_id)
                    raise Conflict(order_id, expected, parse_status(current.status))
                # Read back inside the write so the result is the row this call wrote.
                updated = crud.to_read_models(session, [crud.get_order(session, order_id)])[0]
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not update order {order_id}: {exc}") from exc
        logger.info("Order #%s is now %s", updated.order_number, updated.status)
        self._announce("UPDATE", order_id)
        return updated

    def get_menu_items(self, menu_item_ids: Iterable[int]) -> dict[int, MenuItem]:
        try:
            with Session(self.engine) as session:
                return crud.get_menu_items(session, menu_item_ids)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read menu items: {exc}") from exc

    def list_menu_items(self, *, available_only: bool = True) -> List[MenuItem]:
        try:
            with Session(self.engine) as session:
                return crud.list_menu_items(session, available_only=available_only)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read menu items: {exc}") from exc

    def today_summary(self, now: datetime | None = None) -> TodaySummary:
        now = now or datetime.now(timezone.utc)
        start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        try:
            with Session(self.engine) as session:
                count, revenue = crud.summarize_between(session, start, start + timedelta(days=1))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not summarize today's orders: {exc}") from exc
        return TodaySummary(orders_today=count, revenue_today=revenue.quantize(Decimal("0.01")))

    def _announce(self, operation: str, row_id: int) -> None:
        if self.feed is None:
            return
        try:
            self.feed.publish(ChangeEvent(table=ORDERS_TABLE, operation=operation, row_id=row_id))
        except Exception as exc:  # noqa: BLE001
            # The write is committed; subscribers catch up on the next event.
            logger.warning("Failed to publish %s change for order %s: %s", operation, row_id, exc)
