from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Union

from .errors import AlreadyTerminal, Conflict, EmptySelection, UnknownMenuItem
from .models import MenuItem, OrderStatus
from .notifier import NotificationDispatcher
from .repository import OrderRepository
from .schemas import LineCandidate, OrderCandidate, OrderRead, SelectionLine
from .state_machine import is_terminal, next_status, parse_status

logger = logging.getLogger(__name__)

Selection = Sequence[Union[MenuItem, SelectionLine, int]]


class OrderingCoordinator:
    def __init__(
        self,
        repository: OrderRepository,
        dispatcher: NotificationDispatcher,
        *,
        view=None,
        default_customer_name: str = "Cliente Demo",
        default_customer_phone: str = "",
    ) -> None:
        # ``view`` is anything with ``projection`` and ``refresh()``, normally
        # a ChangeFeedSubscriber owned by the same terminal.
        self.repository = repository
        self.dispatcher = dispatcher
        self.view = view
        self.default_customer_name = default_customer_name
        self.default_customer_phone = default_customer_phone

    def place_order(
        self,
        selection: Selection,
        *,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        source: str = "web",
        total_hint: Optional[Decimal] = None,
    ) -> OrderRead:
        lines = list(_selection_lines(selection or ()))
        if not lines:
            raise EmptySelection()

        menu_items = self.repository.get_menu_items({line.menu_item_id for line in lines})
        unknown = {
            line.menu_item_id
            for line in lines
            if line.menu_item_id not in menu_items or not menu_items[line.menu_item_id].available
        }
        if unknown:
            raise UnknownMenuItem(unknown)

        candidate = OrderCandidate(
            customer_name=customer_name or self.default_customer_name,
            customer_phone=customer_phone or self.default_customer_phone,
            source=source,
            total_amount=total_hint,
            items=[
                LineCandidate(
                    menu_item_id=line.menu_item_id,
                    quantity=line.quantity,
                    price=menu_items[line.menu_item_id].price,
                )
                for line in lines
            ],
        )
        order = self.repository.create_order(candidate)
        logger.info("Placed order #%s with %s line(s)", order.order_number, len(order.items))
        self.dispatcher.dispatch(order.order_number, OrderStatus.RECEIVED, order.customer_phone)
        return order

    def advance_status(self, order_id: int) -> OrderRead:
        current = self._known_order(order_id)
        status = parse_status(current.status)
        if is_terminal(status):
            raise AlreadyTerminal(order_id)

        target = next_status(status)
        try:
            updated = self.repository.update_status(order_id, target, expected_status=status)
        except Conflict as exc:
            logger.info("Order %s moved on to %s elsewhere; dropping %s -> %s", order_id, exc.actual, status, target)
            self._refresh_view()
            raise
        self.dispatcher.dispatch(updated.order_number, target, updated.customer_phone)
        return updated

    def _known_order(self, order_id: int) -> OrderRead:
        if self.view is not None:
            known = self.view.projection.get(order_id)
            if known is not None:
                return known
        return self.repository.get_order(order_id)

    def _refresh_view(self) -> None:
        if self.view is None:
            return
        try:
            self.view.refresh()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not refresh order view: %s", exc)


def _selection_lines(selection: Iterable) -> Iterable[SelectionLine]:
    for entry in selection:
        if isinstance(entry, SelectionLine):
            yield entry
        elif isinstance(entry, MenuItem):
            yield SelectionLine(menu_item_id=entry.id)
        else:
            yield SelectionLine(menu_item_id=int(entry))
