import threading
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from kitchen_relay import crud
from kitchen_relay.coordinator import OrderingCoordinator
from kitchen_relay.errors import (
    AlreadyTerminal,
    Conflict,
    EmptySelection,
    NotFound,
    PersistenceError,
    UnknownMenuItem,
)
from kitchen_relay.models import MenuItem, OrderStatus
from kitchen_relay.notifier import NotificationDispatcher
from kitchen_relay.schemas import SelectionLine
from kitchen_relay.state_machine import message_template
from kitchen_relay.subscriber import Projection


class FrozenView:
    """A projection that never catches up on its own."""

    def __init__(self, *orders):
        self.projection = Projection(orders=tuple(orders), seq=1, stale=False)
        self.refreshes = 0

    def refresh(self):
        self.refreshes += 1
        return self.projection


class TestPlaceOrder:
    def test_total_status_and_single_notification(self, coordinator, dispatcher, gateway, menu):
        order = coordinator.place_order([menu["margarita"], menu["tarta"]])
        assert dispatcher.flush(timeout=5)

        assert order.total_amount == Decimal("14.50")
        assert order.status is OrderStatus.RECEIVED
        assert gateway.bodies == [message_template(OrderStatus.RECEIVED, order.order_number)]

    def test_notification_goes_to_the_customer(self, coordinator, dispatcher, gateway, menu):
        coordinator.place_order([menu["tarta"]], customer_phone="+34699999999")
        assert dispatcher.flush(timeout=5)
        assert gateway.sent[0][0] == "+34699999999"

    def test_accepts_ids_and_quantities(self, coordinator, menu):
        order = coordinator.place_order(
            [SelectionLine(menu_item_id=menu["burger"].id, quantity=2), menu["tarta"].id]
        )
        assert order.total_amount == Decimal("24.00")
        assert [item.quantity for item in order.items] == [2, 1]

    def test_prices_come_from_the_store(self, coordinator, menu):
        stale = MenuItem(id=menu["margarita"].id, name="Pizza Margarita", price=Decimal("1.00"), category="Pizzas")
        order = coordinator.place_order([stale])
        assert order.items[0].price == Decimal("8.50")

    def test_empty_selection_writes_and_sends_nothing(self, coordinator, repository, dispatcher, gateway, monkeypatch):
        def must_not_write(candidate):
            raise AssertionError("create_order called")

        monkeypatch.setattr(repository, "create_order", must_not_write)

        with pytest.raises(EmptySelection):
            coordinator.place_order([])

        assert dispatcher.flush(timeout=5)
        assert gateway.calls == 0

    def test_unavailable_item_is_rejected_before_writing(self, coordinator, repository, menu):
        with pytest.raises(UnknownMenuItem) as excinfo:
            coordinator.place_order([menu["tarta"], menu["retired"]])
        assert excinfo.value.menu_item_ids == [menu["retired"].id]
        assert repository.list_active_orders() == []

    def test_store_failure_surfaces_and_leaves_nothing(self, coordinator, repository, dispatcher, gateway, menu, monkeypatch):
        def broken(session, order, items):
            raise OperationalError("INSERT INTO order_items", {}, Exception("connection lost"))

        monkeypatch.setattr(crud, "add_line_items", broken)

        with pytest.raises(PersistenceError):
            coordinator.place_order([menu["margarita"], menu["tarta"]])

        assert repository.list_active_orders() == []
        assert dispatcher.flush(timeout=5)
        assert gateway.calls == 0

    def test_gateway_failure_does_not_fail_the_order(self, repository, make_gateway, menu):
        dispatcher = NotificationDispatcher(make_gateway(fail_times=5), default_recipient="+34600000000")
        try:
            order = OrderingCoordinator(repository, dispatcher).place_order([menu["tarta"]])
            assert dispatcher.flush(timeout=5)
        finally:
            dispatcher.shutdown()
        assert repository.get_order(order.id).status is OrderStatus.RECEIVED


class TestAdvanceStatus:
    def test_walks_through_every_stage_then_stops(self, coordinator, dispatcher, gateway, menu):
        order = coordinator.place_order([menu["margarita"]])

        seen = [coordinator.advance_status(order.id).status for _ in range(3)]
        with pytest.raises(AlreadyTerminal):
            coordinator.advance_status(order.id)
        assert dispatcher.flush(timeout=5)

        assert seen == [OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.DELIVERED]
        assert gateway.bodies == [
            message_template(status, order.order_number)
            for status in (OrderStatus.RECEIVED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.DELIVERED)
        ]

    def test_unknown_order(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.advance_status(404)

    def test_stale_view_gets_conflict_and_one_notification(self, repository, dispatcher, gateway, menu):
        placed = OrderingCoordinator(repository, dispatcher).place_order([menu["margarita"]])
        preparing = repository.update_status(placed.id, OrderStatus.PREPARING)
        view = FrozenView(preparing)
        kitchen = OrderingCoordinator(repository, dispatcher, view=view)
        counter = OrderingCoordinator(repository, dispatcher, view=view)

        updated = kitchen.advance_status(placed.id)
        with pytest.raises(Conflict):
            counter.advance_status(placed.id)
        assert dispatcher.flush(timeout=5)

        assert updated.status is OrderStatus.READY
        assert view.refreshes == 1
        ready_text = message_template(OrderStatus.READY, placed.order_number)
        assert gateway.bodies.count(ready_text) == 1

    def test_concurrent_advances_race_to_one_winner(self, repository, dispatcher, gateway, menu):
        placed = OrderingCoordinator(repository, dispatcher).place_order([menu["tarta"]])
        view = FrozenView(repository.update_status(placed.id, OrderStatus.PREPARING))
        barrier = threading.Barrier(2)
        results = []

        def advance():
            coordinator = OrderingCoordinator(repository, dispatcher, view=view)
            barrier.wait()
            try:
                results.append(coordinator.advance_status(placed.id).status)
            except Conflict as exc:
                results.append(exc)

        threads = [threading.Thread(target=advance) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        assert dispatcher.flush(timeout=5)

        assert OrderStatus.READY in results
        assert sum(isinstance(result, Conflict) for result in results) == 1
        assert repository.get_order(placed.id).status is OrderStatus.READY
        ready_text = message_template(OrderStatus.READY, placed.order_number)
        assert gateway.bodies.count(ready_text) == 1

    def test_notifies_the_stage_it_wrote_even_if_the_order_moves_on(self, coordinator, repository, dispatcher, gateway, menu, monkeypatch):
        order = coordinator.place_order([menu["margarita"]])
        repository.update_status(order.id, OrderStatus.PREPARING)
        write = repository.update_status

        def write_then_deliver(order_id, new_status, expected_status=None):
            updated = write(order_id, new_status, expected_status=expected_status)
            write(order_id, OrderStatus.DELIVERED, expected_status=new_status)
            return updated.model_copy(update={"status": OrderStatus.DELIVERED})

        monkeypatch.setattr(repository, "update_status", write_then_deliver)

        coordinator.advance_status(order.id)
        assert dispatcher.flush(timeout=5)

        ready_text = message_template(OrderStatus.READY, order.order_number)
        delivered_text = message_template(OrderStatus.DELIVERED, order.order_number)
        assert gateway.bodies.count(ready_text) == 1
        assert delivered_text not in gateway.bodies

    def test_delivered_order_offers_no_transition(self, coordinator, dispatcher, gateway, repository, menu):
        order = coordinator.place_order([menu["tarta"]])
        repository.update_status(order.id, OrderStatus.DELIVERED)
        assert dispatcher.flush(timeout=5)
        sent_before = gateway.calls

        with pytest.raises(AlreadyTerminal):
            coordinator.advance_status(order.id)

        assert dispatcher.flush(timeout=5)
        assert gateway.calls == sent_before
