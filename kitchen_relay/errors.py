"""Error taxonomy for the order lifecycle."""

from __future__ import annotations


class OrderError(Exception):
    """Base class for every error raised by the order pipeline."""


class EmptySelection(OrderError):
    def __init__(self) -> None:
        super().__init__("Select at least one menu item")


class UnknownMenuItem(OrderError):
    def __init__(self, menu_item_ids) -> None:
        self.menu_item_ids = sorted(menu_item_ids)
        super().__init__(f"Unknown or unavailable menu items: {self.menu_item_ids}")


class InvalidStatus(OrderError, ValueError):
    def __init__(self, value) -> None:
        self.value = value
        super().__init__(f"Invalid order status: {value!r}")


class AlreadyTerminal(OrderError):
    def __init__(self, order_id: int) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} is already delivered")


class NotFound(OrderError):
    def __init__(self, order_id) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class Conflict(OrderError):
    """The stored status moved on before our conditional write landed."""

    def __init__(self, order_id: int, expected, actual) -> None:
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Order {order_id} status is {actual!s}, expected {expected!s}"
        )


class PersistenceError(OrderError):
    pass


class DispatchError(OrderError):
    pass
