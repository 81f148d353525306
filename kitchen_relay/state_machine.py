from __future__ import annotations

from .errors import InvalidStatus
from .models import STATUS_SEQUENCE, OrderStatus

_NEXT = {
    OrderStatus.RECEIVED: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY,
    OrderStatus.READY: OrderStatus.DELIVERED,
    OrderStatus.DELIVERED: OrderStatus.DELIVERED,
}

_TEMPLATES = {
    OrderStatus.RECEIVED: (
        "✅ ¡Pedido confirmado!\n\n"
        "🆔 Pedido #{number}\n"
        "⏱️ Tiempo estimado: 15-20 min\n"
        "📱 Te avisaremos cuando esté listo\n\n"
        "¡Gracias por elegirnos! 🍕"
    ),
    OrderStatus.PREPARING: (
        "👨‍🍳 ¡Tu pedido #{number} se está preparando!\n\n"
        "🔥 Nuestros chefs están trabajando\n"
        "⏰ Estará listo muy pronto"
    ),
    OrderStatus.READY: (
        "🍽️ ¡Pedido #{number} LISTO!\n\n"
        "📦 El repartidor sale en 5 min\n"
        "🏠 Llegada estimada: 10-15 min"
    ),
    OrderStatus.DELIVERED: (
        "🎉 ¡Pedido #{number} entregado!\n\n"
        "⭐ ¿Qué tal estuvo?\n"
        "💚 ¡Gracias por confiar en nosotros!"
    ),
}


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError as exc:
        raise InvalidStatus(value) from exc


def next_status(current) -> OrderStatus:
    """Return the stage after ``current``; ``delivered`` maps to itself."""
    return _NEXT[parse_status(current)]


def is_terminal(status) -> bool:
    return parse_status(status) is OrderStatus.DELIVERED


def can_transition(current, requested) -> bool:
    """True when ``requested`` is exactly one stage after ``current``."""
    current = parse_status(current)
    requested = parse_status(requested)
    if is_terminal(current):
        return False
    return STATUS_SEQUENCE.index(requested) == STATUS_SEQUENCE.index(current) + 1


def message_template(status, order_number) -> str:
    return _TEMPLATES[parse_status(status)].format(number=order_number)
