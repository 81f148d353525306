from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List

from sqlalchemy import func, update
from sqlmodel import Session, select

from .menu_data import DEFAULT_MENU_ITEMS
from .models import MenuItem, Order, OrderItem, OrderStatus
from .schemas import LineCandidate, OrderCandidate, OrderItemRead, OrderRead


# -------------------------
# Order operations
# -------------------------

def compute_total(items: Iterable[LineCandidate]) -> Decimal:
    return sum((Decimal(item.price) * item.quantity for item in items), Decimal("0")).quantize(Decimal("0.01"))


def create_order(session: Session, candidate: OrderCandidate, *, total_amount: Decimal, number_offset: int) -> Order:
    """Insert the order row and its line items and commit them together."""
    now = datetime.now(timezone.utc)
    order = Order(
        total_amount=total_amount,
        customer_name=candidate.customer_name,
        customer_phone=candidate.customer_phone,
        status=OrderStatus.RECEIVED.value,
        order_source=candidate.source,
        created_at=now,
        updated_at=now,
    )
    session.add(order)
    session.flush()
    order.order_number = number_offset + order.id
    add_line_items(session, order, candidate.items)
    session.commit()
    session.refresh(order)
    return order


def add_line_items(session: Session, order: Order, items: Iterable[LineCandidate]) -> None:
    for item in items:
        session.add(
            OrderItem(
                order_id=order.id,
                menu_item_id=item.menu_item_id,
                quantity=item.quantity,
                price=item.price,
            )
        )
    session.flush()


def get_order(session: Session, order_id: int) -> Order | None:
    return session.get(Order, order_id)


def get_order_by_number(session: Session, order_number: int) -> Order | None:
    statement = select(Order).where(Order.order_number == order_number)
    return session.exec(statement).first()


def list_active_orders(session: Session) -> List[Order]:
    statement = (
        select(Order)
        .where(Order.status != OrderStatus.DELIVERED.value)
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    return list(session.exec(statement))


def update_status(session: Session, order_id: int, new_status: OrderStatus, expected: OrderStatus | None = None) -> int:
    """Write the new status, only if the stored one still equals ``expected``.

    Returns the number of rows changed; the caller commits.
    """
    statement = (
        update(Order)
        .where(Order.id == order_id)
        .values(status=new_status.value, updated_at=datetime.now(timezone.utc))
    )
    if expected is not None:
        statement = statement.where(Order.status == expected.value)
    result = session.connection().execute(statement)
    return result.rowcount


def to_read_models(session: Session, orders: List[Order]) -> List[OrderRead]:
    """Attach line items and menu item names to each order."""
    if not orders:
        return []
    order_ids = [order.id for order in orders]
    statement = (
        select(OrderItem, MenuItem.name)
        .join(MenuItem, MenuItem.id == OrderItem.menu_item_id)
        .where(OrderItem.order_id.in_(order_ids))
        .order_by(OrderItem.id.asc())
    )
    grouped: dict[int, list[OrderItemRead]] = {order_id: [] for order_id in order_ids}
    for item, menu_item_name in session.exec(statement).all():
        grouped[item.order_id].append(
            OrderItemRead(
                menu_item_id=item.menu_item_id,
                menu_item_name=menu_item_name,
                quantity=item.quantity,
                price=item.price,
            )
        )
    return [
        OrderRead(
            id=order.id,
            order_number=order.order_number,
            total_amount=order.total_amount,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            status=order.status,
            order_source=order.order_source,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=grouped[order.id],
        )
        for order in orders
    ]


def summarize_between(session: Session, start: datetime, end: datetime) -> tuple[int, Decimal]:
    statement = select(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total_amount), 0),
    ).where(Order.created_at >= start, Order.created_at < end)
    count, revenue = session.exec(statement).one()
    return int(count or 0), Decimal(str(revenue or 0))


# -------------------------
# Menu operations
# -------------------------

def list_menu_items(session: Session, *, available_only: bool = False) -> List[MenuItem]:
    statement = select(MenuItem)
    if available_only:
        statement = statement.where(MenuItem.available.is_(True))
    statement = statement.order_by(MenuItem.category.asc(), MenuItem.name.asc())
    return list(session.exec(statement))


def get_menu_items(session: Session, menu_item_ids: Iterable[int]) -> dict[int, MenuItem]:
    ids = set(menu_item_ids)
    if not ids:
        return {}
    statement = select(MenuItem).where(MenuItem.id.in_(ids))
    return {item.id: item for item in session.exec(statement)}


def ensure_default_menu_items(session: Session) -> None:
    existing_count = session.exec(select(func.count(MenuItem.id))).one()
    if existing_count:
        return
    for item in DEFAULT_MENU_ITEMS:
        session.add(
            MenuItem(
                name=item["name"],
                description=item.get("description"),
                price=Decimal(item["price"]),
                category=item["category"],
                available=True,
            )
        )
    session.commit()
