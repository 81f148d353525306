from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


class OrderStatus(str, Enum):
    RECEIVED = "received"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"

    def __str__(self) -> str:
        return self.value


STATUS_SEQUENCE = (
    OrderStatus.RECEIVED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MenuItem(SQLModel, table=True):
    __tablename__ = "menu_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    price: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    category: str = Field(default="Pizzas", index=True)
    available: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow)


class Order(SQLModel, table=True):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('received', 'preparing', 'ready', 'delivered')",
            name="ck_orders_status",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    # Filled from the primary key inside the insert transaction.
    order_number: Optional[int] = Field(default=None, index=True, sa_column_kwargs={"unique": True})
    total_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    customer_name: str
    customer_phone: str
    status: str = Field(default=OrderStatus.RECEIVED.value, max_length=16, index=True)
    order_source: str = Field(default="web")
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True, ondelete="CASCADE")
    menu_item_id: int = Field(foreign_key="menu_items.id", index=True)
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=2)


__all__ = ["MenuItem", "Order", "OrderItem", "OrderStatus", "STATUS_SEQUENCE"]
