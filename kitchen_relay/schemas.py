from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderStatus


# -------------------------
# Repository input
# -------------------------

@dataclass
class LineCandidate:
    menu_item_id: int
    quantity: int
    price: Decimal


@dataclass
class OrderCandidate:
    customer_name: str
    customer_phone: str
    items: List[LineCandidate] = field(default_factory=list)
    source: str = "web"
    total_amount: Optional[Decimal] = None


# -------------------------
# Read models
# -------------------------

class MenuItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    category: str
    available: bool


class OrderItemRead(BaseModel):
    menu_item_id: int
    menu_item_name: str
    quantity: int
    price: Decimal


class OrderRead(BaseModel):
    id: int
    order_number: int
    total_amount: Decimal
    customer_name: str
    customer_phone: str
    status: OrderStatus
    order_source: str
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemRead] = Field(default_factory=list)


class TodaySummary(BaseModel):
    orders_today: int
    revenue_today: Decimal


# -------------------------
# HTTP payloads
# -------------------------

class SelectionLine(BaseModel):
    menu_item_id: int
    quantity: int = Field(default=1, ge=1)


class PlaceOrderRequest(BaseModel):
    items: List[SelectionLine] = Field(default_factory=list)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    source: str = "web"
    total_amount: Optional[Decimal] = None


class AdvanceResult(BaseModel):
    applied: bool
    order: OrderRead


class WhatsAppRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_number: int = Field(alias="orderNumber")
    status: OrderStatus
