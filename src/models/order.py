"""Order model type definitions for database operations."""

from datetime import datetime
from enum import Enum
from typing import TypedDict


class OrderStatus(str, Enum):
    """Order fulfilment status values matching the stored strings."""

    ORDER_PLACED = "Order Placed"
    PREPARING_FOR_SHIPMENT = "Preparing for Shipment"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    """Payment status, tracked independently of the fulfilment status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# Allowed status transitions; terminal states map to an empty set
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.ORDER_PLACED: frozenset(
        {OrderStatus.PREPARING_FOR_SHIPMENT, OrderStatus.CANCELLED}
    ),
    OrderStatus.PREPARING_FOR_SHIPMENT: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PENDING_STATUSES = frozenset(
    {
        OrderStatus.ORDER_PLACED,
        OrderStatus.PREPARING_FOR_SHIPMENT,
        OrderStatus.OUT_FOR_DELIVERY,
    }
)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Check whether the transition table allows ``current`` -> ``new``."""
    return new in ORDER_TRANSITIONS.get(current, frozenset())


def is_terminal(status: OrderStatus) -> bool:
    """Check whether no further transition is possible from ``status``."""
    return not ORDER_TRANSITIONS.get(status)


class OrderLineItem(TypedDict):
    """Structure for a single line item in an order.

    Stored as part of the products JSONB array.
    """

    product_id: str
    quantity: int
    price: float
    total: float


class ShippingAddress(TypedDict):
    """Delivery address captured at checkout."""

    full_name: str
    mobile_number: str
    country: str
    address: str
    city: str
    state: str
    zip_code: str


class StatusHistoryEntry(TypedDict):
    """One entry of the append-only status audit log."""

    status: OrderStatus
    timestamp: datetime
    note: str | None


class Order(TypedDict):
    """Order table row representation.

    Represents an order stored in the orders table.
    Maps directly to the database schema.
    """

    id: str
    user_id: str
    order_number: str
    shipping_address: ShippingAddress
    products: list[OrderLineItem]
    total_price: float
    shipping_fee: float
    discount: float
    tax: float
    grand_total: float
    promo_code: str | None
    estimated_delivery_date: datetime
    actual_delivery_date: datetime | None
    status: OrderStatus
    payment_status: PaymentStatus
    shipping_method_id: str | None
    payment_id: str | None
    order_notes: str | None
    tracking_number: str | None
    status_history: list[StatusHistoryEntry]
    version: int
    created_at: datetime
    updated_at: datetime
