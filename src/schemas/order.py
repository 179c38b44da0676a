"""Order Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models.order import OrderStatus, PaymentStatus


class OrderProductCreate(BaseModel):
    """Line item as submitted at checkout."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(min_length=1, description="Product identifier")
    quantity: int = Field(ge=1, description="Quantity ordered")
    price: float = Field(ge=0, description="Unit price")


class ShippingAddressSchema(BaseModel):
    """Delivery address; every field is required."""

    model_config = ConfigDict(from_attributes=True, str_strip_whitespace=True)

    full_name: str = Field(min_length=2, max_length=100, description="Recipient name")
    mobile_number: str = Field(
        min_length=1, pattern=r"^[0-9+\-\s()]+$", description="Recipient phone number"
    )
    country: str = Field(min_length=1, description="Country")
    address: str = Field(min_length=1, max_length=500, description="Street address")
    city: str = Field(min_length=1, description="City")
    state: str = Field(min_length=1, description="State or region")
    zip_code: str = Field(min_length=1, description="Postal code")


class OrderCreate(BaseModel):
    """Schema for creating an order via POST /orders."""

    model_config = ConfigDict(from_attributes=True)

    shipping_address: ShippingAddressSchema = Field(description="Delivery address")
    products: list[OrderProductCreate] = Field(min_length=1, description="Line items (at least one)")
    total_price: float | None = Field(
        default=None, ge=0, description="Client-computed subtotal; must match the line items when given"
    )
    shipping_fee: float = Field(default=0, ge=0, description="Shipping fee")
    discount: float = Field(default=0, ge=0, description="Discount amount")
    tax: float = Field(default=0, ge=0, description="Tax amount")
    promo_code: str | None = Field(default=None, max_length=64, description="Promo code")
    estimated_delivery_date: datetime = Field(description="Estimated delivery date")
    shipping_method_id: str | None = Field(default=None, description="Shipping method reference")
    payment_id: str | None = Field(default=None, description="Payment reference")
    order_notes: str | None = Field(default=None, max_length=1000, description="Customer notes")

    @field_validator("promo_code")
    @classmethod
    def normalize_promo_code(cls, value: str | None) -> str | None:
        """Promo codes are stored upper-case."""
        if value is None:
            return None
        return value.strip().upper() or None


class OrderStatusUpdate(BaseModel):
    """Schema for an admin status transition."""

    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus = Field(description="Target status")
    note: str | None = Field(default=None, max_length=500, description="Note for the status history")
    tracking_number: str | None = Field(default=None, max_length=100, description="Carrier tracking number")


class OrderCancel(BaseModel):
    """Schema for cancelling an order."""

    model_config = ConfigDict(from_attributes=True)

    reason: str | None = Field(default=None, max_length=500, description="Cancellation reason")


class PaymentStatusUpdate(BaseModel):
    """Schema for updating the payment status."""

    model_config = ConfigDict(from_attributes=True)

    payment_status: PaymentStatus = Field(description="New payment status")


class OrderFinancialsUpdate(BaseModel):
    """Schema for adjusting order charges; the grand total is recomputed."""

    model_config = ConfigDict(from_attributes=True)

    shipping_fee: float | None = Field(default=None, ge=0, description="New shipping fee")
    tax: float | None = Field(default=None, ge=0, description="New tax amount")
    discount: float | None = Field(default=None, ge=0, description="New discount amount")


class OrderLineItemSchema(BaseModel):
    """Stored line item."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Product identifier")
    quantity: int = Field(description="Quantity ordered")
    price: float = Field(description="Unit price")
    total: float = Field(description="quantity * price")


class StatusHistoryEntrySchema(BaseModel):
    """Stored status history entry."""

    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus = Field(description="Status entered")
    timestamp: datetime = Field(description="When the status was entered")
    note: str | None = Field(default=None, description="Optional note")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Order unique identifier")
    user_id: str = Field(description="Owning customer")
    order_number: str = Field(description="Human-readable order number")
    shipping_address: ShippingAddressSchema = Field(description="Delivery address")
    products: list[OrderLineItemSchema] = Field(description="Line items")
    total_price: float = Field(description="Sum of line totals")
    shipping_fee: float = Field(description="Shipping fee")
    discount: float = Field(description="Discount amount")
    tax: float = Field(description="Tax amount")
    grand_total: float = Field(description="total_price + shipping_fee + tax - discount")
    promo_code: str | None = Field(default=None, description="Promo code")
    estimated_delivery_date: datetime = Field(description="Estimated delivery date")
    actual_delivery_date: datetime | None = Field(default=None, description="Actual delivery date")
    status: OrderStatus = Field(description="Fulfilment status")
    payment_status: PaymentStatus = Field(description="Payment status")
    shipping_method_id: str | None = Field(default=None, description="Shipping method reference")
    payment_id: str | None = Field(default=None, description="Payment reference")
    order_notes: str | None = Field(default=None, description="Customer notes")
    tracking_number: str | None = Field(default=None, description="Carrier tracking number")
    status_history: list[StatusHistoryEntrySchema] = Field(description="Status audit log, oldest first")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    updated_at: datetime | None = Field(default=None, description="Last update timestamp")

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OrderResponse":
        """Build a response from an orders table row."""
        return cls(**{**row, "id": str(row["id"]), "user_id": str(row["user_id"])})


class OrderTrackingResponse(BaseModel):
    """Public tracking view of an order; carries no address or line items."""

    model_config = ConfigDict(from_attributes=True)

    order_number: str = Field(description="Human-readable order number")
    status: OrderStatus = Field(description="Fulfilment status")
    payment_status: PaymentStatus = Field(description="Payment status")
    tracking_number: str | None = Field(default=None, description="Carrier tracking number")
    estimated_delivery_date: datetime = Field(description="Estimated delivery date")
    actual_delivery_date: datetime | None = Field(default=None, description="Actual delivery date")
    status_history: list[StatusHistoryEntrySchema] = Field(description="Status audit log, oldest first")


class OrderCreatedResponse(BaseModel):
    """Abbreviated payload returned after checkout."""

    model_config = ConfigDict(from_attributes=True)

    order_id: str = Field(description="Order unique identifier")
    order_number: str = Field(description="Human-readable order number")
    status: OrderStatus = Field(description="Initial status")
    grand_total: float = Field(description="Amount due")
    estimated_delivery_date: datetime = Field(description="Estimated delivery date")


class OrderStats(BaseModel):
    """Aggregate statistics over a (date filtered) set of orders."""

    model_config = ConfigDict(from_attributes=True)

    total_orders: int = Field(description="All orders including cancelled")
    order_placed: int = Field(description="Orders in 'Order Placed'")
    preparing_for_shipment: int = Field(description="Orders in 'Preparing for Shipment'")
    out_for_delivery: int = Field(description="Orders in 'Out for Delivery'")
    delivered: int = Field(description="Delivered orders")
    cancelled: int = Field(description="Cancelled orders")
    total_revenue: float = Field(description="Sum of grand totals over non-cancelled orders")
    average_order_value: float = Field(description="Revenue divided by non-cancelled order count")


class UserOrderStats(BaseModel):
    """Per-customer order statistics."""

    model_config = ConfigDict(from_attributes=True)

    total_orders: int = Field(description="All orders placed by the user")
    total_spent: float = Field(description="Sum of grand totals over non-cancelled orders")
    pending_orders: int = Field(description="Orders not yet delivered or cancelled")
    completed_orders: int = Field(description="Delivered orders")
