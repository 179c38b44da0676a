"""Order lifecycle business logic service."""

import logging
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random

from src.api.middleware.error_handler import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.supabase import StaleWriteError, execute, get_supabase_client, update_if_version
from src.models.order import (
    ORDER_TRANSITIONS,
    PENDING_STATUSES,
    OrderStatus,
    PaymentStatus,
    can_transition,
)
from src.schemas.auth import UserContext
from src.schemas.order import OrderCreate

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5
MAX_RETRY_WAIT_SECONDS = 0.05
MAX_ORDER_NUMBER_ATTEMPTS = 3

# Tolerance when comparing a client-computed subtotal with the line items
PRICE_TOLERANCE = 0.01

_BASE36_ALPHABET = string.digits + string.ascii_uppercase


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_order_number(prefix: str) -> str:
    """Generate a human-readable order number.

    Format is ``PREFIX-<base36 epoch milliseconds>-<4 random base36 chars>``,
    all upper-case.
    """
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(4))
    return f"{prefix}-{timestamp}-{suffix}".upper()


def compute_grand_total(total_price: float, shipping_fee: float, tax: float, discount: float) -> float:
    """Amount due: subtotal plus shipping and tax, less discount, rounded to cents."""
    return round(total_price + shipping_fee + tax - discount, 2)


def build_line_items(products: list[Any]) -> list[dict[str, Any]]:
    """Stored line items with their ``quantity * price`` totals."""
    return [
        {
            "product_id": product.product_id,
            "quantity": product.quantity,
            "price": product.price,
            "total": round(product.quantity * product.price, 2),
        }
        for product in products
    ]


def history_entry(status: OrderStatus, note: str | None = None) -> dict[str, Any]:
    return {"status": status.value, "timestamp": _now_iso(), "note": note}


def can_access(order: dict[str, Any], user: UserContext) -> bool:
    """Orders are visible to their owner and to admins."""
    return user.is_admin or str(order.get("user_id")) == user.user_id


class OrderService:
    """Service for orders, their status state machine and statistics."""

    TABLE = "orders"

    def __init__(self) -> None:
        """Initialize order service with Supabase client."""
        self.client = get_supabase_client()
        self.settings = get_settings()

    async def create_order(self, user_id: str, data: OrderCreate) -> dict[str, Any]:
        """Create an order in the ``Order Placed`` state.

        Line totals, the subtotal and the grand total are derived here. A
        subtotal supplied by the client must agree with the line items.

        Args:
            user_id: The ordering customer's identity.
            data: Checkout payload.

        Returns:
            dict: The created order data.

        Raises:
            ValidationError: If there are no products, the subtotal does not
                match, or the grand total would be negative.
            ConflictError: If no unique order number could be allocated.
        """
        if not data.products:
            raise ValidationError("Order must contain at least one product")

        products = build_line_items(data.products)
        total_price = round(sum(item["total"] for item in products), 2)

        if data.total_price is not None and abs(data.total_price - total_price) > PRICE_TOLERANCE:
            raise ValidationError(
                "Total price does not match the line items",
                details=[
                    {
                        "loc": ["body", "total_price"],
                        "msg": f"Expected {total_price:.2f} from the line items, got {data.total_price:.2f}",
                        "type": "total_mismatch",
                    }
                ],
            )

        grand_total = compute_grand_total(total_price, data.shipping_fee, data.tax, data.discount)
        if grand_total < 0:
            raise ValidationError("Discount cannot exceed the order total")

        order_data: dict[str, Any] = {
            "user_id": user_id,
            "shipping_address": data.shipping_address.model_dump(),
            "products": products,
            "total_price": total_price,
            "shipping_fee": data.shipping_fee,
            "discount": data.discount,
            "tax": data.tax,
            "grand_total": grand_total,
            "promo_code": data.promo_code,
            "estimated_delivery_date": data.estimated_delivery_date.isoformat(),
            "actual_delivery_date": None,
            "status": OrderStatus.ORDER_PLACED.value,
            "payment_status": PaymentStatus.PENDING.value,
            "shipping_method_id": data.shipping_method_id,
            "payment_id": data.payment_id,
            "order_notes": data.order_notes,
            "tracking_number": None,
            "status_history": [history_entry(OrderStatus.ORDER_PLACED, "Order created")],
            "version": 0,
        }

        order = await self._insert_with_order_number(order_data)
        logger.info("Order %s created for user %s (grand total %.2f)", order["order_number"], user_id, grand_total)
        return order

    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        """Get an order by ID.

        Returns:
            dict | None: The order data or None if not found.
        """
        response = await execute(
            self.client.table(self.TABLE).select("*").eq("id", str(order_id)).limit(1),
            "get order",
        )
        return response.data[0] if response and response.data else None

    async def get_order_by_number(self, order_number: str) -> dict[str, Any] | None:
        """Get an order by its order number (case-insensitive)."""
        response = await execute(
            self.client.table(self.TABLE)
            .select("*")
            .eq("order_number", order_number.strip().upper())
            .limit(1),
            "get order by number",
        )
        return response.data[0] if response and response.data else None

    async def get_user_orders(
        self,
        user_id: str,
        status: OrderStatus | None = None,
    ) -> list[dict[str, Any]]:
        """List a customer's orders, newest first."""
        return await self.list_orders({"user_id": user_id, "status": status})

    async def list_orders(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """List orders matching the given filters, newest first.

        Supported filters: ``user_id``, ``status``, ``payment_status``,
        ``order_number``, ``start_date`` and ``end_date`` (on ``created_at``,
        inclusive). Missing or None filters are ignored.
        """
        filters = filters or {}
        query = self.client.table(self.TABLE).select("*")

        if filters.get("user_id"):
            query = query.eq("user_id", str(filters["user_id"]))
        if filters.get("status"):
            query = query.eq("status", OrderStatus(filters["status"]).value)
        if filters.get("payment_status"):
            query = query.eq("payment_status", PaymentStatus(filters["payment_status"]).value)
        if filters.get("order_number"):
            query = query.eq("order_number", filters["order_number"].strip().upper())
        query = self._apply_date_range(query, filters.get("start_date"), filters.get("end_date"))

        response = await execute(query.order("created_at", desc=True), "list orders")
        return response.data or []

    async def get_recent_orders(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recently created orders."""
        limit = limit or self.settings.recent_orders_limit
        response = await execute(
            self.client.table(self.TABLE).select("*").order("created_at", desc=True).limit(limit),
            "recent orders",
        )
        return response.data or []

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        note: str | None = None,
        tracking_number: str | None = None,
    ) -> dict[str, Any]:
        """Move an order along the status state machine.

        Appends to the status history, records the tracking number when
        given, and stamps ``actual_delivery_date`` the first time the order
        is delivered.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidTransitionError: If the transition table forbids the move.
            ConflictError: If the write kept losing to concurrent updates.
        """
        new_status = OrderStatus(status)

        def changes_for(order: dict[str, Any]) -> dict[str, Any]:
            current = OrderStatus(order["status"])
            if not can_transition(current, new_status):
                raise InvalidTransitionError(
                    f"Cannot transition from {current.value} to {new_status.value}",
                    details=[
                        {
                            "loc": ["body", "status"],
                            "msg": f"Allowed from {current.value}: "
                            + (", ".join(sorted(s.value for s in ORDER_TRANSITIONS[current])) or "none"),
                            "type": "invalid_transition",
                        }
                    ],
                )

            changes: dict[str, Any] = {
                "status": new_status.value,
                "status_history": [*(order.get("status_history") or []), history_entry(new_status, note)],
            }
            if tracking_number:
                changes["tracking_number"] = tracking_number
            if new_status == OrderStatus.DELIVERED and not order.get("actual_delivery_date"):
                changes["actual_delivery_date"] = _now_iso()
            return changes

        order = await self._update(order_id, changes_for, "update order status")
        logger.info("Order %s moved to %s", order.get("order_number"), new_status.value)
        return order

    async def cancel_order(self, order_id: str, reason: str | None = None) -> dict[str, Any]:
        """Cancel an order that has not been delivered.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidTransitionError: If the order is delivered or already cancelled.
        """

        def changes_for(order: dict[str, Any]) -> dict[str, Any]:
            current = OrderStatus(order["status"])
            if current == OrderStatus.DELIVERED:
                raise InvalidTransitionError("Cannot cancel a delivered order")
            if current == OrderStatus.CANCELLED:
                raise InvalidTransitionError("Order is already cancelled")
            if not can_transition(current, OrderStatus.CANCELLED):
                raise InvalidTransitionError(f"Cannot cancel an order that is {current.value}")

            entry = history_entry(OrderStatus.CANCELLED, reason or "Order cancelled by user")
            return {
                "status": OrderStatus.CANCELLED.value,
                "status_history": [*(order.get("status_history") or []), entry],
            }

        order = await self._update(order_id, changes_for, "cancel order")
        logger.info("Order %s cancelled", order.get("order_number"))
        return order

    async def update_payment_status(self, order_id: str, payment_status: PaymentStatus) -> dict[str, Any]:
        """Set the payment status; any value may follow any other."""
        value = PaymentStatus(payment_status).value
        order = await self._update(order_id, lambda _order: {"payment_status": value}, "update payment status")
        logger.info("Order %s payment status set to %s", order.get("order_number"), value)
        return order

    async def update_financials(
        self,
        order_id: str,
        shipping_fee: float | None = None,
        tax: float | None = None,
        discount: float | None = None,
    ) -> dict[str, Any]:
        """Adjust the order's charges and recompute its grand total.

        Raises:
            NotFoundError: If the order does not exist.
            ValidationError: If a value is negative or the total would be.
        """
        for name, value in (("shipping_fee", shipping_fee), ("tax", tax), ("discount", discount)):
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative")

        def changes_for(order: dict[str, Any]) -> dict[str, Any]:
            new_shipping = order["shipping_fee"] if shipping_fee is None else shipping_fee
            new_tax = order["tax"] if tax is None else tax
            new_discount = order["discount"] if discount is None else discount

            grand_total = compute_grand_total(order["total_price"], new_shipping, new_tax, new_discount)
            if grand_total < 0:
                raise ValidationError("Discount cannot exceed the order total")

            return {
                "shipping_fee": new_shipping,
                "tax": new_tax,
                "discount": new_discount,
                "grand_total": grand_total,
            }

        order = await self._update(order_id, changes_for, "update order financials")
        logger.info("Order %s financials updated (grand total %.2f)", order.get("order_number"), order["grand_total"])
        return order

    async def delete_order(self, order_id: str) -> bool:
        """Hard-delete an order.

        Returns:
            bool: True if an order was deleted, False if none existed.
        """
        response = await execute(
            self.client.table(self.TABLE).delete().eq("id", str(order_id)),
            "delete order",
        )
        deleted = bool(response.data)
        if deleted:
            logger.info("Order %s deleted", order_id)
        return deleted

    async def get_order_stats(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, Any]:
        """Aggregate order counts per status and revenue over a date range.

        Cancelled orders are counted but excluded from revenue and the
        average order value.
        """
        query = self.client.table(self.TABLE).select("status, grand_total")
        query = self._apply_date_range(query, start_date, end_date)
        response = await execute(query, "order stats")
        rows = response.data or []

        counts = {status: 0 for status in OrderStatus}
        revenue = 0.0
        billable = 0
        for row in rows:
            status = OrderStatus(row["status"])
            counts[status] += 1
            if status != OrderStatus.CANCELLED:
                revenue += row.get("grand_total") or 0
                billable += 1

        return {
            "total_orders": len(rows),
            "order_placed": counts[OrderStatus.ORDER_PLACED],
            "preparing_for_shipment": counts[OrderStatus.PREPARING_FOR_SHIPMENT],
            "out_for_delivery": counts[OrderStatus.OUT_FOR_DELIVERY],
            "delivered": counts[OrderStatus.DELIVERED],
            "cancelled": counts[OrderStatus.CANCELLED],
            "total_revenue": round(revenue, 2),
            "average_order_value": round(revenue / billable, 2) if billable else 0.0,
        }

    async def get_user_order_stats(self, user_id: str) -> dict[str, Any]:
        """Per-customer totals: order count, spend, pending and completed orders."""
        response = await execute(
            self.client.table(self.TABLE).select("status, grand_total").eq("user_id", str(user_id)),
            "user order stats",
        )
        rows = response.data or []

        statuses = [OrderStatus(row["status"]) for row in rows]
        total_spent = sum(
            row.get("grand_total") or 0 for row in rows if row["status"] != OrderStatus.CANCELLED.value
        )

        return {
            "total_orders": len(rows),
            "total_spent": round(total_spent, 2),
            "pending_orders": sum(1 for status in statuses if status in PENDING_STATUSES),
            "completed_orders": statuses.count(OrderStatus.DELIVERED),
        }

    # Internals

    @retry(
        retry=retry_if_exception_type(ConflictError),
        stop=stop_after_attempt(MAX_ORDER_NUMBER_ATTEMPTS),
        reraise=True,
    )
    async def _insert_with_order_number(self, order_data: dict[str, Any]) -> dict[str, Any]:
        """Insert with a freshly generated order number, regenerating on collision."""
        row = {**order_data, "order_number": generate_order_number(self.settings.order_number_prefix)}
        response = await execute(self.client.table(self.TABLE).insert(row), "create order")
        return response.data[0]

    async def _update(self, order_id: str, changes_for: Any, operation: str) -> dict[str, Any]:
        """Apply ``changes_for(current_order)`` as a versioned write."""
        try:
            return await self._update_versioned(order_id, changes_for, operation)
        except StaleWriteError as e:
            logger.warning("Gave up on %s for order %s after %d attempts", operation, order_id, MAX_WRITE_ATTEMPTS)
            raise ConflictError("Order was modified concurrently, please retry") from e

    @retry(
        retry=retry_if_exception_type(StaleWriteError),
        stop=stop_after_attempt(MAX_WRITE_ATTEMPTS),
        wait=wait_random(min=0, max=MAX_RETRY_WAIT_SECONDS),
        reraise=True,
    )
    async def _update_versioned(self, order_id: str, changes_for: Any, operation: str) -> dict[str, Any]:
        order = await self.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return await update_if_version(self.client, self.TABLE, order, changes_for(order), operation)

    @staticmethod
    def _apply_date_range(query: Any, start_date: Any, end_date: Any) -> Any:
        if start_date:
            query = query.gte("created_at", _as_iso(start_date))
        if end_date:
            query = query.lte("created_at", _as_iso(end_date))
        return query


def _as_iso(value: datetime | str) -> str:
    return value.isoformat() if isinstance(value, datetime) else value
