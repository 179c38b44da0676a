"""Order API routes."""

import logging
from datetime import datetime

from fastapi import APIRouter, Query, status

from src.api.deps import AdminUser, CurrentUser
from src.api.middleware.error_handler import AuthorizationError, NotFoundError
from src.models.order import OrderStatus, PaymentStatus
from src.schemas.common import ApiResponse
from src.schemas.order import (
    OrderCancel,
    OrderCreate,
    OrderCreatedResponse,
    OrderFinancialsUpdate,
    OrderResponse,
    OrderStats,
    OrderStatusUpdate,
    OrderTrackingResponse,
    PaymentStatusUpdate,
    UserOrderStats,
)
from src.services.order_service import OrderService, can_access

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


async def _require_order(service: OrderService, order_id: str) -> dict:
    order = await service.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


# Customer endpoints


@router.post(
    "",
    response_model=ApiResponse[OrderCreatedResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Creates an order for the caller. Totals are derived from the line items.",
)
async def create_order(
    data: OrderCreate,
    user: CurrentUser,
) -> ApiResponse[OrderCreatedResponse]:
    service = OrderService()
    order = await service.create_order(user.user_id, data)

    return ApiResponse(
        message="Order created successfully",
        data=OrderCreatedResponse(
            order_id=str(order["id"]),
            order_number=order["order_number"],
            status=order["status"],
            grand_total=order["grand_total"],
            estimated_delivery_date=order["estimated_delivery_date"],
        ),
    )


@router.get(
    "/my-orders",
    response_model=ApiResponse[list[OrderResponse]],
    summary="List my orders",
    description="Lists the caller's orders, newest first, optionally filtered by status.",
)
async def get_my_orders(
    user: CurrentUser,
    order_status: OrderStatus | None = Query(default=None, alias="status", description="Filter by status"),
) -> ApiResponse[list[OrderResponse]]:
    service = OrderService()
    orders = await service.get_user_orders(user.user_id, status=order_status)
    return ApiResponse(data=[OrderResponse.from_row(order) for order in orders], count=len(orders))


@router.get(
    "/my-stats",
    response_model=ApiResponse[UserOrderStats],
    summary="Get my order statistics",
)
async def get_my_order_stats(user: CurrentUser) -> ApiResponse[UserOrderStats]:
    service = OrderService()
    stats = await service.get_user_order_stats(user.user_id)
    return ApiResponse(data=UserOrderStats(**stats))


@router.get(
    "/track/{order_number}",
    response_model=ApiResponse[OrderTrackingResponse],
    summary="Track an order",
    description="Public lookup of an order's progress by order number (case-insensitive).",
)
async def track_order(order_number: str) -> ApiResponse[OrderTrackingResponse]:
    service = OrderService()
    order = await service.get_order_by_number(order_number)
    if not order:
        raise NotFoundError("Order not found")
    return ApiResponse(data=OrderTrackingResponse(**order))


@router.put(
    "/{order_id}/cancel",
    response_model=ApiResponse[OrderResponse],
    summary="Cancel an order",
    description="Cancels an order that has not been delivered. Owner or admin only.",
)
async def cancel_order(
    order_id: str,
    user: CurrentUser,
    data: OrderCancel | None = None,
) -> ApiResponse[OrderResponse]:
    service = OrderService()
    order = await _require_order(service, order_id)
    if not can_access(order, user):
        raise AuthorizationError("You can only cancel your own orders")

    order = await service.cancel_order(order_id, reason=data.reason if data else None)
    return ApiResponse(message="Order cancelled successfully", data=OrderResponse.from_row(order))


# Admin endpoints


@router.get(
    "/admin",
    response_model=ApiResponse[list[OrderResponse]],
    summary="List all orders",
    description="Admin listing with optional filters.",
)
async def list_orders(
    admin: AdminUser,
    user_id: str | None = Query(default=None, description="Filter by customer"),
    order_status: OrderStatus | None = Query(default=None, alias="status", description="Filter by status"),
    payment_status: PaymentStatus | None = Query(default=None, description="Filter by payment status"),
    start_date: datetime | None = Query(default=None, description="Created on or after"),
    end_date: datetime | None = Query(default=None, description="Created on or before"),
    order_number: str | None = Query(default=None, description="Exact order number"),
) -> ApiResponse[list[OrderResponse]]:
    service = OrderService()
    orders = await service.list_orders(
        {
            "user_id": user_id,
            "status": order_status,
            "payment_status": payment_status,
            "start_date": start_date,
            "end_date": end_date,
            "order_number": order_number,
        }
    )
    return ApiResponse(data=[OrderResponse.from_row(order) for order in orders], count=len(orders))


@router.get(
    "/admin/stats",
    response_model=ApiResponse[OrderStats],
    summary="Get order statistics",
    description="Counts per status plus revenue and average order value; cancelled orders earn no revenue.",
)
async def get_order_stats(
    admin: AdminUser,
    start_date: datetime | None = Query(default=None, description="Created on or after"),
    end_date: datetime | None = Query(default=None, description="Created on or before"),
) -> ApiResponse[OrderStats]:
    service = OrderService()
    stats = await service.get_order_stats(start_date=start_date, end_date=end_date)
    return ApiResponse(data=OrderStats(**stats))


@router.get(
    "/admin/recent",
    response_model=ApiResponse[list[OrderResponse]],
    summary="Get recent orders",
)
async def get_recent_orders(
    admin: AdminUser,
    limit: int = Query(default=10, ge=1, le=100, description="Number of orders"),
) -> ApiResponse[list[OrderResponse]]:
    service = OrderService()
    orders = await service.get_recent_orders(limit)
    return ApiResponse(data=[OrderResponse.from_row(order) for order in orders], count=len(orders))


@router.get(
    "/admin/{order_id}",
    response_model=ApiResponse[OrderResponse],
    summary="Get an order",
)
async def get_order(order_id: str, admin: AdminUser) -> ApiResponse[OrderResponse]:
    service = OrderService()
    order = await _require_order(service, order_id)
    return ApiResponse(data=OrderResponse.from_row(order))


@router.put(
    "/admin/{order_id}/status",
    response_model=ApiResponse[OrderResponse],
    summary="Update order status",
    description="Moves the order along the fulfilment state machine.",
)
async def update_order_status(
    order_id: str,
    data: OrderStatusUpdate,
    admin: AdminUser,
) -> ApiResponse[OrderResponse]:
    service = OrderService()
    order = await service.update_order_status(
        order_id,
        data.status,
        note=data.note,
        tracking_number=data.tracking_number,
    )
    logger.info("Admin %s set order %s to %s", admin.user_id, order_id, data.status.value)
    return ApiResponse(message="Order status updated successfully", data=OrderResponse.from_row(order))


@router.put(
    "/admin/{order_id}/payment-status",
    response_model=ApiResponse[OrderResponse],
    summary="Update payment status",
)
async def update_payment_status(
    order_id: str,
    data: PaymentStatusUpdate,
    admin: AdminUser,
) -> ApiResponse[OrderResponse]:
    service = OrderService()
    order = await service.update_payment_status(order_id, data.payment_status)
    return ApiResponse(message="Payment status updated successfully", data=OrderResponse.from_row(order))


@router.put(
    "/admin/{order_id}/financials",
    response_model=ApiResponse[OrderResponse],
    summary="Adjust order charges",
    description="Updates shipping fee, tax or discount and recomputes the grand total.",
)
async def update_financials(
    order_id: str,
    data: OrderFinancialsUpdate,
    admin: AdminUser,
) -> ApiResponse[OrderResponse]:
    service = OrderService()
    order = await service.update_financials(
        order_id,
        shipping_fee=data.shipping_fee,
        tax=data.tax,
        discount=data.discount,
    )
    return ApiResponse(message="Order charges updated successfully", data=OrderResponse.from_row(order))


@router.delete(
    "/admin/{order_id}",
    response_model=ApiResponse[None],
    summary="Delete an order",
)
async def delete_order(order_id: str, admin: AdminUser) -> ApiResponse[None]:
    service = OrderService()
    if not await service.delete_order(order_id):
        raise NotFoundError("Order not found")
    logger.info("Admin %s deleted order %s", admin.user_id, order_id)
    return ApiResponse(message="Order deleted successfully")
