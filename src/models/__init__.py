"""Database model type definitions."""

from src.models.conversation import ChatMessage, Conversation, SenderType
from src.models.order import Order, OrderStatus, PaymentStatus

__all__ = [
    "ChatMessage",
    "Conversation",
    "SenderType",
    "Order",
    "OrderStatus",
    "PaymentStatus",
]
