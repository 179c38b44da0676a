"""Conversation model type definitions for database operations."""

from datetime import datetime
from enum import Enum
from typing import TypedDict


class SenderType(str, Enum):
    """Participant role in a customer/vendor conversation."""

    CUSTOMER = "customer"
    VENDOR = "vendor"

    @property
    def other(self) -> "SenderType":
        """The counterpart role (the receiver of this role's messages)."""
        return SenderType.VENDOR if self is SenderType.CUSTOMER else SenderType.CUSTOMER

    @property
    def participant_column(self) -> str:
        """Column holding the participant id for this role."""
        return f"{self.value}_id"

    @property
    def unread_column(self) -> str:
        """Column counting messages unread by this role."""
        return f"unread_{self.value}"


class ChatMessage(TypedDict):
    """A single message embedded in the conversation's messages array."""

    id: str
    sender_id: str
    sender_type: SenderType
    message: str
    timestamp: datetime
    is_read: bool


class Conversation(TypedDict):
    """Conversation table row representation.

    One row per (customer_id, vendor_id) pair, enforced by a unique
    constraint. ``version`` is bumped by every write and used for
    compare-and-swap updates.
    """

    id: str
    customer_id: str
    vendor_id: str
    product_id: str | None
    messages: list[ChatMessage]
    last_message: str
    last_message_time: datetime
    unread_customer: int
    unread_vendor: int
    version: int
    created_at: datetime
    updated_at: datetime


# Columns returned by conversation listings (message bodies excluded)
CONVERSATION_SUMMARY_COLUMNS = (
    "id,customer_id,vendor_id,product_id,last_message,last_message_time,"
    "unread_customer,unread_vendor,created_at,updated_at"
)
