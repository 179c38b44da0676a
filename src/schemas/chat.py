"""Chat Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models.conversation import SenderType

MAX_MESSAGE_LENGTH = 5000


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class ConversationStart(BaseModel):
    """Schema for starting (or resuming) a customer/vendor conversation."""

    model_config = ConfigDict(from_attributes=True)

    customer_id: str = Field(min_length=1, max_length=128, description="Customer identity")
    vendor_id: str = Field(min_length=1, max_length=128, description="Vendor identity")
    product_id: str | None = Field(default=None, max_length=128, description="Optional product context")
    initial_message: str | None = Field(
        default=None, max_length=MAX_MESSAGE_LENGTH, description="Optional first message from the customer"
    )

    @field_validator("customer_id", "vendor_id")
    @classmethod
    def strip_ids(cls, value: str) -> str:
        """Reject whitespace-only identities."""
        return _strip_required(value)

    @field_validator("initial_message")
    @classmethod
    def blank_initial_message_is_none(cls, value: str | None) -> str | None:
        """Treat a whitespace-only initial message as absent."""
        if value is None:
            return None
        return value.strip() or None


class MessageCreate(BaseModel):
    """Schema for sending a message over HTTP."""

    model_config = ConfigDict(from_attributes=True)

    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH, description="Message text")

    @field_validator("message")
    @classmethod
    def strip_message(cls, value: str) -> str:
        """Trim surrounding whitespace and reject blank text."""
        return _strip_required(value)


class MarkReadRequest(BaseModel):
    """Schema for marking a conversation read."""

    model_config = ConfigDict(from_attributes=True)

    user_type: SenderType = Field(description="Role of the reader")


class UnreadCount(BaseModel):
    """Unread counters for both participants of a conversation."""

    model_config = ConfigDict(from_attributes=True)

    customer: int = Field(default=0, description="Messages unread by the customer")
    vendor: int = Field(default=0, description="Messages unread by the vendor")


class MessageResponse(BaseModel):
    """Schema for a single chat message."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Message identifier")
    sender_id: str = Field(description="Sender identity")
    sender_type: SenderType = Field(description="Sender role")
    message: str = Field(description="Message text")
    timestamp: datetime = Field(description="When the message was sent")
    is_read: bool = Field(description="Whether the receiver has read the message")


class ConversationSummary(BaseModel):
    """Schema for conversation listings (no message bodies)."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Conversation unique identifier")
    customer_id: str = Field(description="Customer identity")
    vendor_id: str = Field(description="Vendor identity")
    product_id: str | None = Field(default=None, description="Product context")
    last_message: str = Field(default="", description="Text of the latest message")
    last_message_time: datetime | None = Field(default=None, description="Timestamp of the latest message")
    unread_count: UnreadCount = Field(default_factory=UnreadCount, description="Unread counters")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    updated_at: datetime | None = Field(default=None, description="Last update timestamp")

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationSummary":
        """Build a summary from a conversations table row."""
        return cls(**_summary_fields(row))


class ConversationResponse(ConversationSummary):
    """Schema for a conversation with its full message history."""

    messages: list[MessageResponse] = Field(default_factory=list, description="Messages, oldest first")

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationResponse":
        """Build a full conversation from a conversations table row."""
        return cls(
            **_summary_fields(row),
            messages=[MessageResponse(**message) for message in row.get("messages") or []],
        )


class UnreadTotalResponse(BaseModel):
    """Schema for the unread total across a user's conversations."""

    model_config = ConfigDict(from_attributes=True)

    unread_count: int = Field(description="Total unread messages")


def _summary_fields(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "customer_id": row["customer_id"],
        "vendor_id": row["vendor_id"],
        "product_id": row.get("product_id"),
        "last_message": row.get("last_message") or "",
        "last_message_time": row.get("last_message_time"),
        "unread_count": UnreadCount(
            customer=row.get("unread_customer", 0),
            vendor=row.get("unread_vendor", 0),
        ),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }
