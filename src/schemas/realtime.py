"""Realtime gateway frame and event payload schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models.conversation import SenderType


class RealtimeFrame(BaseModel):
    """Envelope for every frame in both directions: ``{"event", "data"}``."""

    event: str = Field(min_length=1, description="Event name")
    data: Any = Field(default=None, description="Event payload")


class _InboundPayload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    conversation_id: str = Field(min_length=1, description="Target conversation")


class MessageSendPayload(_InboundPayload):
    """Payload of ``message-send``."""

    sender_id: str = Field(min_length=1, description="Sending user")
    sender_type: SenderType = Field(description="Sender's role in the conversation")
    message: str = Field(description="Message text")

    @field_validator("message", mode="before")
    @classmethod
    def require_text(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("message is required")
        return value


class TypingPayload(_InboundPayload):
    """Payload of ``typing-start`` and ``typing-stop``."""

    user_id: str = Field(min_length=1, description="Typing user")
    user_type: SenderType = Field(description="Typing user's role")


class MarkReadPayload(_InboundPayload):
    """Payload of ``messages-mark-read``."""

    user_type: SenderType = Field(description="Reader's role")


class MessageReceiveEvent(BaseModel):
    """Outbound ``message-receive``."""

    conversation_id: str
    message: dict[str, Any]
    last_message: str
    last_message_time: str


class UnreadUpdateEvent(BaseModel):
    """Outbound ``unread-update`` for a single user."""

    conversation_id: str
    unread_count: int
    total_unread: int | None = None


class TypingUpdateEvent(BaseModel):
    """Outbound ``typing-update``."""

    conversation_id: str
    user_id: str
    user_type: SenderType
    is_typing: bool


class MessagesReadEvent(BaseModel):
    """Outbound ``messages-read``."""

    conversation_id: str
    read_by: SenderType


class UserStatusEvent(BaseModel):
    """Outbound ``user-status``."""

    user_id: str
    status: str


class MessageErrorEvent(BaseModel):
    """Outbound ``message-error``, sent only to the originating connection."""

    event: str | None = None
    message: str
