"""Customer/vendor chat business logic service.

Conversations are single rows holding their messages as an embedded JSON
array together with per-role unread counters. Every mutation is a
compare-and-swap on the row's ``version`` column, so concurrent sends and
read receipts against one conversation serialize at the store: a writer
that loses the race re-reads the row and re-applies its change.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random

from src.api.middleware.error_handler import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.supabase import StaleWriteError, execute, get_supabase_client, update_if_version
from src.models.conversation import CONVERSATION_SUMMARY_COLUMNS, SenderType
from src.schemas.chat import MAX_MESSAGE_LENGTH

logger = logging.getLogger(__name__)

# Optimistic write retry configuration
MAX_WRITE_ATTEMPTS = 5
MAX_RETRY_WAIT_SECONDS = 0.05


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_message(
    sender_id: str,
    sender_type: SenderType,
    text: str,
    timestamp: str,
) -> dict[str, Any]:
    """Create a new, unread message record."""
    return {
        "id": str(uuid4()),
        "sender_id": sender_id,
        "sender_type": sender_type.value,
        "message": text,
        "timestamp": timestamp,
        "is_read": False,
    }


def apply_new_message(conversation: dict[str, Any], message: dict[str, Any]) -> dict[str, Any]:
    """Column changes that append ``message`` to ``conversation``.

    The receiver's unread counter goes up by one; the sender's is untouched.
    """
    receiver = SenderType(message["sender_type"]).other
    return {
        "messages": [*(conversation.get("messages") or []), message],
        "last_message": message["message"],
        "last_message_time": message["timestamp"],
        receiver.unread_column: conversation.get(receiver.unread_column, 0) + 1,
    }


def apply_mark_read(conversation: dict[str, Any], reader: SenderType) -> dict[str, Any]:
    """Column changes that mark every message from the other role as read."""
    sender = reader.other
    messages = [
        {**message, "is_read": True}
        if message["sender_type"] == sender.value and not message["is_read"]
        else message
        for message in conversation.get("messages") or []
    ]
    return {"messages": messages, reader.unread_column: 0}


def count_unread(messages: list[dict[str, Any]], reader: SenderType) -> int:
    """Number of messages from the other role that ``reader`` has not read."""
    sender = reader.other
    return sum(
        1 for message in messages if message["sender_type"] == sender.value and not message["is_read"]
    )


def participant_role(conversation: dict[str, Any], user_id: str) -> SenderType | None:
    """Role ``user_id`` plays in the conversation, or None for outsiders."""
    if conversation.get("customer_id") == user_id:
        return SenderType.CUSTOMER
    if conversation.get("vendor_id") == user_id:
        return SenderType.VENDOR
    return None


def is_participant(conversation: dict[str, Any], user_id: str) -> bool:
    return participant_role(conversation, user_id) is not None


def receiver_id(conversation: dict[str, Any], sender_type: SenderType) -> str:
    """Identity of the participant receiving a message sent by ``sender_type``."""
    return conversation[sender_type.other.participant_column]


def _coerce_role(value: SenderType | str, field: str = "sender_type") -> SenderType:
    try:
        return SenderType(value)
    except ValueError as e:
        raise ValidationError(f"{field} must be either customer or vendor") from e


class ChatService:
    """Service for customer/vendor conversations and messages."""

    TABLE = "conversations"

    def __init__(self) -> None:
        """Initialize chat service with Supabase client."""
        self.client = get_supabase_client()
        self.settings = get_settings()

    async def start_or_get_conversation(
        self,
        customer_id: str,
        vendor_id: str,
        product_id: str | None = None,
        initial_message: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """Return the conversation for a customer/vendor pair, creating it if needed.

        The initial message is only used when the conversation is created.

        Args:
            customer_id: The customer's identity.
            vendor_id: The vendor's identity.
            product_id: Optional product the conversation is about.
            initial_message: Optional first message from the customer.

        Returns:
            tuple: (conversation_data, is_new) where is_new indicates if created.

        Raises:
            ValidationError: If the participants are missing or identical.
        """
        if not customer_id or not vendor_id:
            raise ValidationError("Customer ID and Vendor ID are required")
        if customer_id == vendor_id:
            raise ValidationError("Customer and vendor must be different users")

        existing = await self._find_by_pair(customer_id, vendor_id)
        if existing:
            return existing, False

        now = _now_iso()
        conversation_data: dict[str, Any] = {
            "customer_id": customer_id,
            "vendor_id": vendor_id,
            "product_id": product_id,
            "messages": [],
            "last_message": "",
            "last_message_time": now,
            "unread_customer": 0,
            "unread_vendor": 0,
            "version": 0,
        }

        text = initial_message.strip() if initial_message else ""
        if text:
            message = build_message(customer_id, SenderType.CUSTOMER, text, now)
            conversation_data.update(apply_new_message(conversation_data, message))

        try:
            response = await execute(
                self.client.table(self.TABLE).insert(conversation_data),
                "create conversation",
            )
        except ConflictError:
            # Another request created the pair first; its record wins
            existing = await self._find_by_pair(customer_id, vendor_id)
            if existing is None:
                raise
            return existing, False

        conversation = response.data[0]
        logger.info(
            "Conversation %s started between customer %s and vendor %s",
            conversation["id"],
            customer_id,
            vendor_id,
        )
        return conversation, True

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_type: SenderType | str,
        text: str,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Append a message and bump the receiver's unread counter.

        Args:
            conversation_id: The conversation's id.
            sender_id: The sender's identity.
            sender_type: The sender's role.
            text: Message text.

        Returns:
            tuple: (updated_conversation, new_message)

        Raises:
            ValidationError: If the text is blank or the role unknown.
            NotFoundError: If the conversation does not exist.
            AuthorizationError: If the sender is not that role's participant.
            ConflictError: If the write kept losing to concurrent updates.
        """
        role = _coerce_role(sender_type)
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")

        try:
            return await self._append_message(conversation_id, sender_id, role, text)
        except StaleWriteError as e:
            logger.warning("Gave up appending to conversation %s after %d attempts", conversation_id, MAX_WRITE_ATTEMPTS)
            raise ConflictError("Conversation is busy, please retry") from e

    async def list_conversations(
        self,
        user_id: str,
        user_type: SenderType | str,
        page: int = 1,
        page_size: int | None = None,
    ) -> tuple[list[dict[str, Any]], dict[str, int]]:
        """List a user's conversations in one role, most recent activity first.

        Args:
            user_id: The participant's identity.
            user_type: Role to list conversations for.
            page: 1-based page number.
            page_size: Page size (defaults to settings, capped at the maximum).

        Returns:
            tuple: (conversation_rows, pagination)
        """
        role = _coerce_role(user_type, "user_type")
        page = max(page or 1, 1)
        limit = min(max(page_size or self.settings.chat_page_size, 1), self.settings.chat_max_page_size)
        start = (page - 1) * limit

        response = await execute(
            self.client.table(self.TABLE)
            .select(CONVERSATION_SUMMARY_COLUMNS, count="exact")
            .eq(role.participant_column, user_id)
            .order("last_message_time", desc=True)
            .range(start, start + limit - 1),
            "list conversations",
        )
        rows = response.data or []
        total = response.count if response.count is not None else len(rows)

        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        }
        return rows, pagination

    async def get_conversation(self, conversation_id: str, requesting_user_id: str) -> dict[str, Any]:
        """Get a conversation with its full history for one of its participants.

        Raises:
            NotFoundError: If the conversation does not exist.
            AuthorizationError: If the requester is not a participant.
        """
        conversation = await self._require(conversation_id)
        if participant_role(conversation, requesting_user_id) is None:
            raise AuthorizationError("Unauthorized access to conversation")
        return conversation

    async def mark_all_read(self, conversation_id: str, reader_role: SenderType | str) -> dict[str, Any]:
        """Mark the other role's messages read and reset the reader's counter.

        Returns:
            dict: The updated conversation.

        Raises:
            NotFoundError: If the conversation does not exist.
            ConflictError: If the write kept losing to concurrent updates.
        """
        role = _coerce_role(reader_role, "user_type")
        try:
            return await self._mark_read(conversation_id, role)
        except StaleWriteError as e:
            logger.warning("Gave up marking conversation %s read after %d attempts", conversation_id, MAX_WRITE_ATTEMPTS)
            raise ConflictError("Conversation is busy, please retry") from e

    async def get_unread_total(self, user_id: str, user_type: SenderType | str) -> int:
        """Sum the role's unread counters across the user's conversations."""
        role = _coerce_role(user_type, "user_type")
        response = await execute(
            self.client.table(self.TABLE)
            .select(role.unread_column)
            .eq(role.participant_column, user_id),
            "sum unread",
        )
        return sum(row.get(role.unread_column) or 0 for row in response.data or [])

    # Write paths

    @retry(
        retry=retry_if_exception_type(StaleWriteError),
        stop=stop_after_attempt(MAX_WRITE_ATTEMPTS),
        wait=wait_random(min=0, max=MAX_RETRY_WAIT_SECONDS),
        reraise=True,
    )
    async def _append_message(
        self,
        conversation_id: str,
        sender_id: str,
        role: SenderType,
        text: str,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        conversation = await self._require(conversation_id)
        if conversation[role.participant_column] != sender_id:
            raise AuthorizationError(f"Sender is not the {role.value} of this conversation")

        message = build_message(sender_id, role, text, _now_iso())
        updated = await update_if_version(
            self.client, self.TABLE, conversation, apply_new_message(conversation, message), "append message"
        )
        return updated, message

    @retry(
        retry=retry_if_exception_type(StaleWriteError),
        stop=stop_after_attempt(MAX_WRITE_ATTEMPTS),
        wait=wait_random(min=0, max=MAX_RETRY_WAIT_SECONDS),
        reraise=True,
    )
    async def _mark_read(self, conversation_id: str, role: SenderType) -> dict[str, Any]:
        conversation = await self._require(conversation_id)
        return await update_if_version(
            self.client, self.TABLE, conversation, apply_mark_read(conversation, role), "mark conversation read"
        )

    # Reads

    async def _find_by_pair(self, customer_id: str, vendor_id: str) -> dict[str, Any] | None:
        response = await execute(
            self.client.table(self.TABLE)
            .select("*")
            .eq("customer_id", customer_id)
            .eq("vendor_id", vendor_id)
            .limit(1),
            "find conversation",
        )
        return response.data[0] if response and response.data else None

    async def _require(self, conversation_id: str) -> dict[str, Any]:
        response = await execute(
            self.client.table(self.TABLE).select("*").eq("id", str(conversation_id)).limit(1),
            "get conversation",
        )
        if not response or not response.data:
            raise NotFoundError("Conversation not found")
        return response.data[0]
