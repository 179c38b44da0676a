"""Realtime chat gateway.

Translates inbound WebSocket events into conversation engine calls and fans
the results out to conversation and user rooms. Each inbound frame is
handled in its own task so slow store calls never block the reader loop,
and tasks keep running after the client disconnects so accepted sends and
read receipts are persisted.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.api.middleware.error_handler import APIError, AuthorizationError, ValidationError
from src.models.conversation import SenderType
from src.realtime.connections import (
    ClientConnection,
    ConnectionManager,
    conversation_room,
    user_room,
)
from src.realtime.presence import PresenceRegistry, get_presence_registry
from src.schemas.auth import UserContext
from src.schemas.realtime import (
    MarkReadPayload,
    MessageErrorEvent,
    MessageReceiveEvent,
    MessagesReadEvent,
    MessageSendPayload,
    RealtimeFrame,
    TypingPayload,
    TypingUpdateEvent,
    UnreadUpdateEvent,
    UserStatusEvent,
)
from src.services.chat_service import ChatService, participant_role, receiver_id

logger = logging.getLogger(__name__)


class RealtimeEvent:
    """Event names carried in the frame envelope."""

    # Inbound
    PRESENCE_ANNOUNCE = "presence-announce"
    ROOM_JOIN = "room-join"
    ROOM_LEAVE = "room-leave"
    MESSAGE_SEND = "message-send"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    MESSAGES_MARK_READ = "messages-mark-read"

    # Outbound
    MESSAGE_RECEIVE = "message-receive"
    UNREAD_UPDATE = "unread-update"
    TYPING_UPDATE = "typing-update"
    MESSAGES_READ = "messages-read"
    MESSAGE_ERROR = "message-error"
    USER_STATUS = "user-status"


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _extract_id(data: Any, key: str) -> str:
    """Accept either a bare id string or an object carrying ``key``."""
    if isinstance(data, dict):
        data = data.get(key)
    if isinstance(data, str) and data.strip():
        return data.strip()
    raise ValidationError(f"{key} is required")


Handler = Callable[[ClientConnection, Any], Awaitable[None]]


class ChatGateway:
    """Dispatches realtime chat events for all connected clients."""

    def __init__(
        self,
        connections: ConnectionManager | None = None,
        presence: PresenceRegistry | None = None,
        chat_service_factory: Callable[[], ChatService] = ChatService,
    ) -> None:
        self.connections = connections or ConnectionManager()
        self.presence = presence or get_presence_registry()
        self.chat_service_factory = chat_service_factory
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            RealtimeEvent.PRESENCE_ANNOUNCE: self._on_presence_announce,
            RealtimeEvent.ROOM_JOIN: self._on_room_join,
            RealtimeEvent.ROOM_LEAVE: self._on_room_leave,
            RealtimeEvent.MESSAGE_SEND: self._on_message_send,
            RealtimeEvent.TYPING_START: self._on_typing_start,
            RealtimeEvent.TYPING_STOP: self._on_typing_stop,
            RealtimeEvent.MESSAGES_MARK_READ: self._on_mark_read,
        }

    # Connection lifecycle

    async def connect(self, websocket: Any, user: UserContext | None = None) -> ClientConnection:
        """Accept a WebSocket and register it.

        Authenticated clients are announced immediately under their token
        identity.
        """
        await websocket.accept()
        connection = ClientConnection(websocket=websocket, user=user)
        self.connections.register(connection)
        logger.info(
            "Realtime client %s connected%s",
            connection.handle,
            f" as {user.user_id}" if user else "",
        )
        if user:
            await self._announce(connection, user.user_id)
        return connection

    async def disconnect(self, connection: ClientConnection) -> None:
        """Clean up presence and rooms; announce offline if it was the user's last connection.

        In-flight event tasks for the connection are left to finish.
        """
        self.connections.unregister(connection)
        offline_user = self.presence.set_offline(connection.handle)
        logger.info("Realtime client %s disconnected", connection.handle)
        if offline_user:
            await self.connections.broadcast(
                RealtimeEvent.USER_STATUS,
                _dump(UserStatusEvent(user_id=offline_user, status="offline")),
            )

    def dispatch(self, connection: ClientConnection, raw: str) -> asyncio.Task | None:
        """Schedule handling of one raw inbound frame.

        Returns:
            The task handling the frame, or None if the frame was rejected.
        """
        try:
            frame = RealtimeFrame.model_validate_json(raw)
        except PydanticValidationError:
            self._spawn(self._send_error(connection, None, "Malformed frame"))
            return None
        return self._spawn(self.handle_event(connection, frame.event, frame.data))

    async def handle_event(self, connection: ClientConnection, event: str, data: Any) -> None:
        """Run the handler for ``event``; failures become ``message-error`` frames."""
        handler = self._handlers.get(event)
        if handler is None:
            await self._send_error(connection, event, f"Unknown event: {event}")
            return

        try:
            await handler(connection, data)
        except APIError as e:
            await self._send_error(connection, event, e.message)
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in e.errors())
            await self._send_error(connection, event, f"Invalid payload: {fields}")
        except Exception:
            logger.exception("Unexpected error handling realtime event %s", event)
            await self._send_error(connection, event, "An unexpected error occurred")

    async def drain(self) -> None:
        """Wait for in-flight event tasks. Called at shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # Notifications shared with the HTTP routes

    async def publish_message(
        self,
        conversation: dict[str, Any],
        message: dict[str, Any],
        exclude: ClientConnection | None = None,
    ) -> None:
        """Fan out a persisted message and the receiver's unread counters."""
        conversation_id = str(conversation["id"])
        await self.connections.emit_to_room(
            conversation_room(conversation_id),
            RealtimeEvent.MESSAGE_RECEIVE,
            _dump(
                MessageReceiveEvent(
                    conversation_id=conversation_id,
                    message=message,
                    last_message=conversation["last_message"],
                    last_message_time=str(conversation["last_message_time"]),
                )
            ),
            exclude=exclude,
        )

        receiver_role = SenderType(message["sender_type"]).other
        receiver = receiver_id(conversation, SenderType(message["sender_type"]))
        total_unread = await self._total_unread(receiver, receiver_role)
        await self.connections.emit_to_room(
            user_room(receiver),
            RealtimeEvent.UNREAD_UPDATE,
            _dump(
                UnreadUpdateEvent(
                    conversation_id=conversation_id,
                    unread_count=conversation.get(receiver_role.unread_column, 0),
                    total_unread=total_unread,
                )
            ),
        )

    async def publish_read(
        self,
        conversation: dict[str, Any],
        reader_role: SenderType,
        exclude: ClientConnection | None = None,
    ) -> None:
        """Tell the conversation room a role read its messages and reset the reader's badge."""
        conversation_id = str(conversation["id"])
        await self.connections.emit_to_room(
            conversation_room(conversation_id),
            RealtimeEvent.MESSAGES_READ,
            _dump(MessagesReadEvent(conversation_id=conversation_id, read_by=reader_role)),
            exclude=exclude,
        )

        reader = conversation.get(reader_role.participant_column)
        if not reader:
            return
        total_unread = await self._total_unread(reader, reader_role)
        await self.connections.emit_to_room(
            user_room(reader),
            RealtimeEvent.UNREAD_UPDATE,
            _dump(
                UnreadUpdateEvent(
                    conversation_id=conversation_id,
                    unread_count=0,
                    total_unread=total_unread,
                )
            ),
        )

    # Event handlers

    async def _on_presence_announce(self, connection: ClientConnection, data: Any) -> None:
        user_id = _extract_id(data, "user_id")
        self._check_identity(connection, user_id)
        await self._announce(connection, user_id)

    async def _on_room_join(self, connection: ClientConnection, data: Any) -> None:
        conversation_id = _extract_id(data, "conversation_id")
        if connection.authenticated:
            # Bound clients may only listen to their own conversations
            await self.chat_service_factory().get_conversation(conversation_id, connection.user.user_id)
        self.connections.join(connection, conversation_room(conversation_id))
        logger.debug("Connection %s joined conversation %s", connection.handle, conversation_id)

    async def _on_room_leave(self, connection: ClientConnection, data: Any) -> None:
        conversation_id = _extract_id(data, "conversation_id")
        self.connections.leave(connection, conversation_room(conversation_id))

    async def _on_message_send(self, connection: ClientConnection, data: Any) -> None:
        payload = MessageSendPayload.model_validate(data)
        self._check_identity(connection, payload.sender_id)

        conversation, message = await self.chat_service_factory().send_message(
            payload.conversation_id,
            payload.sender_id,
            payload.sender_type,
            payload.message,
        )
        await self.publish_message(conversation, message)

    async def _on_typing_start(self, connection: ClientConnection, data: Any) -> None:
        await self._typing(connection, data, is_typing=True)

    async def _on_typing_stop(self, connection: ClientConnection, data: Any) -> None:
        await self._typing(connection, data, is_typing=False)

    async def _typing(self, connection: ClientConnection, data: Any, is_typing: bool) -> None:
        payload = TypingPayload.model_validate(data)
        self._check_identity(connection, payload.user_id)
        await self.connections.emit_to_room(
            conversation_room(payload.conversation_id),
            RealtimeEvent.TYPING_UPDATE,
            _dump(
                TypingUpdateEvent(
                    conversation_id=payload.conversation_id,
                    user_id=payload.user_id,
                    user_type=payload.user_type,
                    is_typing=is_typing,
                )
            ),
            exclude=connection,
        )

    async def _on_mark_read(self, connection: ClientConnection, data: Any) -> None:
        payload = MarkReadPayload.model_validate(data)
        service = self.chat_service_factory()

        if connection.authenticated:
            conversation = await service.get_conversation(payload.conversation_id, connection.user.user_id)
            if participant_role(conversation, connection.user.user_id) != payload.user_type:
                raise AuthorizationError(f"You are not the {payload.user_type.value} of this conversation")

        conversation = await service.mark_all_read(payload.conversation_id, payload.user_type)
        await self.publish_read(conversation, payload.user_type, exclude=connection)

    # Helpers

    async def _announce(self, connection: ClientConnection, user_id: str) -> None:
        # Announce tasks may run after disconnect cleaned up the handle
        if connection.closed:
            logger.debug("Ignoring presence announce for closed connection %s", connection.handle)
            return

        previous_user = connection.user_id
        if previous_user and previous_user != user_id:
            self.connections.leave(connection, user_room(previous_user))

        went_offline = self.presence.set_online(user_id, connection.handle)
        connection.user_id = user_id
        self.connections.join(connection, user_room(user_id))

        if went_offline:
            await self.connections.broadcast(
                RealtimeEvent.USER_STATUS,
                _dump(UserStatusEvent(user_id=went_offline, status="offline")),
                exclude=connection,
            )
        await self.connections.broadcast(
            RealtimeEvent.USER_STATUS,
            _dump(UserStatusEvent(user_id=user_id, status="online")),
            exclude=connection,
        )

    @staticmethod
    def _check_identity(connection: ClientConnection, claimed_user_id: str) -> None:
        if connection.authenticated and claimed_user_id != connection.user.user_id:
            raise AuthorizationError("User identity does not match the authenticated connection")

    async def _total_unread(self, user_id: str, role: SenderType) -> int | None:
        try:
            return await self.chat_service_factory().get_unread_total(user_id, role)
        except APIError as e:
            logger.warning("Could not compute total unread for %s: %s", user_id, e.message)
            return None

    async def _send_error(self, connection: ClientConnection, event: str | None, message: str) -> None:
        await self.connections.send(
            connection,
            RealtimeEvent.MESSAGE_ERROR,
            _dump(MessageErrorEvent(event=event, message=message)),
        )

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


# Global singleton instance
_chat_gateway: ChatGateway | None = None


def get_chat_gateway() -> ChatGateway:
    """Get or create the global chat gateway."""
    global _chat_gateway
    if _chat_gateway is None:
        _chat_gateway = ChatGateway()
    return _chat_gateway


async def shutdown_chat_gateway() -> None:
    """Let in-flight events finish and drop the gateway. Call at app shutdown."""
    global _chat_gateway
    if _chat_gateway:
        await _chat_gateway.drain()
    _chat_gateway = None


async def check_realtime_gateway() -> dict[str, Any]:
    """Report whether the gateway is running and how busy it is."""
    if _chat_gateway is None:
        return {"healthy": False, "error": "Realtime gateway is not running"}
    return {
        "healthy": True,
        "details": {
            "connections": _chat_gateway.connections.active_count,
            "online_users": len(_chat_gateway.presence.online_users()),
            "pending_events": _chat_gateway.pending_tasks,
        },
    }
