"""Chat API routes."""

import logging

from fastapi import APIRouter, Query, Response, status

from src.api.deps import CurrentUser
from src.api.middleware.error_handler import AuthorizationError
from src.models.conversation import SenderType
from src.realtime.gateway import get_chat_gateway
from src.schemas.chat import (
    ConversationResponse,
    ConversationStart,
    ConversationSummary,
    MarkReadRequest,
    MessageCreate,
    MessageResponse,
    UnreadTotalResponse,
)
from src.schemas.common import ApiResponse, Pagination
from src.services.chat_service import ChatService, participant_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post(
    "/conversations",
    response_model=ApiResponse[ConversationResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Start or resume a conversation",
    description="Returns the existing conversation for the customer/vendor pair or creates it (201).",
)
async def start_conversation(
    data: ConversationStart,
    user: CurrentUser,
    response: Response,
) -> ApiResponse[ConversationResponse]:
    """Start a conversation between a customer and a vendor.

    The caller must be one of the two participants unless they are an admin.
    An initial message is only stored when the conversation is created.
    """
    if user.user_id not in (data.customer_id, data.vendor_id) and not user.is_admin:
        raise AuthorizationError("You can only start conversations you take part in")

    service = ChatService()
    conversation, created = await service.start_or_get_conversation(
        customer_id=data.customer_id,
        vendor_id=data.vendor_id,
        product_id=data.product_id,
        initial_message=data.initial_message,
    )

    if not created:
        response.status_code = status.HTTP_200_OK
    elif conversation.get("messages"):
        await get_chat_gateway().publish_message(conversation, conversation["messages"][-1])

    return ApiResponse(
        message="Conversation created" if created else "Conversation already exists",
        data=ConversationResponse.from_row(conversation),
    )


@router.get(
    "/conversations",
    response_model=ApiResponse[list[ConversationSummary]],
    summary="List my conversations",
    description="Lists the caller's conversations in the given role, most recent activity first.",
)
async def list_conversations(
    user: CurrentUser,
    user_type: SenderType = Query(description="Role to list conversations for"),
    page: int = Query(default=1, ge=1, description="Page number"),
    limit: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> ApiResponse[list[ConversationSummary]]:
    service = ChatService()
    rows, pagination = await service.list_conversations(user.user_id, user_type, page=page, page_size=limit)

    return ApiResponse(
        data=[ConversationSummary.from_row(row) for row in rows],
        pagination=Pagination(**pagination),
        count=len(rows),
    )


@router.get(
    "/conversations/{conversation_id}",
    response_model=ApiResponse[ConversationResponse],
    summary="Get a conversation",
    description="Returns a conversation with its full message history. Participants only.",
)
async def get_conversation(
    conversation_id: str,
    user: CurrentUser,
) -> ApiResponse[ConversationResponse]:
    service = ChatService()
    conversation = await service.get_conversation(conversation_id, user.user_id)
    return ApiResponse(data=ConversationResponse.from_row(conversation))


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=ApiResponse[MessageResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
    description="Sends a message as the caller's role in the conversation.",
)
async def send_message(
    conversation_id: str,
    data: MessageCreate,
    user: CurrentUser,
) -> ApiResponse[MessageResponse]:
    """Send a message over HTTP.

    The sender role is derived from the caller's participation, and the
    message is pushed to connected realtime clients like a socket send.
    """
    service = ChatService()
    conversation = await service.get_conversation(conversation_id, user.user_id)
    role = participant_role(conversation, user.user_id)

    conversation, message = await service.send_message(conversation_id, user.user_id, role, data.message)
    await get_chat_gateway().publish_message(conversation, message)

    return ApiResponse(message="Message sent", data=MessageResponse(**message))


@router.put(
    "/conversations/{conversation_id}/read",
    response_model=ApiResponse[ConversationSummary],
    summary="Mark messages as read",
    description="Marks every message from the other participant as read.",
)
async def mark_read(
    conversation_id: str,
    data: MarkReadRequest,
    user: CurrentUser,
) -> ApiResponse[ConversationSummary]:
    service = ChatService()
    conversation = await service.get_conversation(conversation_id, user.user_id)
    if participant_role(conversation, user.user_id) != data.user_type:
        raise AuthorizationError(f"You are not the {data.user_type.value} of this conversation")

    conversation = await service.mark_all_read(conversation_id, data.user_type)
    await get_chat_gateway().publish_read(conversation, data.user_type)

    return ApiResponse(message="Messages marked as read", data=ConversationSummary.from_row(conversation))


@router.get(
    "/unread",
    response_model=ApiResponse[UnreadTotalResponse],
    summary="Get unread total",
    description="Total unread messages across the caller's conversations in the given role.",
)
async def get_unread_total(
    user: CurrentUser,
    user_type: SenderType = Query(description="Role to count unread messages for"),
) -> ApiResponse[UnreadTotalResponse]:
    service = ChatService()
    total = await service.get_unread_total(user.user_id, user_type)
    return ApiResponse(data=UnreadTotalResponse(unread_count=total))
