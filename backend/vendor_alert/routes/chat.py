"""
Chat Routes
REST surface of the store owner / vendor chat. Every write publishes the
same real-time events as its WebSocket counterpart.
"""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from vendor_alert.database import get_db
from vendor_alert.errors import ForbiddenError
from vendor_alert.middleware.auth import create_access_token, get_current_user
from vendor_alert.models import User
from vendor_alert.realtime.service import VENDOR_ONLY, RealtimeService, get_realtime_service
from vendor_alert.services.chat_service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Request Models ==============


class LoginRequest(BaseModel):
    email: str
    password: str


class SendMessageRequest(BaseModel):
    """Message body; fields beyond receiver_id depend on message_type."""

    model_config = ConfigDict(extra="allow")

    receiver_id: int
    message_type: str = "text"
    parent_message_id: Optional[int] = None


class VendorResponseRequest(BaseModel):
    message_id: int
    response: Literal["accept", "decline"]


class DeleteMessagesRequest(BaseModel):
    message_ids: List[int] = Field(min_length=1)


# ============== Auth ==============


@router.post("/auth/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Exchange email and password for a chat access token."""
    user = await ChatService(db).authenticate(request.email, request.password)
    return {
        "success": True,
        "token": create_access_token(user),
        "user": user.to_public_dict(),
    }


# ============== Conversations ==============


@router.get("/conversations")
async def list_conversations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    realtime: RealtimeService = Depends(get_realtime_service),
):
    conversations = await ChatService(db).list_conversations(
        user, online_user_ids=realtime.manager.online_user_ids()
    )
    return {"success": True, "conversations": conversations}


# ============== Messages ==============


@router.get("/messages")
async def get_messages(
    contact_id: int = Query(...),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """One page of the conversation with a contact, oldest first."""
    result = await ChatService(db).get_messages(user, contact_id, page=page, limit=limit)
    return {"success": True, **result}


@router.post("/messages")
async def send_message(
    request: SendMessageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    realtime: RealtimeService = Depends(get_realtime_service),
):
    body = request.model_dump(exclude={"receiver_id", "parent_message_id"}, exclude_none=True)
    message = await ChatService(db).create_message(
        user, request.receiver_id, body, parent_message_id=request.parent_message_id
    )

    try:
        message = await realtime.broadcast_message(message)
    except Exception as e:
        # Stored message stays the source of truth
        logger.error(f"Real-time publish failed for message {message['id']}: {e}", exc_info=True)

    return {"success": True, "message": message}


@router.put("/messages/{message_id}/read")
async def mark_read(
    message_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    realtime: RealtimeService = Depends(get_realtime_service),
):
    receipt = await ChatService(db).mark_read(message_id, user)
    await realtime.broadcast_read(receipt)
    return {"success": True, "message": "Message marked as read", "receipt": receipt}


@router.post("/vendor-response")
async def vendor_response(
    request: VendorResponseRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    realtime: RealtimeService = Depends(get_realtime_service),
):
    """Vendor accepts or declines an order notification."""
    if not user.is_vendor:
        raise ForbiddenError(VENDOR_ONLY)

    result = await ChatService(db).respond_to_order(
        request.message_id, user, accepted=request.response == "accept"
    )
    await realtime.broadcast_order_response(result)

    return {
        "success": True,
        "message": "Vendor response recorded",
        "response": result["response"],
        "response_message": result["response_message"],
    }


@router.delete("/messages")
async def delete_messages(
    request: DeleteMessagesRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    deleted = await ChatService(db).soft_delete(user, request.message_ids)
    return {
        "success": True,
        "message": "Messages deleted successfully",
        "deleted_count": len(deleted),
        "deleted_ids": deleted,
    }
