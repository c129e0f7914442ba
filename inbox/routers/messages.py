from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List
from ..config import settings
from ..database import get_db
from ..models import User
from ..schemas import MessageOut, MessageCreate
from ..auth import get_current_user
from ..exceptions import ValidationError
from ..limiter import limiter
from ..services import conversation_service, message_service
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageOut])
async def get_messages(conversation_id: int, offset: int = 0, limit: int = settings.DEFAULT_PAGE_SIZE, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await message_service.get_messages(db, conversation_id, current_user.id, offset, min(limit, 200))

@router.post("/conversations/messages", response_model=MessageOut)
@limiter.limit(settings.SEND_RATE_LIMIT)
async def send_message(request: Request, payload: MessageCreate, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Send a message, reusing the original when an idempotency key is replayed inside its window.

    A key replayed after the window is a 400 on ``idempotency_key``; send with a fresh key instead.
    """
    conversation_id = payload.conversation_id
    if conversation_id is None:
        if payload.recipient_id is None:
            raise ValidationError("Conversation ID or recipient ID is required", field="conversation_id")
        conversation = await conversation_service.get_or_create_conversation(db, current_user.id, payload.recipient_id)
        conversation_id = conversation.id

    return await message_service.send_message(
        db, conversation_id, current_user.id, payload.content, idempotency_key=payload.idempotency_key
    )

@router.delete("/messages/{message_id}", response_model=MessageOut)
async def delete_message(message_id: int, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await message_service.soft_delete_message(db, message_id, current_user.id, is_moderator=current_user.is_moderator)
