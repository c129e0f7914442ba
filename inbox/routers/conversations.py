from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List
from ..database import get_db
from ..models import User
from ..schemas import ConversationOut, ConversationCreate, ReadRequest, UnreadCountDelta, UnreadCountOut, StatusResponse
from ..auth import get_current_user
from ..exceptions import ValidationError
from ..services import conversation_service, read_service

router = APIRouter()

@router.get("/conversations", response_model=List[ConversationOut])
async def get_conversations(offset: int = 0, limit: int = 20, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await conversation_service.list_conversations(db, current_user.id, offset, min(limit, 100))

@router.post("/conversations", response_model=ConversationOut)
async def create_conversation(payload: ConversationCreate, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    if payload.is_group:
        conversation = await conversation_service.create_group_conversation(db, current_user.id, payload.user_ids or [], payload.name)
    elif payload.recipient_id is not None:
        conversation = await conversation_service.get_or_create_conversation(db, current_user.id, payload.recipient_id)
    elif payload.user_ids and len(payload.user_ids) == 1:
        conversation = await conversation_service.get_or_create_conversation(db, current_user.id, payload.user_ids[0])
    else:
        raise ValidationError("User IDs are required", field="recipient_id")
    return await conversation_service.get_conversation_out(db, conversation.id, current_user.id)

@router.post("/conversations/read", response_model=UnreadCountDelta)
async def mark_read(payload: ReadRequest, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await read_service.mark_read(db, payload.conversation_id, current_user.id)

@router.post("/conversations/{conversation_id}/leave", response_model=StatusResponse)
async def leave_conversation(conversation_id: int, current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    await conversation_service.leave_conversation(db, conversation_id, current_user.id)
    return StatusResponse(status="ok", message="Left conversation")

@router.get("/unread-count", response_model=UnreadCountOut)
async def get_unread_count(current_user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return UnreadCountOut(unread_count=await read_service.get_unread_count(db, current_user.id))
