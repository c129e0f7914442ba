from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload
from typing import List, Optional
import logging
from datetime import timedelta
from ..clock import as_utc, utcnow
from ..config import settings
from ..events import (
    ConversationUpdatedEvent, EventMessage, MessageDeletedEvent, NewMessageEvent,
    conversation_channel, user_channel,
)
from ..exceptions import ForbiddenError, NotFoundError, ValidationError
from ..models import Message, MessageType, SharedContent
from ..publisher import publisher
from ..schemas import DeliveryStats
from . import conversation_service
from .read_service import get_conversation_unread_count, get_unread_count

logger = logging.getLogger(__name__)

async def get_message(db: AsyncSession, message_id: int) -> Optional[Message]:
    stmt = (
        select(Message)
        .where(Message.id == message_id)
        .options(selectinload(Message.shared_content))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()

async def get_messages(db: AsyncSession, conversation_id: int, user_id: int, offset: int = 0, limit: int = 50) -> List[Message]:
    if not await conversation_service.is_participant(db, conversation_id, user_id):
        raise ForbiddenError("Not a participant of this conversation")

    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.is_deleted == False)
        .options(selectinload(Message.shared_content))
        .order_by(Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())

async def _find_by_idempotency_key(db: AsyncSession, conversation_id: int, sender_id: int, key: str) -> Optional[Message]:
    stmt = (
        select(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id == sender_id,
            Message.idempotency_key == key,
        )
        .options(selectinload(Message.shared_content))
    )
    result = await db.execute(stmt)
    return result.scalars().first()

def _check_replay(existing: Message) -> Message:
    # Keys stay reserved after the window; only replays inside it return the original
    window_start = utcnow() - timedelta(seconds=settings.IDEMPOTENCY_WINDOW_SECONDS)
    if as_utc(existing.created_at) < window_start:
        raise ValidationError(
            "Idempotency key was already used and its replay window has expired; send with a new key",
            field="idempotency_key",
        )
    logger.info(f"Replayed message {existing.id} for idempotency key")
    return existing

def _clean_content(content: Optional[str]) -> str:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required", field="content")
    if len(content) > settings.MAX_MESSAGE_LENGTH:
        raise ValidationError("Message content too long", field="content")
    return content

async def send_message(
    db: AsyncSession,
    conversation_id: int,
    sender_id: int,
    content: str,
    idempotency_key: Optional[str] = None,
    shared_content: Optional[SharedContent] = None,
) -> Message:
    content = _clean_content(content)

    async with publisher.ordered(conversation_id):
        if not await conversation_service.is_participant(db, conversation_id, sender_id):
            raise ForbiddenError("Not a participant of this conversation")

        if idempotency_key:
            existing = await _find_by_idempotency_key(db, conversation_id, sender_id, idempotency_key)
            if existing:
                return _check_replay(existing)

        conversation = await conversation_service.lock_conversation(db, conversation_id)
        now = conversation_service.advance_clock(conversation)
        if shared_content is not None:
            shared_content.sender_id = sender_id

        # delivered_at is written in the same row insert as created_at
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            message_type=MessageType.SHARED_CONTENT if shared_content is not None else MessageType.TEXT,
            idempotency_key=idempotency_key,
            is_deleted=False,
            created_at=now,
            delivered_at=now,
            read_at=None,
            shared_content=shared_content,
        )
        db.add(message)
        try:
            await db.flush()
            conversation.last_message_id = message.id
            conversation.last_message_at = now
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if not idempotency_key:
                raise
            existing = await _find_by_idempotency_key(db, conversation_id, sender_id, idempotency_key)
            if existing is None:
                raise
            return _check_replay(existing)

        logger.info(f"Message {message.id} stored in conversation {conversation_id} by user {sender_id}")
        # Detached so a rollback during fan-out cannot expire the returned row
        db.expunge(message)
        await _fan_out_new_message(db, message)

    return message

async def _fan_out_new_message(db: AsyncSession, message: Message):
    event = NewMessageEvent(
        conversation_id=message.conversation_id,
        user_id=message.sender_id,
        timestamp=message.created_at,
        message=EventMessage.model_validate(message, from_attributes=True),
    )
    await publisher.publish(conversation_channel(message.conversation_id), event)
    await _publish_counts_to_others(db, message.conversation_id, message.sender_id, message.created_at, message.id)

async def _publish_counts_to_others(db: AsyncSession, conversation_id: int, actor_id: int, timestamp, last_message_id: Optional[int]):
    # Runs after commit; a storage failure here only costs the badge updates
    try:
        member_ids = await conversation_service.get_active_participant_ids(db, conversation_id)
        items = []
        for member_id in member_ids:
            if member_id == actor_id:
                continue
            items.append((user_channel(member_id), ConversationUpdatedEvent(
                conversation_id=conversation_id,
                user_id=member_id,
                timestamp=timestamp,
                unread_count=await get_unread_count(db, member_id),
                conversation_unread_count=await get_conversation_unread_count(db, conversation_id, member_id),
                last_message_id=last_message_id,
            )))
    except SQLAlchemyError as e:
        logger.error(f"Skipping unread fan-out for conversation {conversation_id}: {e}")
        await db.rollback()
        return
    await publisher.publish_many(items)

async def soft_delete_message(db: AsyncSession, message_id: int, requester_id: int, is_moderator: bool = False) -> Message:
    message = await get_message(db, message_id)
    if not message:
        raise NotFoundError("Message not found")
    if message.sender_id != requester_id and not is_moderator:
        raise ForbiddenError("Only the sender or a moderator can delete this message")
    if message.is_deleted:
        return message

    conversation_id = message.conversation_id
    async with publisher.ordered(conversation_id):
        conversation = await conversation_service.lock_conversation(db, conversation_id)
        now = conversation_service.advance_clock(conversation)
        message.is_deleted = True
        last_message_id = conversation.last_message_id
        await db.commit()
        logger.info(f"Message {message_id} soft-deleted by user {requester_id}")
        db.expunge(message)

        await publisher.publish(conversation_channel(conversation_id), MessageDeletedEvent(
            conversation_id=conversation_id,
            user_id=requester_id,
            timestamp=now,
            message_id=message_id,
        ))
        await _publish_counts_to_others(db, conversation_id, message.sender_id, now, last_message_id)

    return message

async def get_delivery_stats(db: AsyncSession) -> DeliveryStats:
    stmt = select(
        func.count(Message.id),
        func.count(Message.delivered_at),
        func.count(Message.read_at),
    )
    total, delivered, read = (await db.execute(stmt)).one()

    def pct(part: int) -> float:
        return round(part * 100.0 / total, 2) if total else 100.0

    return DeliveryStats(
        total_messages=total,
        delivered_messages=delivered,
        read_messages=read,
        delivery_percentage=pct(delivered),
        read_percentage=pct(read) if total else 0.0,
    )
