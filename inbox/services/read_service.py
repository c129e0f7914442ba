from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import Dict
import logging
from ..events import ConversationUpdatedEvent, MessageReadEvent, conversation_channel, user_channel
from ..exceptions import ForbiddenError
from ..models import Message, Participant
from ..publisher import publisher
from ..schemas import UnreadCountDelta
from . import conversation_service

logger = logging.getLogger(__name__)

def _unread_query(user_id: int):
    # Counts come from the cursor comparison only; Message.read_at is display-only
    return (
        select(func.count(Message.id))
        .select_from(Participant)
        .join(Message, Message.conversation_id == Participant.conversation_id)
        .where(
            Participant.user_id == user_id,
            Participant.is_active == True,
            Message.sender_id != user_id,
            Message.is_deleted == False,
            Message.created_at > Participant.last_read_at,
        )
    )

async def get_unread_count(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(_unread_query(user_id))
    return result.scalar_one()

async def get_conversation_unread_count(db: AsyncSession, conversation_id: int, user_id: int) -> int:
    stmt = _unread_query(user_id).where(Participant.conversation_id == conversation_id)
    result = await db.execute(stmt)
    return result.scalar_one()

async def get_unread_counts_by_conversation(db: AsyncSession, user_id: int) -> Dict[int, int]:
    stmt = (
        _unread_query(user_id)
        .add_columns(Participant.conversation_id)
        .group_by(Participant.conversation_id)
    )
    result = await db.execute(stmt)
    return {row.conversation_id: row[0] for row in result}

async def mark_read(db: AsyncSession, conversation_id: int, user_id: int) -> UnreadCountDelta:
    async with publisher.ordered(conversation_id):
        participant = await conversation_service.get_active_participant(db, conversation_id, user_id)
        if not participant:
            raise ForbiddenError("Not a participant of this conversation")

        conversation = await conversation_service.lock_conversation(db, conversation_id)
        cleared = await get_conversation_unread_count(db, conversation_id, user_id)
        now = conversation_service.advance_clock(conversation)
        participant.last_read_at = now

        # First reader wins; later readers leave read_at untouched
        await db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                Message.read_at.is_(None),
                Message.created_at <= now,
            )
            .values(read_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        total = await get_unread_count(db, user_id)
        logger.info(f"User {user_id} read conversation {conversation_id}: cleared {cleared}, {total} unread left")

        await publisher.publish(conversation_channel(conversation_id), MessageReadEvent(
            conversation_id=conversation_id,
            user_id=user_id,
            timestamp=now,
            last_read_at=now,
        ))
        await publisher.publish(user_channel(user_id), ConversationUpdatedEvent(
            conversation_id=conversation_id,
            user_id=user_id,
            timestamp=now,
            unread_count=total,
            conversation_unread_count=0,
            last_message_id=conversation.last_message_id,
        ))

    return UnreadCountDelta(
        conversation_id=conversation_id,
        cleared=cleared,
        conversation_unread_count=0,
        unread_count=total,
        last_read_at=now,
    )
