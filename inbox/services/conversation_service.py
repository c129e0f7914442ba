from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload
from typing import Dict, List, Optional
import logging
from ..clock import next_tick, utcnow
from ..events import ConversationUpdatedEvent, ParticipantLeftEvent, conversation_channel, user_channel
from ..exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..models import Conversation, Participant, User, Message
from ..publisher import publisher
from ..schemas import ConversationOut, MessageOut, UserOut

logger = logging.getLogger(__name__)

def pair_key(user_a: int, user_b: int) -> str:
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"

def advance_clock(conversation: Conversation):
    """Next server timestamp for this conversation; call with the row locked."""
    now = next_tick(conversation.last_activity_at)
    conversation.last_activity_at = now
    return now

async def lock_conversation(db: AsyncSession, conversation_id: int) -> Optional[Conversation]:
    stmt = (
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()

async def get_active_participant(db: AsyncSession, conversation_id: int, user_id: int) -> Optional[Participant]:
    stmt = select(Participant).where(
        Participant.conversation_id == conversation_id,
        Participant.user_id == user_id,
        Participant.is_active == True,
    )
    result = await db.execute(stmt)
    return result.scalars().first()

async def is_participant(db: AsyncSession, conversation_id: int, user_id: int) -> bool:
    return await get_active_participant(db, conversation_id, user_id) is not None

async def get_active_participant_ids(db: AsyncSession, conversation_id: int) -> List[int]:
    stmt = select(Participant.user_id).where(
        Participant.conversation_id == conversation_id,
        Participant.is_active == True,
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())

async def _ensure_users_exist(db: AsyncSession, user_ids: List[int]):
    stmt = select(User.id).where(User.id.in_(user_ids))
    found = set((await db.execute(stmt)).scalars().all())
    missing = [u for u in user_ids if u not in found]
    if missing:
        raise NotFoundError(f"User(s) not found: {', '.join(str(u) for u in missing)}")

async def _find_direct_conversation(db: AsyncSession, key: str) -> Optional[Conversation]:
    stmt = select(Conversation).where(Conversation.pair_key == key)
    result = await db.execute(stmt)
    return result.scalars().first()

async def _reactivate_participants(db: AsyncSession, conversation: Conversation, user_ids: List[int]):
    stmt = select(Participant).where(
        Participant.conversation_id == conversation.id,
        Participant.user_id.in_(user_ids),
    )
    rows = {p.user_id: p for p in (await db.execute(stmt)).scalars().all()}
    changed = False
    for user_id in user_ids:
        participant = rows.get(user_id)
        if participant is None:
            now = utcnow()
            db.add(Participant(conversation_id=conversation.id, user_id=user_id, is_active=True, joined_at=now, last_read_at=now))
            changed = True
        elif not participant.is_active:
            participant.is_active = True
            changed = True
    if changed:
        await db.flush()
        conversation.participant_count = await _count_active(db, conversation.id)
        await db.commit()

async def _count_active(db: AsyncSession, conversation_id: int) -> int:
    stmt = select(func.count(Participant.id)).where(
        Participant.conversation_id == conversation_id,
        Participant.is_active == True,
    )
    return (await db.execute(stmt)).scalar_one()

async def get_or_create_conversation(db: AsyncSession, user_a: int, user_b: int) -> Conversation:
    if user_a == user_b:
        raise ValidationError("Cannot start a conversation with yourself", field="recipient_id")
    await _ensure_users_exist(db, [user_a, user_b])

    key = pair_key(user_a, user_b)
    existing = await _find_direct_conversation(db, key)
    if existing:
        await _reactivate_participants(db, existing, [user_a, user_b])
        return existing

    now = utcnow()
    conversation = Conversation(
        is_group=False,
        created_by=user_a,
        pair_key=key,
        participant_count=2,
        created_at=now,
        last_activity_at=now,
    )
    db.add(conversation)
    try:
        await db.flush()
        for user_id in (user_a, user_b):
            db.add(Participant(conversation_id=conversation.id, user_id=user_id, is_active=True, joined_at=now, last_read_at=now))
        await db.commit()
    except IntegrityError:
        # Lost the race to the other participant; their row is the conversation
        await db.rollback()
        logger.info(f"Conversation for pair {key} created concurrently, re-reading")
        existing = await _find_direct_conversation(db, key)
        if existing is None:
            raise ConflictError("Conversation could not be created, retry")
        await _reactivate_participants(db, existing, [user_a, user_b])
        return existing

    logger.info(f"Created conversation {conversation.id} for pair {key}")
    return conversation

async def create_group_conversation(db: AsyncSession, creator_id: int, member_ids: List[int], name: Optional[str] = None) -> Conversation:
    member_ids = list(dict.fromkeys(member_ids))
    if creator_id in member_ids:
        raise ValidationError("Cannot include yourself in the participants list", field="user_ids")
    if len(member_ids) < 2:
        raise ValidationError("Group conversations require at least 2 participants", field="user_ids")
    await _ensure_users_exist(db, member_ids)

    now = utcnow()
    conversation = Conversation(
        is_group=True,
        name=name,
        created_by=creator_id,
        participant_count=len(member_ids) + 1,
        created_at=now,
        last_activity_at=now,
    )
    db.add(conversation)
    await db.flush()
    for user_id in [creator_id] + member_ids:
        db.add(Participant(conversation_id=conversation.id, user_id=user_id, is_active=True, joined_at=now, last_read_at=now))
    await db.commit()
    logger.info(f"Created group conversation {conversation.id} with {conversation.participant_count} participants")
    return conversation

async def leave_conversation(db: AsyncSession, conversation_id: int, user_id: int) -> bool:
    from .read_service import get_unread_count

    async with publisher.ordered(conversation_id):
        participant = await get_active_participant(db, conversation_id, user_id)
        if not participant:
            raise ForbiddenError("Not a participant of this conversation")

        conversation = await lock_conversation(db, conversation_id)
        now = advance_clock(conversation)
        participant.is_active = False
        await db.flush()
        conversation.participant_count = await _count_active(db, conversation_id)
        await db.commit()
        logger.info(f"User {user_id} left conversation {conversation_id}")

        # Sockets of the leaver are unsubscribed from the channel when this is dispatched
        await publisher.publish(conversation_channel(conversation_id), ParticipantLeftEvent(
            conversation_id=conversation_id,
            user_id=user_id,
            timestamp=now,
        ))
        try:
            unread = await get_unread_count(db, user_id)
        except SQLAlchemyError as e:
            logger.error(f"Skipping unread update for user {user_id} after leaving {conversation_id}: {e}")
            await db.rollback()
            return True
        await publisher.publish(user_channel(user_id), ConversationUpdatedEvent(
            conversation_id=conversation_id,
            user_id=user_id,
            timestamp=now,
            unread_count=unread,
            conversation_unread_count=0,
        ))
    return True

async def list_conversations(db: AsyncSession, user_id: int, offset: int = 0, limit: int = 20) -> List[ConversationOut]:
    from .read_service import get_unread_counts_by_conversation

    activity = func.coalesce(Conversation.last_message_at, Conversation.created_at)
    stmt = (
        select(Participant)
        .join(Conversation, Conversation.id == Participant.conversation_id)
        .where(Participant.user_id == user_id, Participant.is_active == True)
        .options(
            selectinload(Participant.conversation).selectinload(Conversation.participants).selectinload(Participant.user),
            selectinload(Participant.conversation).selectinload(Conversation.last_message).selectinload(Message.shared_content),
        )
        .order_by(activity.desc(), Conversation.id.desc())
        .offset(offset)
        .limit(limit)
    )
    memberships = (await db.execute(stmt)).scalars().all()
    unread: Dict[int, int] = await get_unread_counts_by_conversation(db, user_id)

    out = []
    for membership in memberships:
        conversation = membership.conversation
        others = [p.user for p in conversation.participants if p.is_active and p.user_id != user_id]
        last_msg = conversation.last_message
        out.append(ConversationOut(
            id=conversation.id,
            is_group=conversation.is_group,
            name=conversation.name,
            created_at=conversation.created_at,
            participant_count=conversation.participant_count,
            last_message_at=conversation.last_message_at,
            last_message=MessageOut.model_validate(last_msg) if last_msg else None,
            participants=[UserOut.model_validate(u) for u in others],
            unread_count=unread.get(conversation.id, 0),
            last_read_at=membership.last_read_at,
        ))
    return out

async def get_conversation_out(db: AsyncSession, conversation_id: int, user_id: int) -> ConversationOut:
    from .read_service import get_conversation_unread_count

    stmt = (
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .options(
            selectinload(Conversation.participants).selectinload(Participant.user),
            selectinload(Conversation.last_message).selectinload(Message.shared_content),
        )
        .execution_options(populate_existing=True)
    )
    conversation = (await db.execute(stmt)).scalars().first()
    if not conversation:
        raise NotFoundError("Conversation not found")

    membership = next((p for p in conversation.participants if p.user_id == user_id and p.is_active), None)
    if membership is None:
        raise ForbiddenError("Not a participant of this conversation")

    others = [p.user for p in conversation.participants if p.is_active and p.user_id != user_id]
    last_msg = conversation.last_message
    return ConversationOut(
        id=conversation.id,
        is_group=conversation.is_group,
        name=conversation.name,
        created_at=conversation.created_at,
        participant_count=conversation.participant_count,
        last_message_at=conversation.last_message_at,
        last_message=MessageOut.model_validate(last_msg) if last_msg else None,
        participants=[UserOut.model_validate(u) for u in others],
        unread_count=await get_conversation_unread_count(db, conversation_id, user_id),
        last_read_at=membership.last_read_at,
    )
