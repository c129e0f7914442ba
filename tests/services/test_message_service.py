import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from inbox.config import settings
from inbox.exceptions import ForbiddenError, NotFoundError, ValidationError
from inbox.models import Message, MessageType
from inbox.services import conversation_service, message_service, read_service


async def _direct(db, users, a="alice", b="bob"):
    return await conversation_service.get_or_create_conversation(db, users[a], users[b])


async def _message_count(db):
    return (await db.execute(select(func.count(Message.id)))).scalar_one()


@pytest.mark.asyncio
async def test_send_stamps_delivery_with_creation(db, users, broker):
    conversation = await _direct(db, users)

    sent = [await message_service.send_message(db, conversation.id, users["alice"], f"msg {i}") for i in range(5)]

    for message in sent:
        assert message.delivered_at is not None
        assert message.delivered_at >= message.created_at
        assert message.read_at is None
        assert message.message_type == MessageType.TEXT
    created = [m.created_at for m in sent]
    assert created == sorted(created)
    assert len(set(created)) == len(created)


@pytest.mark.asyncio
async def test_send_trims_and_validates_content(db, users, broker):
    conversation = await _direct(db, users)

    message = await message_service.send_message(db, conversation.id, users["alice"], "  hi  ")
    assert message.content == "hi"

    with pytest.raises(ValidationError) as exc:
        await message_service.send_message(db, conversation.id, users["alice"], "   ")
    assert exc.value.field == "content"

    with pytest.raises(ValidationError):
        await message_service.send_message(db, conversation.id, users["alice"], "x" * (settings.MAX_MESSAGE_LENGTH + 1))


@pytest.mark.asyncio
async def test_send_from_outsider_is_forbidden_and_stores_nothing(db, users, broker):
    conversation = await _direct(db, users)

    with pytest.raises(ForbiddenError):
        await message_service.send_message(db, conversation.id, users["carol"], "let me in")

    assert await _message_count(db) == 0
    assert broker.published == []


@pytest.mark.asyncio
async def test_send_after_leaving_is_forbidden(db, users, broker):
    conversation = await conversation_service.create_group_conversation(db, users["alice"], [users["bob"], users["carol"]])
    await conversation_service.leave_conversation(db, conversation.id, users["carol"])

    with pytest.raises(ForbiddenError):
        await message_service.send_message(db, conversation.id, users["carol"], "still here?")


@pytest.mark.asyncio
async def test_send_updates_conversation_last_message(db, users, broker):
    conversation = await _direct(db, users)

    message = await message_service.send_message(db, conversation.id, users["alice"], "hello")

    locked = await conversation_service.lock_conversation(db, conversation.id)
    assert locked.last_message_id == message.id
    assert locked.last_message_at is not None


@pytest.mark.asyncio
async def test_send_fans_out_to_conversation_and_other_participants(db, users, broker):
    conversation = await _direct(db, users)

    message = await message_service.send_message(db, conversation.id, users["alice"], "hi")

    conversation_events = broker.on(f"conversation:{conversation.id}")
    assert [e["type"] for e in conversation_events] == ["new-message"]
    assert conversation_events[0]["message"]["id"] == message.id
    assert conversation_events[0]["user_id"] == users["alice"]

    bob_events = broker.on("messages:2")
    assert [e["type"] for e in bob_events] == ["conversation-updated"]
    assert bob_events[0]["unread_count"] == 1
    assert bob_events[0]["conversation_unread_count"] == 1
    assert bob_events[0]["last_message_id"] == message.id
    assert broker.on("messages:1") == []


@pytest.mark.asyncio
async def test_send_succeeds_when_publishing_fails(db, users, broker):
    conversation = await _direct(db, users)
    broker.fail = True

    message = await message_service.send_message(db, conversation.id, users["alice"], "hi")

    assert message.id is not None
    assert await _message_count(db) == 1
    assert await read_service.get_unread_count(db, users["bob"]) == 1


@pytest.mark.asyncio
async def test_send_returns_stored_message_when_unread_fan_out_fails(db, users, broker, monkeypatch):
    conversation = await _direct(db, users)

    async def unavailable(session, user_id):
        raise OperationalError("SELECT count", {}, ConnectionRefusedError("db down"))

    monkeypatch.setattr(message_service, "get_unread_count", unavailable)

    message = await message_service.send_message(db, conversation.id, users["alice"], "still here")

    assert message.id is not None
    assert message.content == "still here"
    assert await _message_count(db) == 1
    assert broker.types(f"conversation:{conversation.id}") == ["new-message"]
    assert broker.on("messages:2") == []


@pytest.mark.asyncio
async def test_soft_delete_returns_message_when_unread_fan_out_fails(db, users, broker, monkeypatch):
    conversation = await _direct(db, users)
    message = await message_service.send_message(db, conversation.id, users["alice"], "oops")

    async def unavailable(session, user_id):
        raise OperationalError("SELECT count", {}, ConnectionRefusedError("db down"))

    monkeypatch.setattr(message_service, "get_unread_count", unavailable)

    deleted = await message_service.soft_delete_message(db, message.id, users["alice"])

    assert deleted.is_deleted is True
    assert deleted.id == message.id
    assert broker.types(f"conversation:{conversation.id}") == ["new-message", "message-deleted"]
    stored = await message_service.get_message(db, message.id)
    assert stored.is_deleted is True


@pytest.mark.asyncio
async def test_send_is_not_held_up_by_a_slow_broker(db, users, broker, monkeypatch):
    conversation = await _direct(db, users)

    async def hang(channel, payload):
        await asyncio.sleep(10)

    monkeypatch.setattr(broker, "publish", hang)
    monkeypatch.setattr(settings, "PUBLISH_TIMEOUT_SECONDS", 0.01)

    message = await asyncio.wait_for(
        message_service.send_message(db, conversation.id, users["alice"], "hi"), timeout=2
    )
    assert message.id is not None


@pytest.mark.asyncio
async def test_idempotency_key_returns_original_message(db, users, broker):
    conversation = await _direct(db, users)

    first = await message_service.send_message(db, conversation.id, users["alice"], "hi", idempotency_key="k-1")
    retry = await message_service.send_message(db, conversation.id, users["alice"], "hi", idempotency_key="k-1")

    assert retry.id == first.id
    assert await _message_count(db) == 1
    assert broker.types(f"conversation:{conversation.id}") == ["new-message"]


@pytest.mark.asyncio
async def test_idempotency_key_is_scoped_to_sender(db, users, broker):
    conversation = await _direct(db, users)

    mine = await message_service.send_message(db, conversation.id, users["alice"], "hi", idempotency_key="same")
    theirs = await message_service.send_message(db, conversation.id, users["bob"], "hi", idempotency_key="same")

    assert mine.id != theirs.id
    assert await _message_count(db) == 2


@pytest.mark.asyncio
async def test_idempotency_key_reused_after_window_is_rejected(db, users, broker, monkeypatch):
    conversation = await _direct(db, users)
    await message_service.send_message(db, conversation.id, users["alice"], "hi", idempotency_key="old")
    monkeypatch.setattr(settings, "IDEMPOTENCY_WINDOW_SECONDS", -60)

    with pytest.raises(ValidationError) as exc:
        await message_service.send_message(db, conversation.id, users["alice"], "hi again", idempotency_key="old")
    assert exc.value.field == "idempotency_key"


@pytest.mark.asyncio
async def test_soft_delete_permissions(db, users, broker):
    conversation = await _direct(db, users)
    message = await message_service.send_message(db, conversation.id, users["alice"], "oops")

    with pytest.raises(ForbiddenError):
        await message_service.soft_delete_message(db, message.id, users["bob"])
    with pytest.raises(NotFoundError):
        await message_service.soft_delete_message(db, 999, users["alice"])

    deleted = await message_service.soft_delete_message(db, message.id, users["alice"])
    assert deleted.is_deleted is True
    assert await _message_count(db) == 1


@pytest.mark.asyncio
async def test_moderator_can_delete_any_message(db, users, broker):
    conversation = await _direct(db, users)
    message = await message_service.send_message(db, conversation.id, users["alice"], "spam")

    deleted = await message_service.soft_delete_message(db, message.id, users["mod"], is_moderator=True)

    assert deleted.is_deleted is True
    events = broker.on(f"conversation:{conversation.id}")
    assert events[-1]["type"] == "message-deleted"
    assert events[-1]["message_id"] == message.id
    bob_events = broker.on("messages:2")
    assert bob_events[-1]["unread_count"] == 0


@pytest.mark.asyncio
async def test_get_messages_hides_deleted_and_requires_membership(db, users, broker):
    conversation = await _direct(db, users)
    keep = await message_service.send_message(db, conversation.id, users["alice"], "keep")
    drop = await message_service.send_message(db, conversation.id, users["alice"], "drop")
    await message_service.soft_delete_message(db, drop.id, users["alice"])

    history = await message_service.get_messages(db, conversation.id, users["bob"])
    assert [m.id for m in history] == [keep.id]

    with pytest.raises(ForbiddenError):
        await message_service.get_messages(db, conversation.id, users["carol"])


@pytest.mark.asyncio
async def test_delivery_stats(db, users, broker):
    stats = await message_service.get_delivery_stats(db)
    assert stats.total_messages == 0
    assert stats.delivery_percentage == 100.0

    conversation = await _direct(db, users)
    await message_service.send_message(db, conversation.id, users["alice"], "one")
    await message_service.send_message(db, conversation.id, users["alice"], "two")
    await read_service.mark_read(db, conversation.id, users["bob"])
    await message_service.send_message(db, conversation.id, users["alice"], "three")
    await message_service.send_message(db, conversation.id, users["alice"], "four")

    stats = await message_service.get_delivery_stats(db)
    assert stats.total_messages == 4
    assert stats.delivered_messages == 4
    assert stats.read_messages == 2
    assert stats.delivery_percentage == 100.0
    assert stats.read_percentage == 50.0
