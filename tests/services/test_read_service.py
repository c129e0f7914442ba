import pytest
from sqlalchemy import select

from inbox.clock import as_utc
from inbox.exceptions import ForbiddenError
from inbox.models import Message
from inbox.services import conversation_service, message_service, read_service


async def _direct(db, users, a="alice", b="bob"):
    return await conversation_service.get_or_create_conversation(db, users[a], users[b])


async def _send(db, conversation, sender, count=1):
    sent = []
    for i in range(count):
        sent.append(await message_service.send_message(db, conversation.id, sender, f"message {i}"))
    return sent


@pytest.mark.asyncio
async def test_new_participant_starts_with_nothing_unread(db, users, broker):
    await _direct(db, users)

    assert await read_service.get_unread_count(db, users["alice"]) == 0
    assert await read_service.get_unread_count(db, users["bob"]) == 0


@pytest.mark.asyncio
async def test_own_messages_never_count_as_unread(db, users, broker):
    conversation = await _direct(db, users)
    await _send(db, conversation, users["alice"], 3)

    assert await read_service.get_unread_count(db, users["alice"]) == 0
    assert await read_service.get_unread_count(db, users["bob"]) == 3


@pytest.mark.asyncio
async def test_mark_read_clears_then_new_message_counts_again(db, users, broker):
    conversation = await _direct(db, users)
    await _send(db, conversation, users["alice"], 4)
    assert await read_service.get_conversation_unread_count(db, conversation.id, users["bob"]) == 4

    delta = await read_service.mark_read(db, conversation.id, users["bob"])
    assert delta.cleared == 4
    assert delta.conversation_unread_count == 0
    assert delta.unread_count == 0
    assert await read_service.get_unread_count(db, users["bob"]) == 0

    await _send(db, conversation, users["alice"])
    assert await read_service.get_unread_count(db, users["bob"]) == 1


@pytest.mark.asyncio
async def test_mark_read_twice_is_harmless_and_cursor_moves_forward(db, users, broker):
    conversation = await _direct(db, users)
    await _send(db, conversation, users["alice"], 2)

    first = await read_service.mark_read(db, conversation.id, users["bob"])
    second = await read_service.mark_read(db, conversation.id, users["bob"])

    assert second.cleared == 0
    assert second.unread_count == 0
    assert as_utc(second.last_read_at) > as_utc(first.last_read_at)


@pytest.mark.asyncio
async def test_mark_read_requires_membership(db, users, broker):
    conversation = await _direct(db, users)

    with pytest.raises(ForbiddenError):
        await read_service.mark_read(db, conversation.id, users["carol"])
    with pytest.raises(ForbiddenError):
        await read_service.mark_read(db, 999, users["alice"])
    assert broker.published == []


@pytest.mark.asyncio
async def test_deleted_messages_drop_out_of_unread(db, users, broker):
    conversation = await _direct(db, users)
    messages = await _send(db, conversation, users["alice"], 3)

    await message_service.soft_delete_message(db, messages[1].id, users["alice"])

    assert await read_service.get_unread_count(db, users["bob"]) == 2


@pytest.mark.asyncio
async def test_unread_total_is_sum_over_conversations(db, users, broker):
    with_alice = await _direct(db, users, "alice", "bob")
    with_carol = await _direct(db, users, "carol", "bob")
    await _send(db, with_alice, users["alice"], 2)
    await _send(db, with_carol, users["carol"], 3)

    by_conversation = await read_service.get_unread_counts_by_conversation(db, users["bob"])

    assert by_conversation == {with_alice.id: 2, with_carol.id: 3}
    assert await read_service.get_unread_count(db, users["bob"]) == 5


@pytest.mark.asyncio
async def test_left_conversation_stops_counting(db, users, broker):
    conversation = await conversation_service.create_group_conversation(db, users["alice"], [users["bob"], users["carol"]])
    await _send(db, conversation, users["alice"], 2)
    assert await read_service.get_unread_count(db, users["carol"]) == 2

    await conversation_service.leave_conversation(db, conversation.id, users["carol"])

    assert await read_service.get_unread_count(db, users["carol"]) == 0


@pytest.mark.asyncio
async def test_read_at_is_stamped_only_on_other_peoples_messages(db, users, broker):
    conversation = await _direct(db, users)
    from_alice = (await _send(db, conversation, users["alice"]))[0]
    from_bob = (await _send(db, conversation, users["bob"]))[0]

    delta = await read_service.mark_read(db, conversation.id, users["bob"])

    alice_msg = await message_service.get_message(db, from_alice.id)
    bob_msg = await message_service.get_message(db, from_bob.id)
    assert as_utc(alice_msg.read_at) == as_utc(delta.last_read_at)
    assert as_utc(alice_msg.read_at) >= as_utc(alice_msg.delivered_at)
    assert bob_msg.read_at is None


@pytest.mark.asyncio
async def test_group_read_at_keeps_first_reader_but_counts_stay_per_user(db, users, broker):
    conversation = await conversation_service.create_group_conversation(db, users["alice"], [users["bob"], users["carol"]])
    message = (await _send(db, conversation, users["alice"]))[0]

    carol_delta = await read_service.mark_read(db, conversation.id, users["carol"])

    stored = await message_service.get_message(db, message.id)
    assert as_utc(stored.read_at) == as_utc(carol_delta.last_read_at)
    assert await read_service.get_unread_count(db, users["bob"]) == 1

    await read_service.mark_read(db, conversation.id, users["bob"])
    stored = await message_service.get_message(db, message.id)
    assert as_utc(stored.read_at) == as_utc(carol_delta.last_read_at)
    assert await read_service.get_unread_count(db, users["bob"]) == 0


@pytest.mark.asyncio
async def test_mark_read_publishes_receipt_and_badge_update(db, users, broker):
    conversation = await _direct(db, users)
    await _send(db, conversation, users["alice"], 2)
    broker.published.clear()

    delta = await read_service.mark_read(db, conversation.id, users["bob"])

    receipt = broker.on(f"conversation:{conversation.id}")
    assert [e["type"] for e in receipt] == ["message-read"]
    assert receipt[0]["user_id"] == users["bob"]

    badge = broker.on("messages:2")
    assert [e["type"] for e in badge] == ["conversation-updated"]
    assert badge[0]["unread_count"] == delta.unread_count == 0
    assert badge[0]["conversation_unread_count"] == 0


@pytest.mark.asyncio
async def test_read_tracking_survives_a_dead_broker(db, users, broker):
    broker.fail = True
    conversation = await _direct(db, users)

    await message_service.send_message(db, conversation.id, users["alice"], "hi")
    await message_service.send_message(db, conversation.id, users["alice"], "you there?")
    assert await read_service.get_unread_count(db, users["bob"]) == 2

    delta = await read_service.mark_read(db, conversation.id, users["bob"])
    assert delta.cleared == 2
    assert await read_service.get_unread_count(db, users["bob"]) == 0

    await message_service.send_message(db, conversation.id, users["alice"], "ok bye")
    assert await read_service.get_unread_count(db, users["bob"]) == 1

    stored = (await db.execute(select(Message).order_by(Message.id))).scalars().all()
    assert all(m.delivered_at is not None for m in stored)
    assert broker.published == []
