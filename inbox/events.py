from enum import Enum
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

CONVERSATION_CHANNEL_PREFIX = "conversation:"
USER_CHANNEL_PREFIX = "messages:"

def conversation_channel(conversation_id: int) -> str:
    return f"{CONVERSATION_CHANNEL_PREFIX}{conversation_id}"

def user_channel(user_id: int) -> str:
    return f"{USER_CHANNEL_PREFIX}{user_id}"

class WSEventType(str, Enum):
    NEW_MESSAGE = "new-message"
    MESSAGE_DELETED = "message-deleted"
    MESSAGE_READ = "message-read"
    CONVERSATION_UPDATED = "conversation-updated"
    PARTICIPANT_LEFT = "participant-left"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"

class WSClientAction(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    TYPING = "typing"

class EventMessage(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    message_type: str
    created_at: datetime
    delivered_at: datetime
    read_at: Optional[datetime] = None

class _Event(BaseModel):
    conversation_id: int
    user_id: int
    timestamp: datetime

class NewMessageEvent(_Event):
    type: Literal[WSEventType.NEW_MESSAGE] = WSEventType.NEW_MESSAGE
    message: EventMessage

class MessageDeletedEvent(_Event):
    type: Literal[WSEventType.MESSAGE_DELETED] = WSEventType.MESSAGE_DELETED
    message_id: int

class MessageReadEvent(_Event):
    type: Literal[WSEventType.MESSAGE_READ] = WSEventType.MESSAGE_READ
    last_read_at: datetime

class ConversationUpdatedEvent(_Event):
    type: Literal[WSEventType.CONVERSATION_UPDATED] = WSEventType.CONVERSATION_UPDATED
    unread_count: int
    conversation_unread_count: int
    last_message_id: Optional[int] = None

class ParticipantLeftEvent(_Event):
    type: Literal[WSEventType.PARTICIPANT_LEFT] = WSEventType.PARTICIPANT_LEFT

class TypingEvent(_Event):
    type: Literal[WSEventType.TYPING_START, WSEventType.TYPING_STOP]

RealtimeEvent = Annotated[
    Union[
        NewMessageEvent, MessageDeletedEvent, MessageReadEvent, ConversationUpdatedEvent,
        ParticipantLeftEvent, TypingEvent,
    ],
    Field(discriminator="type"),
]

realtime_event_adapter = TypeAdapter(RealtimeEvent)

def parse_event(payload: dict):
    return realtime_event_adapter.validate_python(payload)
