from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Literal, Optional, List
from .config import settings

class UserOut(BaseModel):
    id: int
    username: str
    avatar_url: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class SharedContentOut(BaseModel):
    id: int
    content_type: str
    content_id: int
    model_config = ConfigDict(from_attributes=True)

class MessageOut(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    message_type: str
    is_deleted: bool = False
    created_at: datetime
    delivered_at: datetime
    read_at: Optional[datetime] = None
    shared_content: Optional[SharedContentOut] = None
    model_config = ConfigDict(from_attributes=True)

class MessageCreate(BaseModel):
    conversation_id: Optional[int] = None
    recipient_id: Optional[int] = Field(None, description="Starts or reuses a direct conversation when conversation_id is absent")
    content: str = Field(..., max_length=settings.MAX_MESSAGE_LENGTH)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=128,
        description=(
            "Client-generated key, unique per sender and conversation. Resubmitting it within "
            f"{settings.IDEMPOTENCY_WINDOW_SECONDS} seconds returns the original message; "
            "after that the key stays reserved and is rejected with a 400"
        ),
    )

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message content is required")
        return value

class ReadRequest(BaseModel):
    conversation_id: int

class UnreadCountDelta(BaseModel):
    conversation_id: int
    cleared: int
    conversation_unread_count: int
    unread_count: int
    last_read_at: datetime

class UnreadCountOut(BaseModel):
    unread_count: int

class ConversationCreate(BaseModel):
    recipient_id: Optional[int] = Field(None, description="For direct conversations")
    user_ids: Optional[List[int]] = Field(None, description="For group conversations")
    name: Optional[str] = Field(None, max_length=100, description="Group name")
    is_group: bool = False

class ConversationOut(BaseModel):
    id: int
    is_group: bool = False
    name: Optional[str] = None
    created_at: datetime
    participant_count: int
    last_message_at: Optional[datetime] = None
    last_message: Optional[MessageOut] = None
    participants: List[UserOut] = []
    unread_count: int = 0
    last_read_at: Optional[datetime] = None

class ShareRequest(BaseModel):
    content_type: Literal["food", "restaurant"]
    content_id: int
    recipient_ids: List[int] = Field(..., min_length=1)
    message: Optional[str] = Field(None, max_length=settings.MAX_MESSAGE_LENGTH)

class ShareResult(BaseModel):
    recipient_id: int
    conversation_id: int
    message_id: int
    shared_content_id: int

class ShareFailure(BaseModel):
    recipient_id: int
    error: str

class ShareResponse(BaseModel):
    success: bool
    shared: int
    total: int
    results: List[ShareResult] = []
    errors: Optional[List[ShareFailure]] = None

class DeliveryStats(BaseModel):
    total_messages: int
    delivered_messages: int
    read_messages: int
    delivery_percentage: float
    read_percentage: float

class StatusResponse(BaseModel):
    status: str
    message: Optional[str] = None
