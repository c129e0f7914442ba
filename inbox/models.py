from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base

class MessageType:
    TEXT = "text"
    SHARED_CONTENT = "shared_content"

class ContentType:
    FOOD = "food"
    RESTAURANT = "restaurant"

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    avatar_url = Column(String, nullable=True)
    is_moderator = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    is_group = Column(Boolean, default=False, nullable=False)
    name = Column(String, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # "<low_user_id>:<high_user_id>" for direct conversations, NULL for groups
    pair_key = Column(String, unique=True, nullable=True)
    participant_count = Column(Integer, default=0, nullable=False)
    last_message_id = Column(Integer, ForeignKey("messages.id", ondelete="SET NULL", use_alter=True, name="fk_conversations_last_message_id"), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    # Per-conversation clock; message and cursor timestamps are strictly after it
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    participants = relationship("Participant", back_populates="conversation", cascade="all, delete-orphan")
    last_message = relationship("Message", foreign_keys=[last_message_id], viewonly=True)

class Participant(Base):
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    joined_at = Column(DateTime(timezone=True), nullable=False)
    last_read_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User")

class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sender_id", "idempotency_key", name="uq_message_idempotency_key"),
        CheckConstraint("delivered_at >= created_at", name="ck_message_delivered_after_created"),
        CheckConstraint("read_at IS NULL OR read_at >= delivered_at", name="ck_message_read_after_delivered"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String, default=MessageType.TEXT, nullable=False)
    idempotency_key = Column(String, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    sender = relationship("User")
    shared_content = relationship("SharedContent", back_populates="message", uselist=False, cascade="all, delete-orphan")

class SharedContent(Base):
    __tablename__ = "shared_content"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), unique=True, nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content_type = Column(String, nullable=False)
    content_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    message = relationship("Message", back_populates="shared_content")

class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    image_url = Column(String, nullable=True)

class Food(Base):
    __tablename__ = "foods"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=True)
    name = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
