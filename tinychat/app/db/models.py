############################################################
#
# tinychat - Streaming LLM Chat Service
#
# models.py: SQLAlchemy ORM models for all database entities
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""SQLAlchemy database models for TinyChat."""

from datetime import date, datetime
from enum import Enum as PyEnum
from typing import List, Optional
import uuid

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.mysql import MEDIUMTEXT
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tinychat.app.db.base import Base, SoftDeleteMixin, TimestampMixin, utcnow

# Use enum values (lowercase) for database storage, not enum names (uppercase)
_enum_values = lambda obj: [e.value for e in obj]

# Long message bodies: TEXT everywhere, MEDIUMTEXT on MySQL/MariaDB
_LongText = Text().with_variant(MEDIUMTEXT(), "mysql")


def _new_id() -> str:
    return str(uuid.uuid4())


class MessageRole(str, PyEnum):
    """Author of a chat message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class User(Base, TimestampMixin):
    """Chat user. The id is the opaque identifier issued by the session provider."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    conversations: Mapped[List["Conversation"]] = relationship(
        "Conversation", back_populates="user"
    )


class AIModel(Base, TimestampMixin):
    """Model descriptor: a selectable upstream model."""

    __tablename__ = "ai_models"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    model_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    icon_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Conversation(Base, TimestampMixin, SoftDeleteMixin):
    """A chat conversation owned by one user."""

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="New Chat")
    model_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("ai_models.id"), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="conversations")
    model: Mapped[Optional["AIModel"]] = relationship("AIModel")
    messages: Mapped[List["Message"]] = relationship(
        "Message", back_populates="conversation", cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    __table_args__ = (
        Index("ix_conversations_user_updated", "user_id", "updated_at"),
    )


class Message(Base):
    """One immutable message within a conversation."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(
        Enum(MessageRole, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(_LongText, nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(_LongText, nullable=True)
    model_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("ai_models.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )
    model: Mapped[Optional["AIModel"]] = relationship("AIModel")

    __table_args__ = (
        Index("ix_messages_conv_created", "conversation_id", "created_at"),
    )


class UsageLimit(Base):
    """Daily turn counter keyed by user or, for guests, by client IP."""

    __tablename__ = "usage_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_usage_user_date"),
        UniqueConstraint("ip_address", "usage_date", name="uq_usage_ip_date"),
    )
