import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=True)
    model_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant', 'system')", name="ck_messages_role"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    # immutable after insert; branching creates new rows instead of rewiring
    parent_id = Column(Uuid, ForeignKey("messages.id"), nullable=True, index=True)
    # JSON list of child ids, kept in step with parent_id by crud.append_message/delete_message
    children_ids = Column(Text, nullable=False, default="[]")
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=True)
    model_name = Column(String(255), nullable=True)
    partial = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class Attachment(Base):
    __tablename__ = "attachments"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    kind = Column(String(32), nullable=False, default="image")
    mime_type = Column(String(255), nullable=False)
    storage = Column(String(16), nullable=False, default="file")  # 'file' | 'url'
    url = Column(String(2048), nullable=True)
    object_key = Column(String(1024), nullable=True)
    filename = Column(String(512), nullable=True)
    sha256 = Column(String(64), nullable=False, unique=True)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    links = relationship("MessageAttachmentLink", back_populates="attachment")


class MessageAttachmentLink(Base):
    __tablename__ = "message_attachments"
    __table_args__ = (
        UniqueConstraint("message_id", "attachment_id", name="uq_message_attachment"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Uuid, ForeignKey("messages.id"), nullable=False, index=True)
    attachment_id = Column(Uuid, ForeignKey("attachments.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    attachment = relationship("Attachment", back_populates="links")
