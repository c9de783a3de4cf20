"""Append-only ledger of confirmed deletions."""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from .base import Base


class DeletedMessage(Base):
    """One confirmed deletion. Rows are inserted once and never updated."""

    __tablename__ = "deleted_messages"

    id = Column(Integer, primary_key=True)
    record_id = Column(String(32), unique=True, nullable=False, index=True)

    # Message identity
    scope_key = Column(String(500), nullable=False, index=True)
    message_rowid = Column(Integer, nullable=False)
    guid = Column(String(255), nullable=True)

    # Last known content
    sender = Column(String(500), nullable=False)
    text = Column(Text, nullable=True)
    reason = Column(String(20), nullable=False)

    # Timestamps
    message_date = Column(DateTime, nullable=True)  # When the message was sent
    detected_at = Column(DateTime, nullable=False)
    detected_cycle = Column(Integer, nullable=False)
    recorded_at = Column(DateTime, default=func.now())

    attachment_count = Column(Integer, default=0)
    document_path = Column(String(1000), nullable=True)  # Rendered markdown

    attachments = relationship("DeletedAttachment", back_populates="deleted_message", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<DeletedMessage(rowid={self.message_rowid}, sender='{self.sender}', reason='{self.reason}')>"


class DeletedAttachment(Base):
    """Attachment of a deleted message and where its content ended up."""

    __tablename__ = "deleted_attachments"

    id = Column(Integer, primary_key=True)
    deleted_message_id = Column(Integer, ForeignKey("deleted_messages.id"), nullable=False)

    attachment_rowid = Column(Integer, nullable=False)
    filename = Column(String(500), nullable=False)
    content_kind = Column(String(255), nullable=True)
    original_path = Column(String(1000), nullable=True)

    # Recovery outcome
    recovered = Column(Boolean, default=False)
    saved_path = Column(String(1000), nullable=True)
    error = Column(Text, nullable=True)

    deleted_message = relationship("DeletedMessage", back_populates="attachments")

    def __repr__(self):
        return f"<DeletedAttachment(filename='{self.filename}', recovered={self.recovered})>"
