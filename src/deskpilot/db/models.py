from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from deskpilot.db.session import Base


class UTCDateTime(TypeDecorator):
    """Stores UTC as a naive SQLite timestamp and hands back aware datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class SessionRecord(Base):
    __tablename__ = "sessions"
    __table_args__ = (Index("idx_sessions_last_accessed", "last_accessed_at"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    first_user_message: Mapped[str] = mapped_column(Text, nullable=False)
    last_accessed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    working_directory: Mapped[str | None] = mapped_column(Text, nullable=True)
    branch_name: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    is_worktree: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=False, server_default=text("0"))


class MessageRecord(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("idx_messages_session_id_timestamp", "session_id", "timestamp"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    message_type: Mapped[str] = mapped_column(Text, nullable=False)
    tool_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    tool_input_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    was_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    task_group_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_task_container: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AttachmentRecord(Base):
    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    message_id: Mapped[str] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(Text, nullable=False)
