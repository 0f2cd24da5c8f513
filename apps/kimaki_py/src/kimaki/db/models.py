from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    # SQLite has no timezone storage; everything is written as naive UTC.
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class IpcRequestType(str, enum.Enum):
    FILE_UPLOAD = "file_upload"
    ACTION_BUTTONS = "action_buttons"


class IpcRequestStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_IPC_STATUSES = (IpcRequestStatus.PENDING.value, IpcRequestStatus.PROCESSING.value)


class IpcRequest(Base):
    __tablename__ = "ipc_requests"
    __table_args__ = (
        Index("ipc_requests_status_created_at_idx", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Not an Enum column: unknown types from a newer worker must still be storable.
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    response: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=IpcRequestStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"IpcRequest(id={self.id!r}, type={self.type!r}, status={self.status!r})"


class ThreadSession(Base):
    __tablename__ = "thread_sessions"

    thread_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    directory: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
