from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class LiveRoom(Base):
    """Audio room booked through the create-room endpoint."""

    __tablename__ = "live_rooms"
    __table_args__ = (Index("ix_live_rooms_is_live_created_at", "is_live", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    room_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    host_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    host_key_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_live: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
