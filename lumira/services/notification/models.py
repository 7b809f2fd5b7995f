"""Notification persistence models (delivery logs)."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from lumira.common.db import Base


class NotificationLog(Base):
    """Stored record of every notification attempt, sent or failed."""

    __tablename__ = "notification_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    recipient: Mapped[str] = mapped_column(String)
    template: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
