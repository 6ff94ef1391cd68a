"""SQLAlchemy models.

``Conversion`` is owned by the pipeline. ``UserSettings`` and ``Subscription``
belong to the account and billing services and are only read here.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
CONVERSION_STATUSES = (STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        datetime: DateTime(),
    }


class Conversion(Base):
    __tablename__ = "conversion"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)

    title: Mapped[str] = mapped_column(String(500))
    author: Mapped[Optional[str]] = mapped_column(String(255))
    source: Mapped[Optional[str]] = mapped_column(String(255))
    source_url: Mapped[Optional[str]] = mapped_column(Text)
    article_date: Mapped[Optional[str]] = mapped_column(String(64))
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    reading_time: Mapped[int] = mapped_column(Integer, default=1)

    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING, index=True)
    file_url: Mapped[Optional[str]] = mapped_column(Text)
    file_size: Mapped[Optional[int]] = mapped_column(Integer)
    error: Mapped[Optional[str]] = mapped_column(Text)
    delivery_error: Mapped[Optional[str]] = mapped_column(Text)
    source_html: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]]
    delivered_at: Mapped[Optional[datetime]]

    def __repr__(self) -> str:
        return f"<Conversion {self.id} {self.status} {self.title!r}>"


class UserSettings(Base):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kindle_email: Mapped[Optional[str]] = mapped_column(String(255))
    personal_email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    account_email: Mapped[Optional[str]] = mapped_column(String(255))
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class Subscription(Base):
    __tablename__ = "subscription"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32))
    price_id: Mapped[Optional[str]] = mapped_column(String(128))
    current_period_end: Mapped[Optional[datetime]]
