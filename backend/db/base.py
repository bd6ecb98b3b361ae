"""Base model class for all SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import func, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base model class for the batch log tables."""

    pass


class TimestampMixin:
    """Mixin that adds row creation / update timestamps.

    Adds `created_at` and `updated_at` columns maintained by the database.
    Retention cleanup keys off `created_at`.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
