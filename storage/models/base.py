"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Declarative base shared by the key store tables.

Timestamps are stored as naive UTC datetimes so that the same
schema behaves identically on SQLite (development, tests) and
PostgreSQL. Conversion to aware datetimes happens at the store
boundary (core.clock.ensure_utc).

============================================================
"""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    type_annotation_map = {
        datetime: DateTime(timezone=False),
    }


class TimestampMixin:
    """
    Mixin providing created_at / updated_at columns.

    Usage:
        class MyModel(Base, TimestampMixin):
            __tablename__ = "my_table"
            ...
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
        comment="Record creation timestamp (UTC)",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last update timestamp (UTC)",
    )
