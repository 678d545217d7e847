"""
API Key ORM Model.

============================================================
PURPOSE
============================================================
One row per upstream credential.

- usage_today is a daily counter, zeroed by the daily reset
- daily_quota NULL means unlimited
- failed_until NULL (or in the past) means the key is not in backoff
- name is an optional unique label (TWELVEDATA_API_KEY_1, ...)
  used for named lookups by key-group rotation

Rows are created administratively and never deleted here.

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Index, Integer, String, Text, true
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin


class ApiKeyRecord(Base, TimestampMixin):
    """Persisted API credential with usage and backoff state."""

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, unique=True,
        comment="Optional label, e.g. TWELVEDATA_API_KEY_1",
    )

    key: Mapped[str] = mapped_column(Text, nullable=False, comment="Secret value")

    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    usage_today: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )

    daily_quota: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    last_used_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    failed_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true(),
    )

    __table_args__ = (
        Index("ix_api_keys_provider_last_used", "provider", "last_used_at"),
    )

    def __repr__(self) -> str:
        return f"<ApiKeyRecord(id={self.id}, provider={self.provider}, usage_today={self.usage_today})>"
