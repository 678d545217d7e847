"""
Key Management Models.

Domain view of API credentials, independent of the ORM row.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.clock import ensure_utc, to_iso8601


MASK_PLACEHOLDER = "****"


def mask_secret(secret: Optional[str]) -> str:
    """
    Display form of a secret: first4...last4.

    Keys of 8 characters or fewer collapse to '****', exactly 8 included
    since first4...last4 would print them whole. Older status output
    used a three-star '***' for short keys; the placeholder here is
    always four stars. This only keeps secrets out of casual view
    in logs and status output.
    """
    if not secret or len(secret) <= 8:
        return MASK_PLACEHOLDER
    return f"{secret[:4]}...{secret[-4:]}"


def normalize_provider(provider: str) -> str:
    """Providers are stored and compared lowercase without surrounding blanks."""
    return provider.strip().lower()


class KeySource(Enum):
    """Where a leased key came from."""
    DATABASE = "database"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ApiKey:
    """
    One credential as seen by the key manager.

    Timestamps are timezone-aware UTC.
    """
    id: int
    key: str
    provider: str
    usage_today: int = 0
    daily_quota: Optional[int] = None
    last_used_at: Optional[datetime] = None
    failed_until: Optional[datetime] = None
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True

    def __post_init__(self) -> None:
        # Normalize naive datetimes coming from the database
        if self.last_used_at is not None:
            object.__setattr__(self, "last_used_at", ensure_utc(self.last_used_at))
        if self.failed_until is not None:
            object.__setattr__(self, "failed_until", ensure_utc(self.failed_until))

    @property
    def masked_key(self) -> str:
        return mask_secret(self.key)

    @property
    def has_secret(self) -> bool:
        return bool(self.key and self.key.strip())

    def is_in_backoff(self, now: datetime) -> bool:
        return self.failed_until is not None and self.failed_until > ensure_utc(now)

    def is_over_quota(self) -> bool:
        return self.daily_quota is not None and self.usage_today >= self.daily_quota

    def is_available(self, now: datetime) -> bool:
        """Same predicate the key store applies when leasing."""
        return (
            self.is_active
            and self.has_secret
            and not self.is_in_backoff(now)
            and not self.is_over_quota()
        )

    def with_usage(self, usage_today: int, last_used_at: datetime) -> "ApiKey":
        return replace(self, usage_today=usage_today, last_used_at=last_used_at)

    def to_dict(self, masked: bool = True) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "key": self.masked_key if masked else self.key,
            "provider": self.provider,
            "usage_today": self.usage_today,
            "daily_quota": self.daily_quota,
            "last_used_at": to_iso8601(self.last_used_at),
            "failed_until": to_iso8601(self.failed_until),
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<ApiKey(id={self.id}, provider={self.provider}, key={self.masked_key}, usage={self.usage_today})>"


@dataclass(frozen=True)
class KeyStats:
    """Read-only projection of a key for status views. The secret is masked."""
    id: int
    key: str
    provider: str
    last_used_at: Optional[datetime]
    failed_until: Optional[datetime]
    usage_today: int
    daily_quota: Optional[int]
    is_available: bool
    name: Optional[str] = None

    @classmethod
    def from_key(cls, api_key: ApiKey, now: datetime) -> "KeyStats":
        return cls(
            id=api_key.id,
            key=api_key.masked_key,
            provider=api_key.provider,
            last_used_at=api_key.last_used_at,
            failed_until=api_key.failed_until,
            usage_today=api_key.usage_today,
            daily_quota=api_key.daily_quota,
            is_available=api_key.is_available(now),
            name=api_key.name,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "key": self.key,
            "provider": self.provider,
            "last_used_at": to_iso8601(self.last_used_at),
            "failed_until": to_iso8601(self.failed_until),
            "usage_today": self.usage_today,
            "daily_quota": self.daily_quota,
            "is_available": self.is_available,
        }


@dataclass(frozen=True)
class KeyLease:
    """Result of get_key_for_provider()."""
    key: Optional[str]
    key_id: Optional[int]
    source: KeySource
    key_name: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.key)

    @property
    def from_database(self) -> bool:
        return self.source == KeySource.DATABASE and self.key_id is not None

    def __repr__(self) -> str:
        return (
            f"<KeyLease(key={mask_secret(self.key)}, key_id={self.key_id}, "
            f"source={self.source.value}, name={self.key_name})>"
        )
