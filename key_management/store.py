"""
Key Store Interface.

The persistence collaborator the KeyManager depends on. The
SQLAlchemy implementation lives in storage.key_store.

Every mutating operation is a single atomic unit. lease_key() in
particular must select the best candidate and bump its usage in
one transaction so that two concurrent leases for the same
provider never take the same slot.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from key_management.models import ApiKey


class KeyStore(ABC):
    """Persistent table of credentials."""

    @abstractmethod
    async def get_all_keys(self, provider: str) -> list[ApiKey]:
        """All keys of a provider, regardless of availability."""
        pass

    @abstractmethod
    async def lease_key(self, provider: str, now: datetime) -> Optional[ApiKey]:
        """
        Atomically pick the best available key and mark it used.

        Ordering: lowest usage_today, then last_used_at (never used
        first), then id.

        Returns:
            Post-update view of the leased key, or None if none is available
        """
        pass

    @abstractmethod
    async def mark_failed(self, key_id: int, failed_until: datetime) -> bool:
        """Set failed_until. Returns False if the key does not exist."""
        pass

    @abstractmethod
    async def increment_usage(self, key_id: int, now: datetime) -> bool:
        """Bump usage_today unless the key is at quota. Returns True if bumped."""
        pass

    @abstractmethod
    async def reset_daily(self, now: datetime) -> int:
        """Zero usage_today and clear failed_until on every key. Returns rows touched."""
        pass

    @abstractmethod
    async def get_named_key(self, name: str) -> Optional[ApiKey]:
        """Active key stored under a label such as TWELVEDATA_API_KEY_1."""
        pass

    @abstractmethod
    async def list_all_keys(self) -> list[ApiKey]:
        pass

    @abstractmethod
    async def add_key(
        self,
        key: str,
        provider: str,
        name: Optional[str] = None,
        daily_quota: Optional[int] = None,
        description: Optional[str] = None,
    ) -> ApiKey:
        pass
