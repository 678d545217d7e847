"""
Key Management Package - API key leasing for upstream providers.

Features:
- Atomic, quota-aware key leasing from the key store
- Backoff for keys that were rate limited
- Named-key lookup with an in-memory TTL cache
- Round-robin key groups resolved from the environment

Quick Start:
    from key_management import KeyManager
    from storage.key_store import SqlAlchemyKeyStore

    manager = KeyManager(SqlAlchemyKeyStore(database.session_factory))
    key = await manager.pick_next_key("twelvedata")
    if key is None:
        ...  # all keys exhausted or backed off
"""

from key_management.config import KeyManagerConfig
from key_management.manager import KeyManager
from key_management.models import (
    ApiKey,
    KeyLease,
    KeySource,
    KeyStats,
    MASK_PLACEHOLDER,
    mask_secret,
)
from key_management.rotation import (
    DEFAULT_KEY_GROUPS,
    KeyGroup,
    KeyGroupRotator,
    RotationState,
    build_rotators,
)
from key_management.store import KeyStore


__all__ = [
    # Models
    "ApiKey",
    "KeyLease",
    "KeySource",
    "KeyStats",
    "MASK_PLACEHOLDER",
    "mask_secret",

    # Store
    "KeyStore",

    # Manager
    "KeyManager",
    "KeyManagerConfig",

    # Rotation
    "KeyGroup",
    "KeyGroupRotator",
    "RotationState",
    "DEFAULT_KEY_GROUPS",
    "build_rotators",
]
