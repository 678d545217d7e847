"""
Storage ORM Models.

Importing this package registers every table on Base.metadata.
"""

from storage.models.base import Base, TimestampMixin
from storage.models.api_keys import ApiKeyRecord


__all__ = [
    "Base",
    "TimestampMixin",
    "ApiKeyRecord",
]
