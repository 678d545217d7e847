"""
Storage - SQLAlchemy Key Store.

============================================================
PURPOSE
============================================================
Implements key_management.store.KeyStore on the api_keys table.

============================================================
LEASE ATOMICITY
============================================================
lease_key() runs SELECT ... FOR UPDATE + UPDATE in one
transaction and the UPDATE is guarded on the usage_today value
that was read (compare-and-set). Within a process, leases for the
same provider are serialized by an asyncio.Lock; across processes
the guard makes a lost race visible as rowcount 0, in which case
the lease is retried with a fresh snapshot.

SQLite has a single writer and no row locks, so on SQLite one
lock serializes every mutation of the store.

============================================================
"""

import asyncio
import logging
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import to_naive_utc
from core.exceptions import StorageError, ValidationError
from key_management.models import ApiKey, normalize_provider
from key_management.store import KeyStore
from storage.database import transaction_scope
from storage.models.api_keys import ApiKeyRecord


logger = logging.getLogger(__name__)


def _to_domain(record: ApiKeyRecord) -> ApiKey:
    return ApiKey(
        id=record.id,
        key=record.key,
        provider=record.provider,
        usage_today=record.usage_today or 0,
        daily_quota=record.daily_quota,
        last_used_at=record.last_used_at,
        failed_until=record.failed_until,
        name=record.name,
        description=record.description,
        is_active=bool(record.is_active),
    )


def available_clause(now: datetime) -> Any:
    """SQL form of ApiKey.is_available()."""
    naive_now = to_naive_utc(now)
    return and_(
        ApiKeyRecord.is_active.is_(True),
        func.length(func.trim(ApiKeyRecord.key)) > 0,
        or_(ApiKeyRecord.failed_until.is_(None), ApiKeyRecord.failed_until <= naive_now),
        or_(ApiKeyRecord.daily_quota.is_(None), ApiKeyRecord.usage_today < ApiKeyRecord.daily_quota),
    )


def under_quota_clause() -> Any:
    return or_(
        ApiKeyRecord.daily_quota.is_(None),
        ApiKeyRecord.usage_today < ApiKeyRecord.daily_quota,
    )


class SqlAlchemyKeyStore(KeyStore):
    """
    Key store backed by SQLAlchemy async sessions.

    Usage:
        store = SqlAlchemyKeyStore(database.session_factory, is_sqlite=True)
        key = await store.lease_key("twelvedata", clock.now())
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        is_sqlite: bool = False,
        max_lease_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._is_sqlite = is_sqlite
        self._max_lease_retries = max(1, max_lease_retries)
        self._provider_locks: dict[str, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()

    # =========================================================
    # LOCKING
    # =========================================================

    def _lease_lock(self, provider: str) -> asyncio.Lock:
        if self._is_sqlite:
            return self._write_lock
        lock = self._provider_locks.get(provider)
        if lock is None:
            lock = asyncio.Lock()
            self._provider_locks[provider] = lock
        return lock

    def _mutation_lock(self) -> Any:
        return self._write_lock if self._is_sqlite else nullcontext()

    # =========================================================
    # READS
    # =========================================================

    async def get_all_keys(self, provider: str) -> list[ApiKey]:
        async with transaction_scope(self._session_factory, "get_all_keys") as session:
            stmt = (
                select(ApiKeyRecord)
                .where(ApiKeyRecord.provider == normalize_provider(provider))
                .order_by(ApiKeyRecord.id.asc())
            )
            records = (await session.execute(stmt)).scalars().all()
            return [_to_domain(r) for r in records]

    async def list_all_keys(self) -> list[ApiKey]:
        async with transaction_scope(self._session_factory, "list_all_keys") as session:
            stmt = select(ApiKeyRecord).order_by(ApiKeyRecord.provider.asc(), ApiKeyRecord.id.asc())
            records = (await session.execute(stmt)).scalars().all()
            return [_to_domain(r) for r in records]

    async def get_named_key(self, name: str) -> Optional[ApiKey]:
        async with transaction_scope(self._session_factory, "get_named_key") as session:
            stmt = select(ApiKeyRecord).where(
                ApiKeyRecord.name == name,
                ApiKeyRecord.is_active.is_(True),
            )
            record = (await session.execute(stmt)).scalars().first()
            if record is None or not (record.key or "").strip():
                return None
            return _to_domain(record)

    # =========================================================
    # LEASE
    # =========================================================

    async def lease_key(self, provider: str, now: datetime) -> Optional[ApiKey]:
        provider = normalize_provider(provider)
        naive_now = to_naive_utc(now)

        async with self._lease_lock(provider):
            for attempt in range(self._max_lease_retries):
                async with transaction_scope(self._session_factory, "lease_key") as session:
                    stmt = (
                        select(ApiKeyRecord)
                        .where(ApiKeyRecord.provider == provider, available_clause(now))
                        .order_by(
                            ApiKeyRecord.usage_today.asc(),
                            ApiKeyRecord.last_used_at.asc().nulls_first(),
                            ApiKeyRecord.id.asc(),
                        )
                        .limit(1)
                        .with_for_update()
                    )
                    record = (await session.execute(stmt)).scalars().first()

                    if record is None:
                        await session.rollback()
                        return None

                    observed_usage = record.usage_today or 0
                    result = await session.execute(
                        update(ApiKeyRecord)
                        .where(
                            ApiKeyRecord.id == record.id,
                            ApiKeyRecord.usage_today == observed_usage,
                            under_quota_clause(),
                        )
                        .values(
                            usage_today=observed_usage + 1,
                            last_used_at=naive_now,
                        )
                        .execution_options(synchronize_session=False)
                    )

                    if result.rowcount == 1:
                        leased = _to_domain(record).with_usage(observed_usage + 1, now)
                        logger.debug(
                            f"Leased key {leased.id} ({leased.masked_key}) for {provider}, "
                            f"usage_today={leased.usage_today}"
                        )
                        return leased

                    # Another writer moved the row between SELECT and UPDATE
                    await session.rollback()

                logger.warning(
                    f"Lease race lost for {provider} "
                    f"(attempt {attempt + 1}/{self._max_lease_retries}), retrying"
                )

        logger.warning(f"Lease for {provider} abandoned after {self._max_lease_retries} lost races")
        return None

    # =========================================================
    # MUTATIONS
    # =========================================================

    async def mark_failed(self, key_id: int, failed_until: datetime) -> bool:
        async with self._mutation_lock():
            async with transaction_scope(self._session_factory, "mark_failed") as session:
                result = await session.execute(
                    update(ApiKeyRecord)
                    .where(ApiKeyRecord.id == key_id)
                    .values(failed_until=to_naive_utc(failed_until))
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0

    async def increment_usage(self, key_id: int, now: datetime) -> bool:
        async with self._mutation_lock():
            async with transaction_scope(self._session_factory, "increment_usage") as session:
                result = await session.execute(
                    update(ApiKeyRecord)
                    .where(ApiKeyRecord.id == key_id, under_quota_clause())
                    .values(
                        usage_today=ApiKeyRecord.usage_today + 1,
                        last_used_at=to_naive_utc(now),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0

    async def reset_daily(self, now: datetime) -> int:
        async with self._mutation_lock():
            async with transaction_scope(self._session_factory, "reset_daily") as session:
                result = await session.execute(
                    update(ApiKeyRecord)
                    .values(
                        usage_today=0,
                        failed_until=None,
                        updated_at=to_naive_utc(now),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount

    async def add_key(
        self,
        key: str,
        provider: str,
        name: Optional[str] = None,
        daily_quota: Optional[int] = None,
        description: Optional[str] = None,
    ) -> ApiKey:
        if not provider or not provider.strip():
            raise ValidationError("provider is required", field_name="provider")
        if daily_quota is not None and daily_quota < 0:
            raise ValidationError("daily_quota must be >= 0", field_name="daily_quota", value=daily_quota)

        record = ApiKeyRecord(
            key=key,
            provider=normalize_provider(provider),
            name=name,
            daily_quota=daily_quota,
            description=description,
            usage_today=0,
            is_active=True,
        )
        async with self._mutation_lock():
            try:
                async with transaction_scope(self._session_factory, "add_key") as session:
                    session.add(record)
                    await session.flush()
                    created = _to_domain(record)
            except StorageError as e:
                if isinstance(e.cause, IntegrityError):
                    raise ValidationError(
                        f"Key name already exists: {name}", field_name="name", value=name, cause=e,
                    ) from e
                raise

        logger.info(f"Added {created.provider} key {created.id} ({created.masked_key})")
        return created


__all__ = [
    "SqlAlchemyKeyStore",
    "available_clause",
]
