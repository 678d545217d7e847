"""
Key Manager.

============================================================
PURPOSE
============================================================
Leases API keys to callers so that:
- no key exceeds its daily quota,
- keys that failed (rate limit, auth) sit out their backoff,
- load spreads across the keys of a provider.

============================================================
FAILURE MODEL
============================================================
The key manager never raises to its callers. Storage failures
are logged, recorded on the audit sink and surfaced as
None / [] / False / 0. Invalid input is a logged no-op.

Secrets only ever reach logs and audit events masked.

============================================================
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from core.audit import AuditSink, safe_record
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import StorageError, ValidationError
from key_management.config import KeyManagerConfig
from key_management.models import ApiKey, KeyLease, KeySource, KeyStats, mask_secret, normalize_provider
from key_management.rotation import KeyGroupRotator
from key_management.store import KeyStore


logger = logging.getLogger(__name__)


AUDIT_SOURCE = "key_manager"


class _CachedKey(NamedTuple):
    secret: str
    key_id: int
    provider: str
    expires_at: datetime


class KeyManager:
    """
    Quota- and backoff-aware key leasing.

    Usage:
        manager = KeyManager(store, audit_sink)
        lease = await manager.get_key_for_provider("twelvedata", "TWELVEDATA_API_KEY", env_value)
        if lease.found:
            ...
            if rate_limited and lease.from_database:
                await manager.mark_key_failed(lease.key_id)
    """

    def __init__(
        self,
        store: KeyStore,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[ClockProtocol] = None,
        config: Optional[KeyManagerConfig] = None,
    ) -> None:
        self._store = store
        self._audit = audit_sink
        self._clock = clock or ClockFactory.get_clock()
        self._config = config or KeyManagerConfig()

        # Secrets stay in process memory only
        self._named_cache: Dict[str, _CachedKey] = {}

    @property
    def config(self) -> KeyManagerConfig:
        return self._config

    # =========================================================
    # LEASING
    # =========================================================

    async def get_available_keys(self, provider: str) -> List[ApiKey]:
        """
        Keys of a provider that could be leased right now.

        Ordered by last_used_at ascending, never-used keys first.
        """
        if not self._valid_provider(provider, "get_available_keys"):
            return []
        provider = normalize_provider(provider)

        try:
            keys = await self._store.get_all_keys(provider)
        except Exception as e:
            self._storage_failure("get_available_keys", e, provider=provider)
            return []

        now = self._clock.now()
        available = [k for k in keys if k.is_available(now)]
        available.sort(key=lambda k: (k.last_used_at is not None, k.last_used_at or now, k.id))
        return available

    async def pick_next_key(self, provider: str) -> Optional[ApiKey]:
        """
        Atomically lease the best key of a provider.

        Returns:
            Key with usage_today and last_used_at already updated,
            or None when every key is exhausted, backed off or the
            store failed.
        """
        if not self._valid_provider(provider, "pick_next_key"):
            return None
        provider = normalize_provider(provider)

        try:
            key = await self._store.lease_key(provider, self._clock.now())
        except Exception as e:
            self._storage_failure("pick_next_key", e, provider=provider)
            return None

        if key is None:
            logger.info(f"No available key for provider {provider}")
            self._drop_cached(provider=provider)
            safe_record(
                self._audit, "warning", AUDIT_SOURCE,
                f"No available key for {provider}", {"provider": provider},
            )
            return None

        if key.is_over_quota():
            self._drop_cached(key_id=key.id)
        logger.debug(f"Picked key {key.id} ({key.masked_key}) for {provider}")
        return key

    async def mark_key_failed(self, key_id: Any, backoff_seconds: Any = None) -> bool:
        """
        Put a key into backoff until now + backoff_seconds.

        Args:
            key_id: Positive integer id
            backoff_seconds: 0 .. max_backoff_seconds (default from config)

        Returns:
            True if the key exists and was updated
        """
        if backoff_seconds is None:
            backoff_seconds = self._config.default_backoff_seconds

        if isinstance(key_id, bool) or not isinstance(key_id, int) or key_id <= 0:
            self._validation_failure(
                ValidationError("key_id must be a positive integer", field_name="key_id", value=key_id),
                "mark_key_failed",
            )
            return False

        if (
            isinstance(backoff_seconds, bool)
            or not isinstance(backoff_seconds, (int, float))
            or not 0 <= backoff_seconds <= self._config.max_backoff_seconds
        ):
            self._validation_failure(
                ValidationError(
                    f"backoff_seconds must be within [0, {self._config.max_backoff_seconds}]",
                    field_name="backoff_seconds",
                    value=backoff_seconds,
                ),
                "mark_key_failed",
            )
            return False

        failed_until = self._clock.now() + timedelta(seconds=backoff_seconds)
        try:
            updated = await self._store.mark_failed(key_id, failed_until)
        except Exception as e:
            self._storage_failure("mark_key_failed", e, key_id=key_id)
            return False

        if not updated:
            logger.warning(f"mark_key_failed: key {key_id} not found")
            return False

        self._drop_cached(key_id=key_id)

        logger.warning(f"Key {key_id} marked failed for {backoff_seconds}s")
        safe_record(
            self._audit, "warning", AUDIT_SOURCE, f"Key {key_id} marked failed",
            {"key_id": key_id, "backoff_seconds": backoff_seconds, "failed_until": failed_until.isoformat()},
        )
        return True

    async def increment_usage(self, key_id: Any) -> bool:
        """Count one extra use of a key. Refused when the key is at quota."""
        if isinstance(key_id, bool) or not isinstance(key_id, int) or key_id <= 0:
            self._validation_failure(
                ValidationError("key_id must be a positive integer", field_name="key_id", value=key_id),
                "increment_usage",
            )
            return False

        try:
            incremented = await self._store.increment_usage(key_id, self._clock.now())
        except Exception as e:
            self._storage_failure("increment_usage", e, key_id=key_id)
            return False

        if not incremented:
            logger.info(f"increment_usage: key {key_id} missing or at quota")
        return incremented

    async def reset_failed_flags(self) -> int:
        """Daily reset: clear every backoff and zero every usage counter."""
        try:
            touched = await self._store.reset_daily(self._clock.now())
        except Exception as e:
            self._storage_failure("reset_failed_flags", e)
            return 0

        self._named_cache.clear()
        logger.info(f"Reset usage and failure flags on {touched} keys")
        safe_record(self._audit, "info", AUDIT_SOURCE, "Daily key reset", {"keys": touched})
        return touched

    # =========================================================
    # LOOKUP
    # =========================================================

    async def get_named_key(self, name: str, fallback_value: Optional[str] = None) -> Optional[str]:
        """
        Resolve a labelled key: memory cache, then key store, then fallback_value.

        A stored key that is over quota or in backoff is not handed
        out, and neither is a fallback_value carrying the same secret.
        Only values found in the store are cached.
        """
        if not name:
            return fallback_value or None

        now = self._clock.now()
        cached = self._named_cache.get(name)
        if cached is not None:
            if cached.expires_at > now:
                return cached.secret
            del self._named_cache[name]

        try:
            record = await self._store.get_named_key(name)
        except Exception as e:
            self._storage_failure("get_named_key", e, name=name)
            record = None

        if record is not None:
            if record.is_available(now):
                ttl = self._config.named_key_cache_ttl_seconds
                if ttl > 0:
                    self._named_cache[name] = _CachedKey(
                        record.key, record.id, record.provider, now + timedelta(seconds=ttl),
                    )
                return record.key

            logger.info(f"Named key {name} ({record.masked_key}) is over quota or backed off")
            if fallback_value and fallback_value.strip() == record.key.strip():
                return None

        if fallback_value and fallback_value.strip():
            logger.debug(f"Using fallback value for {name} ({mask_secret(fallback_value)})")
            return fallback_value
        return None

    async def get_key_for_provider(
        self,
        provider: str,
        fallback_key_name: Optional[str] = None,
        fallback_value: Optional[str] = None,
        rotator: Optional[KeyGroupRotator] = None,
    ) -> KeyLease:
        """
        Lease from the key pool, falling back to a named key.

        With a rotator, the fallback name and value come from its next
        pick, and the rotation only moves when the pool had no key.

        The returned lease carries key_id only when it came from the
        pool, so callers know whether mark_key_failed() applies.
        """
        key = await self.pick_next_key(provider)
        if key is not None:
            return KeyLease(key=key.key, key_id=key.id, source=KeySource.DATABASE, key_name=key.name)

        if rotator is not None:
            picked = rotator.next_key()
            if picked is not None:
                fallback_key_name, fallback_value = picked
            else:
                fallback_key_name = fallback_key_name or rotator.group.base_name

        if fallback_key_name:
            value = await self.get_named_key(fallback_key_name, fallback_value)
        else:
            value = fallback_value if fallback_value and fallback_value.strip() else None

        if value:
            logger.info(f"Using fallback key {fallback_key_name or '<value>'} for {provider}")
            safe_record(
                self._audit, "info", AUDIT_SOURCE, f"Fallback key used for {provider}",
                {"provider": provider, "key_name": fallback_key_name, "key": mask_secret(value)},
            )
        return KeyLease(key=value, key_id=None, source=KeySource.FALLBACK, key_name=fallback_key_name)

    # =========================================================
    # STATUS
    # =========================================================

    async def get_key_stats(self) -> List[KeyStats]:
        try:
            keys = await self._store.list_all_keys()
        except Exception as e:
            self._storage_failure("get_key_stats", e)
            return []

        now = self._clock.now()
        return [KeyStats.from_key(k, now) for k in keys]

    async def get_usage_summary(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider totals for status output."""
        summary: Dict[str, Dict[str, Any]] = {}
        for stats in await self.get_key_stats():
            entry = summary.setdefault(stats.provider, {
                "keys": 0,
                "available": 0,
                "usage_today": 0,
                "daily_quota": 0,
                "unlimited": False,
            })
            entry["keys"] += 1
            entry["available"] += int(stats.is_available)
            entry["usage_today"] += stats.usage_today
            if stats.daily_quota is None:
                entry["unlimited"] = True
            else:
                entry["daily_quota"] += stats.daily_quota
        return summary

    # =========================================================
    # ADMINISTRATION
    # =========================================================

    async def register_key(
        self,
        key: str,
        provider: str,
        name: Optional[str] = None,
        daily_quota: Optional[int] = None,
        description: Optional[str] = None,
    ) -> ApiKey:
        """
        Add a key to the pool. The provider's default quota applies
        when daily_quota is omitted.

        Raises:
            ValidationError: Blank key, blank provider or duplicate name
            StorageError: Database failure
        """
        if not key or not key.strip():
            raise ValidationError("key must not be blank", field_name="key")
        if not provider or not provider.strip():
            raise ValidationError("provider is required", field_name="provider")
        if daily_quota is None:
            daily_quota = self._config.default_quota_for(provider)

        created = await self._store.add_key(
            key=key.strip(),
            provider=provider,
            name=name,
            daily_quota=daily_quota,
            description=description,
        )
        if name:
            self._named_cache.pop(name, None)
        safe_record(
            self._audit, "info", AUDIT_SOURCE, f"Key added for {created.provider}",
            {"key_id": created.id, "key": created.masked_key, "name": name},
        )
        return created

    # =========================================================
    # INTERNAL
    # =========================================================

    def _drop_cached(self, key_id: Optional[int] = None, provider: Optional[str] = None) -> None:
        """Forget cached named keys that may no longer be available."""
        stale = [
            name for name, entry in self._named_cache.items()
            if entry.key_id == key_id or entry.provider == provider
        ]
        for name in stale:
            del self._named_cache[name]

    def _valid_provider(self, provider: Any, operation: str) -> bool:
        if isinstance(provider, str) and provider.strip():
            return True
        self._validation_failure(
            ValidationError("provider must be a non-empty string", field_name="provider", value=provider),
            operation,
        )
        return False

    def _validation_failure(self, error: ValidationError, operation: str) -> None:
        logger.warning(f"{operation}: {error.to_log_format()}")
        safe_record(self._audit, "warning", AUDIT_SOURCE, f"{operation} rejected: {error.message}", error.to_dict())

    def _storage_failure(self, operation: str, error: Exception, **context: Any) -> None:
        if isinstance(error, StorageError):
            wrapped = error
        else:
            wrapped = StorageError(
                f"{operation} failed: {error}",
                operation=operation,
                cause=error,
            )
        wrapped.context.update(context)
        logger.error(f"Key store failure in {operation}: {wrapped.to_log_format()}")
        safe_record(self._audit, "error", AUDIT_SOURCE, f"{operation} failed", wrapped.to_dict())
