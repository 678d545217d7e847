"""
Key Management - Configuration.

============================================================
CONFIGURABLE KEY LEASING
============================================================

- Default / maximum backoff after a key failure
- Named-key cache TTL
- Per-provider default daily quotas (applied when a key is
  registered without an explicit quota)

Configuration can be loaded from:
- Default values
- Environment variables
- YAML config file

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from core.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


ONE_DAY_SECONDS = 24 * 60 * 60
MAX_BACKOFF_SECONDS = 30 * ONE_DAY_SECONDS


def _default_quotas() -> Dict[str, Optional[int]]:
    return {
        "twelvedata": 800,
        "alphavantage": 25,
        "binance": None,
    }


@dataclass
class KeyManagerConfig:
    """Settings for KeyManager."""

    default_backoff_seconds: int = ONE_DAY_SECONDS
    """Backoff applied by mark_key_failed() when none is given."""

    max_backoff_seconds: int = MAX_BACKOFF_SECONDS
    """Upper bound accepted by mark_key_failed()."""

    named_key_cache_ttl_seconds: int = 300
    """How long get_named_key() keeps a resolved value in memory."""

    lease_max_retries: int = 3
    """Lease attempts after a lost compare-and-set race."""

    provider_default_quotas: Dict[str, Optional[int]] = field(default_factory=_default_quotas)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not 0 <= self.default_backoff_seconds <= self.max_backoff_seconds:
            raise ConfigurationError(
                "default_backoff_seconds must be within [0, max_backoff_seconds]",
                config_key="default_backoff_seconds",
            )
        if self.max_backoff_seconds > MAX_BACKOFF_SECONDS:
            raise ConfigurationError(
                "max_backoff_seconds cannot exceed 30 days",
                config_key="max_backoff_seconds",
            )
        if self.named_key_cache_ttl_seconds < 0:
            raise ConfigurationError("named_key_cache_ttl_seconds must be >= 0", config_key="named_key_cache_ttl_seconds")
        if self.lease_max_retries < 1:
            raise ConfigurationError("lease_max_retries must be >= 1", config_key="lease_max_retries")

    def default_quota_for(self, provider: str) -> Optional[int]:
        return self.provider_default_quotas.get(provider.lower())

    @classmethod
    def from_env(cls) -> "KeyManagerConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - KEY_DEFAULT_BACKOFF_SECONDS
        - KEY_MAX_BACKOFF_SECONDS
        - KEY_NAMED_CACHE_TTL_SECONDS
        - KEY_LEASE_MAX_RETRIES
        - KEY_QUOTA_<PROVIDER> (e.g. KEY_QUOTA_TWELVEDATA=800, "none" for unlimited)
        """
        kwargs = {}
        if os.getenv("KEY_DEFAULT_BACKOFF_SECONDS"):
            kwargs["default_backoff_seconds"] = int(os.getenv("KEY_DEFAULT_BACKOFF_SECONDS"))
        if os.getenv("KEY_MAX_BACKOFF_SECONDS"):
            kwargs["max_backoff_seconds"] = int(os.getenv("KEY_MAX_BACKOFF_SECONDS"))
        if os.getenv("KEY_NAMED_CACHE_TTL_SECONDS"):
            kwargs["named_key_cache_ttl_seconds"] = int(os.getenv("KEY_NAMED_CACHE_TTL_SECONDS"))
        if os.getenv("KEY_LEASE_MAX_RETRIES"):
            kwargs["lease_max_retries"] = int(os.getenv("KEY_LEASE_MAX_RETRIES"))

        quotas = _default_quotas()
        for env_name, value in os.environ.items():
            if env_name.startswith("KEY_QUOTA_"):
                provider = env_name[len("KEY_QUOTA_"):].lower()
                quotas[provider] = None if value.lower() in ("", "none", "unlimited") else int(value)
        kwargs["provider_default_quotas"] = quotas

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> "KeyManagerConfig":
        """
        Load from the `keys:` section of a YAML file.

        A missing or unreadable file falls back to defaults.
        """
        import yaml

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

        section = data.get("keys", {}) or {}
        quotas = _default_quotas()
        quotas.update({k.lower(): v for k, v in (section.get("provider_default_quotas") or {}).items()})

        return cls(
            default_backoff_seconds=section.get("default_backoff_seconds", ONE_DAY_SECONDS),
            max_backoff_seconds=section.get("max_backoff_seconds", MAX_BACKOFF_SECONDS),
            named_key_cache_ttl_seconds=section.get("named_key_cache_ttl_seconds", 300),
            lease_max_retries=section.get("lease_max_retries", 3),
            provider_default_quotas=quotas,
        )

    def to_dict(self) -> Dict:
        return {
            "default_backoff_seconds": self.default_backoff_seconds,
            "max_backoff_seconds": self.max_backoff_seconds,
            "named_key_cache_ttl_seconds": self.named_key_cache_ttl_seconds,
            "lease_max_retries": self.lease_max_retries,
            "provider_default_quotas": dict(self.provider_default_quotas),
        }
