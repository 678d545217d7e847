"""
Key Group Rotation.

A key group is a base key name plus alternative names
(TWELVEDATA_API_KEY, TWELVEDATA_API_KEY_1, ...). Each call picks the
next name round-robin, skipping names that failed earlier in this
process. When every name in the group has failed, the failed set
is cleared and rotation starts over.

Values are resolved by name (environment by default). The key
manager still gets the final say: a key stored under the same name
in the key store wins over the resolved value.
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple


logger = logging.getLogger(__name__)


# Values this short are placeholders, not keys
MIN_KEY_LENGTH = 6


@dataclass(frozen=True)
class KeyGroup:
    """Named keys that can stand in for one another."""
    base_name: str
    alternative_keys: Tuple[str, ...] = ()
    provider: str = ""

    @property
    def key_names(self) -> Tuple[str, ...]:
        return (self.base_name,) + tuple(self.alternative_keys)

    def __contains__(self, name: str) -> bool:
        return name in self.key_names


@dataclass(frozen=True)
class RotationState:
    """Position of a rotator. last_used_index is -1 before the first pick."""
    key_names: Tuple[str, ...]
    last_used_index: int = -1

    @property
    def current_name(self) -> Optional[str]:
        if 0 <= self.last_used_index < len(self.key_names):
            return self.key_names[self.last_used_index]
        return None

    @property
    def next_index(self) -> int:
        return (self.last_used_index + 1) % len(self.key_names)

    def used(self, index: int) -> "RotationState":
        return replace(self, last_used_index=index)


def env_resolver(name: str) -> Optional[str]:
    return os.getenv(name)


def is_usable_value(value: Optional[str]) -> bool:
    return bool(value) and len(value.strip()) >= MIN_KEY_LENGTH


class KeyGroupRotator:
    """
    Round-robin over a key group.

    Usage:
        rotator = KeyGroupRotator(twelvedata_group)
        picked = rotator.next_key()
        if picked:
            name, value = picked
            ...
            if rate_limited:
                rotator.mark_failed(name)
    """

    def __init__(
        self,
        group: KeyGroup,
        resolver: Callable[[str], Optional[str]] = env_resolver,
    ) -> None:
        self._group = group
        self._resolver = resolver
        self._state = RotationState(key_names=group.key_names)
        self._failed: Set[str] = set()

    @property
    def group(self) -> KeyGroup:
        return self._group

    @property
    def state(self) -> RotationState:
        return self._state

    @property
    def failed_names(self) -> Set[str]:
        return set(self._failed)

    @property
    def current_key_name(self) -> str:
        """Name picked last, or the base name before any pick."""
        return self._state.current_name or self._group.base_name

    def next_key(self) -> Optional[Tuple[str, str]]:
        """
        Pick the next usable (name, value).

        Returns:
            (name, value), or None when no name in the group
            resolves to a usable value.
        """
        picked = self._scan()
        if picked is None and self._failed:
            logger.info(
                f"All keys of group {self._group.base_name} failed, clearing {len(self._failed)} failure marks"
            )
            self._failed.clear()
            picked = self._scan()
        return picked

    def mark_failed(self, name: str) -> None:
        if name not in self._group:
            logger.debug(f"Ignoring failure mark for {name}: not in group {self._group.base_name}")
            return
        self._failed.add(name)
        logger.warning(f"Key {name} marked failed, skipping it in rotation")

    def reset(self) -> None:
        self._failed.clear()
        self._state = RotationState(key_names=self._group.key_names)

    def _scan(self) -> Optional[Tuple[str, str]]:
        names = self._state.key_names
        start = self._state.next_index
        for offset in range(len(names)):
            index = (start + offset) % len(names)
            name = names[index]
            if name in self._failed:
                continue
            value = self._resolver(name)
            if is_usable_value(value):
                self._state = self._state.used(index)
                return name, value.strip()
        return None


DEFAULT_KEY_GROUPS: Tuple[KeyGroup, ...] = (
    KeyGroup(
        base_name="TWELVEDATA_API_KEY",
        alternative_keys=tuple(f"TWELVEDATA_API_KEY_{i}" for i in range(1, 9)),
        provider="twelvedata",
    ),
    KeyGroup(
        base_name="PRIMARY_API_KEY",
        alternative_keys=tuple(f"ALPHAVANTAGE_API_KEY_{i}" for i in range(1, 4)),
        provider="alphavantage",
    ),
    KeyGroup(
        base_name="BINANCE_API_KEY",
        provider="binance",
    ),
)


def build_rotators(
    groups: Iterable[KeyGroup] = DEFAULT_KEY_GROUPS,
    resolver: Callable[[str], Optional[str]] = env_resolver,
) -> Dict[str, KeyGroupRotator]:
    """One rotator per provider."""
    rotators: Dict[str, KeyGroupRotator] = {}
    for group in groups:
        if group.provider in rotators:
            logger.warning(f"Duplicate key group for provider {group.provider}, keeping the first")
            continue
        rotators[group.provider] = KeyGroupRotator(group, resolver)
    return rotators


def group_names(groups: Iterable[KeyGroup] = DEFAULT_KEY_GROUPS) -> List[str]:
    return [name for group in groups for name in group.key_names]
