"""
Tests for key group rotation.

============================================================
PURPOSE
============================================================
Round-robin over interchangeable named keys.

TEST PRINCIPLES:
- Rotation state is explicit and inspectable
- Failed names are skipped until the whole group failed
- Placeholder values never count as keys

============================================================
"""

import pytest

from key_management.rotation import (
    DEFAULT_KEY_GROUPS,
    KeyGroup,
    KeyGroupRotator,
    RotationState,
    build_rotators,
    group_names,
)


GROUP = KeyGroup(base_name="TD_KEY", alternative_keys=("TD_KEY_1", "TD_KEY_2"), provider="twelvedata")

VALUES = {
    "TD_KEY": "value-base-0000",
    "TD_KEY_1": "value-one-1111",
    "TD_KEY_2": "value-two-2222",
}


def picked_names(rotator, count):
    names = []
    for _ in range(count):
        picked = rotator.next_key()
        names.append(picked[0] if picked else None)
    return names


class TestRotationState:
    """Tests for the rotation state value."""

    def test_initial_state(self):
        state = RotationState(key_names=GROUP.key_names)

        assert state.current_name is None
        assert state.next_index == 0

    def test_used_returns_new_state(self):
        state = RotationState(key_names=GROUP.key_names)
        moved = state.used(2)

        assert state.last_used_index == -1
        assert moved.current_name == "TD_KEY_2"
        assert moved.next_index == 0


class TestKeyGroupRotator:
    """Tests for the rotator."""

    def test_round_robin(self):
        rotator = KeyGroupRotator(GROUP, VALUES.get)

        assert picked_names(rotator, 4) == ["TD_KEY", "TD_KEY_1", "TD_KEY_2", "TD_KEY"]
        assert rotator.current_key_name == "TD_KEY"

    def test_returns_values(self):
        rotator = KeyGroupRotator(GROUP, VALUES.get)

        assert rotator.next_key() == ("TD_KEY", "value-base-0000")

    def test_skips_failed_names(self):
        rotator = KeyGroupRotator(GROUP, VALUES.get)
        rotator.mark_failed("TD_KEY_1")

        assert picked_names(rotator, 3) == ["TD_KEY", "TD_KEY_2", "TD_KEY"]

    def test_clears_failures_after_full_rotation(self):
        rotator = KeyGroupRotator(GROUP, VALUES.get)
        for name in GROUP.key_names:
            rotator.mark_failed(name)

        assert rotator.next_key() is not None
        assert rotator.failed_names == set()

    def test_ignores_names_outside_group(self):
        rotator = KeyGroupRotator(GROUP, VALUES.get)
        rotator.mark_failed("OTHER_KEY")

        assert rotator.failed_names == set()

    @pytest.mark.parametrize("placeholder", [None, "", "   ", "abc", "12345"])
    def test_short_values_ignored(self, placeholder):
        values = dict(VALUES, TD_KEY_1=placeholder)
        rotator = KeyGroupRotator(GROUP, values.get)

        assert picked_names(rotator, 3) == ["TD_KEY", "TD_KEY_2", "TD_KEY"]

    def test_no_usable_values(self):
        rotator = KeyGroupRotator(GROUP, lambda name: None)

        assert rotator.next_key() is None
        assert rotator.current_key_name == "TD_KEY"

    def test_reset(self):
        rotator = KeyGroupRotator(GROUP, VALUES.get)
        rotator.next_key()
        rotator.mark_failed("TD_KEY_1")

        rotator.reset()

        assert rotator.state.last_used_index == -1
        assert rotator.failed_names == set()

    def test_rotators_are_independent(self):
        first = KeyGroupRotator(GROUP, VALUES.get)
        second = KeyGroupRotator(GROUP, VALUES.get)
        first.next_key()

        assert second.next_key()[0] == "TD_KEY"


class TestDefaultGroups:
    """Tests for the default key groups."""

    def test_one_rotator_per_provider(self):
        rotators = build_rotators(resolver=lambda name: None)

        assert set(rotators) == {"twelvedata", "alphavantage", "binance"}

    def test_group_names(self):
        names = group_names()

        assert "TWELVEDATA_API_KEY" in names
        assert "TWELVEDATA_API_KEY_8" in names
        assert "ALPHAVANTAGE_API_KEY_3" in names
        assert len(names) == sum(len(g.key_names) for g in DEFAULT_KEY_GROUPS)

    def test_env_resolution(self, monkeypatch):
        for name in group_names():
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("TWELVEDATA_API_KEY_2", "env-twelvedata-key")

        rotator = build_rotators()["twelvedata"]

        assert rotator.next_key() == ("TWELVEDATA_API_KEY_2", "env-twelvedata-key")
