"""
Unit tests for fernet key ring planning.

The ring order matters: index 0 signs new tokens, so rotation must promote a
new key to index 0 and drop the oldest key from the tail.
"""

from datetime import UTC, datetime, timedelta
from itertools import count

import pytest

from keystone_operator.utils.fernet import (
    ACTION_CREATED,
    ACTION_RESIZED,
    ACTION_ROTATED,
    ACTION_UNCHANGED,
    FernetRotationManager,
    credential_keys,
    format_timestamp,
    keys_from_secret,
    keys_to_secret,
    parse_timestamp,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def key_factory():
    counter = count()
    return lambda: f"new{next(counter)}"


class TestRotationManager:
    def test_rejects_ring_smaller_than_three(self):
        with pytest.raises(ValueError, match="at least 3"):
            FernetRotationManager(2)

    def test_creates_full_ring(self, key_factory):
        manager = FernetRotationManager(3, key_factory=key_factory)

        update = manager.plan([], None, NOW)

        assert update.action == ACTION_CREATED
        assert update.keys == ["new0", "new1", "new2"]
        assert update.rotated_at == NOW
        assert update.changed

    def test_shrinks_ring_from_the_tail(self, key_factory):
        manager = FernetRotationManager(4, key_factory=key_factory)
        rotated_at = NOW - timedelta(hours=1)

        update = manager.plan(["k0", "k1", "k2", "k3", "k4"], rotated_at, NOW)

        assert update.action == ACTION_RESIZED
        assert update.keys == ["k0", "k1", "k2", "k3"]
        assert update.rotated_at == rotated_at

    def test_grows_ring_at_the_tail(self, key_factory):
        manager = FernetRotationManager(6, key_factory=key_factory)

        update = manager.plan(["k0", "k1", "k2", "k3", "k4"], NOW, NOW)

        assert update.action == ACTION_RESIZED
        assert update.keys == ["k0", "k1", "k2", "k3", "k4", "new0"]

    def test_rotates_when_period_elapsed(self, key_factory):
        manager = FernetRotationManager(3, key_factory=key_factory)
        rotated_at = NOW - timedelta(hours=24)

        update = manager.plan(["k0", "k1", "k2"], rotated_at, NOW)

        assert update.action == ACTION_ROTATED
        assert update.keys == ["new0", "k0", "k1"]
        assert update.rotated_at == NOW

    def test_unchanged_before_period_elapsed(self, key_factory):
        manager = FernetRotationManager(3, key_factory=key_factory)
        rotated_at = NOW - timedelta(hours=23, minutes=59)

        update = manager.plan(["k0", "k1", "k2"], rotated_at, NOW)

        assert update.action == ACTION_UNCHANGED
        assert update.keys == ["k0", "k1", "k2"]
        assert not update.changed

    def test_unknown_rotation_time_rotates(self, key_factory):
        manager = FernetRotationManager(3, key_factory=key_factory)

        update = manager.plan(["k0", "k1", "k2"], None, NOW)

        assert update.action == ACTION_ROTATED


class TestSecretLayout:
    def test_keys_round_trip_through_indexed_fields(self):
        data = keys_to_secret(["a", "b", "c"])

        assert data == {"FernetKeys0": "a", "FernetKeys1": "b", "FernetKeys2": "c"}
        assert keys_from_secret(data) == ["a", "b", "c"]

    def test_reading_stops_at_first_gap(self):
        data = {"FernetKeys0": "a", "FernetKeys2": "c"}

        assert keys_from_secret(data) == ["a"]

    def test_credential_keys_generated_once(self, key_factory):
        first = credential_keys({}, key_factory)
        second = credential_keys({**first, "FernetKeys0": "x"}, key_factory)

        assert first == {"CredentialKeys0": "new0", "CredentialKeys1": "new1"}
        assert second == first


class TestTimestamps:
    def test_format_and_parse(self):
        value = format_timestamp(NOW)

        assert value == "2024-06-01T12:00:00Z"
        assert parse_timestamp(value) == NOW

    @pytest.mark.parametrize("value", [None, "", "not-a-time"])
    def test_parse_invalid_returns_none(self, value):
        assert parse_timestamp(value) is None
