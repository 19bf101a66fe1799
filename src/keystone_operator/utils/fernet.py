"""
Fernet key ring management.

Keystone signs tokens with the key at index 0 and accepts tokens signed by
any key in the ring. Rotation therefore promotes a freshly generated key to
index 0 and ages every other key by one index, dropping the oldest; tokens
signed by the previous primary stay valid until that key falls off the end.

The ring is computed in memory and persisted in a single secret write by the
caller, so an interrupted pass leaves either the old ring or the new one.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from cryptography.fernet import Fernet

from keystone_operator.constants import (
    CREDENTIAL_KEY_COUNT,
    CREDENTIAL_KEY_PREFIX,
    FERNET_KEY_PREFIX,
    FERNET_MIN_ACTIVE_KEYS,
    FERNET_ROTATION_PERIOD_HOURS,
)

ACTION_CREATED = "created"
ACTION_RESIZED = "resized"
ACTION_ROTATED = "rotated"
ACTION_UNCHANGED = "unchanged"

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def generate_key() -> str:
    """Generate one url-safe base64 encoded fernet key."""
    return Fernet.generate_key().decode()


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime(RFC3339_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp, returning None when absent or malformed."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def keys_from_secret(data: dict[str, str], prefix: str = FERNET_KEY_PREFIX) -> list[str]:
    """
    Read an indexed ring out of decoded secret data.

    Reading stops at the first missing index so a gap never shifts keys into
    the wrong position.
    """
    keys = []
    index = 0
    while f"{prefix}{index}" in data:
        keys.append(data[f"{prefix}{index}"])
        index += 1
    return keys


def keys_to_secret(keys: Sequence[str], prefix: str = FERNET_KEY_PREFIX) -> dict[str, str]:
    return {f"{prefix}{i}": key for i, key in enumerate(keys)}


def resize(
    keys: Sequence[str], size: int, key_factory: Callable[[], str] = generate_key
) -> list[str]:
    """Grow the ring at the tail with new keys, or truncate the tail."""
    if size <= len(keys):
        return list(keys[:size])
    return list(keys) + [key_factory() for _ in range(size - len(keys))]


def rotate(keys: Sequence[str], key_factory: Callable[[], str] = generate_key) -> list[str]:
    """Return ``[k_new, k0, ..., k(n-2)]``; the last key is discarded."""
    if not keys:
        return [key_factory()]
    return [key_factory(), *keys[:-1]]


@dataclass
class FernetRingUpdate:
    """Outcome of one rotation manager pass."""

    keys: list[str]
    rotated_at: datetime
    action: str

    @property
    def changed(self) -> bool:
        return self.action != ACTION_UNCHANGED


class FernetRotationManager:
    """
    Decides how a fernet ring moves forward.

    States: a missing ring is created at full size; a ring whose length differs
    from ``max_active_keys`` is resized; a ring whose last rotation is at least
    ``rotation_period`` old is rotated. Resizing wins when both apply, and the
    rotation then happens on a later pass.
    """

    def __init__(
        self,
        max_active_keys: int,
        rotation_period: timedelta = timedelta(hours=FERNET_ROTATION_PERIOD_HOURS),
        key_factory: Callable[[], str] = generate_key,
    ):
        if max_active_keys < FERNET_MIN_ACTIVE_KEYS:
            raise ValueError(
                f"fernetMaxActiveKeys must be at least {FERNET_MIN_ACTIVE_KEYS}, "
                f"got {max_active_keys}"
            )
        self.max_active_keys = max_active_keys
        self.rotation_period = rotation_period
        self.key_factory = key_factory

    def is_rotation_due(self, rotated_at: datetime | None, now: datetime) -> bool:
        if rotated_at is None:
            return True
        return now - rotated_at >= self.rotation_period

    def plan(
        self, keys: Sequence[str], rotated_at: datetime | None, now: datetime
    ) -> FernetRingUpdate:
        """
        Compute the next state of the ring.

        Args:
            keys: Current ring, index 0 first; empty when no secret exists
            rotated_at: Time of the last rotation, None if unknown
            now: Current time

        Returns:
            The ring to persist and what happened to it
        """
        if not keys:
            ring = [self.key_factory() for _ in range(self.max_active_keys)]
            return FernetRingUpdate(ring, now, ACTION_CREATED)

        if len(keys) != self.max_active_keys:
            ring = resize(keys, self.max_active_keys, self.key_factory)
            return FernetRingUpdate(ring, rotated_at or now, ACTION_RESIZED)

        if self.is_rotation_due(rotated_at, now):
            return FernetRingUpdate(
                rotate(keys, self.key_factory), now, ACTION_ROTATED
            )

        return FernetRingUpdate(list(keys), rotated_at or now, ACTION_UNCHANGED)


def credential_keys(
    data: dict[str, str], key_factory: Callable[[], str] = generate_key
) -> dict[str, str]:
    """Credential encryption keys, generated once and kept as they are afterwards."""
    existing = keys_from_secret(data, CREDENTIAL_KEY_PREFIX)
    if len(existing) >= CREDENTIAL_KEY_COUNT:
        return keys_to_secret(existing[:CREDENTIAL_KEY_COUNT], CREDENTIAL_KEY_PREFIX)
    keys = resize(existing, CREDENTIAL_KEY_COUNT, key_factory)
    return keys_to_secret(keys, CREDENTIAL_KEY_PREFIX)
