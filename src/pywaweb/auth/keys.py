from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterable, Iterator

from ..constants import KEY_BUNDLE_TYPE, PRE_KEY_ID_MAX
from ..crypto.curve import Curve25519Provider, DefaultCurve25519Provider
from .creds import KeyPair, SignedPreKey

logger = logging.getLogger(__name__)

DEFAULT_PRE_KEY_COUNT = 100
DEFAULT_SIGNED_PRE_KEY_LIFETIME_S = 7 * 24 * 60 * 60.0


def random_key_id() -> int:
    # Uniform in [1, 2**24).
    return secrets.randbelow(PRE_KEY_ID_MAX - 1) + 1


class PreKeyPool:
    """Bounded `key_id -> KeyPair` mapping of one-time pre-keys."""

    def __init__(self, capacity: int = DEFAULT_PRE_KEY_COUNT) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._keys: dict[int, KeyPair] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key_id: object) -> bool:
        return key_id in self._keys

    def __iter__(self) -> Iterator[int]:
        return iter(self._keys)

    def get(self, key_id: int) -> KeyPair | None:
        return self._keys.get(key_id)

    def items(self) -> list[tuple[int, KeyPair]]:
        return list(self._keys.items())

    @property
    def free_slots(self) -> int:
        return self.capacity - len(self._keys)

    def add(self, key_id: int, key_pair: KeyPair) -> None:
        if not 1 <= key_id < PRE_KEY_ID_MAX:
            raise ValueError(f"pre-key id out of range: {key_id}")
        if key_id in self._keys:
            raise ValueError(f"duplicate pre-key id: {key_id}")
        if len(self._keys) >= self.capacity:
            raise ValueError("pre-key pool is full")
        self._keys[key_id] = key_pair

    def pop(self, key_id: int) -> KeyPair | None:
        return self._keys.pop(key_id, None)

    def clear(self) -> None:
        self._keys.clear()


class KeyStore:
    """
    Owner of the identity key pair, the signed pre-key and the pre-key pool.

    Nothing else mutates the pool. The clock is injectable so signed pre-key
    rotation can be tested without waiting a week.
    """

    def __init__(
        self,
        *,
        curve: Curve25519Provider | None = None,
        pre_key_count: int = DEFAULT_PRE_KEY_COUNT,
        signed_pre_key_lifetime_s: float = DEFAULT_SIGNED_PRE_KEY_LIFETIME_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.curve = curve or DefaultCurve25519Provider()
        self.signed_pre_key_lifetime_s = signed_pre_key_lifetime_s
        self._clock = clock

        self.identity: KeyPair | None = None
        self.signed_pre_key: SignedPreKey | None = None
        self.pre_keys = PreKeyPool(pre_key_count)

    def load(
        self,
        *,
        identity: KeyPair | None,
        signed_pre_key: SignedPreKey | None,
        pre_keys: Iterable[tuple[int, KeyPair]] | None = None,
    ) -> None:
        """
        Adopt persisted key material.

        `pre_keys=None` leaves the pool alone; anything else replaces it. Keys
        beyond the pool capacity are dropped.
        """

        self.identity = identity
        self.signed_pre_key = signed_pre_key
        if pre_keys is None:
            return
        self.pre_keys.clear()
        for key_id, kp in pre_keys:
            if not self.pre_keys.free_slots:
                logger.warning("pre-key pool full, dropping stored pre-key %d", key_id)
                continue
            self.pre_keys.add(key_id, kp)

    def generate_identity(self) -> KeyPair:
        kp = self.curve.generate_keypair()
        self.identity = kp
        return kp

    def generate_signed_pre_key(self, identity: KeyPair, *, key_id: int | None = None) -> SignedPreKey:
        kp = self.curve.generate_keypair()
        # libsignal signs the version-prefixed public key.
        signature = self.curve.sign(identity.private, KEY_BUNDLE_TYPE + kp.public)
        spk = SignedPreKey(
            key_id=key_id if key_id is not None else random_key_id(),
            key_pair=kp,
            signature=signature,
            created_at=self._clock(),
        )
        self.signed_pre_key = spk
        return spk

    def verify_signed_pre_key(self, identity_public: bytes, spk: SignedPreKey) -> bool:
        return self.curve.verify(identity_public, KEY_BUNDLE_TYPE + spk.key_pair.public, spk.signature)

    def signed_pre_key_expired(self) -> bool:
        spk = self.signed_pre_key
        return spk is None or self._clock() - spk.created_at > self.signed_pre_key_lifetime_s

    def refresh_signed_pre_key_if_expired(self) -> SignedPreKey:
        """Return the current signed pre-key, rotating it first if it is too old."""

        if self.identity is None:
            raise ValueError("identity key pair is not set")
        if not self.signed_pre_key_expired():
            assert self.signed_pre_key is not None
            return self.signed_pre_key

        old = self.signed_pre_key
        spk = self.generate_signed_pre_key(self.identity)
        logger.info(
            "rotated signed pre-key %s -> %s", old.key_id if old else None, spk.key_id
        )
        return spk

    def generate_pre_keys(self, count: int) -> PreKeyPool:
        """Fill the pool with `count` fresh pre-keys; ids never collide."""

        if count > self.pre_keys.free_slots:
            raise ValueError(
                f"cannot add {count} pre-keys, only {self.pre_keys.free_slots} slots free"
            )
        for _ in range(count):
            key_id = random_key_id()
            while key_id in self.pre_keys:
                key_id = random_key_id()
            self.pre_keys.add(key_id, self.curve.generate_keypair())
        return self.pre_keys

    def consume_pre_key(self, key_id: int) -> KeyPair | None:
        return self.pre_keys.pop(key_id)

    def replenish_pre_keys(self) -> int:
        n = self.pre_keys.free_slots
        if n:
            self.generate_pre_keys(n)
            logger.debug("replenished %d pre-keys", n)
        return n
