from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from ..exceptions import CryptoUnavailable
from .xeddsa import xeddsa_sign, xeddsa_verify


@dataclass(frozen=True, slots=True)
class KeyPair:
    public: bytes
    private: bytes


class Curve25519Provider(Protocol):
    """Pluggable key-agreement + signature primitive."""

    def generate_keypair(self) -> KeyPair: ...

    def shared_key(self, private_key: bytes, public_key: bytes) -> bytes: ...

    def sign(self, private_key: bytes, message: bytes) -> bytes: ...

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool: ...


class DefaultCurve25519Provider:
    """
    X25519 provider via `cryptography`.

    Key generation draws from the OS CSPRNG through OpenSSL. `shared_key`
    raises `ValueError` for low-order peer points (all-zero shared secret).
    """

    def generate_keypair(self) -> KeyPair:
        try:
            priv = X25519PrivateKey.generate()
        except (UnsupportedAlgorithm, NotImplementedError, OSError) as e:
            raise CryptoUnavailable(f"X25519 key generation unavailable: {e}") from e
        pub = priv.public_key()
        return KeyPair(
            private=priv.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
            public=pub.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            ),
        )

    def shared_key(self, private_key: bytes, public_key: bytes) -> bytes:
        priv = X25519PrivateKey.from_private_bytes(private_key)
        pub = X25519PublicKey.from_public_bytes(public_key)
        return priv.exchange(pub)

    def sign(self, private_key: bytes, message: bytes) -> bytes:
        return xeddsa_sign(private_key, message)

    def verify(self, public_key: bytes, message: bytes, signature: bytes) -> bool:
        return xeddsa_verify(public_key, message, signature)
