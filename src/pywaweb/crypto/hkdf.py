from __future__ import annotations

import hashlib
import hmac

_HASH_LEN = 32


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def hkdf_extract(*, salt: bytes, ikm: bytes) -> bytes:
    return hmac_sha256(salt, ikm)


def hkdf_expand(*, prk: bytes, info: bytes, length: int) -> bytes:
    if length <= 0:
        raise ValueError("length must be > 0")
    if length > 255 * _HASH_LEN:
        raise ValueError("length too large for HKDF-SHA256")

    t = b""
    okm = b""
    counter = 1
    while len(okm) < length:
        t = hmac_sha256(prk, t + info + bytes([counter]))
        okm += t
        counter += 1
    return okm[:length]


def hkdf_sha256(*, ikm: bytes, length: int, salt: bytes, info: bytes = b"") -> bytes:
    """HKDF-SHA256 (RFC 5869), extract then expand."""

    return hkdf_expand(prk=hkdf_extract(salt=salt, ikm=ikm), info=info, length=length)
