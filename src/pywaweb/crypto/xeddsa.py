"""
XEdDSA-style signatures with Curve25519 (X25519) key pairs.

Identity keys are X25519 key pairs so they can take part in key agreement.
Signing them uses the libsignal / curve25519-js convention: the clamped X25519
scalar is used as an Ed25519 secret scalar and the sign bit of the derived
Ed25519 public key travels in the top bit of the signature.

Points are handled in extended twisted-Edwards coordinates `(X, Y, Z, T)`.
"""

from __future__ import annotations

import hashlib
import hmac

_P = 2**255 - 19
_L = 2**252 + 27742317777372353535851937790883648493
_D = -121665 * pow(121666, _P - 2, _P) % _P
_SQRT_M1 = pow(2, (_P - 1) // 4, _P)

Point = tuple[int, int, int, int]

_BX = 15112221349535400772501151409588531511454012693041857206046113283949847762202
_BY = 46316835694926478169428394003475163141307993866256225615783033603165251855960
_BASE: Point = (_BX, _BY, 1, _BX * _BY % _P)
_IDENTITY: Point = (0, 1, 1, 0)


def _inv(x: int) -> int:
    return pow(x, _P - 2, _P)


def _add(p: Point, q: Point) -> Point:
    x1, y1, z1, t1 = p
    x2, y2, z2, t2 = q
    a = (y1 - x1) * (y2 - x2) % _P
    b = (y1 + x1) * (y2 + x2) % _P
    c = 2 * _D * t1 * t2 % _P
    d = 2 * z1 * z2 % _P
    e, f, g, h = b - a, d - c, d + c, b + a
    return (e * f % _P, g * h % _P, f * g % _P, e * h % _P)


def _double(p: Point) -> Point:
    x1, y1, z1, _ = p
    a = x1 * x1 % _P
    b = y1 * y1 % _P
    c = 2 * z1 * z1 % _P
    e = ((x1 + y1) * (x1 + y1) - a - b) % _P
    g = (b - a) % _P
    f = (g - c) % _P
    h = (-a - b) % _P
    return (e * f % _P, g * h % _P, f * g % _P, e * h % _P)


def _mul(p: Point, s: int) -> Point:
    # Double-and-add; not constant time.
    r = _IDENTITY
    while s:
        if s & 1:
            r = _add(r, p)
        p = _double(p)
        s >>= 1
    return r


def _encode(p: Point) -> bytes:
    zinv = _inv(p[2])
    x = p[0] * zinv % _P
    y = p[1] * zinv % _P
    return (y | ((x & 1) << 255)).to_bytes(32, "little")


def _decode(enc: bytes) -> Point:
    if len(enc) != 32:
        raise ValueError("expected 32-byte point encoding")
    raw = int.from_bytes(enc, "little")
    sign = raw >> 255
    y = raw & ((1 << 255) - 1)
    if y >= _P:
        raise ValueError("invalid y coordinate")

    y2 = y * y % _P
    x2 = (y2 - 1) * _inv(_D * y2 + 1) % _P
    x = pow(x2, (_P + 3) // 8, _P)
    if (x * x - x2) % _P:
        x = x * _SQRT_M1 % _P
    if (x * x - x2) % _P:
        raise ValueError("point is not on the curve")
    if (x & 1) != sign:
        x = _P - x
    return (x, y, 1, x * y % _P)


def _h(data: bytes) -> int:
    return int.from_bytes(hashlib.sha512(data).digest(), "little") % _L


def _clamp(private_key: bytes) -> bytes:
    if len(private_key) != 32:
        raise ValueError("expected 32-byte private key")
    b = bytearray(private_key)
    b[0] &= 248
    b[31] &= 127
    b[31] |= 64
    return bytes(b)


def _montgomery_to_edwards_y(public_key: bytes) -> bytes:
    if len(public_key) == 33 and public_key[0] == 0x05:
        public_key = public_key[1:]
    if len(public_key) != 32:
        raise ValueError("invalid public key length")
    u = int.from_bytes(public_key, "little") & ((1 << 255) - 1)
    return ((u - 1) * _inv(u + 1) % _P).to_bytes(32, "little")


def xeddsa_sign(private_key: bytes, message: bytes) -> bytes:
    """Sign `message` with an X25519 private key. Returns 64 bytes."""

    sk = _clamp(private_key)
    a = int.from_bytes(sk, "little")
    msg = bytes(message)

    a_enc = _encode(_mul(_BASE, a))
    r = _h(sk + msg)
    r_enc = _encode(_mul(_BASE, r))
    s = (r + _h(r_enc + a_enc + msg) * a) % _L

    sig = bytearray(r_enc + s.to_bytes(32, "little"))
    sig[63] |= a_enc[31] & 0x80
    return bytes(sig)


def xeddsa_verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify a signature made by `xeddsa_sign` against an X25519 public key."""

    try:
        sig = bytearray(signature)
        if len(sig) != 64:
            return False
        sign_bit = sig[63] & 0x80
        sig[63] &= 0x7F

        r_enc = bytes(sig[:32])
        s = int.from_bytes(sig[32:], "little")
        if s >= _L:
            return False

        ed_pub = bytearray(_montgomery_to_edwards_y(public_key))
        ed_pub[31] |= sign_bit
        a_enc = bytes(ed_pub)

        h = _h(r_enc + a_enc + bytes(message))
        lhs = _mul(_BASE, s)
        rhs = _add(_decode(r_enc), _mul(_decode(a_enc), h))
        return hmac.compare_digest(_encode(lhs), _encode(rhs))
    except (TypeError, ValueError):
        return False
