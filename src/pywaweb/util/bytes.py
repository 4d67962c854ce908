from __future__ import annotations

import base64
from dataclasses import dataclass


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


@dataclass(frozen=True, slots=True)
class Crockford32:
    """
    Crockford Base32 as used by pairing codes.

    The alphabet drops `I`, `L`, `O` and `U` so a code read aloud or typed by
    hand cannot be confused with `1`/`0` or spell words. 5 bytes -> 8 chars.
    """

    alphabet: str = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    def encode(self, data: bytes) -> str:
        n_chars = (len(data) * 8 + 4) // 5
        value = int.from_bytes(data, "big") << (n_chars * 5 - len(data) * 8)
        out = []
        for _ in range(n_chars):
            out.append(self.alphabet[value & 31])
            value >>= 5
        return "".join(reversed(out))

    def is_valid(self, text: str) -> bool:
        return bool(text) and all(ch in self.alphabet for ch in text)
