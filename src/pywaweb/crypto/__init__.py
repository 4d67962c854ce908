from __future__ import annotations

from .aes import aes_decrypt_gcm, aes_encrypt_gcm
from .curve import Curve25519Provider, DefaultCurve25519Provider, KeyPair
from .frames import FrameHandler
from .hkdf import hkdf_expand, hkdf_extract, hkdf_sha256, hmac_sha256
from .xeddsa import xeddsa_sign, xeddsa_verify

__all__ = [
    "Curve25519Provider",
    "DefaultCurve25519Provider",
    "FrameHandler",
    "KeyPair",
    "aes_decrypt_gcm",
    "aes_encrypt_gcm",
    "hkdf_expand",
    "hkdf_extract",
    "hkdf_sha256",
    "hmac_sha256",
    "xeddsa_sign",
    "xeddsa_verify",
]
