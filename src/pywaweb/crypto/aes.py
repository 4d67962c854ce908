from __future__ import annotations

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..constants import KEY_LEN, NONCE_LEN

__all__ = ["InvalidTag", "aes_decrypt_gcm", "aes_encrypt_gcm"]


def aes_encrypt_gcm(plaintext: bytes, *, key: bytes, iv: bytes, aad: bytes) -> bytes:
    """AES-256-GCM; returns `ciphertext || tag`."""

    if len(key) != KEY_LEN:
        raise ValueError("AES-256-GCM key must be 32 bytes")
    if len(iv) != NONCE_LEN:
        raise ValueError("AES-GCM IV must be 12 bytes")
    return AESGCM(key).encrypt(iv, plaintext, aad)


def aes_decrypt_gcm(ciphertext_and_tag: bytes, *, key: bytes, iv: bytes, aad: bytes) -> bytes:
    """
    Inverse of `aes_encrypt_gcm`.

    Raises `InvalidTag` when authentication fails; the tag comparison is done
    in constant time by the OpenSSL backend.
    """

    if len(key) != KEY_LEN:
        raise ValueError("AES-256-GCM key must be 32 bytes")
    if len(iv) != NONCE_LEN:
        raise ValueError("AES-GCM IV must be 12 bytes")
    return AESGCM(key).decrypt(iv, ciphertext_and_tag, aad)
