from __future__ import annotations

import pytest

from pywaweb.crypto.aes import InvalidTag, aes_decrypt_gcm, aes_encrypt_gcm
from pywaweb.crypto.hkdf import hkdf_expand, hkdf_sha256


def test_hkdf_rfc5869_case_1() -> None:
    okm = hkdf_sha256(
        ikm=b"\x0b" * 22,
        salt=bytes(range(0x00, 0x0D)),
        info=bytes(range(0xF0, 0xFA)),
        length=42,
    )

    assert okm == bytes.fromhex(
        "3cb25f25faacd57a90434f64d0362f2a2d2d0a90cf1a5a4c5db02d56ecc4c5bf34007208d5b887185865"
    )


def test_hkdf_expand_bounds() -> None:
    with pytest.raises(ValueError):
        hkdf_expand(prk=b"\x00" * 32, info=b"", length=0)
    with pytest.raises(ValueError):
        hkdf_expand(prk=b"\x00" * 32, info=b"", length=255 * 32 + 1)


def test_aes_gcm_binds_the_associated_data() -> None:
    key, iv = b"\x07" * 32, b"\x00" * 12
    sealed = aes_encrypt_gcm(b"secret", key=key, iv=iv, aad=b"transcript")

    assert len(sealed) == len(b"secret") + 16
    assert aes_decrypt_gcm(sealed, key=key, iv=iv, aad=b"transcript") == b"secret"
    with pytest.raises(InvalidTag):
        aes_decrypt_gcm(sealed, key=key, iv=iv, aad=b"other")
    with pytest.raises(ValueError):
        aes_encrypt_gcm(b"x", key=b"short", iv=iv, aad=b"")
