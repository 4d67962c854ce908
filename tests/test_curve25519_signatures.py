from __future__ import annotations

from pywaweb.crypto.curve import DefaultCurve25519Provider
from pywaweb.crypto.xeddsa import xeddsa_sign, xeddsa_verify


def test_xeddsa_known_vector() -> None:
    """
    Test vector generated with Node + curve25519-js.
    """

    priv = bytes.fromhex("000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e5f")
    pub = bytes.fromhex("8f40c5adb68f25624ae5b214ea767a6ec94d829d3d7b5e1ad1ba6f3e2138285f")
    msg = b"pyaileys-test"

    expected_sig = bytes.fromhex(
        "57968243e94390d78e51c15540cec7379e19800128afa8ffdc36f898ffa770c2"
        "230aa18f6dfeaa3ab702b7bce6019a2139560904437ecabba540122d6414c80d"
    )

    sig = xeddsa_sign(priv, msg)
    assert sig == expected_sig
    assert xeddsa_verify(pub, msg, sig) is True
    # libsignal-style version-prefixed public key
    assert xeddsa_verify(b"\x05" + pub, msg, sig) is True


def test_xeddsa_rejects_tampered_message_and_signature() -> None:
    curve = DefaultCurve25519Provider()
    kp = curve.generate_keypair()
    sig = curve.sign(kp.private, b"hello")

    assert curve.verify(kp.public, b"hello", sig) is True
    assert curve.verify(kp.public, b"hellO", sig) is False
    assert curve.verify(kp.public, b"hello", sig[:-1] + bytes([sig[-1] ^ 1])) is False
    assert curve.verify(kp.public, b"hello", sig[:63]) is False


def test_shared_key_agrees_both_ways() -> None:
    curve = DefaultCurve25519Provider()
    a = curve.generate_keypair()
    b = curve.generate_keypair()

    assert len(a.public) == 32 and len(a.private) == 32
    assert curve.shared_key(a.private, b.public) == curve.shared_key(b.private, a.public)
