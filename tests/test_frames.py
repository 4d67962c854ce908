from __future__ import annotations

import pytest

from pywaweb.constants import NOISE_WA_HEADER
from pywaweb.crypto.aes import InvalidTag
from pywaweb.crypto.frames import FrameHandler
from pywaweb.exceptions import TransportError


def _keyed_pair() -> tuple[FrameHandler, FrameHandler]:
    k1, k2 = b"\x01" * 32, b"\x02" * 32
    client = FrameHandler()
    server = FrameHandler(intro_header=b"")
    client.install_keys(send_key=k1, recv_key=k2)
    server.install_keys(send_key=k2, recv_key=k1)
    return client, server


def test_decode_frames_splits_multiple_frames() -> None:
    fh = FrameHandler()
    data = b"\x00\x00\x03abc" + b"\x00\x00\x03def"

    assert fh.decode_frames(data) == [b"abc", b"def"]


def test_partial_frame_waits_for_more_bytes() -> None:
    fh = FrameHandler()

    assert fh.decode_frames(b"\x00\x00\x05he") == []
    assert fh.decode_frames(b"llo\x00") == [b"hello"]
    assert fh.decode_frames(b"\x00\x01!") == [b"!"]


def test_encode_frame_includes_intro_header_only_once() -> None:
    fh = FrameHandler()

    f1 = fh.encode_frame(b"hello")
    f2 = fh.encode_frame(b"world")

    assert f1 == NOISE_WA_HEADER + b"\x00\x00\x05hello"
    assert f2 == b"\x00\x00\x05world"


def test_encrypted_frames_roundtrip_and_advance_counters() -> None:
    client, server = _keyed_pair()

    f1 = client.encode_frame(b"one")[len(NOISE_WA_HEADER) :]
    f2 = client.encode_frame(b"two")
    f3 = client.encode_frame(b"one")
    assert client.write_counter == 3
    # same plaintext under a different counter gives a different ciphertext
    assert f3 != f1

    assert server.decode_frames(f1 + f2 + f3) == [b"one", b"two", b"one"]


def test_tampered_frame_fails_authentication() -> None:
    client, server = _keyed_pair()
    frame = bytearray(client.encode_frame(b"payload")[len(NOISE_WA_HEADER) :])
    frame[-1] ^= 0x01

    server.feed(bytes(frame))
    with pytest.raises(InvalidTag):
        server.next_frame()


def test_counter_exhaustion_raises_instead_of_wrapping() -> None:
    client, _ = _keyed_pair()
    client._transport.write_counter = 0xFFFFFFFF  # type: ignore[union-attr]

    client.encode_frame(b"last")
    with pytest.raises(TransportError):
        client.encode_frame(b"one too many")


def test_keys_install_once_per_connection() -> None:
    client, _ = _keyed_pair()
    with pytest.raises(TransportError):
        client.install_keys(send_key=b"\x00" * 32, recv_key=b"\x00" * 32)
