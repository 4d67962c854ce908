from __future__ import annotations

import zlib

import pytest

from pywaweb.exceptions import CodecError, DecodeError, EncodeError
from pywaweb.wabinary import (
    decode_binary_node,
    encode_binary_node,
    get_binary_node_child,
    get_binary_node_child_bytes,
)
from pywaweb.wabinary.decode import MAX_INFLATED_SIZE, MAX_NODE_DEPTH
from pywaweb.wabinary.types import BinaryNode


def test_encode_decode_roundtrip_simple_node() -> None:
    node = BinaryNode(
        tag="iq",
        attrs={"id": "123", "to": "@s.whatsapp.net", "type": "get", "xmlns": "w:p"},
        content=[BinaryNode(tag="ping", attrs={})],
    )

    enc = encode_binary_node(node)
    dec = decode_binary_node(enc)

    assert dec.tag == node.tag
    assert dec.attrs["id"] == "123"
    assert dec.attrs["type"] == "get"
    assert isinstance(dec.content, list)
    assert dec.content[0].tag == "ping"


def test_roundtrip_keeps_strings_bytes_and_nesting() -> None:
    node = BinaryNode(
        tag="iq",
        attrs={"id": "1700000000-12", "from": "s.whatsapp.net", "hash": "DEADBEEF", "note": "héllo"},
        content=[
            BinaryNode(tag="registration", content=b"\x00\x00\x30\x39"),
            BinaryNode(tag="list", content=[BinaryNode(tag="key", content=b"k" * 300)]),
            BinaryNode(tag="props", content="config"),
            BinaryNode(tag="empty"),
        ],
    )

    assert decode_binary_node(encode_binary_node(node)) == node
    assert get_binary_node_child_bytes(node, "registration") == b"\x00\x00\x30\x39"


def test_compressed_payload_is_inflated() -> None:
    node = BinaryNode(tag="success", attrs={"t": "1700000000"})
    body = encode_binary_node(node)[1:]

    dec = decode_binary_node(b"\x02" + zlib.compress(body))

    assert dec == node
    assert get_binary_node_child(dec, "anything") is None


def test_truncated_input_raises_codec_error() -> None:
    enc = encode_binary_node(BinaryNode(tag="iq", attrs={"id": "abc"}, content=b"payload"))

    for cut in (0, 1, 3, len(enc) - 1):
        with pytest.raises(CodecError):
            decode_binary_node(enc[:cut])


def test_trailing_bytes_and_bad_compression_are_decode_errors() -> None:
    enc = encode_binary_node(BinaryNode(tag="iq"))

    with pytest.raises(DecodeError):
        decode_binary_node(enc + b"\x00")
    with pytest.raises(DecodeError):
        decode_binary_node(b"\x02not-zlib")


def test_invalid_nodes_raise_encode_error() -> None:
    with pytest.raises(EncodeError):
        encode_binary_node(BinaryNode(tag=""))
    with pytest.raises(EncodeError):
        encode_binary_node(BinaryNode(tag="iq", attrs={"id": 1}))  # type: ignore[dict-item]
    with pytest.raises(EncodeError):
        encode_binary_node(BinaryNode(tag="iq", content=42))  # type: ignore[arg-type]
    with pytest.raises(EncodeError):
        encode_binary_node(BinaryNode(tag="iq", content=["not a node"]))  # type: ignore[list-item]


def test_hex_packed_values_keep_the_letter_f() -> None:
    node = BinaryNode(tag="message", attrs={"id": "3EB0FF12", "odd": "ABCDEF0", "f": "F"})
    enc = encode_binary_node(node)

    # packed, not sent as raw utf-8
    assert b"3EB0FF12" not in enc
    assert decode_binary_node(enc) == node


def test_deep_nesting_is_a_decode_error() -> None:
    frame = b"\x00" + bytes([248, 2, 3, 248, 1]) * 5000 + bytes([248, 1, 3])

    with pytest.raises(DecodeError):
        decode_binary_node(frame)


def test_nesting_up_to_the_limit_decodes() -> None:
    node = BinaryNode(tag="leaf")
    for _ in range(MAX_NODE_DEPTH):
        node = BinaryNode(tag="list", content=[node])

    assert decode_binary_node(encode_binary_node(node)) == node


def test_inflation_is_bounded() -> None:
    bomb = zlib.compress(b"\x00" * (MAX_INFLATED_SIZE + 1))

    with pytest.raises(DecodeError):
        decode_binary_node(b"\x02" + bomb)
