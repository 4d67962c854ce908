from __future__ import annotations

import zlib

from ..exceptions import DecodeError
from .constants import DOUBLE_BYTE_TOKENS, SINGLE_BYTE_TOKENS, TAGS
from .types import BinaryNode, BinaryNodeData

_LIST_TAGS = frozenset({TAGS["LIST_EMPTY"], TAGS["LIST_8"], TAGS["LIST_16"]})
_DICTIONARY_TAGS = range(TAGS["DICTIONARY_0"], TAGS["DICTIONARY_3"] + 1)

MAX_NODE_DEPTH = 64
MAX_INFLATED_SIZE = 8 * 1024 * 1024


def decompressing_if_required(buffer: bytes) -> bytes:
    if not buffer:
        raise DecodeError("empty buffer")
    if buffer[0] & 2:
        inflater = zlib.decompressobj()
        try:
            out = inflater.decompress(buffer[1:], MAX_INFLATED_SIZE)
        except zlib.error as e:
            raise DecodeError(f"bad compressed payload: {e}") from e
        if inflater.unconsumed_tail:
            raise DecodeError(f"compressed payload inflates past {MAX_INFLATED_SIZE} bytes")
        if not inflater.eof:
            raise DecodeError("truncated compressed payload")
        return out
    return buffer[1:]


def _unpack_nibble(value: int) -> str:
    if 0 <= value <= 9:
        return chr(ord("0") + value)
    if value == 10:
        return "-"
    if value == 11:
        return "."
    if value == 15:
        return "\0"
    raise DecodeError(f"invalid nibble: {value}")


def _unpack_hex(value: int) -> str:
    # the odd-length pad nibble is dropped by `packed8`, so 15 is always "F"
    return "0123456789ABCDEF"[value]


class _Reader:
    def __init__(self, buffer: bytes) -> None:
        self.buf = buffer
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.buf) - self.pos

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.buf):
            raise DecodeError("end of stream")
        v = self.buf[self.pos : self.pos + n]
        self.pos += n
        return v

    def u8(self) -> int:
        return self.take(1)[0]

    def uint(self, n: int) -> int:
        return int.from_bytes(self.take(n), "big")

    def int20(self) -> int:
        b = self.take(3)
        return ((b[0] & 0x0F) << 16) | (b[1] << 8) | b[2]

    def list_size(self, tag: int) -> int:
        if tag == TAGS["LIST_EMPTY"]:
            return 0
        if tag == TAGS["LIST_8"]:
            return self.u8()
        if tag == TAGS["LIST_16"]:
            return self.uint(2)
        raise DecodeError(f"invalid tag for list size: {tag}")

    def packed8(self, tag: int) -> str:
        start = self.u8()
        unpack = _unpack_hex if tag == TAGS["HEX_8"] else _unpack_nibble
        out = []
        for b in self.take(start & 127):
            out.append(unpack(b >> 4))
            out.append(unpack(b & 0x0F))
        if start >> 7:
            out.pop()
        return "".join(out)

    def utf8(self, n: int) -> str:
        try:
            return self.take(n).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid utf-8 string: {e}") from e

    def string(self, tag: int) -> str:
        if 1 <= tag < len(SINGLE_BYTE_TOKENS):
            return SINGLE_BYTE_TOKENS[tag]
        if tag in _DICTIONARY_TAGS:
            d = tag - TAGS["DICTIONARY_0"]
            index = self.u8()
            if d >= len(DOUBLE_BYTE_TOKENS) or index >= len(DOUBLE_BYTE_TOKENS[d]):
                raise DecodeError(f"invalid double-byte token ({d}, {index})")
            return DOUBLE_BYTE_TOKENS[d][index]
        if tag == TAGS["LIST_EMPTY"]:
            return ""
        if tag == TAGS["BINARY_8"]:
            return self.utf8(self.u8())
        if tag == TAGS["BINARY_20"]:
            return self.utf8(self.int20())
        if tag == TAGS["BINARY_32"]:
            return self.utf8(self.uint(4))
        if tag in (TAGS["HEX_8"], TAGS["NIBBLE_8"]):
            return self.packed8(tag)
        raise DecodeError(f"invalid string with tag: {tag}")

    def node(self, depth: int = 0) -> BinaryNode:
        if depth > MAX_NODE_DEPTH:
            raise DecodeError(f"node nesting deeper than {MAX_NODE_DEPTH}")
        size = self.list_size(self.u8())
        tag = self.string(self.u8())
        if not size or not tag:
            raise DecodeError("invalid node")

        attrs: dict[str, str] = {}
        for _ in range((size - 1) >> 1):
            k = self.string(self.u8())
            attrs[k] = self.string(self.u8())

        content: BinaryNodeData = None
        if size % 2 == 0:
            t = self.u8()
            if t in _LIST_TAGS:
                content = [self.node(depth + 1) for _ in range(self.list_size(t))]
            elif t == TAGS["BINARY_8"]:
                content = self.take(self.u8())
            elif t == TAGS["BINARY_20"]:
                content = self.take(self.int20())
            elif t == TAGS["BINARY_32"]:
                content = self.take(self.uint(4))
            else:
                content = self.string(t)

        return BinaryNode(tag=tag, attrs=attrs, content=content)


def decode_decompressed_binary_node(buffer: bytes) -> BinaryNode:
    r = _Reader(bytes(buffer))
    node = r.node()
    if r.remaining:
        raise DecodeError(f"{r.remaining} trailing byte(s) after node")
    return node


def decode_binary_node(buffer: bytes) -> BinaryNode:
    """
    Decode one frame payload (flags byte + node).

    Raw-length content comes back as `bytes`; token and packed content comes
    back as `str`. Any malformed input raises `DecodeError`.
    """

    return decode_decompressed_binary_node(decompressing_if_required(buffer))
