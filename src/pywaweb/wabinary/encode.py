from __future__ import annotations

from ..exceptions import EncodeError
from .constants import TAGS, TOKEN_MAP
from .types import BinaryNode


def _pack_nibble(ch: str) -> int:
    if ch == "-":
        return 10
    if ch == ".":
        return 11
    if ch == "\0":
        return 15
    if "0" <= ch <= "9":
        return ord(ch) - ord("0")
    raise EncodeError(f'invalid byte for nibble "{ch}"')


def _pack_hex(ch: str) -> int:
    if "0" <= ch <= "9":
        return ord(ch) - ord("0")
    if "A" <= ch <= "F":
        return 10 + ord(ch) - ord("A")
    if ch == "\0":
        return 15
    raise EncodeError(f'invalid hex char "{ch}"')


def _is_nibble(s: str) -> bool:
    return 0 < len(s) <= TAGS["PACKED_MAX"] and all("0" <= ch <= "9" or ch in "-." for ch in s)


def _is_hex(s: str) -> bool:
    return 0 < len(s) <= TAGS["PACKED_MAX"] and all("0" <= ch <= "9" or "A" <= ch <= "F" for ch in s)


class _Writer:
    def __init__(self) -> None:
        self.buf = bytearray()

    def u8(self, v: int) -> None:
        self.buf.append(v & 0xFF)

    def raw(self, b: bytes) -> None:
        self.buf.extend(b)

    def byte_length(self, length: int) -> None:
        if length >= 1 << 32:
            raise EncodeError(f"value too large to encode: {length}")
        if length >= 1 << 20:
            self.u8(TAGS["BINARY_32"])
            self.raw(length.to_bytes(4, "big"))
        elif length >= 256:
            self.u8(TAGS["BINARY_20"])
            self.raw(length.to_bytes(3, "big"))
        else:
            self.u8(TAGS["BINARY_8"])
            self.u8(length)

    def list_start(self, size: int) -> None:
        if size == 0:
            self.u8(TAGS["LIST_EMPTY"])
        elif size < 256:
            self.u8(TAGS["LIST_8"])
            self.u8(size)
        elif size < 1 << 16:
            self.u8(TAGS["LIST_16"])
            self.raw(size.to_bytes(2, "big"))
        else:
            raise EncodeError(f"list too long: {size}")

    def packed(self, s: str, *, hex_: bool) -> None:
        self.u8(TAGS["HEX_8"] if hex_ else TAGS["NIBBLE_8"])
        pack = _pack_hex if hex_ else _pack_nibble

        n = (len(s) + 1) // 2
        self.u8(n | 128 if len(s) % 2 else n)
        padded = s + "\0" if len(s) % 2 else s
        for i in range(0, len(padded), 2):
            self.u8((pack(padded[i]) << 4) | pack(padded[i + 1]))

    def string(self, s: str) -> None:
        tok = TOKEN_MAP.get(s)
        if tok is not None:
            dictionary, index = tok
            if dictionary is not None:
                self.u8(TAGS["DICTIONARY_0"] + dictionary)
            self.u8(index)
        elif _is_nibble(s):
            self.packed(s, hex_=False)
        elif _is_hex(s):
            self.packed(s, hex_=True)
        else:
            b = s.encode("utf-8")
            self.byte_length(len(b))
            self.raw(b)

    def node(self, node: BinaryNode) -> None:
        if not isinstance(node, BinaryNode):
            raise EncodeError(f"expected BinaryNode, got {type(node).__name__}")
        if not node.tag:
            raise EncodeError("invalid node: tag cannot be empty")

        attrs = {k: v for k, v in (node.attrs or {}).items() if v is not None}
        for k, v in attrs.items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise EncodeError(f"attribute {k!r} of <{node.tag}> must be a string")

        content = node.content
        self.list_start(2 * len(attrs) + 1 + (content is not None))
        self.string(node.tag)
        for k, v in attrs.items():
            self.string(k)
            self.string(v)

        if content is None:
            return
        if isinstance(content, str):
            self.string(content)
        elif isinstance(content, (bytes, bytearray, memoryview)):
            b = bytes(content)
            self.byte_length(len(b))
            self.raw(b)
        elif isinstance(content, list):
            self.list_start(len(content))
            for child in content:
                self.node(child)
        else:
            raise EncodeError(f'invalid content for <{node.tag}>: {type(content).__name__}')


def encode_binary_node(node: BinaryNode) -> bytes:
    """Encode `node`; the leading flags byte is 0 (uncompressed)."""

    w = _Writer()
    w.u8(0)
    w.node(node)
    return bytes(w.buf)
