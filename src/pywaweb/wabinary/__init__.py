from __future__ import annotations

from .decode import decode_binary_node, decode_decompressed_binary_node, decompressing_if_required
from .encode import encode_binary_node
from .types import (
    BinaryNode,
    get_binary_node_child,
    get_binary_node_child_bytes,
    get_binary_node_children,
)

__all__ = [
    "BinaryNode",
    "decode_binary_node",
    "decode_decompressed_binary_node",
    "decompressing_if_required",
    "encode_binary_node",
    "get_binary_node_child",
    "get_binary_node_child_bytes",
    "get_binary_node_children",
]
