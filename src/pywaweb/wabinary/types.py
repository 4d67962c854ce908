from __future__ import annotations

from dataclasses import dataclass, field
from typing import TypeAlias

BinaryNodeData: TypeAlias = list["BinaryNode"] | str | bytes | None


@dataclass(frozen=True, slots=True)
class BinaryNode:
    """
    The universal wire unit.

    - `tag`: node name
    - `attrs`: string map of attributes
    - `content`: child nodes, a string, raw bytes, or None

    Instances are frozen; build a new node (e.g. `dataclasses.replace`) to
    change one.
    """

    tag: str
    attrs: dict[str, str] = field(default_factory=dict)
    content: BinaryNodeData = None

    @property
    def id(self) -> str | None:
        return self.attrs.get("id")


def get_binary_node_children(node: BinaryNode | None, tag: str | None = None) -> list[BinaryNode]:
    if node is None or not isinstance(node.content, list):
        return []
    return [c for c in node.content if tag is None or c.tag == tag]


def get_binary_node_child(node: BinaryNode | None, tag: str) -> BinaryNode | None:
    for c in get_binary_node_children(node, tag):
        return c
    return None


def get_binary_node_child_bytes(node: BinaryNode | None, tag: str) -> bytes | None:
    c = get_binary_node_child(node, tag)
    if c is None:
        return None
    if isinstance(c.content, bytes):
        return c.content
    if isinstance(c.content, str):
        return c.content.encode("utf-8")
    return None
