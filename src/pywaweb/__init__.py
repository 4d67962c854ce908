"""
pywaweb: an asyncio-first session engine for the WhatsApp Web (Multi-Device)
protocol.

It owns the encrypted, reconnecting transport, the binary node query layer,
credential persistence and the QR / pairing-code lifecycle. Feature handlers
(chats, groups, media) are built on top of `WASocket.register_handler()` and
the `node.received` event.
"""

from __future__ import annotations

from .auth import CredentialStore, FileCredentialStorage, MemoryCredentialStorage
from .dispatcher import NodeDispatcher
from .exceptions import (
    BannedOrFatalServerError,
    ConnectionClosedError,
    HandshakeError,
    ProtocolError,
    PywawebError,
    QueryTimeoutError,
)
from .pairing import PairingController
from .socket import WASocket
from .socket_config import SocketConfig
from .transport import ConnectionState, ConnectionUpdate, Transport
from .wabinary import BinaryNode

__all__ = [
    "BannedOrFatalServerError",
    "BinaryNode",
    "ConnectionClosedError",
    "ConnectionState",
    "ConnectionUpdate",
    "CredentialStore",
    "FileCredentialStorage",
    "HandshakeError",
    "MemoryCredentialStorage",
    "NodeDispatcher",
    "PairingController",
    "ProtocolError",
    "PywawebError",
    "QueryTimeoutError",
    "SocketConfig",
    "Transport",
    "WASocket",
]

__version__ = "0.1.0"
