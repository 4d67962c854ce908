from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol


class DuplexStream(Protocol):
    """
    One physical, message-oriented connection.

    `recv()` raises `StreamClosedError(code, reason)` once the peer or the
    network closes the stream, and `TransportError` for other failures.
    """

    @property
    def is_open(self) -> bool: ...

    async def send(self, data: bytes) -> None: ...

    async def recv(self) -> bytes: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


# (url, headers, open timeout in seconds) -> open stream
StreamFactory = Callable[[str, Mapping[str, str], float], Awaitable[DuplexStream]]
