from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from ..constants import DEFAULT_ORIGIN
from ..exceptions import ConnectTimeoutError, StreamClosedError, TransportError

logger = logging.getLogger(__name__)


def _closed_error(e: ConnectionClosed) -> StreamClosedError:
    # `rcvd` is the close frame the peer sent; absent on abnormal closure.
    frame = getattr(e, "rcvd", None)
    if frame is None:
        return StreamClosedError(1006, "abnormal closure")
    return StreamClosedError(frame.code, frame.reason)


class WebSocketStream:
    """`DuplexStream` over a `websockets` client connection."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws

    @property
    def is_open(self) -> bool:
        # websockets>=15 uses `.state`; older versions had `.closed`.
        state = getattr(self._ws, "state", None)
        if state is not None:
            return bool(state == State.OPEN)
        return not bool(getattr(self._ws, "closed", False))

    async def send(self, data: bytes) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise _closed_error(e) from e
        except Exception as e:
            raise TransportError(f"websocket send failed: {e}") from e

    async def recv(self) -> bytes:
        try:
            msg = await self._ws.recv()
        except ConnectionClosed as e:
            raise _closed_error(e) from e
        except Exception as e:
            raise TransportError(f"websocket recv failed: {e}") from e
        if isinstance(msg, bytes):
            return msg
        if isinstance(msg, str):
            # The protocol is binary-only; tolerate text frames anyway.
            return msg.encode("utf-8")
        raise TransportError(f"unexpected websocket message type: {type(msg).__name__}")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("websocket close raised: %s", e)


async def open_websocket_stream(
    url: str, headers: Mapping[str, str], timeout_s: float
) -> WebSocketStream:
    """Default `StreamFactory`."""

    connect_kwargs: dict[str, Any] = {
        "origin": DEFAULT_ORIGIN,
        "max_size": None,
        "open_timeout": timeout_s,
        # Liveness is checked with application-level pings; the server may
        # ignore WS-level ones.
        "ping_interval": None,
        "ping_timeout": None,
    }
    if headers:
        # websockets>=14 renamed `extra_headers` -> `additional_headers`.
        params = inspect.signature(websockets.connect).parameters
        key = "additional_headers" if "additional_headers" in params else "extra_headers"
        connect_kwargs[key] = dict(headers)

    try:
        ws = await asyncio.wait_for(websockets.connect(url, **connect_kwargs), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise ConnectTimeoutError(f"websocket open timed out after {timeout_s}s") from e
    except Exception as e:
        raise TransportError(f"failed to connect websocket: {e}") from e
    logger.debug("websocket open: %s", url)
    return WebSocketStream(ws)
