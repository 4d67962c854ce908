from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .constants import S_WHATSAPP_NET
from .exceptions import CodecError, ConnectionClosedError, ProtocolError, QueryTimeoutError
from .transport import ConnectionState, ConnectionUpdate, Transport
from .util.asyncio import ensure_task
from .util.events import AsyncEventEmitter
from .wabinary import BinaryNode, decode_binary_node, encode_binary_node, get_binary_node_child

logger = logging.getLogger(__name__)

NodeHandler = Callable[[BinaryNode], Awaitable[None] | None]

_DRAIN_STATES = frozenset(
    {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTING, ConnectionState.CLOSED}
)


@dataclass(slots=True)
class PendingQuery:
    id: str
    node: BinaryNode
    future: asyncio.Future[BinaryNode]
    deadline: float
    retry_count: int = 0


def protocol_error_from_node(node: BinaryNode) -> ProtocolError:
    err = get_binary_node_child(node, "error")
    attrs = err.attrs if err is not None else node.attrs
    try:
        code = int(attrs.get("code", "0"))
    except ValueError:
        code = 0
    return ProtocolError(code=code, text=attrs.get("text", ""), node=node)


class NodeDispatcher:
    """
    Binary node layer on top of a `Transport`.

    - `send()` encodes and writes a node.
    - `query()` correlates a request with the response carrying the same `id`,
      retransmitting on timeout up to `max_retries` times.
    - Unsolicited nodes go to the handler registered for their tag, or to the
      `node.received` event when no handler matches.

    Pending queries are rejected with `ConnectionClosedError` whenever the
    transport drops its connection; nothing waits across a reconnect.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        events: AsyncEventEmitter | None = None,
        query_timeout_s: float | None = None,
        max_retries: int | None = None,
        codec_error_threshold: int | None = None,
    ) -> None:
        cfg = transport.config
        self.transport = transport
        self.events = events or transport.events
        self.query_timeout_s = query_timeout_s if query_timeout_s is not None else cfg.query_timeout_s
        self.max_retries = max_retries if max_retries is not None else cfg.query_max_retries
        self.codec_error_threshold = (
            codec_error_threshold if codec_error_threshold is not None else cfg.codec_error_threshold
        )

        self._handlers: dict[str, NodeHandler] = {}
        self._pending: dict[str, PendingQuery] = {}
        self._epoch = 0
        self._id_prefix = f"{int(time.time())}-"
        self._codec_errors = 0

        transport.on_frame = self.handle_frame
        transport.pinger = self.ping
        self.events.on("connection.update", self._on_connection_update)
        self.events.on("transport.closed", self._on_transport_closed)

    # -- handler table -------------------------------------------------------

    @property
    def handlers(self) -> dict[str, NodeHandler]:
        return dict(self._handlers)

    def register_handler(self, tag: str, handler: NodeHandler) -> None:
        self._handlers[tag] = handler

    def unregister_handler(self, tag: str) -> None:
        self._handlers.pop(tag, None)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def generate_message_tag(self) -> str:
        self._epoch += 1
        return f"{self._id_prefix}{self._epoch}"

    # -- outbound ------------------------------------------------------------

    async def send(self, node: BinaryNode) -> None:
        data = encode_binary_node(node)
        await self.events.emit("node.outgoing", node)
        await self.transport.send(data)

    async def query(
        self,
        node: BinaryNode,
        *,
        timeout_s: float | None = None,
        max_retries: int | None = None,
    ) -> BinaryNode:
        """
        Send `node` and wait for the response with the same `id`.

        Raises `QueryTimeoutError` once `1 + max_retries` waits of `timeout_s`
        each have elapsed, `ProtocolError` for `type="error"` responses, and
        `ConnectionClosedError` if the connection drops meanwhile.
        """

        timeout = timeout_s if timeout_s is not None else self.query_timeout_s
        retries = max_retries if max_retries is not None else self.max_retries

        if not node.attrs.get("id"):
            node = dataclasses.replace(node, attrs={**node.attrs, "id": self.generate_message_tag()})
        msg_id = node.attrs["id"]
        if msg_id in self._pending:
            raise ValueError(f"a query with id {msg_id!r} is already in flight")

        loop = asyncio.get_running_loop()
        pq = PendingQuery(
            id=msg_id, node=node, future=loop.create_future(), deadline=loop.time() + timeout
        )
        # Registered before sending so a fast response cannot be missed.
        self._pending[msg_id] = pq
        try:
            await self.send(node)
            while True:
                try:
                    return await asyncio.wait_for(asyncio.shield(pq.future), timeout=timeout)
                except asyncio.TimeoutError:
                    if pq.retry_count >= retries:
                        raise QueryTimeoutError(msg_id, pq.retry_count + 1) from None
                    pq.retry_count += 1
                    pq.deadline = loop.time() + timeout
                    logger.debug("query %s timed out, retransmit %d/%d", msg_id, pq.retry_count, retries)
                    await self.send(node)
        finally:
            if self._pending.get(msg_id) is pq:
                del self._pending[msg_id]
            if not pq.future.done():
                pq.future.cancel()

    async def ping(self) -> BinaryNode:
        return await self.query(
            BinaryNode(
                tag="iq",
                attrs={"to": S_WHATSAPP_NET, "type": "get", "xmlns": "w:p"},
                content=[BinaryNode(tag="ping")],
            ),
            timeout_s=self.transport.config.pong_timeout_s,
            max_retries=0,
        )

    # -- inbound -------------------------------------------------------------

    async def handle_frame(self, payload: bytes) -> None:
        try:
            node = decode_binary_node(payload)
        except CodecError as e:
            self._codec_errors += 1
            logger.warning("dropping undecodable frame (%d in a row): %s", self._codec_errors, e)
            if self._codec_errors > self.codec_error_threshold:
                logger.error(
                    "%d consecutive undecodable frames; assuming protocol desync", self._codec_errors
                )
                self._codec_errors = 0
                await self.transport.fail_connection(e)
            return
        self._codec_errors = 0
        await self.dispatch(node)

    async def dispatch(self, node: BinaryNode) -> None:
        msg_id = node.attrs.get("id")
        pq = self._pending.get(msg_id) if msg_id else None
        if pq is not None:
            self._resolve(pq, node)
            return

        handler = self._handlers.get(node.tag)
        if handler is None:
            await self.events.emit("node.received", node)
            return

        try:
            res = handler(node)
        except Exception:
            logger.exception("handler for <%s> failed", node.tag)
            return
        # Async handlers run concurrently; delivery order is kept, completion order is not.
        if asyncio.iscoroutine(res):
            ensure_task(res, name=f"pywaweb.handler.{node.tag}")

    def _resolve(self, pq: PendingQuery, node: BinaryNode) -> None:
        del self._pending[pq.id]
        if pq.future.done():
            return
        if node.attrs.get("type") == "error":
            pq.future.set_exception(protocol_error_from_node(node))
        else:
            pq.future.set_result(node)

    def reject_all(self, error: BaseException) -> int:
        pending = list(self._pending.values())
        self._pending.clear()
        for pq in pending:
            if not pq.future.done():
                pq.future.set_exception(error)
        if pending:
            logger.debug("rejected %d pending queries: %s", len(pending), error)
        return len(pending)

    def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.state in _DRAIN_STATES:
            self.reject_all(ConnectionClosedError(f"connection {update.state.value}"))

    def _on_transport_closed(self, reason: str) -> None:
        self.reject_all(ConnectionClosedError(reason))
