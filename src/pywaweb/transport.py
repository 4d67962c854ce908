from __future__ import annotations

import asyncio
import base64
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .auth.creds import Contact
from .auth.store import CredentialStore
from .connection.stream import DuplexStream, StreamFactory
from .connection.websocket import open_websocket_stream
from .constants import FATAL_CLOSE_CODES, NORMAL_CLOSE_CODES
from .crypto.aes import InvalidTag
from .crypto.curve import Curve25519Provider
from .crypto.frames import FrameHandler
from .exceptions import (
    BannedOrFatalServerError,
    ConnectionClosedError,
    ConnectTimeoutError,
    CryptoUnavailable,
    HandshakeError,
    PywawebError,
    StreamClosedError,
    TransportError,
)
from .handshake import HandshakeEngine, SessionKeys
from .socket_config import SocketConfig
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventEmitter

logger = logging.getLogger(__name__)

FrameCallback = Callable[[bytes], Awaitable[None]]
PostAuthHook = Callable[[], Awaitable[None]]
Pinger = Callable[[], Awaitable[Any]]

# Extra grace on top of the keep-alive interval before an idle link is dead.
IDLE_GRACE_S = 5.0
PING_RTT_HISTORY = 10


class ConnectionState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    RECONNECTING = "reconnecting"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    """Payload of every `connection.update` event."""

    state: ConnectionState
    timestamp: float
    reason: str | None = None
    error: BaseException | None = None
    attempt: int | None = None


@dataclass(slots=True)
class TransportMetrics:
    reconnect_count: int = 0
    frames_sent: int = 0
    frames_received: int = 0
    last_connected_at: float | None = None
    last_disconnected_at: float | None = None
    # keep-alive round trips, newest last
    ping_rtts_s: deque[float] = field(default_factory=lambda: deque(maxlen=PING_RTT_HISTORY))

    @property
    def last_ping_rtt_s(self) -> float | None:
        return self.ping_rtts_s[-1] if self.ping_rtts_s else None

    @property
    def average_ping_rtt_s(self) -> float | None:
        if not self.ping_rtts_s:
            return None
        return sum(self.ping_rtts_s) / len(self.ping_rtts_s)

    def record_ping(self, rtt_s: float) -> None:
        self.ping_rtts_s.append(rtt_s)


@dataclass(slots=True)
class ReconnectPolicy:
    """
    Exponential backoff with additive jitter:

        delay(n) = min(base * 2**(n-1) + uniform(0, jitter), max_delay)
    """

    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_s: float = 1.0
    max_attempts: int = 5
    rng: random.Random | None = None

    @classmethod
    def from_config(cls, config: SocketConfig, *, rng: random.Random | None = None) -> ReconnectPolicy:
        return cls(
            base_delay_s=config.reconnect_base_delay_s,
            max_delay_s=config.reconnect_max_delay_s,
            jitter_s=config.reconnect_jitter_s,
            max_attempts=config.max_reconnect_attempts,
            rng=rng,
        )

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # Cap the exponent; past ~60 doublings the cap always wins anyway.
        backoff = self.base_delay_s * 2 ** min(attempt - 1, 62)
        jitter = (self.rng or random).uniform(0, self.jitter_s) if self.jitter_s else 0.0
        return min(backoff + jitter, self.max_delay_s)


def _contact_from_payload(v: Any) -> Contact | None:
    if isinstance(v, dict) and v.get("id"):
        return Contact(id=str(v["id"]), name=v.get("name"), lid=v.get("lid"))
    if isinstance(v, str) and v:
        return Contact(id=v)
    return None


def credential_changes_from_server(payload: dict[str, Any]) -> dict[str, Any]:
    """Map the server-finish JSON onto `Credentials` fields."""

    changes: dict[str, Any] = {}
    for name in ("server_token", "client_token", "platform"):
        if payload.get(name):
            changes[name] = str(payload[name])
    me = _contact_from_payload(payload.get("me"))
    if me is not None:
        changes["me"] = me
    identity = payload.get("device_identity")
    if isinstance(identity, str) and identity:
        changes["device_identity"] = base64.b64decode(identity)
    return changes


class Transport:
    """
    Owns one logical session over successive physical connections.

    State machine:

        CLOSED -> CONNECTING -> CONNECTED -> AUTHENTICATING -> AUTHENTICATED -> READY
        any    -> RECONNECTING -> CONNECTING ...       (stream lost, policy allows)
        any    -> DISCONNECTING -> CLOSED              (disconnect())
        any    -> CLOSED                               (fatal close / attempts exhausted)

    Every transition emits `connection.update` with a `ConnectionUpdate`.
    Each physical connection gets a fresh handshake; its frames are handed to
    `on_frame` in arrival order.
    """

    def __init__(
        self,
        config: SocketConfig,
        *,
        credentials: CredentialStore,
        stream_factory: StreamFactory = open_websocket_stream,
        events: AsyncEventEmitter | None = None,
        curve: Curve25519Provider | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.events = events or AsyncEventEmitter()
        self.policy = reconnect_policy or ReconnectPolicy.from_config(config)
        self.metrics = TransportMetrics()

        self.on_frame: FrameCallback | None = None
        self.post_auth: PostAuthHook | None = None
        self.pinger: Pinger | None = None

        self._stream_factory = stream_factory
        self._curve = curve

        self.state = ConnectionState.CLOSED
        self.fatal_error: BannedOrFatalServerError | None = None
        self.session_keys: SessionKeys | None = None
        self.server_payload: dict[str, Any] | None = None

        self._stream: DuplexStream | None = None
        self._frames: FrameHandler | None = None
        # Bumped on every teardown; loops of an older connection see the
        # mismatch and exit.
        self._generation = 0
        self._last_recv = 0.0
        self._closing = False
        self._establishing = False

        self._send_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._recv_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._establish_task: asyncio.Task[None] | None = None

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def generation(self) -> int:
        """Identifies the current physical connection; changes on every teardown."""

        return self._generation

    def _is_stale(self, generation: int | None, what: str) -> bool:
        if generation is None or generation == self._generation:
            return False
        logger.debug("ignoring %s for connection %d (now %d)", what, generation, self._generation)
        return True

    async def _set_state(
        self,
        state: ConnectionState,
        *,
        reason: str | None = None,
        error: BaseException | None = None,
        attempt: int | None = None,
    ) -> None:
        if state is self.state and reason is None and error is None:
            return
        prev, self.state = self.state, state
        if error is not None:
            logger.info("connection %s -> %s (%s)", prev.value, state.value, error)
        else:
            logger.info("connection %s -> %s", prev.value, state.value)
        await self.events.emit(
            "connection.update",
            ConnectionUpdate(
                state=state, timestamp=time.time(), reason=reason, error=error, attempt=attempt
            ),
        )

    async def wait_for_state(self, state: ConnectionState, *, timeout_s: float | None = None) -> None:
        if self.state is state:
            return
        await self.events.wait_for(
            "connection.update", predicate=lambda u: u.state is state, timeout_s=timeout_s
        )

    # -- public API ----------------------------------------------------------

    async def connect(self) -> None:
        """
        Open a connection and run it up to READY.

        Bounded by `connect_timeout_s` as a whole, independent of the
        per-message handshake timeout. On failure the transport ends in CLOSED
        and the error is raised.
        """

        async with self._connect_lock:
            if self.state is ConnectionState.READY:
                return
            if self.state is not ConnectionState.CLOSED or self._reconnect_task is not None:
                raise TransportError(f"connect() called while {self.state.value}")
            self._closing = False
            self.fatal_error = None

            self._establish_task = ensure_task(self._establish(), name="pywaweb.establish")
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._establish_task), timeout=self.config.connect_timeout_s
                )
            except asyncio.TimeoutError as e:
                await cancel_suppress(self._establish_task)
                err = ConnectTimeoutError(f"session not ready after {self.config.connect_timeout_s}s")
                await self._abort(err)
                raise err from e
            except asyncio.CancelledError:
                if self._closing:
                    raise ConnectionClosedError("disconnected while connecting") from None
                await cancel_suppress(self._establish_task)
                raise
            except (PywawebError, OSError) as e:
                await self._abort(e)
                if self.fatal_error is not None and e is not self.fatal_error:
                    raise self.fatal_error from e
                raise
            finally:
                self._establish_task = None

    async def disconnect(
        self, reason: str = "disconnected", *, error: BaseException | None = None
    ) -> None:
        """
        Close the session. Safe to call in any state, including twice.

        Pending queries are rejected as soon as DISCONNECTING is emitted.
        """

        if self.state is ConnectionState.CLOSED and self._reconnect_task is None:
            return
        self._closing = True
        await self._set_state(ConnectionState.DISCONNECTING, reason=reason)
        await cancel_suppress(self._reconnect_task)
        self._reconnect_task = None
        await cancel_suppress(self._establish_task)
        await self._teardown(reason)
        await self._set_state(ConnectionState.CLOSED, reason=reason, error=error)

    async def send(self, payload: bytes) -> None:
        """Encrypt and write one payload. Wire order equals call order."""

        async with self._send_lock:
            stream, frames, gen = self._stream, self._frames, self._generation
            if stream is None or frames is None or not frames.transport_ready:
                raise ConnectionClosedError(f"cannot send while {self.state.value}")
            try:
                frame = frames.encode_frame(payload)
            except TransportError as e:
                # Counter exhausted: this connection can never send again.
                ensure_task(self._connection_lost(gen, e, None), name="pywaweb.connection_lost")
                raise
            await stream.send(frame)
            self.metrics.frames_sent += 1

    async def request_restart(
        self, reason: str = "restart required", *, generation: int | None = None
    ) -> None:
        """
        Drop the current connection and reconnect without backoff.

        With `generation`, only if that connection is still the current one;
        the same holds for `fail_connection` and `terminate`.
        """

        if self._is_stale(generation, "restart"):
            return
        await self._connection_lost(self._generation, TransportError(reason), None, immediate=True)

    async def fail_connection(self, error: BaseException, *, generation: int | None = None) -> None:
        """Treat the current connection as dead and run the reconnect policy."""

        if self._is_stale(generation, "failure"):
            return
        await self._connection_lost(self._generation, error, None)

    async def terminate(
        self, error: BannedOrFatalServerError, *, generation: int | None = None
    ) -> None:
        """End the session for good; no reconnect."""

        if self._is_stale(generation, "fatal error"):
            return
        self.fatal_error = error
        await self._close_for_good(error.reason or "fatal server error", error)

    # -- connection lifecycle ------------------------------------------------

    async def _establish(self) -> None:
        gen = self._generation
        self._establishing = True
        try:
            await self._establish_inner(gen)
        except StreamClosedError as e:
            if gen != self._generation:
                raise ConnectionClosedError("connection was torn down") from e
            if e.code in FATAL_CLOSE_CODES:
                self.fatal_error = BannedOrFatalServerError(e.code, e.reason)
                raise self.fatal_error from e
            raise
        finally:
            self._establishing = False

    async def _establish_inner(self, gen: int) -> None:
        await self._set_state(ConnectionState.CONNECTING)
        stream = await self._stream_factory(
            self.config.ws_url, self.config.headers, self.config.connect_timeout_s
        )
        if gen != self._generation or self._closing:
            await stream.close()
            raise ConnectionClosedError("connection superseded while opening")

        self._stream = stream
        self._frames = FrameHandler()
        self._last_recv = time.monotonic()
        await self._set_state(ConnectionState.CONNECTED)
        self._keepalive_task = ensure_task(self._keepalive_loop(gen), name="pywaweb.keepalive")

        await self._set_state(ConnectionState.AUTHENTICATING)
        await self._handshake(stream, self._frames)
        await self._set_state(ConnectionState.AUTHENTICATED)

        self._recv_task = ensure_task(self._recv_loop(gen, stream, self._frames), name="pywaweb.recv")
        if self.post_auth is not None:
            await self.post_auth()
        if gen != self._generation:
            raise ConnectionClosedError("connection lost during post-auth setup")

        self.metrics.last_connected_at = time.time()
        await self._set_state(ConnectionState.READY)

    async def _handshake(self, stream: DuplexStream, frames: FrameHandler) -> None:
        store = self.credentials
        spk = store.key_store.refresh_signed_pre_key_if_expired()
        if spk is not store.credentials.signed_pre_key:
            await store.update(signed_pre_key=spk)

        engine = HandshakeEngine(curve=self._curve)
        await stream.send(frames.encode_frame(engine.create_client_hello()))
        engine.process_server_hello(await self._read_handshake_frame(stream, frames))
        await stream.send(frames.encode_frame(engine.create_client_finish(store.credentials)))
        keys = engine.process_server_finish(await self._read_handshake_frame(stream, frames))

        frames.install_keys(send_key=keys.client_app_key, recv_key=keys.server_app_key)
        self.session_keys = keys
        self.server_payload = engine.server_payload or {}

        changes = credential_changes_from_server(self.server_payload)
        if changes:
            await store.update(**changes)
        await store.persist()

    async def _read_handshake_frame(self, stream: DuplexStream, frames: FrameHandler) -> bytes:
        timeout = self.config.handshake_timeout_s
        while (frame := frames.next_frame()) is None:
            try:
                data = await asyncio.wait_for(stream.recv(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise TransportError(f"no handshake message within {timeout}s") from e
            self._last_recv = time.monotonic()
            frames.feed(data)
        return frame

    async def _teardown(self, reason: str, *, code: int = 1000) -> None:
        self._generation += 1
        stream = self._stream
        self._stream = None
        self._frames = None
        self.session_keys = None

        await cancel_suppress(self._keepalive_task)
        await cancel_suppress(self._recv_task)
        self._keepalive_task = None
        self._recv_task = None

        if stream is not None:
            self.metrics.last_disconnected_at = time.time()
            await stream.close(code, reason)
            await self.events.emit("transport.closed", reason)

    async def _abort(self, error: BaseException) -> None:
        await self._teardown("connect failed")
        if self.state is not ConnectionState.CLOSED:
            await self._set_state(ConnectionState.CLOSED, reason="connect failed", error=error)

    async def _close_for_good(self, reason: str, error: BaseException | None) -> None:
        self._closing = True
        await cancel_suppress(self._reconnect_task)
        self._reconnect_task = None
        await self._teardown(reason)
        await self._set_state(ConnectionState.CLOSED, reason=reason, error=error)

    async def _connection_lost(
        self,
        gen: int,
        error: BaseException,
        code: int | None,
        *,
        immediate: bool = False,
    ) -> None:
        if gen != self._generation or self._closing:
            return
        if self.state in (ConnectionState.CLOSED, ConnectionState.DISCONNECTING):
            return

        if code in NORMAL_CLOSE_CODES:
            await self._close_for_good("closed by server", error)
            return
        if code in FATAL_CLOSE_CODES:
            reason = error.reason if isinstance(error, StreamClosedError) else ""
            await self.terminate(BannedOrFatalServerError(code, reason))
            return

        logger.warning("connection lost: %s", error)
        await self._teardown("connection lost")
        if self._establishing:
            # The in-flight connect/reconnect attempt sees the dead stream and fails on its own.
            return
        if self._reconnect_task is None:
            self._reconnect_task = ensure_task(
                self._reconnect_loop(error, immediate=immediate), name="pywaweb.reconnect"
            )

    async def _reconnect_loop(self, error: BaseException, *, immediate: bool) -> None:
        last: BaseException = error
        try:
            for attempt in range(1, self.policy.max_attempts + 1):
                await self._set_state(
                    ConnectionState.RECONNECTING, reason="connection lost", error=last, attempt=attempt
                )
                delay = 0.0 if immediate and attempt == 1 else self.policy.delay(attempt)
                logger.info("reconnect attempt %d in %.2fs", attempt, delay)
                await asyncio.sleep(delay)
                if self._closing:
                    return
                try:
                    await asyncio.wait_for(self._establish(), timeout=self.config.connect_timeout_s)
                except (BannedOrFatalServerError, CryptoUnavailable) as e:
                    self._reconnect_task = None
                    await self._close_for_good(str(e), e)
                    return
                except (PywawebError, OSError, asyncio.TimeoutError) as e:
                    if self._closing:
                        return
                    if isinstance(e, StreamClosedError) and e.code in NORMAL_CLOSE_CODES:
                        self._reconnect_task = None
                        await self._close_for_good("closed by server", e)
                        return
                    logger.warning("reconnect attempt %d failed: %s", attempt, e)
                    last = e
                    await self._teardown("reconnect failed")
                    continue
                self.metrics.reconnect_count += 1
                return

            self._reconnect_task = None
            await self._close_for_good(
                "reconnect attempts exhausted",
                ConnectionClosedError(f"gave up after {self.policy.max_attempts} attempts: {last}"),
            )
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # -- per-connection loops -----------------------------------------------

    async def _recv_loop(self, gen: int, stream: DuplexStream, frames: FrameHandler) -> None:
        while gen == self._generation:
            try:
                data = await stream.recv()
            except StreamClosedError as e:
                await self._connection_lost(gen, e, e.code)
                return
            except TransportError as e:
                await self._connection_lost(gen, e, None)
                return

            self._last_recv = time.monotonic()
            frames.feed(data)
            while gen == self._generation:
                try:
                    payload = frames.next_frame()
                except InvalidTag:
                    await self._connection_lost(gen, TransportError("frame failed authentication"), None)
                    return
                except TransportError as e:
                    await self._connection_lost(gen, e, None)
                    return
                if payload is None:
                    break
                self.metrics.frames_received += 1
                if self.on_frame is not None:
                    try:
                        await self.on_frame(payload)
                    except Exception:
                        logger.exception("frame handler failed")

    async def _keepalive_loop(self, gen: int) -> None:
        interval = self.config.keep_alive_interval_s
        while gen == self._generation:
            await asyncio.sleep(interval)
            if gen != self._generation:
                return

            idle = time.monotonic() - self._last_recv
            if idle > interval + IDLE_GRACE_S:
                await self._connection_lost(gen, TransportError(f"nothing received for {idle:.1f}s"), None)
                return

            if self.state is not ConnectionState.READY or self.pinger is None:
                continue
            started = time.monotonic()
            try:
                await asyncio.wait_for(self.pinger(), timeout=self.config.pong_timeout_s)
            except ConnectionClosedError:
                return
            except (asyncio.TimeoutError, PywawebError) as e:
                await self._connection_lost(gen, TransportError(f"keep-alive ping failed: {e}"), None)
                return
            rtt = time.monotonic() - started
            self.metrics.record_ping(rtt)
            logger.debug("keep-alive rtt %.3fs", rtt)
