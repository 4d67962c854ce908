from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable
from typing import Any

from .auth.creds import Contact, Credentials, SignedPreKey
from .auth.keys import KeyStore
from .auth.store import CredentialStorage, CredentialStore, MemoryCredentialStorage
from .connection.stream import StreamFactory
from .connection.websocket import open_websocket_stream
from .constants import (
    BANNED_CODE,
    CONNECTION_REPLACED_CODE,
    KEY_BUNDLE_TYPE,
    LOGGED_OUT_CODE,
    RESTART_REQUIRED_CODE,
    S_WHATSAPP_NET,
)
from .crypto.curve import Curve25519Provider
from .dispatcher import NodeDispatcher, NodeHandler
from .exceptions import (
    AuthError,
    BannedOrFatalServerError,
    ConnectionClosedError,
    PairingExhaustedError,
    ProtocolError,
    QueryTimeoutError,
    TransportError,
)
from .pairing import PairingCode, PairingController
from .socket_config import SocketConfig
from .transport import ConnectionState, Transport
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventEmitter, Listener
from .wabinary import (
    BinaryNode,
    get_binary_node_child,
    get_binary_node_child_bytes,
    get_binary_node_children,
)

logger = logging.getLogger(__name__)

# Server pre-key counts at or below this trigger an upload.
MIN_PRE_KEYS_ON_SERVER = 10


def _int_attr(node: BinaryNode | None, name: str) -> int | None:
    if node is None:
        return None
    raw = node.attrs.get(name)
    return int(raw) if raw and raw.isdigit() else None


def _text(content: Any) -> str | None:
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    if isinstance(content, str):
        return content
    return None


def _skey_node(spk: SignedPreKey) -> BinaryNode:
    return BinaryNode(
        tag="skey",
        content=[
            BinaryNode(tag="id", content=spk.key_id.to_bytes(3, "big")),
            BinaryNode(tag="value", content=spk.key_pair.public),
            BinaryNode(tag="signature", content=spk.signature),
        ],
    )


class WASocket:
    """
    One client session: credentials, transport, node dispatch and pairing.

    Events (via `on()`): `connection.update`, `node.received`,
    `credentials.updated`, `qr.generated`, `pairing.code.generated` and
    `node.outgoing`.
    """

    def __init__(
        self,
        *,
        config: SocketConfig | None = None,
        storage: CredentialStorage | None = None,
        stream_factory: StreamFactory = open_websocket_stream,
        curve: Curve25519Provider | None = None,
    ) -> None:
        self.config = config or SocketConfig()
        self.events = AsyncEventEmitter()

        self.key_store = KeyStore(
            curve=curve,
            pre_key_count=self.config.pre_key_count,
            signed_pre_key_lifetime_s=self.config.signed_pre_key_lifetime_s,
        )
        self.credentials = CredentialStore(
            storage or MemoryCredentialStorage(), key_store=self.key_store, events=self.events
        )
        self.transport = Transport(
            self.config,
            credentials=self.credentials,
            stream_factory=stream_factory,
            events=self.events,
            curve=curve,
        )
        self.dispatcher = NodeDispatcher(self.transport, events=self.events)
        self.pairing = PairingController(
            self.credentials,
            events=self.events,
            qr_timeout_s=self.config.qr_timeout_s,
            qr_max_retries=self.config.qr_max_retries,
            pairing_code_timeout_s=self.config.pairing_code_timeout_s,
            max_failed_attempts=self.config.pairing_max_failed_attempts,
            lockout_s=self.config.pairing_lockout_s,
        )

        self.transport.post_auth = self._after_auth
        self._qr_task: asyncio.Task[None] | None = None
        self._initialized = False
        self._install_default_handlers()

    @property
    def state(self) -> ConnectionState:
        return self.transport.state

    @property
    def creds(self) -> Credentials:
        return self.credentials.credentials

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self.events.off(event, listener)

    def register_handler(self, tag: str, handler: NodeHandler) -> None:
        self.dispatcher.register_handler(tag, handler)

    def unregister_handler(self, tag: str) -> None:
        self.dispatcher.unregister_handler(tag)

    async def connect(self) -> None:
        if not self._initialized or self.creds.identity_key_pair is None:
            await self.credentials.initialize()
            self._initialized = True
        await self.transport.connect()

    async def disconnect(self) -> None:
        await cancel_suppress(self._qr_task)
        self._qr_task = None
        await self.transport.disconnect()
        await self.credentials.persist()

    async def logout(self) -> None:
        """Unlink this device, wipe the credentials and close the session."""

        me = self.creds.me
        if me is not None and self.transport.is_ready:
            with contextlib.suppress(ProtocolError, QueryTimeoutError, ConnectionClosedError):
                await self.query(
                    BinaryNode(
                        tag="iq",
                        attrs={"to": S_WHATSAPP_NET, "type": "set", "xmlns": "md"},
                        content=[
                            BinaryNode(
                                tag="remove-companion-device",
                                attrs={"jid": me.id, "reason": "user_initiated"},
                            )
                        ],
                    )
                )
        await self.credentials.clear()
        self._initialized = False
        await cancel_suppress(self._qr_task)
        self._qr_task = None
        await self.transport.disconnect("logged out")

    async def send_node(self, node: BinaryNode) -> None:
        await self.dispatcher.send(node)

    async def query(self, node: BinaryNode, *, timeout_s: float | None = None) -> BinaryNode:
        return await self.dispatcher.query(node, timeout_s=timeout_s)

    async def request_pairing_code(self, phone_number: str) -> PairingCode:
        """
        Issue a pairing code for `phone_number` and announce it to the server.

        The code is returned (and emitted) even when the session is not ready
        yet; the companion registration iq is only sent on a READY session.
        """

        pc = await self.pairing.generate_code(phone_number)
        await cancel_suppress(self._qr_task)
        self._qr_task = None

        ident = self.creds.identity_key_pair
        if self.transport.is_ready and ident is not None:
            await self.query(
                BinaryNode(
                    tag="iq",
                    attrs={"to": S_WHATSAPP_NET, "type": "set", "xmlns": "md"},
                    content=[
                        BinaryNode(
                            tag="link_code_companion_reg",
                            attrs={
                                "jid": f"{pc.phone_number}@{S_WHATSAPP_NET}",
                                "stage": "companion_hello",
                            },
                            content=[
                                BinaryNode(tag="companion_server_auth_key_pub", content=ident.public),
                                BinaryNode(tag="companion_platform_id", content=b"1"),
                                BinaryNode(tag="companion_platform_display", content=b"pywaweb"),
                            ],
                        )
                    ],
                )
            )
        return pc

    # -- post-auth -----------------------------------------------------------

    async def _after_auth(self) -> None:
        # A dropped connection (ConnectionClosedError) fails the attempt; a
        # refused or unanswered setup query does not.
        try:
            await self._send_passive_iq("active")
            if self.credentials.is_paired():
                await self.upload_pre_keys_if_required()
        except (ProtocolError, QueryTimeoutError) as e:
            logger.warning("post-auth setup incomplete: %s", e)

    async def _send_passive_iq(self, tag: str) -> None:
        await self.query(
            BinaryNode(
                tag="iq",
                attrs={"to": S_WHATSAPP_NET, "xmlns": "passive", "type": "set"},
                content=[BinaryNode(tag=tag)],
            )
        )

    async def _get_pre_key_count_on_server(self) -> int:
        res = await self.query(
            BinaryNode(
                tag="iq",
                attrs={"to": S_WHATSAPP_NET, "xmlns": "encrypt", "type": "get"},
                content=[BinaryNode(tag="count")],
            )
        )
        return _int_attr(get_binary_node_child(res, "count"), "value") or 0

    async def upload_pre_keys_if_required(self) -> int:
        """
        Upload the local pre-key pool when the server is running low.

        A signed pre-key the server has not acknowledged yet (it rotated since
        the last upload) is announced with a `rotate` iq instead. Returns the
        number of one-time pre-keys uploaded.
        """

        on_server = await self._get_pre_key_count_on_server()
        if on_server <= MIN_PRE_KEYS_ON_SERVER:
            if self.key_store.replenish_pre_keys():
                # private halves hit storage before the public ones reach the server
                self.credentials.mark_dirty()
                await self.credentials.persist()
            return await self._upload_pre_keys()

        spk = self.creds.signed_pre_key
        if spk is not None and spk.key_id != self.creds.uploaded_signed_pre_key_id:
            await self._rotate_signed_pre_key()
        return 0

    async def _rotate_signed_pre_key(self) -> None:
        spk = self.creds.signed_pre_key
        if spk is None:
            raise AuthError("credentials are not initialized")
        await self.query(
            BinaryNode(
                tag="iq",
                attrs={"to": S_WHATSAPP_NET, "xmlns": "encrypt", "type": "set"},
                content=[BinaryNode(tag="rotate", content=[_skey_node(spk)])],
            )
        )
        logger.info("announced signed pre-key %d", spk.key_id)
        await self.credentials.update(uploaded_signed_pre_key_id=spk.key_id)
        await self.credentials.persist()

    async def _upload_pre_keys(self) -> int:
        creds = self.creds
        spk = creds.signed_pre_key
        if creds.identity_key_pair is None or spk is None or creds.registration_id is None:
            raise AuthError("credentials are not initialized")

        keys = self.key_store.pre_keys.items()
        node = BinaryNode(
            tag="iq",
            attrs={"to": S_WHATSAPP_NET, "xmlns": "encrypt", "type": "set"},
            content=[
                BinaryNode(tag="registration", content=creds.registration_id.to_bytes(4, "big")),
                BinaryNode(tag="type", content=KEY_BUNDLE_TYPE),
                BinaryNode(tag="identity", content=creds.identity_key_pair.public),
                BinaryNode(
                    tag="list",
                    content=[
                        BinaryNode(
                            tag="key",
                            content=[
                                BinaryNode(tag="id", content=key_id.to_bytes(3, "big")),
                                BinaryNode(tag="value", content=kp.public),
                            ],
                        )
                        for key_id, kp in sorted(keys)
                    ],
                ),
                _skey_node(spk),
            ],
        )
        await self.query(node)
        logger.info("uploaded %d pre-keys", len(keys))
        await self.credentials.update(uploaded_signed_pre_key_id=spk.key_id)
        await self.credentials.persist()
        return len(keys)

    # -- built-in handlers ---------------------------------------------------

    def _install_default_handlers(self) -> None:
        self.register_handler("iq", self._on_iq)
        self.register_handler("stream:error", self._on_stream_error)
        self.register_handler("failure", self._on_failure)
        self.register_handler("success", self._on_success)

    async def _on_iq(self, stanza: BinaryNode) -> None:
        typ = stanza.attrs.get("type")
        if typ == "get" and stanza.attrs.get("xmlns") == "urn:xmpp:ping":
            await self._ack_iq(stanza)
        elif typ == "set" and get_binary_node_child(stanza, "pair-device") is not None:
            await self._on_pair_device(stanza)
        elif get_binary_node_child(stanza, "pair-success") is not None:
            await self._on_pair_success(stanza)
        else:
            await self.events.emit("node.received", stanza)

    async def _ack_iq(self, stanza: BinaryNode) -> None:
        attrs = {"to": stanza.attrs.get("from") or S_WHATSAPP_NET, "type": "result"}
        if stanza.attrs.get("id"):
            attrs["id"] = stanza.attrs["id"]
        # A reply to the server is a courtesy; the connection may already be gone.
        with contextlib.suppress(ConnectionClosedError, TransportError):
            await self.send_node(BinaryNode(tag="iq", attrs=attrs))

    async def _on_pair_device(self, stanza: BinaryNode) -> None:
        await self._ack_iq(stanza)

        pair_device = get_binary_node_child(stanza, "pair-device")
        refs = [r for r in (_text(n.content) for n in get_binary_node_children(pair_device, "ref")) if r]
        await cancel_suppress(self._qr_task)
        self.pairing.reset()
        self._qr_task = ensure_task(self._rotate_qr(refs), name="pywaweb.qr_rotate")

    async def _rotate_qr(self, refs: list[str]) -> None:
        try:
            for i, ref in enumerate(refs):
                if i == 0:
                    await self.pairing.generate_challenge(ref)
                else:
                    await self.pairing.refresh(ref)
                await asyncio.sleep(self.config.qr_timeout_s)
            raise PairingExhaustedError(f"all {len(refs)} QR references expired unscanned")
        except PairingExhaustedError as e:
            logger.warning("pairing abandoned: %s", e)
            self._qr_task = None
            await self.transport.disconnect("pairing exhausted", error=e)

    async def _on_pair_success(self, stanza: BinaryNode) -> None:
        pair = get_binary_node_child(stanza, "pair-success")
        device = get_binary_node_child(pair, "device")
        platform = get_binary_node_child(pair, "platform")
        jid = device.attrs.get("jid") if device is not None else None
        if not jid:
            logger.warning("pair-success without a device jid")
            return

        await cancel_suppress(self._qr_task)
        self._qr_task = None
        self.pairing.complete()

        changes: dict[str, Any] = {"me": Contact(id=jid, lid=device.attrs.get("lid"))}
        if platform is not None and platform.attrs.get("name"):
            changes["platform"] = platform.attrs["name"]
        identity = get_binary_node_child_bytes(pair, "device-identity")
        if identity:
            changes["device_identity"] = identity
        await self.credentials.update(**changes)
        await self.credentials.persist()
        logger.info("paired as %s", jid)
        await self._ack_iq(stanza)

    async def _on_success(self, stanza: BinaryNode) -> None:
        await cancel_suppress(self._qr_task)
        self._qr_task = None

        changes: dict[str, Any] = {}
        t = _int_attr(stanza, "t")
        if t is not None:
            changes["last_sync_timestamp"] = t
        me = self.creds.me
        lid = stanza.attrs.get("lid")
        if me is not None and lid and me.lid != lid:
            changes["me"] = Contact(id=me.id, name=me.name, lid=lid)
        if changes:
            await self.credentials.update(**changes)
            await self.credentials.persist()

    def _on_stream_error(self, stanza: BinaryNode) -> Awaitable[None]:
        # generation of the connection the stanza arrived on
        return self._handle_stream_error(stanza, self.transport.generation)

    async def _handle_stream_error(self, stanza: BinaryNode, gen: int) -> None:
        code = _int_attr(stanza, "code")
        if code is None and isinstance(stanza.content, list) and stanza.content:
            code = _int_attr(stanza.content[0], "code")

        if code == RESTART_REQUIRED_CODE:
            await self.transport.request_restart(generation=gen)
            return
        if code in (LOGGED_OUT_CODE, BANNED_CODE):
            await self.transport.terminate(
                BannedOrFatalServerError(code, "stream error"), generation=gen
            )
            return
        conflict = get_binary_node_child(stanza, "conflict")
        if conflict is not None:
            await self.transport.terminate(
                BannedOrFatalServerError(
                    CONNECTION_REPLACED_CODE, conflict.attrs.get("type") or "conflict"
                ),
                generation=gen,
            )
            return
        await self.transport.fail_connection(
            TransportError(f"stream error (code={code})"), generation=gen
        )

    def _on_failure(self, stanza: BinaryNode) -> Awaitable[None]:
        return self._handle_failure(stanza, self.transport.generation)

    async def _handle_failure(self, stanza: BinaryNode, gen: int) -> None:
        code = _int_attr(stanza, "reason") or _int_attr(stanza, "code")
        if code in (LOGGED_OUT_CODE, BANNED_CODE):
            await self.transport.terminate(
                BannedOrFatalServerError(code, "login failure"), generation=gen
            )
            return
        await self.transport.fail_connection(
            TransportError(f"server failure (reason={code})"), generation=gen
        )
