from __future__ import annotations

import asyncio

import pytest
from fakes import FakeServer, default_responder, result_for

from pywaweb.auth.store import MemoryCredentialStorage
from pywaweb.exceptions import (
    BannedOrFatalServerError,
    ConnectionClosedError,
    ConnectTimeoutError,
    HandshakeError,
    HandshakeErrorReason,
)
from pywaweb.socket import WASocket
from pywaweb.socket_config import SocketConfig
from pywaweb.transport import ConnectionState, ConnectionUpdate
from pywaweb.util import json as bufferjson
from pywaweb.wabinary import (
    BinaryNode,
    get_binary_node_child,
    get_binary_node_child_bytes,
    get_binary_node_children,
)

PAIRED = {
    "server_token": "server-tok",
    "client_token": "client-tok",
    "me": {"id": "15550109999:1@s.whatsapp.net"},
    "platform": "web",
}


def _config(**kwargs) -> SocketConfig:
    defaults = dict(
        connect_timeout_s=5.0,
        handshake_timeout_s=2.0,
        query_timeout_s=1.0,
        reconnect_base_delay_s=0.01,
        reconnect_max_delay_s=0.05,
        reconnect_jitter_s=0.0,
        max_reconnect_attempts=3,
        pre_key_count=5,
    )
    defaults.update(kwargs)
    return SocketConfig(**defaults)


async def _open(server: FakeServer, **kwargs) -> tuple[WASocket, list[ConnectionUpdate]]:
    sock = WASocket(config=_config(**kwargs), stream_factory=server.stream_factory)
    updates: list[ConnectionUpdate] = []
    sock.on("connection.update", updates.append)
    await sock.connect()
    return sock, updates


def _ready(u: ConnectionUpdate) -> bool:
    return u.state is ConnectionState.READY


def _closed(u: ConnectionUpdate) -> bool:
    return u.state is ConnectionState.CLOSED


async def _eventually(cond, timeout_s: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not cond():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_connect_walks_the_state_machine_and_answers_queries() -> None:
    server = FakeServer()
    sock, updates = await _open(server)
    try:
        assert sock.state is ConnectionState.READY
        assert [u.state for u in updates] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.AUTHENTICATING,
            ConnectionState.AUTHENTICATED,
            ConnectionState.READY,
        ]
        # post-auth: the passive iq went out before READY
        passive = await server.last.wait_node(lambda n: n.attrs.get("xmlns") == "passive")
        assert get_binary_node_child(passive, "active") is not None

        res = await sock.dispatcher.ping()
        assert res.attrs["type"] == "result"

        res = await sock.query(
            BinaryNode(tag="iq", attrs={"to": "s.whatsapp.net", "type": "get", "xmlns": "w:p"})
        )
        assert res.attrs["type"] == "result"
    finally:
        await sock.disconnect()
        await server.close()

    assert sock.state is ConnectionState.CLOSED
    assert server.last.stream.is_open is False


@pytest.mark.asyncio
async def test_abnormal_close_reconnects_to_ready() -> None:
    server = FakeServer()
    sock, updates = await _open(server)
    try:
        first_keys = sock.transport.session_keys
        ready = sock.events.wait_for_future("connection.update", predicate=_ready)

        await server.last.drop(1006)
        await asyncio.wait_for(ready, timeout=2.0)

        states = [u.state for u in updates]
        assert ConnectionState.RECONNECTING in states
        assert len(server.connections) == 2
        await _eventually(lambda: sock.transport.metrics.reconnect_count == 1)
        # every physical connection gets its own handshake
        assert sock.transport.session_keys != first_keys

        res = await sock.dispatcher.ping()
        assert res.attrs["type"] == "result"
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_missed_pong_forces_a_reconnect() -> None:
    def no_pongs(node: BinaryNode) -> BinaryNode | None:
        if node.attrs.get("xmlns") == "w:p":
            return None
        return default_responder(node)

    server = FakeServer(responder=no_pongs)
    sock, updates = await _open(server, keep_alive_interval_s=0.1, pong_timeout_s=0.05)
    try:
        await _eventually(lambda: len(server.connections) >= 2)
        await _eventually(lambda: sock.state is ConnectionState.READY)

        assert ConnectionState.RECONNECTING in [u.state for u in updates]
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_banned_close_code_terminates_without_reconnect() -> None:
    server = FakeServer()
    sock, updates = await _open(server)
    try:
        closed = sock.events.wait_for_future("connection.update", predicate=_closed)

        await server.last.drop(4403, "banned")
        update = await asyncio.wait_for(closed, timeout=2.0)

        assert isinstance(update.error, BannedOrFatalServerError)
        assert update.error.code == 4403
        assert sock.transport.fatal_error is update.error
        assert ConnectionState.RECONNECTING not in [u.state for u in updates]
        await asyncio.sleep(0.1)
        assert len(server.connections) == 1
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_normal_close_code_does_not_reconnect() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        await server.last.drop(1000)
        await sock.transport.wait_for_state(ConnectionState.CLOSED, timeout_s=2.0)

        assert sock.transport.fatal_error is None
        await asyncio.sleep(0.1)
        assert len(server.connections) == 1
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_connect_against_a_banning_server_raises() -> None:
    server = FakeServer()
    server.refuse_with = 4403
    sock = WASocket(config=_config(), stream_factory=server.stream_factory)
    try:
        with pytest.raises(BannedOrFatalServerError):
            await sock.connect()
        assert sock.state is ConnectionState.CLOSED
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_pending_query_fails_when_the_session_closes() -> None:
    server = FakeServer(responder=lambda node: None)
    sock = WASocket(config=_config(query_timeout_s=0.2), stream_factory=server.stream_factory)
    try:
        # the unanswered passive iq times out, which does not block READY
        await sock.connect()
        assert sock.state is ConnectionState.READY

        ping = BinaryNode(tag="iq", attrs={"type": "get", "xmlns": "w:p"})
        task = asyncio.create_task(sock.query(ping, timeout_s=5.0))
        await server.last.wait_node(lambda n: n.attrs.get("xmlns") == "w:p")
        await sock.disconnect()

        with pytest.raises(ConnectionClosedError):
            await task
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_server_ping_gets_an_automatic_reply() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        await server.last.send_node(
            BinaryNode(
                tag="iq",
                attrs={"id": "srv-ping-1", "type": "get", "xmlns": "urn:xmpp:ping", "from": "s.whatsapp.net"},
            )
        )
        reply = await server.last.wait_node(lambda n: n.attrs.get("id") == "srv-ping-1")
        assert reply.tag == "iq"
        assert reply.attrs["type"] == "result"
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_unknown_nodes_are_emitted() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        got = sock.events.wait_for_future("node.received")
        await server.last.send_node(BinaryNode(tag="notification", attrs={"type": "devices"}))
        node = await asyncio.wait_for(got, timeout=2.0)
        assert node.tag == "notification"
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_restart_required_reconnects_immediately() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        ready = sock.events.wait_for_future("connection.update", predicate=_ready)
        await server.last.send_node(BinaryNode(tag="stream:error", attrs={"code": "515"}))
        await asyncio.wait_for(ready, timeout=2.0)

        assert len(server.connections) == 2
        assert sock.state is ConnectionState.READY
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_stream_error_conflict_is_fatal() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        closed = sock.events.wait_for_future("connection.update", predicate=_closed)
        await server.last.send_node(
            BinaryNode(tag="stream:error", content=[BinaryNode(tag="conflict", attrs={"type": "replaced"})])
        )
        update = await asyncio.wait_for(closed, timeout=2.0)

        assert isinstance(update.error, BannedOrFatalServerError)
        assert update.error.code == 440
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_paired_session_persists_tokens_and_uploads_pre_keys() -> None:
    storage = MemoryCredentialStorage()
    server = FakeServer(finish_payload=PAIRED)
    sock = WASocket(config=_config(), storage=storage, stream_factory=server.stream_factory)
    try:
        await sock.connect()
        # the pairing result arrives in the server finish
        assert sock.credentials.is_paired()
        assert sock.creds.me is not None and sock.creds.me.id == PAIRED["me"]["id"]
        assert b"server-tok" in storage.data

        # a paired session checks the server count and uploads its pool before READY
        await server.last.wait_node(
            lambda n: n.attrs.get("xmlns") == "encrypt" and n.attrs.get("type") == "get"
        )
        upload = await server.last.wait_node(
            lambda n: n.attrs.get("xmlns") == "encrypt" and n.attrs.get("type") == "set"
        )
        keys = get_binary_node_children(get_binary_node_child(upload, "list"), "key")
        assert len(keys) == 5
        skey = get_binary_node_child(upload, "skey")
        assert get_binary_node_child(skey, "signature") is not None
        assert len(sock.key_store.pre_keys) == 5

        doc = bufferjson.loads(storage.data)
        stored_ids = sorted(p["key_id"] for p in doc["pre_keys"])
        assert stored_ids == sorted(k for k, _ in sock.key_store.pre_keys.items())
        assert doc["creds"]["uploaded_signed_pre_key_id"] == sock.creds.signed_pre_key.key_id
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_pair_device_rotates_qr_and_pair_success_stores_identity() -> None:
    server = FakeServer()
    sock, _ = await _open(server, qr_timeout_s=5.0)
    try:
        qr = sock.events.wait_for_future("qr.generated")
        await server.last.send_node(
            BinaryNode(
                tag="iq",
                attrs={"id": "pd-1", "type": "set", "from": "s.whatsapp.net"},
                content=[
                    BinaryNode(
                        tag="pair-device",
                        content=[BinaryNode(tag="ref", content=b"ref-a"), BinaryNode(tag="ref", content=b"ref-b")],
                    )
                ],
            )
        )
        challenge = await asyncio.wait_for(qr, timeout=2.0)
        assert challenge.payload.startswith("ref-a,")
        await server.last.wait_node(lambda n: n.attrs.get("id") == "pd-1")

        updated = sock.events.wait_for_future(
            "credentials.updated", predicate=lambda c: c.me is not None
        )
        await server.last.send_node(
            BinaryNode(
                tag="iq",
                attrs={"id": "ps-1", "type": "set", "from": "s.whatsapp.net"},
                content=[
                    BinaryNode(
                        tag="pair-success",
                        content=[
                            BinaryNode(tag="device", attrs={"jid": "15550109999:2@s.whatsapp.net"}),
                            BinaryNode(tag="platform", attrs={"name": "smba"}),
                            BinaryNode(tag="device-identity", content=b"\x0a\x0b"),
                        ],
                    )
                ],
            )
        )
        creds = await asyncio.wait_for(updated, timeout=2.0)

        assert creds.me.id == "15550109999:2@s.whatsapp.net"
        assert creds.platform == "smba"
        assert creds.device_identity == b"\x0a\x0b"
        assert challenge.state.value == "used"
        await server.last.wait_node(lambda n: n.attrs.get("id") == "ps-1")
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_protocol_errors_during_setup_do_not_block_ready() -> None:
    def refuse(node: BinaryNode) -> BinaryNode | None:
        if node.tag != "iq" or "id" not in node.attrs:
            return None
        return BinaryNode(
            tag="iq",
            attrs={"id": node.attrs["id"], "type": "error"},
            content=[BinaryNode(tag="error", attrs={"code": "500"})],
        )

    server = FakeServer(responder=refuse)
    sock, _ = await _open(server)
    try:
        assert sock.state is ConnectionState.READY
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_request_pairing_code_sends_companion_registration() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        pc = await sock.request_pairing_code("+1 555 010 9999")
        reg = await server.last.wait_node(
            lambda n: get_binary_node_child(n, "link_code_companion_reg") is not None
        )
        child = get_binary_node_child(reg, "link_code_companion_reg")
        assert child.attrs["jid"] == "15550109999@s.whatsapp.net"
        assert sock.pairing.validate(pc.code) is pc
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_logout_clears_credentials() -> None:
    storage = MemoryCredentialStorage()
    server = FakeServer(finish_payload=PAIRED)
    sock = WASocket(config=_config(), storage=storage, stream_factory=server.stream_factory)
    try:
        await sock.connect()
        await sock.logout()

        removal = await server.connections[0].wait_node(
            lambda n: get_binary_node_child(n, "remove-companion-device") is not None
        )
        assert removal.attrs["xmlns"] == "md"
        assert sock.state is ConnectionState.CLOSED
        assert sock.creds.identity_key_pair is None
        assert sock.credentials.is_paired() is False
    finally:
        await sock.disconnect()
        await server.close()


def test_result_helper_echoes_the_id() -> None:
    node = result_for(BinaryNode(tag="iq", attrs={"id": "x-1"}))
    assert node.attrs == {"id": "x-1", "type": "result", "from": "s.whatsapp.net"}


@pytest.mark.asyncio
async def test_connect_gives_up_on_a_hung_handshake() -> None:
    server = FakeServer()
    server.plan.append("hang")
    sock = WASocket(
        config=_config(connect_timeout_s=0.3, handshake_timeout_s=5.0),
        stream_factory=server.stream_factory,
    )
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        with pytest.raises(ConnectTimeoutError):
            await sock.connect()

        assert loop.time() - started < 2.0
        assert sock.state is ConnectionState.CLOSED
        assert server.last.stream.is_open is False
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_reconnect_attempts_are_bounded() -> None:
    server = FakeServer()
    sock, updates = await _open(server)
    try:
        closed = sock.events.wait_for_future("connection.update", predicate=_closed)
        server.refuse_with = 1006

        await server.last.drop(1006)
        update = await asyncio.wait_for(closed, timeout=2.0)

        assert isinstance(update.error, ConnectionClosedError)
        attempts = [u.attempt for u in updates if u.state is ConnectionState.RECONNECTING]
        assert attempts == [1, 2, 3]
        assert len(server.connections) == 1 + 3
        assert sock.transport.fatal_error is None
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_failed_handshake_on_reconnect_starts_over_with_new_keys() -> None:
    server = FakeServer()
    sock, updates = await _open(server)
    try:
        server.plan.append("bad_finish")
        ready = sock.events.wait_for_future("connection.update", predicate=_ready)

        await server.last.drop(1006)
        await asyncio.wait_for(ready, timeout=2.0)

        assert [c.mode for c in server.connections] == ["serve", "bad_finish", "serve"]
        ephemerals = {c.handshake.client_ephemeral for c in server.connections}
        assert len(ephemerals) == 3
        failed = [u.error for u in updates if isinstance(u.error, HandshakeError)]
        assert failed and failed[0].reason is HandshakeErrorReason.AUTHENTICATION_FAILED

        res = await sock.dispatcher.ping()
        assert res.attrs["type"] == "result"
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_hex_like_ids_survive_the_wire() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        res = await sock.query(
            BinaryNode(tag="iq", attrs={"id": "3EB0FF12", "to": "s.whatsapp.net", "type": "get", "xmlns": "w:p"})
        )
        assert res.attrs["id"] == "3EB0FF12"

        received = sock.events.wait_for_future("node.received")
        await server.last.send_node(BinaryNode(tag="message", attrs={"id": "3EB0C0FFEE", "from": "s.whatsapp.net"}))
        node = await asyncio.wait_for(received, timeout=2.0)
        assert node.attrs["id"] == "3EB0C0FFEE"
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_late_stream_error_does_not_touch_the_new_connection() -> None:
    server = FakeServer()
    sock, _ = await _open(server)
    try:
        # handlers are invoked when the stanza arrives; their work may run later
        late_restart = sock.dispatcher.handlers["stream:error"](
            BinaryNode(tag="stream:error", attrs={"code": "515"})
        )
        late_failure = sock.dispatcher.handlers["failure"](BinaryNode(tag="failure", attrs={"reason": "401"}))

        ready = sock.events.wait_for_future("connection.update", predicate=_ready)
        await server.last.drop(1006)
        await asyncio.wait_for(ready, timeout=2.0)

        await late_restart
        await late_failure
        await asyncio.sleep(0.05)

        assert sock.state is ConnectionState.READY
        assert sock.transport.fatal_error is None
        assert len(server.connections) == 2
    finally:
        await sock.disconnect()
        await server.close()


@pytest.mark.asyncio
async def test_keep_alive_records_round_trip_times() -> None:
    server = FakeServer()
    sock, _ = await _open(server, keep_alive_interval_s=0.05)
    try:
        await _eventually(lambda: len(sock.transport.metrics.ping_rtts_s) >= 2)

        metrics = sock.transport.metrics
        assert metrics.last_ping_rtt_s is not None and metrics.last_ping_rtt_s >= 0
        assert metrics.average_ping_rtt_s is not None
        assert sock.state is ConnectionState.READY
    finally:
        await sock.disconnect()
        await server.close()


def _plenty_of_pre_keys(node: BinaryNode) -> BinaryNode | None:
    if node.attrs.get("xmlns") == "encrypt" and get_binary_node_child(node, "count") is not None:
        return result_for(node, [BinaryNode(tag="count", attrs={"value": "50"})])
    return default_responder(node)


def _is_rotate(node: BinaryNode) -> bool:
    return get_binary_node_child(node, "rotate") is not None


@pytest.mark.asyncio
async def test_rotated_signed_pre_key_is_announced() -> None:
    server = FakeServer(finish_payload=PAIRED, responder=_plenty_of_pre_keys)
    sock, _ = await _open(server)
    try:
        first = sock.creds.signed_pre_key
        rotate = await server.last.wait_node(_is_rotate)
        skey = get_binary_node_child(get_binary_node_child(rotate, "rotate"), "skey")
        assert get_binary_node_child_bytes(skey, "id") == first.key_id.to_bytes(3, "big")
        await _eventually(lambda: sock.creds.uploaded_signed_pre_key_id == first.key_id)
        # the server has enough one-time keys
        assert all(get_binary_node_child(n, "list") is None for n in server.last.received)

        rotated = sock.key_store.generate_signed_pre_key(
            sock.creds.identity_key_pair, key_id=first.key_id % 1000 + 1
        )
        await sock.credentials.update(signed_pre_key=rotated)
        ready = sock.events.wait_for_future("connection.update", predicate=_ready)
        await server.last.drop(1006)
        await asyncio.wait_for(ready, timeout=2.0)

        rotate = await server.last.wait_node(_is_rotate)
        skey = get_binary_node_child(get_binary_node_child(rotate, "rotate"), "skey")
        assert get_binary_node_child_bytes(skey, "id") == rotated.key_id.to_bytes(3, "big")
        assert get_binary_node_child_bytes(skey, "signature") == rotated.signature
        await _eventually(lambda: sock.creds.uploaded_signed_pre_key_id == rotated.key_id)
    finally:
        await sock.disconnect()
        await server.close()
