from __future__ import annotations

import hashlib
import json
import logging
import secrets
import struct
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .auth.creds import Credentials, KeyPair
from .constants import (
    CIPHER_SUITE,
    CLIENT_FINISH_TYPE,
    CLIENT_HELLO_TYPE,
    KEY_LEN,
    NONCE_LEN,
    SERVER_FINISH_MIN_LEN,
    SERVER_FINISH_TYPE,
    SERVER_HELLO_MIN_LEN,
)
from .crypto.aes import InvalidTag, aes_decrypt_gcm, aes_encrypt_gcm
from .crypto.curve import Curve25519Provider, DefaultCurve25519Provider
from .crypto.hkdf import hkdf_expand, hkdf_extract
from .exceptions import CryptoUnavailable, HandshakeError, HandshakeErrorReason

logger = logging.getLogger(__name__)

_CLIENT_HS_INFO = b"client handshake key"
_SERVER_HS_INFO = b"server handshake key"
_CLIENT_APP_INFO = b"client application key"
_SERVER_APP_INFO = b"server application key"


class HandshakeState(str, Enum):
    IDLE = "idle"
    CLIENT_HELLO_SENT = "client_hello_sent"
    SERVER_HELLO_RECEIVED = "server_hello_received"
    CLIENT_FINISH_SENT = "client_finish_sent"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class HandshakeKeys:
    client_write_key: bytes
    server_write_key: bytes
    prk: bytes


@dataclass(frozen=True, slots=True)
class SessionKeys:
    """Result of one handshake. Lives in memory only."""

    client_write_key: bytes
    server_write_key: bytes
    client_app_key: bytes
    server_app_key: bytes
    handshake_transcript_hash: bytes


@dataclass(frozen=True, slots=True)
class ServerHello:
    version: int
    timestamp_ms: int
    public_key: bytes
    random: bytes
    extensions: bytes


def derive_handshake_keys(shared_secret: bytes, client_random: bytes, server_random: bytes) -> HandshakeKeys:
    """
    HKDF-SHA256 extract (salt = client_random || server_random) then expand.

    Deterministic, and sensitive to the order of the two randoms.
    """

    prk = hkdf_extract(salt=client_random + server_random, ikm=shared_secret)
    return HandshakeKeys(
        client_write_key=hkdf_expand(prk=prk, info=_CLIENT_HS_INFO, length=KEY_LEN),
        server_write_key=hkdf_expand(prk=prk, info=_SERVER_HS_INFO, length=KEY_LEN),
        prk=prk,
    )


def derive_session_keys(hs: HandshakeKeys, transcript_hash: bytes) -> SessionKeys:
    return SessionKeys(
        client_write_key=hs.client_write_key,
        server_write_key=hs.server_write_key,
        client_app_key=hkdf_expand(prk=hs.prk, info=_CLIENT_APP_INFO + transcript_hash, length=KEY_LEN),
        server_app_key=hkdf_expand(prk=hs.prk, info=_SERVER_APP_INFO + transcript_hash, length=KEY_LEN),
        handshake_transcript_hash=transcript_hash,
    )


def parse_server_hello(message: bytes) -> ServerHello:
    if len(message) < SERVER_HELLO_MIN_LEN:
        raise HandshakeError(
            HandshakeErrorReason.MALFORMED,
            f"server hello is {len(message)} bytes, expected at least {SERVER_HELLO_MIN_LEN}",
        )
    version, ts = struct.unpack_from(">BQ", message, 0)
    return ServerHello(
        version=version,
        timestamp_ms=ts,
        public_key=bytes(message[9:41]),
        random=bytes(message[41:73]),
        extensions=bytes(message[73:]),
    )


class HandshakeEngine:
    """
    Client side of the four-message key agreement:

        IDLE -> CLIENT_HELLO_SENT -> SERVER_HELLO_RECEIVED
             -> CLIENT_FINISH_SENT -> COMPLETED

    Every message is folded into a running SHA-256 transcript. The finish
    messages use the transcript as AEAD associated data and the application
    keys are expanded with the final transcript hash, so tampering with any
    earlier message breaks the exchange. Any failure moves to FAILED; an engine
    is single-use, a reconnect builds a new one with fresh ephemeral keys.
    """

    def __init__(
        self,
        *,
        curve: Curve25519Provider | None = None,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._curve = curve or DefaultCurve25519Provider()
        self._random_bytes = random_bytes
        self._clock = clock

        self.state = HandshakeState.IDLE
        self._transcript = hashlib.sha256()
        self._ephemeral: KeyPair | None = None
        self._client_random = b""
        self.server_hello: ServerHello | None = None
        self._hs_keys: HandshakeKeys | None = None
        self._session_keys: SessionKeys | None = None
        self.server_payload: dict[str, Any] | None = None

    @property
    def transcript_hash(self) -> bytes:
        return self._transcript.copy().digest()

    @property
    def ephemeral_public(self) -> bytes | None:
        return self._ephemeral.public if self._ephemeral else None

    @property
    def session_keys(self) -> SessionKeys:
        if self.state is not HandshakeState.COMPLETED or self._session_keys is None:
            raise HandshakeError(HandshakeErrorReason.INVALID_STATE, "handshake not completed")
        return self._session_keys

    def _fail(self, reason: HandshakeErrorReason, detail: str) -> HandshakeError:
        self.state = HandshakeState.FAILED
        logger.debug("handshake failed: %s (%s)", reason.value, detail)
        return HandshakeError(reason, detail)

    def _expect(self, state: HandshakeState) -> None:
        if self.state is not state:
            raise self._fail(
                HandshakeErrorReason.INVALID_STATE,
                f"expected state {state.value}, in {self.state.value}",
            )

    def create_client_hello(self) -> bytes:
        self._expect(HandshakeState.IDLE)
        try:
            self._ephemeral = self._curve.generate_keypair()
        except CryptoUnavailable:
            self.state = HandshakeState.FAILED
            raise
        self._client_random = self._random_bytes(32)

        msg = (
            bytes([CLIENT_HELLO_TYPE])
            + struct.pack(">Q", int(self._clock() * 1000))
            + self._ephemeral.public
            + self._client_random
            + CIPHER_SUITE
        )
        self._transcript.update(msg)
        self.state = HandshakeState.CLIENT_HELLO_SENT
        return msg

    def process_server_hello(self, message: bytes) -> ServerHello:
        self._expect(HandshakeState.CLIENT_HELLO_SENT)
        assert self._ephemeral is not None

        try:
            hello = parse_server_hello(message)
        except HandshakeError as e:
            raise self._fail(e.reason, e.detail) from e
        self._transcript.update(message)

        try:
            shared = self._curve.shared_key(self._ephemeral.private, hello.public_key)
        except ValueError as e:
            # cryptography rejects low-order points (all-zero shared secret).
            raise self._fail(HandshakeErrorReason.KEY_AGREEMENT_FAILED, str(e)) from e

        self.server_hello = hello
        self._hs_keys = derive_handshake_keys(shared, self._client_random, hello.random)
        self.state = HandshakeState.SERVER_HELLO_RECEIVED
        return hello

    def create_client_finish(self, credentials: Credentials) -> bytes:
        self._expect(HandshakeState.SERVER_HELLO_RECEIVED)
        assert self._hs_keys is not None

        payload = json.dumps(
            {
                "client_id": credentials.client_id,
                "client_token": credentials.client_token,
                "timestamp": int(self._clock() * 1000),
            },
            separators=(",", ":"),
        ).encode("utf-8")
        nonce = self._random_bytes(NONCE_LEN)
        sealed = aes_encrypt_gcm(
            payload, key=self._hs_keys.client_write_key, iv=nonce, aad=self.transcript_hash
        )

        msg = bytes([CLIENT_FINISH_TYPE]) + nonce + sealed
        self._transcript.update(msg)
        self.state = HandshakeState.CLIENT_FINISH_SENT
        return msg

    def process_server_finish(self, message: bytes) -> SessionKeys:
        """
        Verify the server's finish message and derive the application keys.

        The decrypted JSON object is kept on `server_payload`.
        """

        self._expect(HandshakeState.CLIENT_FINISH_SENT)
        assert self._hs_keys is not None

        if len(message) < SERVER_FINISH_MIN_LEN:
            raise self._fail(
                HandshakeErrorReason.MALFORMED, f"server finish is {len(message)} bytes"
            )
        if message[0] != SERVER_FINISH_TYPE:
            raise self._fail(
                HandshakeErrorReason.MALFORMED, f"unexpected message type 0x{message[0]:02x}"
            )

        nonce = message[1 : 1 + NONCE_LEN]
        try:
            plaintext = aes_decrypt_gcm(
                message[1 + NONCE_LEN :],
                key=self._hs_keys.server_write_key,
                iv=nonce,
                aad=self.transcript_hash,
            )
        except InvalidTag as e:
            raise self._fail(
                HandshakeErrorReason.AUTHENTICATION_FAILED, "server finish tag mismatch"
            ) from e

        try:
            payload = json.loads(plaintext)
        except ValueError as e:
            raise self._fail(HandshakeErrorReason.MALFORMED, "server finish is not JSON") from e
        if not isinstance(payload, dict):
            raise self._fail(HandshakeErrorReason.MALFORMED, "server finish is not an object")

        self._transcript.update(message)
        self.server_payload = payload
        self._session_keys = derive_session_keys(self._hs_keys, self.transcript_hash)
        self.state = HandshakeState.COMPLETED
        return self._session_keys
