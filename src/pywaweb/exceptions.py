from __future__ import annotations

from enum import Enum


class PywawebError(Exception):
    """Base error for the pywaweb library."""


class CryptoUnavailable(PywawebError):
    """The platform RNG or crypto backend cannot be used. Never retried."""


class TransportError(PywawebError):
    """Duplex stream (WebSocket) failure."""


class StreamClosedError(TransportError):
    """The duplex stream was closed by the peer or the network."""

    def __init__(self, code: int = 1006, reason: str = "") -> None:
        super().__init__(f"stream closed (code={code}{', ' + reason if reason else ''})")
        self.code = code
        self.reason = reason


class ConnectTimeoutError(TransportError):
    """`connect()` did not reach READY within the configured window."""


class HandshakeErrorReason(str, Enum):
    MALFORMED = "malformed"
    KEY_AGREEMENT_FAILED = "keyAgreementFailed"
    AUTHENTICATION_FAILED = "authenticationFailed"
    INVALID_STATE = "invalidState"


class HandshakeError(PywawebError):
    """Key agreement failure. Fatal for the current connection attempt only."""

    def __init__(self, reason: HandshakeErrorReason, detail: str = "") -> None:
        super().__init__(f"handshake failed ({reason.value}){': ' + detail if detail else ''}")
        self.reason = reason
        self.detail = detail


class CodecError(PywawebError):
    """Binary node encode/decode failure."""


class DecodeError(CodecError):
    """Binary node decoding failure."""


class EncodeError(CodecError):
    """Binary node encoding failure."""


class QueryTimeoutError(PywawebError):
    """No response arrived for a query after all retransmissions."""

    def __init__(self, query_id: str, attempts: int) -> None:
        super().__init__(f"query {query_id} timed out after {attempts} attempt(s)")
        self.query_id = query_id
        self.attempts = attempts


class ConnectionClosedError(PywawebError):
    """The session went away while a query was waiting for its response."""


class ProtocolError(PywawebError):
    """
    The server answered a query with an error-typed node.

    WhatsApp responds with `<iq type="error"><error code="..." text="..."/></iq>`.
    """

    def __init__(self, *, code: int, text: str = "", node: object | None = None) -> None:
        super().__init__(f"protocol error {code}{': ' + text if text else ''}")
        self.code = code
        self.text = text
        self.node = node


class BannedOrFatalServerError(PywawebError):
    """The server ended the session for a policy reason. Never reconnected."""

    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(f"fatal server disconnect (code={code}{', ' + reason if reason else ''})")
        self.code = code
        self.reason = reason


class PairingExhaustedError(PywawebError):
    """QR/pairing-code refreshes are used up; user intervention is required."""


class PairingCodeError(PywawebError):
    """A pairing code failed validation."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"pairing code rejected: {reason}")
        self.reason = reason


class AuthError(PywawebError):
    """Authentication / credential store failure."""
