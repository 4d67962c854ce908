from __future__ import annotations

from dataclasses import dataclass

from ..constants import NOISE_WA_HEADER
from ..exceptions import TransportError
from .aes import aes_decrypt_gcm, aes_encrypt_gcm

_EMPTY = b""
_MAX_COUNTER = 0xFFFFFFFF
_MAX_FRAME = 0xFFFFFF


def _iv(counter: int) -> bytes:
    # 12-byte IV where the counter is stored in the last 4 bytes (big endian)
    return b"\x00" * 8 + counter.to_bytes(4, "big", signed=False)


@dataclass(slots=True)
class _TransportState:
    enc_key: bytes
    dec_key: bytes
    read_counter: int = 0
    write_counter: int = 0

    def encrypt(self, plaintext: bytes) -> bytes:
        c = self.write_counter
        if c > _MAX_COUNTER:
            raise TransportError("send counter exhausted; a new handshake is required")
        self.write_counter += 1
        return aes_encrypt_gcm(plaintext, key=self.enc_key, iv=_iv(c), aad=_EMPTY)

    def decrypt(self, ciphertext: bytes) -> bytes:
        c = self.read_counter
        if c > _MAX_COUNTER:
            raise TransportError("receive counter exhausted; a new handshake is required")
        self.read_counter += 1
        return aes_decrypt_gcm(ciphertext, key=self.dec_key, iv=_iv(c), aad=_EMPTY)


class FrameHandler:
    """
    Length-prefixed framing for one physical connection.

    Every frame is `u24 length || payload`. The first outbound frame is
    preceded by the intro header. Until `install_keys()` is called payloads
    travel in the clear (they are handshake messages); afterwards every
    payload is AES-256-GCM encrypted with a per-direction counter nonce.
    """

    def __init__(self, *, intro_header: bytes = NOISE_WA_HEADER) -> None:
        self._intro_header = intro_header
        self._sent_intro = False
        self._in_bytes = bytearray()
        self._transport: _TransportState | None = None

    @property
    def transport_ready(self) -> bool:
        return self._transport is not None

    @property
    def write_counter(self) -> int:
        return self._transport.write_counter if self._transport else 0

    def install_keys(self, *, send_key: bytes, recv_key: bytes) -> None:
        if self._transport is not None:
            raise TransportError("transport keys already installed for this connection")
        self._transport = _TransportState(enc_key=send_key, dec_key=recv_key)

    def encode_frame(self, payload: bytes) -> bytes:
        if self._transport is not None:
            payload = self._transport.encrypt(payload)

        intro = b""
        if not self._sent_intro:
            intro = self._intro_header
            self._sent_intro = True

        ln = len(payload)
        if ln > _MAX_FRAME:
            raise TransportError("frame too large")
        return intro + ln.to_bytes(3, "big") + payload

    def feed(self, data: bytes) -> None:
        self._in_bytes.extend(data)

    def next_frame(self) -> bytes | None:
        """
        Pop the next complete payload, or None if more bytes are needed.

        Payloads are decrypted at pop time, so bytes buffered while the
        handshake was running are read with the keys installed afterwards.
        Decryption failure raises `InvalidTag`.
        """

        if len(self._in_bytes) < 3:
            return None
        size = int.from_bytes(self._in_bytes[:3], "big")
        if len(self._in_bytes) < 3 + size:
            return None

        frame = bytes(self._in_bytes[3 : 3 + size])
        del self._in_bytes[: 3 + size]
        if self._transport is not None:
            frame = self._transport.decrypt(frame)
        return frame

    def decode_frames(self, data: bytes) -> list[bytes]:
        self.feed(data)
        out: list[bytes] = []
        while (frame := self.next_frame()) is not None:
            out.append(frame)
        return out
