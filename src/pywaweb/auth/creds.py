from __future__ import annotations

from dataclasses import dataclass

from ..crypto.curve import KeyPair

__all__ = ["Contact", "Credentials", "KeyPair", "SignedPreKey"]


@dataclass(slots=True)
class SignedPreKey:
    key_id: int
    key_pair: KeyPair
    signature: bytes
    created_at: float  # unix seconds


@dataclass(slots=True)
class Contact:
    id: str  # JID
    name: str | None = None
    lid: str | None = None


@dataclass(slots=True)
class Credentials:
    """
    Durable identity of this client.

    Every field starts empty on a first run and is filled in as key material is
    generated and the handshake/pairing completes. Mutate only through
    `CredentialStore.update()` so memory and storage cannot drift apart.
    """

    client_id: str | None = None
    registration_id: int | None = None
    identity_key_pair: KeyPair | None = None
    signed_pre_key: SignedPreKey | None = None
    # key id of the signed pre-key the server last acknowledged
    uploaded_signed_pre_key_id: int | None = None

    server_token: str | None = None
    client_token: str | None = None

    enc_key: bytes | None = None
    mac_key: bytes | None = None
    adv_secret_key: bytes | None = None
    device_identity: bytes | None = None

    me: Contact | None = None
    last_sync_timestamp: int | None = None
    platform: str | None = None
