from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, fields
from typing import Any

from ..constants import PRE_KEY_ID_MAX
from .creds import Contact, Credentials, KeyPair, SignedPreKey

_BYTES_FIELDS = ("enc_key", "mac_key", "adv_secret_key", "device_identity")
_STR_FIELDS = ("client_id", "server_token", "client_token", "platform")


def _expect_bytes(v: Any, *, field: str) -> bytes:
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v)
    raise TypeError(f"Expected bytes for {field}, got {type(v).__name__}")


def keypair_from_dict(d: dict[str, Any]) -> KeyPair:
    kp = KeyPair(
        public=_expect_bytes(d["public"], field="KeyPair.public"),
        private=_expect_bytes(d["private"], field="KeyPair.private"),
    )
    if len(kp.public) != 32 or len(kp.private) != 32:
        raise ValueError("KeyPair keys must be 32 bytes")
    return kp


def signed_pre_key_from_dict(d: dict[str, Any]) -> SignedPreKey:
    return SignedPreKey(
        key_id=int(d["key_id"]),
        key_pair=keypair_from_dict(d["key_pair"]),
        signature=_expect_bytes(d["signature"], field="SignedPreKey.signature"),
        created_at=float(d["created_at"]),
    )


def contact_from_dict(d: dict[str, Any]) -> Contact:
    return Contact(id=str(d["id"]), name=d.get("name"), lid=d.get("lid"))


def credentials_from_dict(d: dict[str, Any]) -> Credentials:
    """
    Rebuild `Credentials` from decoded JSON.

    Raises `KeyError`, `TypeError` or `ValueError` when the document is not a
    structurally valid credential set.
    """

    known = {f.name for f in fields(Credentials)}
    unknown = set(d) - known
    if unknown:
        raise ValueError(f"unknown credential fields: {sorted(unknown)}")

    creds = Credentials()
    for name in _STR_FIELDS:
        if d.get(name) is not None:
            setattr(creds, name, str(d[name]))
    for name in _BYTES_FIELDS:
        if d.get(name) is not None:
            setattr(creds, name, _expect_bytes(d[name], field=f"Credentials.{name}"))

    if d.get("registration_id") is not None:
        creds.registration_id = int(d["registration_id"])
    if d.get("last_sync_timestamp") is not None:
        creds.last_sync_timestamp = int(d["last_sync_timestamp"])
    if d.get("uploaded_signed_pre_key_id") is not None:
        creds.uploaded_signed_pre_key_id = int(d["uploaded_signed_pre_key_id"])
    if d.get("identity_key_pair"):
        creds.identity_key_pair = keypair_from_dict(d["identity_key_pair"])
    if d.get("signed_pre_key"):
        creds.signed_pre_key = signed_pre_key_from_dict(d["signed_pre_key"])
    if d.get("me"):
        creds.me = contact_from_dict(d["me"])
    return creds


def credentials_to_dict(creds: Credentials) -> dict[str, Any]:
    return asdict(creds)


def pre_keys_to_list(pre_keys: Iterable[tuple[int, KeyPair]]) -> list[dict[str, Any]]:
    return [{"key_id": key_id, "key_pair": asdict(kp)} for key_id, kp in sorted(pre_keys)]


def pre_keys_from_list(items: list[Any]) -> list[tuple[int, KeyPair]]:
    if not isinstance(items, list):
        raise TypeError("pre_keys must be a list")
    out = [(int(d["key_id"]), keypair_from_dict(d["key_pair"])) for d in items]
    ids = [key_id for key_id, _ in out]
    if len(set(ids)) != len(ids):
        raise ValueError("duplicate pre-key ids")
    if any(not 1 <= key_id < PRE_KEY_ID_MAX for key_id in ids):
        raise ValueError("pre-key id out of range")
    return out


def auth_state_to_dict(creds: Credentials, pre_keys: Iterable[tuple[int, KeyPair]]) -> dict[str, Any]:
    """The stored document: the credential set plus the private pre-key pool."""

    return {"creds": credentials_to_dict(creds), "pre_keys": pre_keys_to_list(pre_keys)}


def auth_state_from_dict(d: dict[str, Any]) -> tuple[Credentials, list[tuple[int, KeyPair]]]:
    creds = d["creds"]
    if not isinstance(creds, dict):
        raise TypeError("creds is not an object")
    return credentials_from_dict(creds), pre_keys_from_list(d.get("pre_keys", []))
