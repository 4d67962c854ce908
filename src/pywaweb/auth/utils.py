from __future__ import annotations

import secrets
import uuid

from .creds import Credentials
from .keys import KeyStore


def generate_registration_id() -> int:
    # Match Baileys: Uint16 & 16383 (14 bits), never zero.
    return (int.from_bytes(secrets.token_bytes(2), "big") & 16383) or 1


def fill_missing_credentials(creds: Credentials, *, key_store: KeyStore) -> list[str]:
    """
    Generate whatever key material `creds` lacks, in place.

    Pairing results (tokens, `me`, platform) are never invented here. Returns
    the names of the fields that were filled.
    """

    filled: list[str] = []
    if creds.client_id is None:
        creds.client_id = str(uuid.uuid4())
        filled.append("client_id")
    if creds.registration_id is None:
        creds.registration_id = generate_registration_id()
        filled.append("registration_id")
    if creds.identity_key_pair is None:
        creds.identity_key_pair = key_store.generate_identity()
        filled.append("identity_key_pair")
    if creds.signed_pre_key is None:
        creds.signed_pre_key = key_store.generate_signed_pre_key(creds.identity_key_pair)
        filled.append("signed_pre_key")
    for name in ("enc_key", "mac_key", "adv_secret_key"):
        if getattr(creds, name) is None:
            setattr(creds, name, secrets.token_bytes(32))
            filled.append(name)
    return filled


def init_credentials(*, key_store: KeyStore) -> Credentials:
    """A fresh, unpaired credential set with all local key material generated."""

    creds = Credentials()
    fill_missing_credentials(creds, key_store=key_store)
    return creds
