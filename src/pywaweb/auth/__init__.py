from __future__ import annotations

from .creds import Contact, Credentials, KeyPair, SignedPreKey
from .keys import KeyStore, PreKeyPool
from .store import (
    CredentialStorage,
    CredentialStore,
    FileCredentialStorage,
    MemoryCredentialStorage,
)
from .utils import generate_registration_id, init_credentials

__all__ = [
    "Contact",
    "CredentialStorage",
    "CredentialStore",
    "Credentials",
    "FileCredentialStorage",
    "KeyPair",
    "KeyStore",
    "MemoryCredentialStorage",
    "PreKeyPool",
    "SignedPreKey",
    "generate_registration_id",
    "init_credentials",
]
