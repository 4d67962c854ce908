from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import fields
from pathlib import Path
from typing import Any, Protocol

from ..exceptions import AuthError
from ..util import json as bufferjson
from ..util.events import AsyncEventEmitter
from .creds import Credentials, KeyPair
from .keys import KeyStore
from .serde import auth_state_from_dict, auth_state_to_dict
from .utils import fill_missing_credentials

logger = logging.getLogger(__name__)

_FIELD_NAMES = frozenset(f.name for f in fields(Credentials))
_FILE_LOCKS: dict[Path, asyncio.Lock] = {}


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _FILE_LOCKS.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _FILE_LOCKS[path] = lock
    return lock


class CredentialStorage(Protocol):
    """Where the serialized credential set lives. `save` must be all-or-nothing."""

    async def load(self) -> bytes | None: ...

    async def save(self, data: bytes) -> None: ...


class MemoryCredentialStorage:
    def __init__(self, data: bytes | None = None) -> None:
        self.data = data
        self.saves = 0

    async def load(self) -> bytes | None:
        return self.data

    async def save(self, data: bytes) -> None:
        self.data = bytes(data)
        self.saves += 1


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FileCredentialStorage:
    """
    Single JSON file storage.

    Writes go to a temp file in the same directory which is fsynced and then
    renamed over the target, so a crash leaves either the old or the new file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    async def load(self) -> bytes | None:
        async with _lock_for(self.path):
            try:
                return await asyncio.to_thread(self.path.read_bytes)
            except FileNotFoundError:
                return None

    async def save(self, data: bytes) -> None:
        async with _lock_for(self.path):
            await asyncio.to_thread(_atomic_write, self.path, data)


class CredentialStore:
    """
    Single source of truth for the durable `Credentials`.

    Emits `credentials.updated` with the credential object after every
    `update()` and `clear()`.
    """

    def __init__(
        self,
        storage: CredentialStorage,
        *,
        key_store: KeyStore | None = None,
        events: AsyncEventEmitter | None = None,
    ) -> None:
        self.storage = storage
        self.key_store = key_store or KeyStore()
        self.events = events or AsyncEventEmitter()
        self._creds = Credentials()
        self._dirty = False

    @property
    def credentials(self) -> Credentials:
        return self._creds

    @property
    def dirty(self) -> bool:
        return self._dirty

    def is_paired(self) -> bool:
        c = self._creds
        return bool(c.server_token and c.client_token and c.me is not None)

    async def initialize(self) -> Credentials:
        """
        Load persisted credentials, falling back to a fresh set.

        A stored document that does not decode into valid credentials is
        logged and replaced; an unreadable storage backend is an `AuthError`.
        """

        try:
            raw = await self.storage.load()
        except OSError as e:
            raise AuthError(f"failed to read credentials: {e}") from e

        creds: Credentials | None = None
        pre_keys: list[tuple[int, KeyPair]] = []
        if raw:
            try:
                d = bufferjson.loads(raw)
                if not isinstance(d, dict):
                    raise TypeError("credential document is not an object")
                creds, pre_keys = auth_state_from_dict(d)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("discarding invalid stored credentials: %s", e)

        self._creds = creds or Credentials()
        filled = fill_missing_credentials(self._creds, key_store=self.key_store)
        self.key_store.load(
            identity=self._creds.identity_key_pair,
            signed_pre_key=self._creds.signed_pre_key,
            pre_keys=pre_keys,
        )

        spk = self.key_store.refresh_signed_pre_key_if_expired()
        if spk is not self._creds.signed_pre_key:
            self._creds.signed_pre_key = spk
            filled.append("signed_pre_key")

        if filled or creds is None:
            logger.debug("initialized credential fields: %s", ", ".join(filled))
            self._dirty = True
            await self.persist()
        return self._creds

    async def update(self, **changes: Any) -> Credentials:
        unknown = set(changes) - _FIELD_NAMES
        if unknown:
            raise AttributeError(f"unknown credential fields: {sorted(unknown)}")
        for name, value in changes.items():
            setattr(self._creds, name, value)
        if "identity_key_pair" in changes or "signed_pre_key" in changes:
            self.key_store.load(
                identity=self._creds.identity_key_pair,
                signed_pre_key=self._creds.signed_pre_key,
            )
        self._dirty = True
        await self.events.emit("credentials.updated", self._creds)
        return self._creds

    def mark_dirty(self) -> None:
        """Flag key material changed outside `update()`, e.g. a replenished pre-key pool."""

        self._dirty = True

    async def persist(self, *, force: bool = False) -> bool:
        """Write the credential set if it changed. Returns whether it wrote."""

        if not self._dirty and not force:
            return False
        doc = auth_state_to_dict(self._creds, self.key_store.pre_keys.items())
        data = bufferjson.dumps(doc, indent=2).encode("utf-8")
        try:
            await self.storage.save(data)
        except OSError as e:
            raise AuthError(f"failed to persist credentials: {e}") from e
        self._dirty = False
        return True

    async def clear(self) -> None:
        """Forget everything, including key material, and persist the empty set."""

        self._creds = Credentials()
        self.key_store.load(identity=None, signed_pre_key=None, pre_keys=())
        self._dirty = True
        await self.persist()
        await self.events.emit("credentials.updated", self._creds)
