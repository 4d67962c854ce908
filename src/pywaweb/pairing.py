from __future__ import annotations

import binascii
import logging
import re
import secrets
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .auth.store import CredentialStore
from .exceptions import AuthError, PairingCodeError, PairingExhaustedError
from .util.bytes import Crockford32, b64decode, b64encode
from .util.events import AsyncEventEmitter

logger = logging.getLogger(__name__)

PAIRING_CODE_LENGTH = 8
# Superseded codes are remembered so validating one reports "expired".
_CODE_HISTORY = 16
_PHONE_RE = re.compile(r"^[1-9][0-9]{6,14}$")

_CROCKFORD = Crockford32()


class TokenState(str, Enum):
    GENERATED = "generated"
    SCANNED = "scanned"
    ATTEMPTED = "attempted"
    USED = "used"
    EXPIRED = "expired"


@dataclass(slots=True)
class QRChallenge:
    ref: str
    payload: str
    created_at: float
    expires_at: float
    state: TokenState = TokenState.GENERATED


@dataclass(slots=True)
class PairingCode:
    code: str
    phone_number: str
    created_at: float
    expires_at: float
    state: TokenState = TokenState.GENERATED
    attempts: int = 0

    @property
    def display(self) -> str:
        return f"{self.code[:4]}-{self.code[4:]}"


@dataclass(frozen=True, slots=True)
class ParsedChallenge:
    ref: str
    identity_public: bytes
    signed_pre_key_public: bytes
    adv_secret: bytes
    timestamp_ms: int


def parse_challenge(payload: str) -> ParsedChallenge:
    """Split a QR payload back into its parts. Raises `ValueError` if malformed."""

    parts = payload.split(",")
    if len(parts) != 5 or not all(parts):
        raise ValueError("QR payload must have 5 non-empty comma separated parts")
    ref, ident, spk, adv, ts = parts
    try:
        return ParsedChallenge(
            ref=ref,
            identity_public=b64decode(ident),
            signed_pre_key_public=b64decode(spk),
            adv_secret=b64decode(adv),
            timestamp_ms=int(ts),
        )
    except binascii.Error as e:
        raise ValueError(f"QR payload has invalid base64: {e}") from e


def normalize_pairing_code(code: str) -> str:
    return "".join(ch for ch in code.upper() if ch not in " -\t")


def normalize_phone_number(phone_number: str) -> str:
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    if not _PHONE_RE.match(digits):
        raise ValueError(f"not an E.164 phone number: {phone_number!r}")
    return digits


class PairingController:
    """
    Lifecycle of QR challenges and numeric pairing codes.

    Only one token is live at a time: issuing a QR challenge or a pairing code
    expires whatever was current. The cryptographic exchange that follows a
    successful scan/entry is not handled here.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        events: AsyncEventEmitter | None = None,
        qr_timeout_s: float = 60.0,
        qr_max_retries: int = 5,
        pairing_code_timeout_s: float = 300.0,
        max_failed_attempts: int = 5,
        lockout_s: float = 15 * 60.0,
        clock: Callable[[], float] = time.time,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        self.credentials = credentials
        self.events = events or credentials.events
        self.qr_timeout_s = qr_timeout_s
        self.qr_max_retries = qr_max_retries
        self.pairing_code_timeout_s = pairing_code_timeout_s
        self.max_failed_attempts = max_failed_attempts
        self.lockout_s = lockout_s
        self._clock = clock
        self._random_bytes = random_bytes

        self.retry_count = 0
        self._challenge: QRChallenge | None = None
        self._code: PairingCode | None = None
        self._codes: OrderedDict[str, PairingCode] = OrderedDict()
        # timestamps of rejected validations within the last `lockout_s`
        self._failures: deque[float] = deque()
        self._locked_until = 0.0

    # -- QR flow -------------------------------------------------------------

    @property
    def current_challenge(self) -> QRChallenge | None:
        ch = self._challenge
        if ch is not None and self._expire_if_due(ch):
            return None
        return ch

    def _expire_if_due(self, token: QRChallenge | PairingCode) -> bool:
        if token.state is TokenState.EXPIRED:
            return True
        if token.state is not TokenState.USED and self._clock() > token.expires_at:
            token.state = TokenState.EXPIRED
            return True
        return False

    def _supersede(self) -> None:
        for token in (self._challenge, self._code):
            if token is not None and token.state is not TokenState.USED:
                token.state = TokenState.EXPIRED
        self._challenge = None
        self._code = None

    def _qr_payload(self, ref: str, now: float) -> str:
        creds = self.credentials.credentials
        if creds.identity_key_pair is None or creds.signed_pre_key is None or creds.adv_secret_key is None:
            raise AuthError("credentials are not initialized; call CredentialStore.initialize()")
        return ",".join(
            [
                ref,
                b64encode(creds.identity_key_pair.public),
                b64encode(creds.signed_pre_key.key_pair.public),
                b64encode(creds.adv_secret_key),
                str(int(now * 1000)),
            ]
        )

    async def generate_challenge(self, ref: str | None = None) -> QRChallenge:
        """
        Issue a QR challenge for the server reference `ref`.

        A random reference is used when none is given. Emits `qr.generated`.
        """

        if ref is None:
            ref = b64encode(self._random_bytes(16))
        now = self._clock()
        payload = self._qr_payload(ref, now)
        self._supersede()
        ch = QRChallenge(ref=ref, payload=payload, created_at=now, expires_at=now + self.qr_timeout_s)
        self._challenge = ch
        logger.debug("QR challenge issued (ref=%s)", ref)
        await self.events.emit("qr.generated", ch)
        return ch

    async def refresh(self, ref: str | None = None) -> QRChallenge:
        """Replace the current challenge; bounded by `qr_max_retries`."""

        if self.retry_count >= self.qr_max_retries:
            self._supersede()
            raise PairingExhaustedError(f"QR refreshed {self.retry_count} times; giving up")
        self.retry_count += 1
        return await self.generate_challenge(ref)

    def mark_scanned(self) -> QRChallenge | None:
        ch = self.current_challenge
        if ch is not None and ch.state is TokenState.GENERATED:
            ch.state = TokenState.SCANNED
        return ch

    def complete(self) -> None:
        """The counterpart device confirmed; the live token is consumed."""

        for token in (self._challenge, self._code):
            if token is not None and not self._expire_if_due(token):
                token.state = TokenState.USED
        self._challenge = None
        self._code = None
        self.retry_count = 0

    def reset(self) -> None:
        self._supersede()
        self.retry_count = 0

    # -- pairing code flow ---------------------------------------------------

    @property
    def current_code(self) -> PairingCode | None:
        pc = self._code
        if pc is not None and self._expire_if_due(pc):
            return None
        return pc

    async def generate_code(self, phone_number: str) -> PairingCode:
        """
        Issue an 8 character Crockford Base32 code bound to `phone_number`.

        Emits `pairing.code.generated`.
        """

        phone = normalize_phone_number(phone_number)
        code = _CROCKFORD.encode(self._random_bytes(5))
        now = self._clock()

        self._supersede()
        pc = PairingCode(
            code=code,
            phone_number=phone,
            created_at=now,
            expires_at=now + self.pairing_code_timeout_s,
        )
        self._code = pc
        self._codes[code] = pc
        while len(self._codes) > _CODE_HISTORY:
            self._codes.popitem(last=False)

        logger.debug("pairing code issued for %s", phone)
        await self.events.emit("pairing.code.generated", pc)
        return pc

    def mark_attempted(self) -> PairingCode | None:
        pc = self.current_code
        if pc is not None and pc.state is TokenState.GENERATED:
            pc.state = TokenState.ATTEMPTED
        return pc

    @property
    def locked(self) -> bool:
        return self._clock() < self._locked_until

    def _record_failure(self) -> None:
        now = self._clock()
        self._failures.append(now)
        while self._failures and now - self._failures[0] >= self.lockout_s:
            self._failures.popleft()
        if len(self._failures) >= self.max_failed_attempts:
            self._locked_until = now + self.lockout_s
            self._failures.clear()
            logger.warning(
                "pairing code validation locked for %.0fs after %d failures",
                self.lockout_s,
                self.max_failed_attempts,
            )

    def validate(self, code: str) -> PairingCode:
        """
        Check `code` against issued codes and consume it on success.

        Raises `PairingCodeError` with reason `invalid_format`, `not_found`,
        `expired` or `already_used`. `max_failed_attempts` rejections within
        `lockout_s` lock validation for `lockout_s`; while locked every call
        fails with reason `locked`, even for the right code.
        """

        if self.locked:
            raise PairingCodeError("locked")
        try:
            pc = self._check_code(code)
        except PairingCodeError:
            self._record_failure()
            raise
        self._failures.clear()
        return pc

    def _check_code(self, code: str) -> PairingCode:
        if not isinstance(code, str):
            raise PairingCodeError("invalid_format")
        normalized = normalize_pairing_code(code)
        if len(normalized) != PAIRING_CODE_LENGTH or not _CROCKFORD.is_valid(normalized):
            raise PairingCodeError("invalid_format")

        pc = self._codes.get(normalized)
        if pc is None:
            raise PairingCodeError("not_found")
        pc.attempts += 1
        if pc.state is TokenState.USED:
            raise PairingCodeError("already_used")
        if self._expire_if_due(pc):
            raise PairingCodeError("expired")

        pc.state = TokenState.USED
        if pc is self._code:
            self._code = None
        return pc
