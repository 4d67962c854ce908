from __future__ import annotations

from dataclasses import dataclass, field, fields

from .constants import DEFAULT_WS_URL


@dataclass(slots=True)
class SocketConfig:
    """
    Session tuning knobs. Every duration is in seconds.

    Values are validated on construction so a bad setting fails here rather
    than deep inside the reconnect or keep-alive loops.
    """

    ws_url: str = DEFAULT_WS_URL
    headers: dict[str, str] = field(default_factory=dict)

    connect_timeout_s: float = 20.0
    handshake_timeout_s: float = 20.0

    query_timeout_s: float = 60.0
    query_max_retries: int = 0

    max_reconnect_attempts: int = 5
    reconnect_base_delay_s: float = 1.0
    reconnect_max_delay_s: float = 30.0
    reconnect_jitter_s: float = 1.0

    keep_alive_interval_s: float = 30.0
    pong_timeout_s: float = 10.0

    qr_timeout_s: float = 60.0
    qr_max_retries: int = 5
    pairing_code_timeout_s: float = 5 * 60.0
    pairing_max_failed_attempts: int = 5
    pairing_lockout_s: float = 15 * 60.0

    pre_key_count: int = 100
    signed_pre_key_lifetime_s: float = 7 * 24 * 60 * 60.0

    codec_error_threshold: int = 5

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "reconnect_jitter_s":
                if value < 0:
                    raise ValueError("reconnect_jitter_s must be >= 0")
            elif f.name.endswith("_s") and value <= 0:
                raise ValueError(f"{f.name} must be > 0, got {value!r}")
        for name in ("query_max_retries", "max_reconnect_attempts", "qr_max_retries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.pre_key_count <= 0:
            raise ValueError("pre_key_count must be > 0")
        if self.pairing_max_failed_attempts <= 0:
            raise ValueError("pairing_max_failed_attempts must be > 0")
        if self.codec_error_threshold <= 0:
            raise ValueError("codec_error_threshold must be > 0")
        if self.reconnect_base_delay_s > self.reconnect_max_delay_s:
            raise ValueError("reconnect_base_delay_s cannot exceed reconnect_max_delay_s")
        if not self.ws_url:
            raise ValueError("ws_url is required")
