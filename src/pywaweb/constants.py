from __future__ import annotations

DEFAULT_ORIGIN = "https://web.whatsapp.com"
DEFAULT_WS_URL = "wss://web.whatsapp.com/ws/chat"

S_WHATSAPP_NET = "s.whatsapp.net"

DICT_VERSION = 3
NOISE_WA_HEADER = bytes([87, 65, 6, DICT_VERSION])  # "WA" + version tuple

# Handshake message layout.
CLIENT_HELLO_TYPE = 0x01
CLIENT_FINISH_TYPE = 0x02
SERVER_FINISH_TYPE = 0x03
CIPHER_SUITE = b"aes-256-gcm"
SERVER_HELLO_MIN_LEN = 73  # version + u64 timestamp + pub key + random
SERVER_FINISH_MIN_LEN = 29  # type + nonce + tag
KEY_LEN = 32
NONCE_LEN = 12

# Libsignal/Baileys: version byte prefixed to public keys before signing.
KEY_BUNDLE_TYPE = b"\x05"

PRE_KEY_ID_MAX = 1 << 24

# WebSocket close codes.
NORMAL_CLOSE_CODES = frozenset({1000, 1001})
FATAL_CLOSE_CODES = frozenset({4401, 4403})

# Stream/failure codes carried in `stream:error` and `failure` nodes.
LOGGED_OUT_CODE = 401
BANNED_CODE = 403
RESTART_REQUIRED_CODE = 515
CONNECTION_REPLACED_CODE = 440
