from __future__ import annotations

TAGS: dict[str, int] = {
    "LIST_EMPTY": 0,
    "DICTIONARY_0": 236,
    "DICTIONARY_1": 237,
    "DICTIONARY_2": 238,
    "DICTIONARY_3": 239,
    "LIST_8": 248,
    "LIST_16": 249,
    "HEX_8": 251,
    "BINARY_8": 252,
    "BINARY_20": 253,
    "BINARY_32": 254,
    "NIBBLE_8": 255,
    "PACKED_MAX": 127,
}

# Index 0 is reserved (LIST_EMPTY); single-byte tokens must stay below DICTIONARY_0.
SINGLE_BYTE_TOKENS: tuple[str, ...] = (
    "",
    "xmlstreamstart",
    "xmlstreamend",
    "s.whatsapp.net",
    "type",
    "participant",
    "from",
    "receipt",
    "id",
    "notification",
    "to",
    "message",
    "iq",
    "result",
    "error",
    "get",
    "set",
    "xmlns",
    "ack",
    "class",
    "code",
    "text",
    "t",
    "w:p",
    "urn:xmpp:ping",
    "ping",
    "pong",
    "success",
    "failure",
    "stream:error",
    "reason",
    "conflict",
    "replaced",
    "md",
    "pair-device",
    "pair-success",
    "ref",
    "device",
    "device-identity",
    "platform",
    "jid",
    "lid",
    "name",
    "passive",
    "active",
    "encrypt",
    "count",
    "key",
    "value",
    "registration",
    "skey",
    "identity",
    "list",
    "link_code_companion_reg",
    "companion_platform_id",
    "companion_platform_display",
    "link_code_pairing_wrapped_companion_ephemeral_pub",
    "companion_server_auth_key_pub",
    "stage",
    "companion_hello",
    "phone_number",
    "md:keyindex",
    "logout",
    "remove-companion-device",
    "presence",
    "available",
    "unavailable",
    "chatstate",
    "status",
    "usync",
    "query",
    "user",
    "contact",
    "urn:xmpp:whatsapp:push",
    "w",
    "w:g2",
    "g.us",
)

# Secondary dictionaries, addressed as DICTIONARY_n followed by an index byte.
DOUBLE_BYTE_TOKENS: tuple[tuple[str, ...], ...] = (
    (
        "props",
        "prop",
        "protocol",
        "config",
        "offline",
        "offline_preview",
        "dirty",
        "account_sync",
        "groups",
        "privacy",
        "blocklist",
        "picture",
        "media_conn",
        "abt",
        "retry",
        "edge_routing",
        "routing_info",
    ),
)


def _build_token_map() -> dict[str, tuple[int | None, int]]:
    out: dict[str, tuple[int | None, int]] = {}
    for i, tok in enumerate(SINGLE_BYTE_TOKENS):
        if tok:
            out[tok] = (None, i)
    for d, tokens in enumerate(DOUBLE_BYTE_TOKENS):
        for i, tok in enumerate(tokens):
            out.setdefault(tok, (d, i))
    return out


# token -> (dictionary index or None for single-byte, index)
TOKEN_MAP: dict[str, tuple[int | None, int]] = _build_token_map()

assert len(SINGLE_BYTE_TOKENS) < TAGS["DICTIONARY_0"]
