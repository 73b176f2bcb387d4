"""
Wire protocol between the engine and an execution context.

Each message is one JSON object on its own line:

    {"__sandbox": true, "secret": "...", "type": "log", "args": ["..."]}
"""

from __future__ import annotations

import hmac
import json
from enum import Enum
from collections.abc import Iterable
from typing import cast

from runbox.schemas import Message

ENVELOPE_MARKER = "__sandbox"


class MessageKind(str, Enum):
    LOG = "log"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DONE = "done"


_KINDS = {kind.value for kind in MessageKind}


def encode_message(secret: str, kind: MessageKind | str, args: Iterable[object] = ()) -> str:
    kind_value = kind.value if isinstance(kind, MessageKind) else str(kind)
    payload = {
        ENVELOPE_MARKER: True,
        "secret": secret,
        "type": kind_value,
        "args": [str(arg) for arg in args],
    }
    return json.dumps(payload, ensure_ascii=False)


def decode_message(line: str | bytes) -> Message | None:
    """Decode one line into a Message, or None when it is not an envelope."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        loaded = cast(object, json.loads(line))
    except json.JSONDecodeError:
        return None
    if not isinstance(loaded, dict):
        return None
    return message_from_envelope(cast(dict[str, object], loaded))


def message_from_envelope(data: dict[str, object]) -> Message | None:
    if data.get(ENVELOPE_MARKER) is not True:
        return None
    kind = data.get("type") or MessageKind.LOG.value
    if kind not in _KINDS:
        return None
    raw_args = data.get("args", [])
    if not isinstance(raw_args, list):
        raw_args = [raw_args]
    secret = data.get("secret")
    return Message(
        authenticated=True,
        secret=secret if isinstance(secret, str) else "",
        type=cast(str, kind),
        args=[str(arg) for arg in cast(list[object], raw_args)],
    )


def is_authentic(message: Message, secret: str | None) -> bool:
    """Check the envelope marker and compare secrets in constant time."""
    if not message.authenticated or not secret or not message.secret:
        return False
    return hmac.compare_digest(message.secret.encode("utf-8"), secret.encode("utf-8"))
