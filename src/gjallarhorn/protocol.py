"""Line protocol between the client and the privileged worker.

One JSON object per line, UTF-8, no embedded newlines::

    {"type":"ready","pid":4242,"v":1}
    {"data":{...},"type":"snapshot","v":1}
    {"reason":"smartctl not found","type":"error","v":1}
    {"type":"shutdown","v":1}

Encoding is canonical (sorted keys, compact separators), so a line produced
by ``encode`` survives ``encode(decode(line)) == line``. Decoding never
raises: bytes from a process that can die mid-write come back as a
``ParseError`` the caller logs and skips. Unknown keys are ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from gjallarhorn.models import PrivilegedData

PROTOCOL_VERSION = 1

# Longest line either side will buffer before declaring a framing violation.
MAX_LINE_BYTES = 1024 * 1024


@dataclass(frozen=True)
class Ready:
    """Worker is up and running elevated."""

    pid: int


@dataclass(frozen=True)
class Snapshot:
    """Result of one elevated probe cycle."""

    data: PrivilegedData


@dataclass(frozen=True)
class Error:
    """Non-fatal worker-side problem worth surfacing in the client log."""

    reason: str


@dataclass(frozen=True)
class Shutdown:
    """Sent by the client to stop the worker, and by the worker on clean exit."""


WorkerMessage = Union[Ready, Snapshot, Error, Shutdown]


class ParseErrorKind(str, Enum):
    MALFORMED = "malformed"
    UNKNOWN_VARIANT = "unknown_variant"
    TRUNCATED_LINE = "truncated_line"


@dataclass(frozen=True)
class ParseError:
    """Why a line could not be turned into a ``WorkerMessage``."""

    kind: ParseErrorKind
    detail: str = ""


def _payload(message: WorkerMessage) -> dict[str, Any]:
    if isinstance(message, Ready):
        return {"type": "ready", "pid": message.pid}
    if isinstance(message, Snapshot):
        return {"type": "snapshot", "data": message.data.to_dict()}
    if isinstance(message, Error):
        return {"type": "error", "reason": message.reason}
    if isinstance(message, Shutdown):
        return {"type": "shutdown"}
    raise TypeError(f"Not a worker message: {message!r}")


def encode(message: WorkerMessage) -> str:
    """Encode a message as one newline-terminated line."""
    payload = _payload(message)
    payload["v"] = PROTOCOL_VERSION
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n"


def _decode_ready(obj: dict[str, Any]) -> Ready:
    pid = obj.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        raise ValueError("ready.pid must be an integer")
    return Ready(pid=pid)


def _decode_snapshot(obj: dict[str, Any]) -> Snapshot:
    data = obj.get("data")
    if not isinstance(data, dict):
        raise ValueError("snapshot.data must be an object")
    return Snapshot(data=PrivilegedData.from_dict(data))


def _decode_error(obj: dict[str, Any]) -> Error:
    reason = obj.get("reason")
    if not isinstance(reason, str):
        raise ValueError("error.reason must be a string")
    return Error(reason=reason)


_DECODERS = {
    "ready": _decode_ready,
    "snapshot": _decode_snapshot,
    "error": _decode_error,
    "shutdown": lambda obj: Shutdown(),
}


def decode(line: bytes | str) -> WorkerMessage | ParseError:
    """Decode one line (with or without its trailing newline)."""
    if isinstance(line, bytes):
        if len(line) > MAX_LINE_BYTES:
            return ParseError(ParseErrorKind.TRUNCATED_LINE, f"{len(line)} bytes")
        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError as e:
            return ParseError(ParseErrorKind.MALFORMED, f"invalid utf-8: {e.reason}")
    else:
        text = line

    text = text.rstrip("\r\n")
    if "\n" in text:
        return ParseError(ParseErrorKind.MALFORMED, "embedded newline")

    try:
        obj = json.loads(text)
    except (ValueError, RecursionError) as e:
        return ParseError(ParseErrorKind.MALFORMED, f"invalid json: {e}")

    if not isinstance(obj, dict):
        return ParseError(ParseErrorKind.MALFORMED, "not an object")
    variant = obj.get("type")
    if not isinstance(variant, str):
        return ParseError(ParseErrorKind.MALFORMED, "missing type")

    decoder = _DECODERS.get(variant)
    if decoder is None:
        return ParseError(ParseErrorKind.UNKNOWN_VARIANT, variant)

    try:
        return decoder(obj)
    except (ValueError, TypeError, KeyError) as e:
        return ParseError(ParseErrorKind.MALFORMED, f"{variant}: {e}")


def decode_frame(raw: bytes) -> WorkerMessage | ParseError | None:
    """Decode raw ``readline()`` output.

    Returns None for an empty read or for an unterminated tail at EOF
    (the writer died mid-line), unless that tail is longer than
    ``MAX_LINE_BYTES``, which is a framing violation.
    """
    if not raw:
        return None
    if not raw.endswith(b"\n"):
        if len(raw) > MAX_LINE_BYTES:
            return ParseError(ParseErrorKind.TRUNCATED_LINE, f"unterminated {len(raw)} bytes")
        return None
    return decode(raw)
