"""
wire.py — JSON encoding shared by the relay, the client and the engines

Canonical form (sorted keys, no whitespace, no NaN) keeps associated data and
engine payloads byte-identical across parties. Payload bytes travel as
standard base64.
"""

from __future__ import annotations
import base64
import binascii
import json
import re
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .errors import ProtocolViolation
from .models import RoundMessage

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
ALL_RECIPIENTS = "all"

Recipients = Union[str, Iterable[int], None]


def canonical_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def canonical_bytes(obj: Any) -> bytes:
    return canonical_dumps(obj).encode("utf-8")


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def unb64(text: Any, what: str = "payload") -> bytes:
    if not isinstance(text, str):
        raise ProtocolViolation(f"{what} must be a base64 string")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise ProtocolViolation(f"{what} is not valid base64: {exc}") from exc


def check_session_id(session_id: str) -> str:
    """Session ids double as file names and URL segments, so keep them tame."""
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise ValueError(f"invalid session id {session_id!r}")
    return session_id


def parse_recipients(value: Recipients) -> Optional[Tuple[int, ...]]:
    """Normalise ``"all"``/``None``/list-of-ints into ``None`` or a sorted tuple."""
    if value is None or value == ALL_RECIPIENTS:
        return None
    if isinstance(value, (str, bytes)):
        raise ProtocolViolation(f"recipients must be a list of indices or {ALL_RECIPIENTS!r}")
    try:
        indices = [_index(v, "recipient") for v in value]
    except TypeError as exc:
        raise ProtocolViolation("recipients must be a list of indices") from exc
    if not indices:
        raise ProtocolViolation("recipients list is empty")
    return tuple(sorted(set(indices)))


def _index(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ProtocolViolation(f"{what} must be a positive integer, got {value!r}")
    return value


def message_to_json(msg: RoundMessage) -> Dict[str, Any]:
    return {
        "session": msg.session_id,
        "from": msg.sender,
        "round": msg.round,
        "payload": b64(msg.payload),
        "recipients": ALL_RECIPIENTS if msg.recipients is None else list(msg.recipients),
    }


def message_from_json(
    obj: Any,
    session_id: Optional[str] = None,
    round_number: Optional[int] = None,
) -> RoundMessage:
    """Decode a relay message. Path parameters, when given, override the body."""
    if not isinstance(obj, dict):
        raise ProtocolViolation("message body must be a JSON object")
    sid = session_id if session_id is not None else obj.get("session")
    rnd = round_number if round_number is not None else obj.get("round")
    if not isinstance(sid, str) or not SESSION_ID_RE.match(sid):
        raise ProtocolViolation(f"invalid session id {sid!r}")
    if "payload" not in obj:
        raise ProtocolViolation("message is missing 'payload'")
    return RoundMessage(
        session_id=sid,
        sender=_index(obj.get("from"), "from"),
        round=_index(rnd, "round"),
        payload=unb64(obj["payload"]),
        recipients=parse_recipients(obj.get("recipients", ALL_RECIPIENTS)),
    )
