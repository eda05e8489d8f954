"""Wire messages exchanged between the relay and dashboard clients.

Every message is a UTF-8 JSON object ``{"type": ..., "payload": {...}}``
where the payload is an AppStatePayload. Absent payload keys mean
"no change to that field".
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..models import StatePatch, dump_patch, parse_payload


class MessageType(Enum):
    """Kind of a relay message."""

    INIT = "INIT"  # relay -> client, full document on connect
    UPDATE = "UPDATE"  # either direction, partial document
    SYNC_INITIAL = "SYNC_INITIAL"  # client -> relay, seed for an empty relay


class ProtocolError(ValueError):
    """Raised when an incoming message cannot be decoded."""


@dataclass
class Message:
    """A decoded relay message.

    ``payload`` keeps the raw JSON object as received so it can be relayed
    verbatim; ``patch`` holds the parsed, typed fields.
    """

    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)
    patch: StatePatch = field(default_factory=dict)

    @classmethod
    def from_patch(cls, msg_type: MessageType, patch: StatePatch) -> "Message":
        return cls(type=msg_type, payload=dump_patch(patch), patch=patch)

    def encode(self) -> str:
        return encode_message(self.type, self.payload)


def encode_message(msg_type: MessageType, payload: dict[str, Any]) -> str:
    """Serialize a message to JSON text."""
    return json.dumps({"type": msg_type.value, "payload": payload})


def decode_message(raw: str | bytes) -> Message:
    """Parse JSON text into a Message.

    Raises:
        ProtocolError: On invalid JSON, a missing or unknown type, or a
            malformed payload.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Message is not UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # Also covers nesting too deep and integers over the digit limit
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    type_name = data.get("type")
    if type_name is None:
        raise ProtocolError("Message has no type")
    try:
        msg_type = MessageType(type_name)
    except ValueError as e:
        raise ProtocolError(f"Unknown message type: {type_name!r}") from e

    payload = data.get("payload", {})
    if payload is None:
        payload = {}
    try:
        patch = parse_payload(payload)
    except ValueError as e:
        raise ProtocolError(str(e)) from e

    return Message(type=msg_type, payload=payload, patch=patch)
