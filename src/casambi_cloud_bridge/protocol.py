"""Codec for the Casambi WebSocket message envelope.

Frames are JSON objects. Server pushes carry a ``method`` discriminator
(``unitChanged``, ``peerChanged``, ``networkUpdated``) and the ``wire`` they
belong to; replies to wire open requests carry ``wireStatus`` plus the ``ref``
token the client generated for the request. The wire id is assigned only on
success, so ``ref`` is the only reliable way to pair an open request with its
reply.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import FrameDecodeError

METHOD_OPEN = "open"
METHOD_CLOSE = "close"
METHOD_CONTROL_UNIT = "controlUnit"
METHOD_UNIT_CHANGED = "unitChanged"
METHOD_PEER_CHANGED = "peerChanged"
METHOD_NETWORK_UPDATED = "networkUpdated"
EVENT_METHODS = (METHOD_UNIT_CHANGED, METHOD_PEER_CHANGED, METHOD_NETWORK_UPDATED)

WIRE_STATUS_OPEN_SUCCEED = "openWireSucceed"

# `type` field of the open request: 1 = client wire
WIRE_TYPE_CLIENT = 1

_REF_BYTES = 8


@dataclass(frozen=True)
class InboundMessage:
    """Decoded server frame."""

    raw: Mapping[str, Any]

    @property
    def method(self) -> Optional[str]:
        value = self.raw.get("method")
        return value if isinstance(value, str) else None

    @property
    def wire(self) -> Optional[int]:
        value = self.raw.get("wire")
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return None

    @property
    def wire_status(self) -> Optional[str]:
        value = self.raw.get("wireStatus")
        return value if isinstance(value, str) else None

    @property
    def ref(self) -> Optional[str]:
        value = self.raw.get("ref")
        return str(value) if value is not None else None

    @property
    def unit_id(self) -> Optional[int]:
        value = self.raw.get("id")
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return None

    @property
    def controls(self) -> List[Mapping[str, Any]]:
        value = self.raw.get("controls")
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, Mapping)]

    @property
    def is_wire_status(self) -> bool:
        return "wireStatus" in self.raw

    @property
    def kind(self) -> str:
        """Short label used for metrics and logs."""
        if self.method:
            return self.method
        if self.is_wire_status:
            return "wireStatus"
        return "unknown"

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


def encode_frame(message: Mapping[str, Any]) -> str:
    """Serialize an outbound message as JSON text."""

    return json.dumps(dict(message), ensure_ascii=False, separators=(",", ":"))


def decode_frame(data: Union[str, bytes, bytearray]) -> InboundMessage:
    """Parse an inbound frame, raising FrameDecodeError for anything but a JSON object."""

    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameDecodeError("frame is not valid UTF-8") from exc
    try:
        payload = json.loads(data)
    except (ValueError, TypeError, RecursionError) as exc:
        raise FrameDecodeError(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise FrameDecodeError(f"frame is a JSON {type(payload).__name__}, expected an object")
    return InboundMessage(raw=payload)


def new_ref() -> str:
    """Return a fresh opaque correlation token for an open handshake."""

    return secrets.token_hex(_REF_BYTES)


def open_wire_frame(network_id: str, session_id: str, ref: str, wire: int) -> Dict[str, Any]:
    return {
        "method": METHOD_OPEN,
        "id": network_id,
        "session": session_id,
        "ref": ref,
        "wire": wire,
        "type": WIRE_TYPE_CLIENT,
    }


def control_unit_frame(wire: int, unit_id: int, target_controls: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "method": METHOD_CONTROL_UNIT,
        "wire": wire,
        "id": unit_id,
        "targetControls": dict(target_controls),
    }


def close_wire_frame(wire: int) -> Dict[str, Any]:
    return {"method": METHOD_CLOSE, "wire": wire}
