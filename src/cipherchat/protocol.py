"""
CipherChat - Wire envelopes.

Every blob handed to the transport is a UTF-8 JSON envelope:

    {"v": 1, "kind": "message", "id": ..., "sender": ..., "timestamp": ...,
     "type": "text", "body": "<provider ciphertext>"}

Receipts reuse the same shape with kind "delivered" or "read"; their id
is the id of the acknowledged message and they carry no body. Only the
message body is encrypted; ids and timestamps are routing metadata.
Unknown fields are ignored so envelopes can be extended.
"""

import json
from dataclasses import dataclass
from enum import Enum

from .constants import ENVELOPE_VERSION
from .errors import ErrorCode, TransportError


class EnvelopeKind(str, Enum):
    MESSAGE = "message"
    DELIVERED = "delivered"
    READ = "read"


@dataclass(frozen=True)
class Envelope:
    kind: EnvelopeKind
    id: str
    sender: str
    timestamp: int = 0
    type: str = "text"
    body: str = ""

    @property
    def is_receipt(self) -> bool:
        return self.kind in (EnvelopeKind.DELIVERED, EnvelopeKind.READ)


def pack_envelope(envelope: Envelope) -> bytes:
    payload = {
        "v": ENVELOPE_VERSION,
        "kind": envelope.kind.value,
        "id": envelope.id,
        "sender": envelope.sender,
        "timestamp": envelope.timestamp,
        "type": envelope.type,
        "body": envelope.body,
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def unpack_envelope(blob: bytes) -> Envelope:
    """
    Parse a blob received from the transport.

    Raises:
        TransportError: If the blob is not a valid envelope
    """
    try:
        payload = json.loads(blob.decode("utf-8") if isinstance(blob, bytes) else blob)
        if not isinstance(payload, dict):
            raise ValueError("envelope is not an object")
        kind = EnvelopeKind(payload["kind"])
        envelope = Envelope(
            kind=kind,
            id=str(payload["id"]),
            sender=str(payload["sender"]),
            timestamp=int(payload.get("timestamp", 0)),
            type=str(payload.get("type", "text")),
            body=str(payload.get("body", "")),
        )
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise TransportError(
            ErrorCode.E206_INVALID_ENVELOPE, f"Invalid envelope: {e}", {"error": str(e)}
        ) from e

    if not envelope.id or not envelope.sender:
        raise TransportError(ErrorCode.E206_INVALID_ENVELOPE, "Envelope missing id or sender")
    return envelope
