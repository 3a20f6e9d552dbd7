"""
CipherChat - Pairing payload encoding and decoding.

The pairing payload is the record two devices exchange out of band (QR
code or manual text entry) to introduce their identities:

    {"v": 1, "id": "<peer id>", "name": "<nickname>", "key": "<public key>"}

Decoding is tolerant: unknown fields are ignored and a missing "v" is
read as version 1, so newer peers can extend the record freely.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from .constants import MAX_NICKNAME_LENGTH, PAIRING_PAYLOAD_VERSION
from .crypto import CryptoProvider
from .errors import PairingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerDescriptor:
    """A decoded pairing payload."""

    id: str
    name: str
    key: str


def encode_pairing_payload(peer_id: str, name: str, public_key: str) -> str:
    """Encode the local identity's shareable fields as a compact JSON record."""
    payload = {"v": PAIRING_PAYLOAD_VERSION, "id": peer_id, "name": name, "key": public_key}
    return json.dumps(payload, separators=(",", ":"))


def _require_text(payload: Mapping[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise PairingError(
            f"Invalid pairing payload: missing or empty '{field}'", {"field": field}
        )
    return value.strip()


def decode_pairing_payload(
    data: Union[str, bytes, Mapping[str, Any]],
    crypto: Optional[CryptoProvider] = None,
) -> PeerDescriptor:
    """Decode a pairing payload into a PeerDescriptor.

    Args:
        data: JSON text or an already parsed mapping
        crypto: If given, the peer key is validated against this provider

    Raises:
        PairingError: If the payload is malformed or the key is unusable
    """
    if isinstance(data, (str, bytes)):
        try:
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PairingError(f"Invalid pairing payload: JSON parse error: {e}") from e
    else:
        payload = data

    if not isinstance(payload, Mapping):
        raise PairingError("Invalid pairing payload: expected an object")

    version = payload.get("v", PAIRING_PAYLOAD_VERSION)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise PairingError(f"Invalid pairing payload version: {version!r}")
    if version > PAIRING_PAYLOAD_VERSION:
        logger.debug(f"Pairing payload version {version} is newer than {PAIRING_PAYLOAD_VERSION}")

    peer_id = _require_text(payload, "id")
    name = _require_text(payload, "name")[:MAX_NICKNAME_LENGTH]
    key = _require_text(payload, "key")

    if crypto is not None and not crypto.validate_public_key(key):
        raise PairingError("Invalid pairing payload: unusable public key", {"id": peer_id})

    return PeerDescriptor(id=peer_id, name=name, key=key)
