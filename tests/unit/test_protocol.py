"""
Unit tests for cipherchat.protocol and cipherchat.errors.
"""

import json

import pytest

from cipherchat.errors import ErrorCode, InvalidTransitionError, SessionNotFoundError, TransportError
from cipherchat.protocol import Envelope, EnvelopeKind, pack_envelope, unpack_envelope


class TestEnvelope:
    """Test packing and parsing wire envelopes."""

    def test_pack_layout(self):
        """Test the compact JSON layout of a message envelope."""
        blob = pack_envelope(
            Envelope(kind=EnvelopeKind.MESSAGE, id="m1", sender="alice", timestamp=42, body="CIPHER")
        )

        assert json.loads(blob) == {
            "v": 1,
            "kind": "message",
            "id": "m1",
            "sender": "alice",
            "timestamp": 42,
            "type": "text",
            "body": "CIPHER",
        }
        assert b" " not in blob

    def test_receipt_kinds(self):
        """Test the is_receipt flag."""
        assert Envelope(kind=EnvelopeKind.READ, id="m1", sender="bob").is_receipt
        assert Envelope(kind=EnvelopeKind.DELIVERED, id="m1", sender="bob").is_receipt
        assert not Envelope(kind=EnvelopeKind.MESSAGE, id="m1", sender="bob").is_receipt

    def test_unpack_tolerates_extra_fields(self):
        """Test that fields from newer peers are ignored."""
        blob = b'{"v": 3, "kind": "read", "id": "m1", "sender": "bob", "reaction": "+1"}'

        envelope = unpack_envelope(blob)

        assert envelope == Envelope(kind=EnvelopeKind.READ, id="m1", sender="bob")

    def test_unpack_accepts_text(self):
        """Test that str payloads are accepted as well as bytes."""
        assert unpack_envelope('{"kind": "message", "id": "m1", "sender": "bob"}').id == "m1"

    @pytest.mark.parametrize(
        "blob",
        [
            b"\xff\xfe",
            b"not json",
            b"[]",
            b'{"kind": "shout", "id": "m1", "sender": "bob"}',
            b'{"kind": "message", "sender": "bob"}',
            b'{"kind": "message", "id": "", "sender": "bob"}',
            b'{"kind": "message", "id": "m1", "sender": "bob", "timestamp": "soon"}',
        ],
    )
    def test_invalid_envelopes(self, blob):
        """Test that malformed blobs raise TransportError E206."""
        with pytest.raises(TransportError) as exc_info:
            unpack_envelope(blob)
        assert exc_info.value.code == ErrorCode.E206_INVALID_ENVELOPE


class TestErrors:
    """Test the error hierarchy."""

    def test_to_dict(self):
        """Test error serialization."""
        error = TransportError(message="down", details={"peer_id": "bob"})

        assert error.to_dict() == {
            "code": ErrorCode.E200_TRANSPORT_ERROR.value,
            "message": "down",
            "details": {"peer_id": "bob"},
        }
        assert str(error).startswith(f"[{ErrorCode.E200_TRANSPORT_ERROR.value}]")

    def test_specialised_errors_carry_details(self):
        """Test the details of the specialised errors."""
        missing = SessionNotFoundError("bob-1")
        invalid = InvalidTransitionError("m1", "read", "sent")

        assert missing.details["chat_id"] == "bob-1"
        assert invalid.details["message_id"] == "m1"
