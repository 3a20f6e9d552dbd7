"""
CipherChat - Cryptography tests.

Tests for the default provider (X25519 key agreement, AES-256-GCM message
bodies) and passphrase sealing of identity records.
"""

import base64

import pytest

from cipherchat.crypto import generate_fingerprint, generate_uid, is_sealed, open_record, seal_record
from cipherchat.constants import DECRYPTION_FAILED_MARKER
from cipherchat.errors import CryptoError, DecryptionError, ErrorCode


def test_keypair_generation(crypto):
    """Test X25519 keypair generation."""
    public_key, private_key = crypto.generate_key_pair()

    # Verify key sizes
    assert len(base64.b64decode(public_key)) == 32
    assert len(base64.b64decode(private_key)) == 32

    # Verify keys are different
    assert public_key != private_key


def test_key_exchange(crypto):
    """Test X25519 key exchange produces matching session keys."""
    alice_pub, alice_priv = crypto.generate_key_pair()
    bob_pub, bob_priv = crypto.generate_key_pair()

    alice_key = crypto.derive_session_key(alice_priv, bob_pub)
    bob_key = crypto.derive_session_key(bob_priv, alice_pub)

    assert alice_key == bob_key
    assert len(base64.b64decode(alice_key)) == 32


def test_key_exchange_with_bad_peer_key(crypto):
    """Test that an unusable peer key raises CryptoError."""
    _, private_key = crypto.generate_key_pair()

    with pytest.raises(CryptoError) as exc_info:
        crypto.derive_session_key(private_key, "not-base64!")
    assert exc_info.value.code == ErrorCode.E108_KEY_DERIVATION_FAILED


def test_encrypt_decrypt_roundtrip(crypto):
    """Test that a session key decrypts what it encrypted."""
    alice_pub, alice_priv = crypto.generate_key_pair()
    bob_pub, bob_priv = crypto.generate_key_pair()
    alice_key = crypto.derive_session_key(alice_priv, bob_pub)
    bob_key = crypto.derive_session_key(bob_priv, alice_pub)

    plaintext = "This is a secret message with unicode: 你好世界 🔒"
    ciphertext = crypto.encrypt(plaintext, alice_key)

    assert plaintext not in ciphertext
    assert crypto.decrypt(ciphertext, bob_key) == plaintext


def test_encryption_uses_fresh_nonce(crypto):
    """Test that encrypting the same text twice yields different ciphertexts."""
    _, private_key = crypto.generate_key_pair()
    peer_pub, _ = crypto.generate_key_pair()
    key = crypto.derive_session_key(private_key, peer_pub)

    assert crypto.encrypt("same", key) != crypto.encrypt("same", key)


def test_decrypt_with_wrong_key(crypto):
    """Test that decrypting with another session key fails."""
    _, priv_a = crypto.generate_key_pair()
    pub_b, _ = crypto.generate_key_pair()
    pub_c, _ = crypto.generate_key_pair()
    key_ab = crypto.derive_session_key(priv_a, pub_b)
    key_ac = crypto.derive_session_key(priv_a, pub_c)

    ciphertext = crypto.encrypt("hi", key_ab)

    with pytest.raises(DecryptionError) as exc_info:
        crypto.decrypt(ciphertext, key_ac)
    assert exc_info.value.code == ErrorCode.E102_DECRYPTION_FAILED


@pytest.mark.parametrize("ciphertext", ["", "not base64 at all", base64.b64encode(b"short").decode()])
def test_decrypt_malformed_input(crypto, ciphertext):
    """Test that malformed ciphertexts raise DecryptionError, never anything else."""
    _, private_key = crypto.generate_key_pair()
    peer_pub, _ = crypto.generate_key_pair()
    key = crypto.derive_session_key(private_key, peer_pub)

    with pytest.raises(DecryptionError):
        crypto.decrypt(ciphertext, key)


def test_decrypt_tampered_ciphertext(crypto):
    """Test that a flipped byte is detected by the authentication tag."""
    _, private_key = crypto.generate_key_pair()
    peer_pub, _ = crypto.generate_key_pair()
    key = crypto.derive_session_key(private_key, peer_pub)

    raw = bytearray(base64.b64decode(crypto.encrypt("hello", key)))
    raw[-1] ^= 0x01

    with pytest.raises(DecryptionError):
        crypto.decrypt(base64.b64encode(bytes(raw)).decode(), key)


def test_decrypt_or_placeholder(crypto):
    """Test that the read path gets the failure marker instead of an exception."""
    assert crypto.decrypt_or_placeholder("garbage", "") == DECRYPTION_FAILED_MARKER


def test_validate_public_key(crypto):
    """Test public key validation."""
    public_key, _ = crypto.generate_key_pair()

    assert crypto.validate_public_key(public_key) is True
    assert crypto.validate_public_key("") is False
    assert crypto.validate_public_key("@@@") is False
    assert crypto.validate_public_key(base64.b64encode(b"too short").decode()) is False


def test_fingerprint_generation(crypto):
    """Test fingerprint generation."""
    public_key, _ = crypto.generate_key_pair()

    fingerprint = generate_fingerprint(public_key)

    # Verify fingerprint is 64 hex characters (SHA-256)
    assert len(fingerprint) == 64
    assert all(c in "0123456789abcdef" for c in fingerprint)

    # Verify same key produces same fingerprint
    assert generate_fingerprint(public_key) == fingerprint


def test_generate_uid_is_unique():
    """Test that generated ids are distinct UUID4 strings."""
    uids = {generate_uid() for _ in range(100)}

    assert len(uids) == 100
    assert all(len(uid) == 36 for uid in uids)


class TestRecordSealing:
    """Tests for passphrase sealing of identity records."""

    def test_seal_and_open(self):
        """Test that a sealed record opens with the right passphrase."""
        record = {"id": "abc", "private_key": "secret"}

        sealed = seal_record(record, "correct horse")

        assert is_sealed(sealed)
        assert "secret" not in str(sealed)
        assert open_record(sealed, "correct horse") == record

    def test_wrong_passphrase(self):
        """Test that a wrong passphrase raises DecryptionError."""
        sealed = seal_record({"id": "abc"}, "right")

        with pytest.raises(DecryptionError):
            open_record(sealed, "wrong")

    def test_malformed_sealed_record(self):
        """Test that a truncated sealed record raises DecryptionError."""
        with pytest.raises(DecryptionError):
            open_record({"salt": "AAAA"}, "pw")

    def test_plain_record_is_not_sealed(self):
        """Test sealed-record detection on a plain identity record."""
        assert is_sealed({"id": "abc", "nickname": "Alice"}) is False
