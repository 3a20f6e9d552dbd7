"""
CipherChat - Pluggable cryptographic provider.

The core only depends on the CryptoProvider interface:
- generate_key_pair() for identity creation
- derive_session_key() for the per-session symmetric key
- encrypt()/decrypt() for message bodies (decrypt raises DecryptionError)
- validate_public_key() for pairing payloads

The default provider uses well-tested primitives from the cryptography
library (Apache 2.0/BSD License):
- X25519 Elliptic Curve Diffie-Hellman for key agreement
- HKDF-SHA256 for session key derivation
- AES-256-GCM authenticated encryption

Identity records can additionally be sealed at rest with an
Argon2id-derived key (argon2-cffi, MIT License).
"""

import base64
import binascii
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    DECRYPTION_FAILED_MARKER,
    KEY_SIZE,
    NONCE_SIZE,
    SALT_SIZE,
    SESSION_KEY_INFO,
)
from .errors import CryptoError, DecryptionError, ErrorCode

logger = logging.getLogger(__name__)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("utf-8"), validate=True)


class CryptoProvider(ABC):
    """Capability interface for identity keys and message encryption.

    Keys and ciphertexts cross this interface as base64 strings so that
    they can be stored in JSON records unchanged.
    """

    @abstractmethod
    def generate_key_pair(self) -> Tuple[str, str]:
        """Return a fresh (public_key, private_key) pair."""

    @abstractmethod
    def derive_session_key(self, private_key: str, peer_public_key: str) -> str:
        """Derive the symmetric key shared with a paired peer."""

    @abstractmethod
    def encrypt(self, plaintext: str, session_key: str) -> str:
        """Encrypt plaintext for transport."""

    @abstractmethod
    def decrypt(self, ciphertext: str, session_key: str) -> str:
        """Decrypt ciphertext.

        Raises:
            DecryptionError: On malformed input or key mismatch
        """

    @abstractmethod
    def validate_public_key(self, public_key: str) -> bool:
        """Check that a peer public key is usable with this provider."""

    def decrypt_or_placeholder(self, ciphertext: str, session_key: str) -> str:
        """Decrypt, falling back to the failure marker instead of raising."""
        try:
            return self.decrypt(ciphertext, session_key)
        except DecryptionError as e:
            logger.warning(f"Could not decrypt message body: {e.message}")
            return DECRYPTION_FAILED_MARKER


class X25519AesGcmProvider(CryptoProvider):
    """
    Default provider: X25519 key agreement + HKDF-SHA256 + AES-256-GCM.

    X25519 provides:
    - 128-bit security level
    - Small key size (32 bytes)
    - Resistance to timing attacks

    Ciphertext layout (base64): 12-byte nonce || AES-GCM ciphertext+tag.
    """

    def generate_key_pair(self) -> Tuple[str, str]:
        try:
            private_key = x25519.X25519PrivateKey.generate()
            private_bytes = private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            )
            public_bytes = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        except Exception as e:
            raise CryptoError(
                ErrorCode.E104_KEY_GENERATION_FAILED, f"Key generation failed: {e}"
            ) from e
        return _b64encode(public_bytes), _b64encode(private_bytes)

    def derive_session_key(self, private_key: str, peer_public_key: str) -> str:
        """
        Perform X25519 key exchange and derive a 32-byte session key.

        Both peers derive the same key from their own private key and the
        other side's public key.
        """
        try:
            local = x25519.X25519PrivateKey.from_private_bytes(_b64decode(private_key))
            remote = x25519.X25519PublicKey.from_public_bytes(_b64decode(peer_public_key))
            shared_secret = local.exchange(remote)
        except (ValueError, binascii.Error) as e:
            raise CryptoError(
                ErrorCode.E108_KEY_DERIVATION_FAILED, f"Key exchange failed: {e}"
            ) from e

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=SESSION_KEY_INFO,
        )
        return _b64encode(hkdf.derive(shared_secret))

    def encrypt(self, plaintext: str, session_key: str) -> str:
        try:
            aesgcm = AESGCM(_b64decode(session_key))
        except (ValueError, binascii.Error) as e:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid session key: {e}") from e

        nonce = os.urandom(NONCE_SIZE)
        ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _b64encode(nonce + ciphertext)

    def decrypt(self, ciphertext: str, session_key: str) -> str:
        try:
            aesgcm = AESGCM(_b64decode(session_key))
            blob = _b64decode(ciphertext)
            if len(blob) <= NONCE_SIZE:
                raise DecryptionError("Ciphertext too short")
            plaintext = aesgcm.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
            return plaintext.decode("utf-8")
        except DecryptionError:
            raise
        except InvalidTag as e:
            raise DecryptionError("Authentication failed (wrong key or tampered data)") from e
        except (ValueError, TypeError, AttributeError, binascii.Error, UnicodeDecodeError) as e:
            raise DecryptionError(f"Malformed ciphertext: {e}") from e

    def validate_public_key(self, public_key: str) -> bool:
        try:
            x25519.X25519PublicKey.from_public_bytes(_b64decode(public_key))
            return True
        except (ValueError, TypeError, AttributeError, binascii.Error):
            return False


def generate_fingerprint(public_key: str) -> str:
    """
    Generate a human-readable fingerprint from a public key using SHA-256.

    Users compare fingerprints out-of-band to detect a substituted key in
    the pairing exchange. Returns a 64-character hexadecimal string.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(public_key.encode("utf-8"))
    return digest.finalize().hex()


def generate_uid() -> str:
    """Generate a globally unique identifier (UUID4 string)."""
    return str(uuid.uuid4())


def _derive_passphrase_key(passphrase: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def seal_record(record: Dict[str, Any], passphrase: str) -> Dict[str, str]:
    """
    Encrypt a JSON-serializable record with a passphrase using AES-256-GCM.

    The key is derived with Argon2id using a unique salt per record, so
    the identity's private key is protected at rest.
    """
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(_derive_passphrase_key(passphrase, salt))
    ciphertext = aesgcm.encrypt(nonce, json.dumps(record).encode("utf-8"), None)
    return {
        "salt": _b64encode(salt),
        "nonce": _b64encode(nonce),
        "ciphertext": _b64encode(ciphertext),
        "version": "1.0",
    }


def open_record(sealed: Dict[str, str], passphrase: str) -> Dict[str, Any]:
    """
    Decrypt a record produced by seal_record.

    Raises:
        DecryptionError: If the passphrase is wrong or the record is corrupted
    """
    try:
        salt = _b64decode(sealed["salt"])
        nonce = _b64decode(sealed["nonce"])
        ciphertext = _b64decode(sealed["ciphertext"])
        aesgcm = AESGCM(_derive_passphrase_key(passphrase, salt))
        return json.loads(aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8"))
    except InvalidTag as e:
        raise DecryptionError("Incorrect passphrase or corrupted record") from e
    except (KeyError, ValueError, TypeError, binascii.Error) as e:
        raise DecryptionError(f"Malformed sealed record: {e}") from e


def is_sealed(record: Dict[str, Any]) -> bool:
    """Check whether a stored record was produced by seal_record."""
    return {"salt", "nonce", "ciphertext"} <= set(record)
