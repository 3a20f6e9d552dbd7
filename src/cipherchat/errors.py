"""
CipherChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the CipherChat core. Each error has a unique code for logging and debugging.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all CipherChat error codes."""

    # General Errors (E001-E099)
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E108_KEY_DERIVATION_FAILED = "E108"

    # Transport Errors (E200-E299)
    E200_TRANSPORT_ERROR = "E200"
    E206_INVALID_ENVELOPE = "E206"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_IDENTITY_NOT_FOUND = "E301"
    E302_IDENTITY_ALREADY_EXISTS = "E302"
    E303_IDENTITY_LOAD_FAILED = "E303"
    E305_INVALID_IDENTITY = "E305"

    # Message Errors (E400-E499)
    E400_MESSAGE_ERROR = "E400"
    E401_MESSAGE_NOT_FOUND = "E401"
    E403_INVALID_TRANSITION = "E403"

    # Session Errors (E500-E599)
    E500_SESSION_ERROR = "E500"
    E501_SESSION_NOT_FOUND = "E501"
    E505_INVALID_PAIRING_PAYLOAD = "E505"

    # Storage Errors (E600-E699)
    E600_STORAGE_ERROR = "E600"
    E601_STORAGE_READ_FAILED = "E601"
    E602_STORAGE_WRITE_FAILED = "E602"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class CipherChatError(Exception):
    """Base exception class for all CipherChat errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(CipherChatError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionError(CryptoError):
    """Raised when ciphertext is malformed or was sealed with another key.

    Callers on the read path recover from this by storing a placeholder.
    """

    def __init__(
        self,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class TransportError(CipherChatError):
    """Exception raised for transport failures (send, poll, presence)."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_TRANSPORT_ERROR,
        message: str = "Transport operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityError(CipherChatError):
    """Exception raised for identity management failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityExistsError(IdentityError):
    """Raised by IdentityStore.create when an identity is already persisted."""

    def __init__(self, identity_id: str):
        super().__init__(
            ErrorCode.E302_IDENTITY_ALREADY_EXISTS,
            "An identity already exists on this device",
            {"identity_id": identity_id},
        )


class MessageError(CipherChatError):
    """Exception raised for message log failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_MESSAGE_ERROR,
        message: str = "Message operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MessageNotFoundError(MessageError):
    """Raised when a status update targets a message that is not in the log."""

    def __init__(self, message_id: str):
        super().__init__(
            ErrorCode.E401_MESSAGE_NOT_FOUND,
            f"Message not found: {message_id}",
            {"message_id": message_id},
        )


class InvalidTransitionError(MessageError):
    """Raised when a status change is not allowed by the delivery state machine."""

    def __init__(self, message_id: str, current: str, requested: str):
        super().__init__(
            ErrorCode.E403_INVALID_TRANSITION,
            f"Invalid status transition for {message_id}: {current} -> {requested}",
            {"message_id": message_id, "current": current, "requested": requested},
        )


class SessionError(CipherChatError):
    """Exception raised for session registry failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_SESSION_ERROR,
        message: str = "Session operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SessionNotFoundError(SessionError):
    """Raised when an operation names a chat id with no session."""

    def __init__(self, chat_id: str):
        super().__init__(
            ErrorCode.E501_SESSION_NOT_FOUND,
            f"Session not found: {chat_id}",
            {"chat_id": chat_id},
        )


class PairingError(SessionError):
    """Raised when a pairing payload cannot be decoded or validated."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.E505_INVALID_PAIRING_PAYLOAD, message, details)


class StorageError(CipherChatError):
    """Exception raised for storage port failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_STORAGE_ERROR,
        message: str = "Storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(CipherChatError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
