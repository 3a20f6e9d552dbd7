"""
CipherChat - Peer-to-peer end-to-end encrypted chat core

Identity, pairing, sessions, message logs, the delivery state machine and
the reconciliation loop behind a CipherChat client. Transports and UIs
plug in from outside.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .client import ChatClient
from .config import Config
from .constants import APP_NAME, VERSION
from .crypto import CryptoProvider, X25519AesGcmProvider
from .delivery import DeliveryEvent, DeliveryStateMachine
from .errors import (
    CipherChatError,
    ConfigError,
    CryptoError,
    DecryptionError,
    ErrorCode,
    IdentityError,
    IdentityExistsError,
    InvalidTransitionError,
    MessageError,
    MessageNotFoundError,
    PairingError,
    SessionError,
    SessionNotFoundError,
    StorageError,
    TransportError,
)
from .identity import IdentityStore, UserIdentity
from .message import Message, MessageStatus, MessageStore, MessageType
from .session import ChatSession, SessionRegistry
from .storage import JsonFileStorage, MemoryStorage, StoragePort
from .sync import SyncReport, SyncScheduler
from .transport import InMemoryHub, InMemoryTransport, Presence, SendAck, Transport

__all__ = [
    "APP_NAME",
    "VERSION",
    "ChatClient",
    "ChatSession",
    "CipherChatError",
    "Config",
    "ConfigError",
    "CryptoError",
    "CryptoProvider",
    "DecryptionError",
    "DeliveryEvent",
    "DeliveryStateMachine",
    "ErrorCode",
    "IdentityError",
    "IdentityExistsError",
    "IdentityStore",
    "InMemoryHub",
    "InMemoryTransport",
    "InvalidTransitionError",
    "JsonFileStorage",
    "MemoryStorage",
    "Message",
    "MessageError",
    "MessageNotFoundError",
    "MessageStatus",
    "MessageStore",
    "MessageType",
    "PairingError",
    "Presence",
    "SendAck",
    "SessionError",
    "SessionNotFoundError",
    "SessionRegistry",
    "StorageError",
    "StoragePort",
    "SyncReport",
    "SyncScheduler",
    "Transport",
    "TransportError",
    "UserIdentity",
    "X25519AesGcmProvider",
    "__license__",
    "__version__",
]
