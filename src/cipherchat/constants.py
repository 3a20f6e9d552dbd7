"""
CipherChat - Global Constants and Configuration Values

This module defines all constants used throughout the CipherChat core.
All magic numbers and configuration defaults are centralized here.
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "CipherChat"

# Identity Limits
MAX_NICKNAME_LENGTH = 64

# Cosmetic avatar palette (assigned at random to identities and peers)
THEME_COLORS = [
    "red",
    "orange",
    "amber",
    "green",
    "emerald",
    "teal",
    "cyan",
    "sky",
    "blue",
    "indigo",
    "violet",
    "purple",
    "fuchsia",
    "pink",
    "rose",
]

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for X25519 and AES-256
NONCE_SIZE = 12  # 96 bits for AES-GCM
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
SESSION_KEY_INFO = b"cipherchat-session-key-v1"
DECRYPTION_FAILED_MARKER = "[Decryption Error]"

# Storage Namespaces
NS_IDENTITY = "identity"
NS_SESSIONS = "sessions"
NS_MESSAGES = "messages"
IDENTITY_KEY = "self"
ALL_NAMESPACES = (NS_IDENTITY, NS_SESSIONS, NS_MESSAGES)

# Sync Scheduler
SYNC_INTERVAL = 1.0  # seconds between reconciliation cycles
SYNC_MIN_INTERVAL = 0.05

# Delivery Policy
MAX_SEND_ATTEMPTS = 3
SEND_RETRY_DELAY = 0.6  # seconds, doubled after each failed attempt
ACK_TIMEOUT = 30.0  # seconds a SENT message may wait for a delivery receipt
ACK_RESEND_ATTEMPTS = 2  # resends of a SENT message before it times out

# Wire Envelope
ENVELOPE_VERSION = 1

# In-memory transport
SENT_HISTORY_SIZE = 256  # sends kept per endpoint for inspection
PAIRING_PAYLOAD_VERSION = 1

# File Paths
DEFAULT_DATA_DIR = "~/.cipherchat"
CONFIG_FILENAME = "config.toml"
STORE_DIRNAME = "store"
LOGS_DIR = "logs"
LOG_FILENAME = "cipherchat.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
