"""
CipherChat - Identity management.

Manages the single local identity: creation with a fresh key pair,
loading, optional passphrase sealing at rest, and the destructive wipe
that cascades to every session and message on the device.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from .constants import ALL_NAMESPACES, IDENTITY_KEY, MAX_NICKNAME_LENGTH, NS_IDENTITY
from .crypto import CryptoProvider, generate_fingerprint, generate_uid, is_sealed, open_record, seal_record
from .errors import DecryptionError, ErrorCode, IdentityError, IdentityExistsError
from .pairing import encode_pairing_payload
from .storage import StoragePort
from .utils import format_fingerprint, pick_avatar_color

if TYPE_CHECKING:
    from .message import MessageStore
    from .session import SessionRegistry

logger = logging.getLogger(__name__)


class UserIdentity:
    """The device's identity: id, nickname and key pair."""

    def __init__(
        self,
        id: str,
        nickname: str,
        public_key: str,
        private_key: str,
        avatar_color: str,
    ):
        self.id = id
        self.nickname = nickname
        self.public_key = public_key
        self.private_key = private_key
        self.avatar_color = avatar_color
        self.created_at = datetime.now(timezone.utc).isoformat()
        self.fingerprint = generate_fingerprint(public_key)

    def to_dict(self) -> Dict[str, Any]:
        """Export identity to dictionary (includes the private key)."""
        return {
            "id": self.id,
            "nickname": self.nickname,
            "public_key": self.public_key,
            "private_key": self.private_key,
            "avatar_color": self.avatar_color,
            "created_at": self.created_at,
            "fingerprint": format_fingerprint(self.fingerprint),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "UserIdentity":
        """Import identity from dictionary."""
        identity = UserIdentity(
            id=data["id"],
            nickname=data["nickname"],
            public_key=data["public_key"],
            private_key=data["private_key"],
            avatar_color=data.get("avatar_color", ""),
        )
        identity.created_at = data.get("created_at", identity.created_at)
        return identity

    def get_shareable_info(self) -> Dict[str, str]:
        """Shareable identity information. Never includes the private key."""
        return {
            "id": self.id,
            "nickname": self.nickname,
            "public_key": self.public_key,
            "fingerprint": self.fingerprint,
        }

    def __repr__(self) -> str:
        return f"UserIdentity(id={self.id!r}, nickname={self.nickname!r})"


class IdentityStore:
    """Owns the single persisted UserIdentity.

    Args:
        storage: Storage port holding the identity namespace
        crypto: Provider used to generate the key pair
        message_store: Purged on erase()
        session_registry: Purged on erase()
        passphrase: If set, the record is sealed with it before storage
    """

    def __init__(
        self,
        storage: StoragePort,
        crypto: CryptoProvider,
        message_store: "MessageStore",
        session_registry: "SessionRegistry",
        passphrase: Optional[str] = None,
    ):
        self.storage = storage
        self.crypto = crypto
        self.message_store = message_store
        self.session_registry = session_registry
        self.passphrase = passphrase or None
        self.identity: Optional[UserIdentity] = None
        # Serializes create and erase
        self._lock = asyncio.Lock()

    async def exists(self) -> bool:
        return await self.storage.get(NS_IDENTITY, IDENTITY_KEY) is not None

    async def create(self, nickname: str) -> UserIdentity:
        """
        Create and persist the device identity.

        Raises:
            IdentityExistsError: If an identity is already persisted
            IdentityError: If the nickname is empty or too long
        """
        nickname = (nickname or "").strip()
        if not nickname:
            raise IdentityError(ErrorCode.E305_INVALID_IDENTITY, "Nickname must not be empty")
        if len(nickname) > MAX_NICKNAME_LENGTH:
            raise IdentityError(
                ErrorCode.E305_INVALID_IDENTITY,
                f"Nickname longer than {MAX_NICKNAME_LENGTH} characters",
                {"length": len(nickname)},
            )

        async with self._lock:
            existing = await self.load()
            if existing is not None:
                raise IdentityExistsError(existing.id)

            public_key, private_key = self.crypto.generate_key_pair()
            identity = UserIdentity(
                id=generate_uid(),
                nickname=nickname,
                public_key=public_key,
                private_key=private_key,
                avatar_color=pick_avatar_color(),
            )

            record = identity.to_dict()
            if self.passphrase:
                record = seal_record(record, self.passphrase)
            await self.storage.put(NS_IDENTITY, IDENTITY_KEY, record)

            self.identity = identity
        logger.info(f"Identity created: {identity.nickname} ({identity.id})")
        return identity

    async def load(self) -> Optional[UserIdentity]:
        """
        Load the persisted identity, or None if there is none.

        Raises:
            IdentityError: If the record is sealed and cannot be opened
        """
        if self.identity is not None:
            return self.identity

        record = await self.storage.get(NS_IDENTITY, IDENTITY_KEY)
        if record is None:
            return None

        if is_sealed(record):
            if not self.passphrase:
                raise IdentityError(
                    ErrorCode.E303_IDENTITY_LOAD_FAILED,
                    "Identity is passphrase protected but no passphrase was given",
                )
            try:
                record = open_record(record, self.passphrase)
            except DecryptionError as e:
                logger.warning(f"Failed to open identity (incorrect passphrase?): {e.message}")
                raise IdentityError(
                    ErrorCode.E303_IDENTITY_LOAD_FAILED,
                    "Failed to open identity. Incorrect passphrase or corrupted record.",
                ) from e

        try:
            self.identity = UserIdentity.from_dict(record)
        except (KeyError, TypeError) as e:
            raise IdentityError(
                ErrorCode.E303_IDENTITY_LOAD_FAILED, f"Corrupted identity record: {e}"
            ) from e

        logger.info(f"Identity loaded: {self.identity.nickname}")
        return self.identity

    async def erase(self) -> None:
        """
        Delete the identity and every session and message on the device.

        Irreversible. The caller is responsible for confirming with the user.
        """
        async with self._lock:
            nickname = self.identity.nickname if self.identity else "unknown"
            self.identity = None

            await self.storage.delete(NS_IDENTITY, IDENTITY_KEY)
            await self.message_store.purge_all()
            await self.session_registry.purge_all()

            # Nothing keyed may survive, including records written by older versions
            for namespace in ALL_NAMESPACES:
                await self.storage.clear(namespace)

        logger.info(f"Identity erased with all sessions and messages: {nickname}")

    async def pairing_payload(self) -> str:
        """
        Pairing record for the local identity, for QR display or manual copy.

        Raises:
            IdentityError: If no identity exists yet
        """
        identity = await self.load()
        if identity is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No identity on this device")
        return encode_pairing_payload(identity.id, identity.nickname, identity.public_key)
