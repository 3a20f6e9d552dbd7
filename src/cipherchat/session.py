"""
CipherChat - Chat session registry.

Maps peer id -> ChatSession metadata (presence, unread count, last message
preview). The last-message fields are a denormalized cache that is always
recomputed from the MessageStore, never edited independently; the registry
hooks into every append so the cache moves with the log.

Sessions are created by pairing and are only deleted by an identity wipe.
"""

import itertools
import logging
from dataclasses import asdict, dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .constants import NS_SESSIONS
from .crypto import CryptoProvider
from .errors import CryptoError, PairingError, SessionNotFoundError
from .locks import ChatLocks
from .message import Message, MessageStore
from .pairing import PeerDescriptor
from .storage import StoragePort
from .utils import now_ms, pick_avatar_color

if TYPE_CHECKING:
    from .identity import UserIdentity

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    """Durable relationship and metadata for one peer."""

    id: str  # peer id
    peer_nickname: str
    peer_avatar_color: str
    peer_public_key: str = ""
    last_message: Optional[str] = None
    last_message_time: Optional[int] = None
    unread_count: int = 0
    is_online: bool = False
    encryption_key: Optional[str] = None
    paired_at: int = 0
    seq: int = 0  # insertion order, breaks ordering ties

    @property
    def sort_time(self) -> int:
        """Recency used for ordering; sessions without messages use paired_at."""
        if self.last_message_time is not None:
            return self.last_message_time
        return self.paired_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChatSession":
        known = ChatSession.__dataclass_fields__
        return ChatSession(**{k: v for k, v in data.items() if k in known})


class SessionRegistry:
    """Registry of ChatSession records, persisted one record per peer id."""

    def __init__(
        self,
        storage: StoragePort,
        message_store: MessageStore,
        locks: ChatLocks,
        crypto: Optional[CryptoProvider] = None,
    ):
        self.storage = storage
        self.message_store = message_store
        self.locks = locks
        self.crypto = crypto
        self.sessions: Dict[str, ChatSession] = {}
        self.active_chat_id: Optional[str] = None
        self._seq = itertools.count(1)
        self._loaded = False
        message_store.add_append_hook(self._on_appended)

    async def load(self) -> None:
        """Load persisted sessions into memory."""
        for key in await self.storage.keys(NS_SESSIONS):
            record = await self.storage.get(NS_SESSIONS, key)
            if record is not None:
                session = ChatSession.from_dict(record)
                self.sessions[session.id] = session

        highest = max((s.seq for s in self.sessions.values()), default=0)
        self._seq = itertools.count(highest + 1)
        self._loaded = True
        logger.info(f"Loaded {len(self.sessions)} sessions")

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def _save(self, session: ChatSession) -> None:
        await self.storage.put(NS_SESSIONS, session.id, session.to_dict())
        self.sessions[session.id] = session

    async def upsert(
        self, peer: PeerDescriptor, identity: Optional["UserIdentity"] = None
    ) -> ChatSession:
        """
        Create a session for a paired peer, or return the existing one unchanged.

        Args:
            peer: Decoded pairing payload
            identity: Local identity, used to derive the session key

        Raises:
            PairingError: If the peer is the local identity or the key
                exchange with the peer key fails
        """
        await self._ensure_loaded()
        if identity is not None and peer.id == identity.id:
            raise PairingError("Cannot pair with your own identity", {"id": peer.id})

        async with self.locks.for_chat(peer.id):
            existing = self.sessions.get(peer.id)
            if existing is not None:
                logger.info(f"Re-paired with known peer {peer.id}; reopening session")
                return existing

            encryption_key = None
            if identity is not None and self.crypto is not None:
                try:
                    encryption_key = self.crypto.derive_session_key(identity.private_key, peer.key)
                except CryptoError as e:
                    raise PairingError(
                        f"Key exchange with peer failed: {e.message}", {"id": peer.id}
                    ) from e

            session = ChatSession(
                id=peer.id,
                peer_nickname=peer.name,
                peer_avatar_color=pick_avatar_color(),
                peer_public_key=peer.key,
                encryption_key=encryption_key,
                paired_at=now_ms(),
                seq=next(self._seq),
            )
            self._apply_latest(session, await self.message_store.latest(peer.id))
            await self._save(session)
            logger.info(f"Session created for {peer.name} ({peer.id})")
            return session

    async def get(self, chat_id: str) -> Optional[ChatSession]:
        await self._ensure_loaded()
        return self.sessions.get(chat_id)

    async def require(self, chat_id: str) -> ChatSession:
        """Get a session or raise SessionNotFoundError."""
        session = await self.get(chat_id)
        if session is None:
            raise SessionNotFoundError(chat_id)
        return session

    async def list(self) -> List[ChatSession]:
        """Sessions, most recent first; equal times keep insertion order."""
        await self._ensure_loaded()
        return sorted(self.sessions.values(), key=lambda s: (-s.sort_time, s.seq))

    async def mark_read(self, chat_id: str) -> ChatSession:
        """Reset the unread counter of a chat."""
        await self.require(chat_id)
        async with self.locks.for_chat(chat_id):
            session = self.sessions[chat_id]
            if session.unread_count == 0:
                return session
            updated = replace(session, unread_count=0)
            await self._save(updated)
            logger.debug(f"Marked {chat_id} as read")
            return updated

    async def open_chat(self, chat_id: str) -> ChatSession:
        """Make chat_id the active chat view and mark it read."""
        await self.require(chat_id)
        self.active_chat_id = chat_id
        return await self.mark_read(chat_id)

    def close_chat(self, chat_id: Optional[str] = None) -> None:
        """Leave the active chat view (only if it is chat_id, when given)."""
        if chat_id is None or self.active_chat_id == chat_id:
            self.active_chat_id = None

    def is_active(self, chat_id: str) -> bool:
        return self.active_chat_id == chat_id

    async def record_inbound(self, message: Message) -> ChatSession:
        """
        Account for a newly appended inbound message.

        Increments unread_count unless the chat is open and recomputes the
        last-message cache either way.
        """
        await self.require(message.chat_id)
        async with self.locks.for_chat(message.chat_id):
            session = self.sessions[message.chat_id]
            unread = session.unread_count
            if not self.is_active(message.chat_id):
                unread += 1
            updated = replace(session, unread_count=unread)
            self._apply_latest(updated, await self.message_store.latest(message.chat_id))
            await self._save(updated)
            return updated

    async def _on_appended(self, message: Message, latest: Message) -> None:
        # Runs under the chat lock held by MessageStore.append
        await self._ensure_loaded()
        session = self.sessions.get(message.chat_id)
        if session is None:
            return
        if session.last_message == latest.content and session.last_message_time == latest.timestamp:
            return
        updated = replace(session)
        self._apply_latest(updated, latest)
        await self._save(updated)

    async def refresh(self, chat_id: str) -> ChatSession:
        """Recompute the last-message cache from the chat's log."""
        await self.require(chat_id)
        async with self.locks.for_chat(chat_id):
            updated = replace(self.sessions[chat_id])
            self._apply_latest(updated, await self.message_store.latest(chat_id))
            await self._save(updated)
            return updated

    async def set_online(self, chat_id: str, online: bool) -> ChatSession:
        """Update the presence flag; persists only on change."""
        await self.require(chat_id)
        async with self.locks.for_chat(chat_id):
            session = self.sessions[chat_id]
            if session.is_online == online:
                return session
            updated = replace(session, is_online=online)
            await self._save(updated)
            logger.debug(f"Peer {chat_id} is now {'online' if online else 'offline'}")
            return updated

    async def purge_all(self) -> int:
        """Delete every session record. Returns the number removed."""
        removed = await self.storage.clear(NS_SESSIONS)
        self.sessions.clear()
        self.active_chat_id = None
        self._seq = itertools.count(1)
        self._loaded = True
        logger.info(f"Purged {removed} sessions")
        return removed

    @staticmethod
    def _apply_latest(session: ChatSession, latest: Optional[Message]) -> None:
        if latest is None:
            session.last_message = None
            session.last_message_time = None
        else:
            session.last_message = latest.content
            session.last_message_time = latest.timestamp
