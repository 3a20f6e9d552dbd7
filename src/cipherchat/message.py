"""
CipherChat - Message log storage.

Each chat owns an append-only log of Message records persisted under the
"messages" namespace (one record per chat id). The log is the source of
truth for conversation history:

- append() is idempotent on message id, so re-delivered or replayed
  inbound streams never create duplicates
- list() is ordered by timestamp, insertion order on ties
- update_status() only accepts forward moves of the delivery lifecycle
"""

import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from .constants import NS_MESSAGES
from .errors import InvalidTransitionError, MessageNotFoundError
from .locks import ChatLocks
from .storage import StoragePort

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    """Delivery lifecycle of a message."""

    PENDING = "PENDING"  # Created locally, not yet accepted by transport
    SENT = "SENT"  # Transport accepted the encrypted payload
    DELIVERED = "DELIVERED"  # Peer transport acknowledged receipt
    READ = "READ"  # Peer client acknowledged display
    FAILED = "FAILED"  # Transport error, timeout or cancel

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


TERMINAL_STATUSES: FrozenSet[MessageStatus] = frozenset({MessageStatus.READ, MessageStatus.FAILED})

# Status-level view of the delivery state machine. FAILED is reachable from
# every non-terminal status; nothing leaves a terminal status.
ALLOWED_STATUS_CHANGES: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.FAILED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ, MessageStatus.FAILED}),
    MessageStatus.READ: frozenset(),
    MessageStatus.FAILED: frozenset(),
}


def is_allowed_change(current: MessageStatus, new: MessageStatus) -> bool:
    """Check whether a persisted status may move from current to new."""
    return new in ALLOWED_STATUS_CHANGES[current]


@dataclass(frozen=True)
class Message:
    """A message in a chat log. Only status ever changes, via with_status()."""

    id: str
    chat_id: str
    sender_id: str
    content: str
    timestamp: int  # epoch milliseconds
    status: MessageStatus = MessageStatus.PENDING
    type: MessageType = MessageType.TEXT
    is_me: bool = False

    def with_status(self, status: MessageStatus) -> "Message":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for storage."""
        data = asdict(self)
        data["status"] = self.status.value
        data["type"] = self.type.value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        """Create message from dictionary."""
        return Message(
            id=data["id"],
            chat_id=data["chat_id"],
            sender_id=data["sender_id"],
            content=data["content"],
            timestamp=int(data["timestamp"]),
            status=MessageStatus(data.get("status", MessageStatus.PENDING.value)),
            type=MessageType(data.get("type", MessageType.TEXT.value)),
            is_me=bool(data.get("is_me", False)),
        )


AppendListener = Callable[[Message], None]
StatusListener = Callable[[Message, MessageStatus], None]
# (appended message, newest message of the chat after the append)
AppendHook = Callable[[Message, Message], Awaitable[None]]


class MessageStore:
    """Per-chat, deduplicated, append-only message logs.

    Logs are cached in memory after first load; every mutation persists a
    new copy of the chat's log before the cache is swapped, so concurrent
    readers always see a complete log. Mutations of one chat are
    serialized through ChatLocks.

    Listeners registered with on_appended/on_status_changed run after the
    change is persisted and while the chat lock is still held, so they
    must not call back into locked operations of the same chat.

    Append hooks are awaited inside the same lock before any listener
    runs; derived views such as the session cache stay in step with the
    log through them.
    """

    def __init__(self, storage: StoragePort, locks: ChatLocks):
        self.storage = storage
        self.locks = locks
        self._logs: Dict[str, List[Message]] = {}
        self._index: Dict[str, str] = {}  # message id -> chat id
        self._loaded = False
        self._append_listeners: List[AppendListener] = []
        self._status_listeners: List[StatusListener] = []
        self._append_hooks: List[AppendHook] = []

    async def load(self) -> None:
        """Load every persisted chat log into the cache."""
        for chat_id in await self.storage.keys(NS_MESSAGES):
            await self._load_chat(chat_id)
        self._loaded = True
        logger.info(f"Loaded {len(self._index)} messages across {len(self._logs)} chats")

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def _load_chat(self, chat_id: str) -> List[Message]:
        log = self._logs.get(chat_id)
        if log is not None:
            return log

        records = await self.storage.get(NS_MESSAGES, chat_id) or []
        # Another coroutine may have populated the cache while we awaited
        cached = self._logs.get(chat_id)
        if cached is not None:
            return cached

        log = [Message.from_dict(record) for record in records]
        self._logs[chat_id] = log
        for message in log:
            self._index[message.id] = chat_id
        return log

    async def _persist(self, chat_id: str, log: List[Message]) -> None:
        await self.storage.put(NS_MESSAGES, chat_id, [m.to_dict() for m in log])
        self._logs[chat_id] = log

    def on_appended(self, callback: AppendListener) -> None:
        """Register a callback fired once per newly appended message."""
        self._append_listeners.append(callback)

    def on_status_changed(self, callback: StatusListener) -> None:
        """Register a callback fired with (message, previous_status)."""
        self._status_listeners.append(callback)

    def add_append_hook(self, hook: AppendHook) -> None:
        """Register a coroutine awaited with (message, latest) on every append."""
        self._append_hooks.append(hook)

    async def append(self, message: Message) -> bool:
        """Append a message to its chat's log.

        Returns:
            True if appended, False if the id was already present (no-op)
        """
        async with self.locks.for_chat(message.chat_id):
            log = await self._load_chat(message.chat_id)
            if any(existing.id == message.id for existing in log):
                logger.debug(f"Ignoring duplicate message {message.id} in {message.chat_id}")
                return False

            new_log = list(log)
            # Insert after every entry with timestamp <= ours: ties keep insertion order
            position = len(new_log)
            while position > 0 and new_log[position - 1].timestamp > message.timestamp:
                position -= 1
            new_log.insert(position, message)

            await self._persist(message.chat_id, new_log)
            self._index[message.id] = message.chat_id
            logger.debug(f"Appended message {message.id} to {message.chat_id}")

            for hook in self._append_hooks:
                try:
                    await hook(message, new_log[-1])
                except Exception as e:
                    logger.error(f"Append hook error for {message.chat_id}: {e}", exc_info=True)

            for callback in self._append_listeners:
                try:
                    callback(message)
                except Exception as e:
                    logger.error(f"Append listener error: {e}")
            return True

    async def list(self, chat_id: str) -> List[Message]:
        """Return a chat's log ordered by timestamp ascending."""
        return list(await self._load_chat(chat_id))

    async def get(self, chat_id: str, message_id: str) -> Optional[Message]:
        for message in await self._load_chat(chat_id):
            if message.id == message_id:
                return message
        return None

    async def find(self, message_id: str) -> Optional[Message]:
        """Locate a message by id across all chats."""
        await self._ensure_loaded()
        chat_id = self._index.get(message_id)
        if chat_id is None:
            return None
        return await self.get(chat_id, message_id)

    async def latest(self, chat_id: str) -> Optional[Message]:
        """Return the highest-timestamp message (last inserted on ties)."""
        log = await self._load_chat(chat_id)
        return log[-1] if log else None

    async def chat_ids(self) -> List[str]:
        await self._ensure_loaded()
        return [chat_id for chat_id, log in self._logs.items() if log]

    async def update_status(
        self,
        message_id: str,
        new_status: MessageStatus,
        expected: Optional[MessageStatus] = None,
    ) -> Message:
        """Move a message to new_status.

        Args:
            message_id: Message to update
            new_status: Target status
            expected: If given, the update only applies while the current
                status still equals it (compare-and-set)

        Raises:
            MessageNotFoundError: If the message is not in any log
            InvalidTransitionError: If the move is not a legal forward step
        """
        await self._ensure_loaded()
        chat_id = self._index.get(message_id)
        if chat_id is None:
            raise MessageNotFoundError(message_id)

        async with self.locks.for_chat(chat_id):
            log = await self._load_chat(chat_id)
            for position, current in enumerate(log):
                if current.id == message_id:
                    break
            else:
                raise MessageNotFoundError(message_id)

            if expected is not None and current.status != expected:
                raise InvalidTransitionError(message_id, current.status.value, new_status.value)
            if not is_allowed_change(current.status, new_status):
                raise InvalidTransitionError(message_id, current.status.value, new_status.value)

            updated = current.with_status(new_status)
            new_log = list(log)
            new_log[position] = updated
            await self._persist(chat_id, new_log)
            logger.info(f"Message {message_id}: {current.status.value} -> {new_status.value}")

            for callback in self._status_listeners:
                try:
                    callback(updated, current.status)
                except Exception as e:
                    logger.error(f"Status listener error: {e}")
            return updated

    async def purge_all(self) -> int:
        """Delete every chat log. Returns the number of logs removed."""
        removed = await self.storage.clear(NS_MESSAGES)
        self._logs.clear()
        self._index.clear()
        self._loaded = True
        logger.info(f"Purged {removed} chat logs")
        return removed
