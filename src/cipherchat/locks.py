"""
CipherChat - Per-chat mutual exclusion.

All mutations of one chat's message log and session record run inside
that chat's lock. Different chats never contend with each other, so no
global lock exists.
"""

import asyncio
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class ChatLocks:
    """Lazily created asyncio.Lock per chat id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_chat(self, chat_id: str) -> asyncio.Lock:
        """Return the lock owning chat_id, creating it on first use."""
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)

    def forget_idle(self) -> int:
        """Drop locks nobody holds. Used after an identity wipe."""
        idle = [chat_id for chat_id, lock in self._locks.items() if not lock.locked()]
        for chat_id in idle:
            del self._locks[chat_id]
        logger.debug(f"Released {len(idle)} idle chat locks")
        return len(idle)
