"""
CipherChat - Client facade.

ChatClient wires storage, crypto, the stores, the delivery state machine,
the outbound dispatcher and the sync scheduler together and exposes the
operations a UI needs. It holds no UI state beyond the active chat.

The transport is bound to the local identity, so it is created through a
factory once an identity exists (on start(), create_identity() or
load_identity()) and dropped again by wipe().
"""

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Callable, List, Optional, Set

from .config import Config
from .constants import STORE_DIRNAME, SYNC_INTERVAL
from .crypto import CryptoProvider, X25519AesGcmProvider
from .delivery import DeliveryStateMachine, StatusChangeListener
from .dispatcher import DeliveryPolicy, OutboundDispatcher
from .errors import ConfigError, ErrorCode, IdentityError, MessageError
from .identity import IdentityStore, UserIdentity
from .locks import ChatLocks
from .message import AppendListener, Message, MessageStore, MessageType
from .pairing import decode_pairing_payload
from .session import ChatSession, SessionRegistry
from .storage import JsonFileStorage, MemoryStorage, StoragePort
from .sync import SyncReport, SyncScheduler
from .transport import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]


class ChatClient:
    """Entry point for a UI: identity, pairing, chats and messages.

    Args:
        transport_factory: Called with the local identity id, returns the
            Transport to use for that identity
        config: Loaded configuration (defaults when omitted)
        storage: Storage port; built from the [storage] section when omitted
        crypto: Crypto provider; X25519 + AES-256-GCM when omitted
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        config: Optional[Config] = None,
        storage: Optional[StoragePort] = None,
        crypto: Optional[CryptoProvider] = None,
    ):
        self.config = config or Config()
        self.transport_factory = transport_factory
        self.storage = storage or self._make_storage()
        self.crypto = crypto or X25519AesGcmProvider()

        self.locks = ChatLocks()
        self.message_store = MessageStore(self.storage, self.locks)
        self.registry = SessionRegistry(self.storage, self.message_store, self.locks, self.crypto)
        self.identity_store = IdentityStore(
            self.storage,
            self.crypto,
            self.message_store,
            self.registry,
            passphrase=self.config.get("storage", "passphrase", ""),
        )
        self.state_machine = DeliveryStateMachine(self.message_store)
        self.policy = DeliveryPolicy.from_config(self.config)

        self.transport: Optional[Transport] = None
        self.dispatcher: Optional[OutboundDispatcher] = None
        self.scheduler: Optional[SyncScheduler] = None
        self.running = False
        self._tasks: Set[asyncio.Task] = set()

    def _make_storage(self) -> StoragePort:
        backend = self.config.get("storage", "backend", "file")
        if backend == "memory":
            return MemoryStorage()
        if backend == "file":
            return JsonFileStorage(Path(self.config.data_dir) / STORE_DIRNAME)
        raise ConfigError(
            ErrorCode.E701_CONFIG_LOAD_FAILED,
            f"Unknown storage backend: {backend}",
            {"backend": backend},
        )

    @property
    def identity(self) -> Optional[UserIdentity]:
        return self.identity_store.identity

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _attach(self, identity: UserIdentity) -> bool:
        """Bind transport, dispatcher and scheduler to the local identity.

        Returns:
            True if newly attached, False if already bound
        """
        if self.transport is not None:
            return False

        self.transport = self.transport_factory(identity.id)
        self.dispatcher = OutboundDispatcher(
            self.transport,
            self.state_machine,
            self.message_store,
            self.registry,
            self.crypto,
            self.policy,
        )
        self.scheduler = SyncScheduler(
            self.transport,
            self.registry,
            self.message_store,
            self.dispatcher,
            self.crypto,
            self.identity_store,
            interval=self.config.get("sync", "interval", SYNC_INTERVAL),
            push_enabled=self.config.get("sync", "push_enabled", True),
        )
        logger.debug(f"Transport attached for {identity.id}")
        return True

    async def _activate(self) -> None:
        if not self.running or self.scheduler is None:
            return
        for task in await self.dispatcher.resume():
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self.scheduler.start()

    async def _detach(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.dispatcher is not None:
            await self.dispatcher.cancel_all()

        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.transport = None
        self.dispatcher = None
        self.scheduler = None

    async def start(self) -> Optional[UserIdentity]:
        """
        Load persisted state and start background reconciliation.

        Returns:
            The local identity, or None if none has been created yet
        """
        await self.message_store.load()
        await self.registry.load()
        self.running = True

        identity = await self.identity_store.load()
        if identity is not None:
            if self._attach(identity):
                await self._activate()
        logger.info("Chat client started")
        return identity

    async def stop(self) -> None:
        """Stop background work. Persisted state is left untouched."""
        self.running = False
        await self._detach()
        logger.info("Chat client stopped")

    async def create_identity(self, nickname: str) -> UserIdentity:
        identity = await self.identity_store.create(nickname)
        if self._attach(identity):
            await self._activate()
        return identity

    async def load_identity(self) -> Optional[UserIdentity]:
        identity = await self.identity_store.load()
        if identity is not None:
            if self._attach(identity):
                await self._activate()
        return identity

    async def _require_identity(self) -> UserIdentity:
        identity = await self.identity_store.load()
        if identity is None:
            raise IdentityError(ErrorCode.E301_IDENTITY_NOT_FOUND, "No identity on this device")
        if self._attach(identity):
            await self._activate()
        return identity

    async def wipe(self) -> None:
        """
        Destroy the identity with every session and message.

        Pending sends and acknowledgement timers are cancelled first, so
        nothing fires against the erased data.
        """
        await self._detach()
        await self.identity_store.erase()
        self.locks.forget_idle()
        logger.warning("All local data wiped")

    async def pairing_payload(self) -> str:
        return await self.identity_store.pairing_payload()

    async def pair(self, payload) -> ChatSession:
        """
        Pair with a peer from its pairing payload (JSON text or mapping).

        Raises:
            PairingError: If the payload is invalid or names this device
            IdentityError: If no local identity exists
        """
        identity = await self._require_identity()
        peer = decode_pairing_payload(payload, self.crypto)
        return await self.registry.upsert(peer, identity)

    async def send_text(self, chat_id: str, text: str, wait: bool = False) -> Message:
        """
        Compose a text message and hand it to the dispatcher.

        The message is returned in PENDING right after it is appended; its
        later statuses arrive through on_status_change listeners. With
        wait=True the call returns once the send settled (SENT or FAILED).

        Raises:
            MessageError: If the text is empty
            SessionNotFoundError: If chat_id is not a paired peer
            IdentityError: If no local identity exists
        """
        if not text or not text.strip():
            raise MessageError(ErrorCode.E002_INVALID_ARGUMENT, "Message text must not be empty")

        identity = await self._require_identity()
        await self.registry.require(chat_id)

        message = await self.state_machine.compose(chat_id, identity.id, text, MessageType.TEXT)

        if wait:
            return await self.dispatcher.dispatch(message) or message
        self._track(self.dispatcher.dispatch(message))
        return message

    async def open_chat(self, chat_id: str) -> ChatSession:
        """Open a chat view: reset unread and acknowledge inbound messages as read."""
        session = await self.registry.open_chat(chat_id)
        identity = await self.identity_store.load()
        if identity is not None and self.dispatcher is not None:
            await self.dispatcher.acknowledge_read(chat_id, identity.id)
        return session

    def close_chat(self, chat_id: Optional[str] = None) -> None:
        self.registry.close_chat(chat_id)

    async def cancel(self, message_id: str) -> Message:
        """Cancel a message that has not reached a terminal status."""
        if self.dispatcher is not None:
            return await self.dispatcher.cancel(message_id)
        return await self.state_machine.cancel(message_id)

    async def sessions(self) -> List[ChatSession]:
        return await self.registry.list()

    async def messages(self, chat_id: str) -> List[Message]:
        return await self.message_store.list(chat_id)

    def on_status_change(self, callback: StatusChangeListener) -> None:
        self.state_machine.on_status_change(callback)

    def on_message(self, callback: AppendListener) -> None:
        self.message_store.on_appended(callback)

    async def sync_now(self) -> SyncReport:
        """Run one reconciliation cycle immediately."""
        if self.scheduler is None:
            return SyncReport()
        return await self.scheduler.run_cycle()

    async def drain(self) -> None:
        """Wait for background sends started by send_text to settle."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
