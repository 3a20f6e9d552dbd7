"""
CipherChat - Reconciliation loop.

The SyncScheduler bridges the transport to local state. Each cycle, for
every known session:

1. drain inbound blobs from the transport
2. decode envelopes; chat messages are decrypted and appended to the
   MessageStore (idempotent, so re-delivery is harmless) and receipts are
   handed to the OutboundDispatcher
3. account newly appended messages in the SessionRegistry and send a
   best-effort delivery receipt back
4. refresh the peer's presence flag

Failures are isolated per chat: an unreachable peer is logged and
reported in the cycle's SyncReport while every other chat is reconciled
normally.

Cycles run every `interval` seconds, and immediately after notify(),
which push-capable transports call through their subscription callback.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .constants import SYNC_INTERVAL, SYNC_MIN_INTERVAL
from .crypto import CryptoProvider
from .dispatcher import OutboundDispatcher
from .errors import TransportError
from .identity import IdentityStore, UserIdentity
from .message import Message, MessageStatus, MessageStore, MessageType
from .protocol import Envelope, EnvelopeKind, unpack_envelope
from .session import ChatSession, SessionRegistry
from .transport import Presence, Transport
from .utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Outcome of one reconciliation cycle."""

    appended: List[str] = field(default_factory=list)
    receipts: int = 0
    rejected: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    online: Dict[str, bool] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class SyncScheduler:
    """Periodic and push-triggered reconciliation with the transport."""

    def __init__(
        self,
        transport: Transport,
        registry: SessionRegistry,
        message_store: MessageStore,
        dispatcher: OutboundDispatcher,
        crypto: CryptoProvider,
        identity_store: IdentityStore,
        interval: float = SYNC_INTERVAL,
        push_enabled: bool = True,
    ):
        self.transport = transport
        self.registry = registry
        self.message_store = message_store
        self.dispatcher = dispatcher
        self.crypto = crypto
        self.identity_store = identity_store
        self.interval = max(SYNC_MIN_INTERVAL, float(interval))
        self.push_enabled = push_enabled

        self.running = False
        self.cycles = 0
        self.last_report: Optional[SyncReport] = None
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._cycle_lock = asyncio.Lock()
        self._subscribed = False

    async def run_cycle(self) -> SyncReport:
        """Run one reconciliation pass over every session."""
        report = SyncReport()
        async with self._cycle_lock:
            identity = await self.identity_store.load()
            if identity is None:
                return report

            sessions = await self.registry.list()
            await asyncio.gather(
                *(self._sync_chat(identity, session, report) for session in sessions)
            )

        self.cycles += 1
        self.last_report = report
        if report.appended or report.failures:
            logger.debug(
                f"Sync cycle {self.cycles}: {len(report.appended)} new, "
                f"{report.receipts} receipts, {len(report.failures)} failed chats"
            )
        return report

    async def _sync_chat(self, identity: UserIdentity, session: ChatSession, report: SyncReport) -> None:
        chat_id = session.id
        try:
            blobs = await self.transport.poll_inbound(chat_id)
            appended = 0
            for blob in blobs:
                # Drained blobs are not redelivered by the transport
                try:
                    if await self._ingest(identity, session, blob, report):
                        appended += 1
                except Exception as e:
                    logger.error(f"Failed to ingest blob from {chat_id}: {e}", exc_info=True)
                    report.rejected += 1
                    report.failures[chat_id] = str(e)

            if appended and self.registry.is_active(chat_id):
                await self.dispatcher.acknowledge_read(chat_id, identity.id)

            online = await self.transport.presence(chat_id) == Presence.ONLINE
            await self.registry.set_online(chat_id, online)
            report.online[chat_id] = online
        except TransportError as e:
            logger.warning(f"Peer {chat_id} unreachable: {e.message}")
            report.failures[chat_id] = e.message
            report.online[chat_id] = False
            try:
                await self.registry.set_online(chat_id, False)
            except Exception as inner:
                logger.debug(f"Could not mark {chat_id} offline: {inner}")
        except Exception as e:
            logger.error(f"Sync of chat {chat_id} failed: {e}", exc_info=True)
            report.failures[chat_id] = str(e)

    async def _ingest(
        self, identity: UserIdentity, session: ChatSession, blob: bytes, report: SyncReport
    ) -> bool:
        """Process one inbound blob. Returns True if a new message was appended."""
        try:
            envelope = unpack_envelope(blob)
        except TransportError as e:
            logger.warning(f"Dropping malformed envelope from {session.id}: {e.message}")
            report.rejected += 1
            return False

        if envelope.sender != session.id:
            logger.warning(f"Envelope claims sender {envelope.sender} on channel {session.id}")
            report.rejected += 1
            return False

        if envelope.is_receipt:
            await self.dispatcher.handle_receipt(session.id, envelope)
            report.receipts += 1
            return False

        message = self._to_message(session, envelope)
        appended = await self.message_store.append(message)
        if appended:
            await self.registry.record_inbound(message)
            report.appended.append(message.id)

        # Duplicates are acknowledged again: the peer may have missed the first receipt
        await self.dispatcher.send_receipt(
            session.id, identity.id, EnvelopeKind.DELIVERED, message.id
        )
        return appended

    def _to_message(self, session: ChatSession, envelope: Envelope) -> Message:
        try:
            message_type = MessageType(envelope.type)
        except ValueError:
            message_type = MessageType.TEXT

        return Message(
            id=envelope.id,
            chat_id=session.id,
            sender_id=envelope.sender,
            content=self.crypto.decrypt_or_placeholder(envelope.body, session.encryption_key or ""),
            timestamp=envelope.timestamp or now_ms(),
            status=MessageStatus.DELIVERED,
            type=message_type,
            is_me=False,
        )

    def notify(self, peer_id: Optional[str] = None) -> None:
        """Wake the loop for an immediate cycle (push notification)."""
        if self._wake is not None:
            self._wake.set()

    async def _run(self) -> None:
        logger.debug("Sync loop started")
        try:
            while self.running:
                self._wake.clear()
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.error(f"Sync cycle failed: {e}", exc_info=True)

                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
        finally:
            logger.debug("Sync loop ended")

    def start(self) -> None:
        """Start the background loop (idempotent)."""
        if self._task is not None and not self._task.done():
            return

        self._wake = asyncio.Event()
        if self.push_enabled and not self._subscribed:
            self._subscribed = self.transport.subscribe(self.notify)
            if not self._subscribed:
                logger.info("Transport has no push support; polling only")

        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Sync scheduler started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        self.running = False
        if self._subscribed:
            self.transport.unsubscribe(self.notify)
            self._subscribed = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Sync scheduler stopped")
