"""
CipherChat - Outbound dispatch and receipt handling.

Bridges the DeliveryStateMachine to the transport:

- dispatch() encrypts a PENDING message, hands it to the transport with a
  bounded number of attempts and exponential backoff, and records
  TRANSPORT_ACCEPT or TRANSPORT_ERROR
- every SENT message gets a cancellable acknowledgement timer that
  resends a bounded number of times, then records TIMEOUT
- handle_receipt() applies delivery/read receipts from the peer, walking
  the lifecycle one step at a time so no status is ever skipped
- send_receipt()/acknowledge_read() send our own receipts for inbound
  messages

Timers re-check the message on fire: a message that was wiped or moved
on in the meantime is left untouched.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

from .constants import ACK_RESEND_ATTEMPTS, ACK_TIMEOUT, MAX_SEND_ATTEMPTS, SEND_RETRY_DELAY
from .crypto import CryptoProvider
from .delivery import DeliveryEvent, DeliveryStateMachine
from .errors import (
    CryptoError,
    ErrorCode,
    InvalidTransitionError,
    MessageNotFoundError,
    SessionNotFoundError,
    TransportError,
)
from .message import Message, MessageStatus, MessageStore
from .protocol import Envelope, EnvelopeKind, pack_envelope
from .session import SessionRegistry
from .transport import SendAck, Transport
from .utils import now_ms

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

# Forward path through the lifecycle, with the event that enters each status
_FORWARD_PATH = [
    (MessageStatus.SENT, DeliveryEvent.TRANSPORT_ACCEPT),
    (MessageStatus.DELIVERED, DeliveryEvent.DELIVERY_ACK),
    (MessageStatus.READ, DeliveryEvent.READ_ACK),
]
_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}
_RECEIPT_TARGET = {
    EnvelopeKind.DELIVERED: MessageStatus.DELIVERED,
    EnvelopeKind.READ: MessageStatus.READ,
}


@dataclass
class DeliveryPolicy:
    """Finite retry budget for sends and acknowledgements."""

    max_send_attempts: int = MAX_SEND_ATTEMPTS
    retry_delay: float = SEND_RETRY_DELAY
    ack_timeout: float = ACK_TIMEOUT
    ack_resend_attempts: int = ACK_RESEND_ATTEMPTS

    @classmethod
    def from_config(cls, config: "Config") -> "DeliveryPolicy":
        return cls(
            max_send_attempts=max(1, int(config.get("delivery", "max_send_attempts", MAX_SEND_ATTEMPTS))),
            retry_delay=float(config.get("delivery", "retry_delay", SEND_RETRY_DELAY)),
            ack_timeout=float(config.get("delivery", "ack_timeout", ACK_TIMEOUT)),
            ack_resend_attempts=max(
                0, int(config.get("delivery", "ack_resend_attempts", ACK_RESEND_ATTEMPTS))
            ),
        )


class OutboundDispatcher:
    """Sends outbound messages and applies acknowledgements."""

    def __init__(
        self,
        transport: Transport,
        state_machine: DeliveryStateMachine,
        message_store: MessageStore,
        registry: SessionRegistry,
        crypto: CryptoProvider,
        policy: Optional[DeliveryPolicy] = None,
    ):
        self.transport = transport
        self.state_machine = state_machine
        self.message_store = message_store
        self.registry = registry
        self.crypto = crypto
        self.policy = policy or DeliveryPolicy()
        self._ack_timers: Dict[str, asyncio.Task] = {}

    async def _encode(self, message: Message) -> bytes:
        session = await self.registry.require(message.chat_id)
        if not session.encryption_key:
            raise CryptoError(ErrorCode.E103_INVALID_KEY, f"No session key for chat {message.chat_id}")
        body = self.crypto.encrypt(message.content, session.encryption_key)
        return pack_envelope(
            Envelope(
                kind=EnvelopeKind.MESSAGE,
                id=message.id,
                sender=message.sender_id,
                timestamp=message.timestamp,
                type=message.type.value,
                body=body,
            )
        )

    async def _try_send(self, peer_id: str, blob: bytes) -> SendAck:
        try:
            return await self.transport.send(peer_id, blob)
        except (TransportError, OSError, asyncio.TimeoutError) as e:
            return SendAck(accepted=False, detail=str(e))

    async def _record(self, message_id: str, event: DeliveryEvent) -> Optional[Message]:
        """Apply an event, tolerating races with concurrent transitions or a wipe."""
        try:
            return await self.state_machine.apply(message_id, event)
        except InvalidTransitionError as e:
            logger.debug(f"Skipped stale {event.name} for {message_id}: {e.message}")
        except MessageNotFoundError:
            logger.debug(f"Message {message_id} no longer exists; {event.name} ignored")
        return await self.message_store.find(message_id)

    async def dispatch(self, message: Message) -> Optional[Message]:
        """
        Drive a PENDING message to SENT or FAILED.

        Returns:
            The message as last recorded, or None if it vanished (wipe)
        """
        try:
            blob = await self._encode(message)
        except (CryptoError, SessionNotFoundError) as e:
            logger.error(f"Cannot encrypt message {message.id}: {e.message}")
            return await self._record(message.id, DeliveryEvent.TRANSPORT_ERROR)

        delay = self.policy.retry_delay
        for attempt in range(1, self.policy.max_send_attempts + 1):
            current = await self.message_store.find(message.id)
            if current is None or current.status != MessageStatus.PENDING:
                # Cancelled, wiped, or already advanced by an early receipt
                return current

            ack = await self._try_send(message.chat_id, blob)
            if ack.accepted:
                recorded = await self._record(message.id, DeliveryEvent.TRANSPORT_ACCEPT)
                if recorded is not None and recorded.status == MessageStatus.SENT:
                    self._arm_ack_timer(recorded, blob)
                return recorded

            logger.warning(
                f"Send of {message.id} to {message.chat_id} failed "
                f"(attempt {attempt}/{self.policy.max_send_attempts}): {ack.detail}"
            )
            if attempt < self.policy.max_send_attempts:
                await asyncio.sleep(delay)
                delay *= 2

        logger.error(f"Message {message.id} failed after {self.policy.max_send_attempts} attempts")
        return await self._record(message.id, DeliveryEvent.TRANSPORT_ERROR)

    def _arm_ack_timer(self, message: Message, blob: Optional[bytes] = None) -> None:
        self.cancel_ack_timer(message.id)
        task = asyncio.create_task(self._await_ack(message, blob))
        self._ack_timers[message.id] = task
        task.add_done_callback(lambda t, mid=message.id: self._forget_timer(mid, t))

    def _forget_timer(self, message_id: str, task: asyncio.Task) -> None:
        if self._ack_timers.get(message_id) is task:
            del self._ack_timers[message_id]

    async def _await_ack(self, message: Message, blob: Optional[bytes]) -> None:
        for resend in range(self.policy.ack_resend_attempts + 1):
            await asyncio.sleep(self.policy.ack_timeout)
            current = await self.message_store.find(message.id)
            if current is None or current.status != MessageStatus.SENT:
                return
            if resend < self.policy.ack_resend_attempts:
                if blob is None:
                    try:
                        blob = await self._encode(current)
                    except (CryptoError, SessionNotFoundError) as e:
                        logger.error(f"Cannot re-encrypt {message.id}: {e.message}")
                        break
                logger.info(f"No receipt for {message.id}; resending ({resend + 1})")
                await self._try_send(message.chat_id, blob)

        logger.warning(f"Message {message.id} timed out waiting for a delivery receipt")
        await self._record(message.id, DeliveryEvent.TIMEOUT)

    def cancel_ack_timer(self, message_id: str) -> None:
        task = self._ack_timers.pop(message_id, None)
        if task is not None and not task.done():
            task.cancel()

    def pending_timers(self) -> List[str]:
        return list(self._ack_timers)

    async def cancel_all(self) -> None:
        """Cancel every acknowledgement timer and wait for them to finish."""
        tasks = list(self._ack_timers.values())
        self._ack_timers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def cancel(self, message_id: str) -> Message:
        """Explicitly cancel a message (FAILED) and stop its timer."""
        self.cancel_ack_timer(message_id)
        return await self.state_machine.cancel(message_id)

    async def handle_receipt(self, peer_id: str, envelope: Envelope) -> Optional[Message]:
        """
        Apply a delivery or read receipt from peer_id.

        Stale receipts (status already at or beyond the target) are
        ignored. A read receipt for a message still SENT first records
        DELIVERED, then READ.
        """
        target = _RECEIPT_TARGET.get(envelope.kind)
        if target is None:
            return None

        message = await self.message_store.get(peer_id, envelope.id)
        if message is None or not message.is_me:
            logger.debug(f"Receipt from {peer_id} for unknown message {envelope.id}")
            return None
        if message.status == MessageStatus.FAILED:
            logger.info(f"Receipt for failed message {message.id} ignored")
            return message
        if _RANK[message.status] >= _RANK[target]:
            return message

        for status, event in _FORWARD_PATH:
            if _RANK[status] <= _RANK[message.status]:
                continue
            if _RANK[status] > _RANK[target]:
                break
            recorded = await self._record(message.id, event)
            if recorded is None or recorded.status != status:
                return recorded
            message = recorded

        if _RANK[message.status] >= _RANK[MessageStatus.DELIVERED]:
            self.cancel_ack_timer(message.id)
        return message

    async def send_receipt(self, peer_id: str, sender_id: str, kind: EnvelopeKind, message_id: str) -> bool:
        """Best-effort receipt to the peer. Failures are logged, not raised."""
        blob = pack_envelope(
            Envelope(kind=kind, id=message_id, sender=sender_id, timestamp=now_ms())
        )
        ack = await self._try_send(peer_id, blob)
        if not ack.accepted:
            logger.info(f"{kind.value} receipt for {message_id} not sent: {ack.detail}")
        return ack.accepted

    async def acknowledge_read(self, chat_id: str, sender_id: str) -> int:
        """Mark inbound DELIVERED messages of a chat READ and tell the peer."""
        count = 0
        for message in await self.message_store.list(chat_id):
            if message.is_me or message.status != MessageStatus.DELIVERED:
                continue
            recorded = await self._record(message.id, DeliveryEvent.READ_ACK)
            if recorded is not None and recorded.status == MessageStatus.READ:
                await self.send_receipt(chat_id, sender_id, EnvelopeKind.READ, message.id)
                count += 1
        return count

    async def resume(self) -> List[asyncio.Task]:
        """
        Pick up outbound work left over from a previous run.

        PENDING messages are dispatched again; SENT messages get a fresh
        acknowledgement timer.
        """
        tasks = []
        for chat_id in await self.message_store.chat_ids():
            for message in await self.message_store.list(chat_id):
                if not message.is_me:
                    continue
                if message.status == MessageStatus.PENDING:
                    tasks.append(asyncio.create_task(self.dispatch(message)))
                elif message.status == MessageStatus.SENT:
                    self._arm_ack_timer(message)
        if tasks:
            logger.info(f"Resuming {len(tasks)} pending outbound messages")
        return tasks
