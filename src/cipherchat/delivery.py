"""
CipherChat - Message delivery state machine.

Drives each message through its status lifecycle:

    PENDING --accept--> SENT --delivery ack--> DELIVERED --read ack--> READ
       |                  |                        |
       +--error/timeout---+--timeout---------------+--cancel--> FAILED

READ and FAILED are terminal. The machine only validates and records
legal transitions; it never retries. Retrying sends is the job of the
OutboundDispatcher and the SyncScheduler.
"""

import logging
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from .crypto import generate_uid
from .errors import InvalidTransitionError, MessageNotFoundError
from .message import Message, MessageStatus, MessageStore, MessageType
from .utils import now_ms

logger = logging.getLogger(__name__)


class DeliveryEvent(Enum):
    """Events that trigger status transitions."""

    TRANSPORT_ACCEPT = auto()  # Transport accepted the encrypted payload
    TRANSPORT_ERROR = auto()  # Transport rejected the payload or raised
    TIMEOUT = auto()  # No acknowledgement within the retry budget
    DELIVERY_ACK = auto()  # Peer transport acknowledged receipt
    READ_ACK = auto()  # Peer client acknowledged display
    CANCEL = auto()  # Explicit cancel by the user


StatusChangeListener = Callable[[Message, MessageStatus], None]


class DeliveryStateMachine:
    """
    Validates delivery events against the transition table and persists
    the resulting status through MessageStore.update_status.

    Status listeners are registered on the MessageStore, so they fire after
    the new status is persisted and before the chat lock is released: no
    observer can see a broadcast status that disagrees with storage.
    """

    TRANSITIONS: Dict[MessageStatus, Dict[DeliveryEvent, MessageStatus]] = {
        MessageStatus.PENDING: {
            DeliveryEvent.TRANSPORT_ACCEPT: MessageStatus.SENT,
            DeliveryEvent.TRANSPORT_ERROR: MessageStatus.FAILED,
            DeliveryEvent.TIMEOUT: MessageStatus.FAILED,
            DeliveryEvent.CANCEL: MessageStatus.FAILED,
        },
        MessageStatus.SENT: {
            DeliveryEvent.DELIVERY_ACK: MessageStatus.DELIVERED,
            DeliveryEvent.TIMEOUT: MessageStatus.FAILED,
            DeliveryEvent.CANCEL: MessageStatus.FAILED,
        },
        MessageStatus.DELIVERED: {
            DeliveryEvent.READ_ACK: MessageStatus.READ,
            DeliveryEvent.CANCEL: MessageStatus.FAILED,
        },
        MessageStatus.READ: {},
        MessageStatus.FAILED: {},
    }

    def __init__(self, message_store: MessageStore):
        self.message_store = message_store

    def on_status_change(self, callback: StatusChangeListener) -> None:
        """Register a callback fired with (message, previous_status)."""
        self.message_store.on_status_changed(callback)

    @classmethod
    def can_apply(cls, status: MessageStatus, event: DeliveryEvent) -> bool:
        return event in cls.TRANSITIONS.get(status, {})

    @classmethod
    def target(cls, status: MessageStatus, event: DeliveryEvent) -> Optional[MessageStatus]:
        """Status reached by applying event in status, or None if illegal."""
        return cls.TRANSITIONS.get(status, {}).get(event)

    async def compose(
        self,
        chat_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        message_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Message:
        """Create a locally authored message in PENDING and append it."""
        message = Message(
            id=message_id or generate_uid(),
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            timestamp=timestamp if timestamp is not None else now_ms(),
            status=MessageStatus.PENDING,
            type=message_type,
            is_me=True,
        )
        await self.message_store.append(message)
        logger.debug(f"Composed message {message.id} for {chat_id}")
        return message

    async def apply(self, message_id: str, event: DeliveryEvent) -> Message:
        """
        Apply a delivery event to a message.

        Raises:
            MessageNotFoundError: If the message does not exist
            InvalidTransitionError: If the event is not legal in the
                message's current status
        """
        message = await self.message_store.find(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)

        new_status = self.target(message.status, event)
        if new_status is None:
            logger.warning(
                f"Invalid transition: {message.status.value} + {event.name} for {message_id}"
            )
            raise InvalidTransitionError(message_id, message.status.value, event.name)

        # Compare-and-set: a concurrent transition makes this one stale
        return await self.message_store.update_status(
            message_id, new_status, expected=message.status
        )

    async def cancel(self, message_id: str) -> Message:
        """Cancel a non-terminal message (moves it to FAILED)."""
        return await self.apply(message_id, DeliveryEvent.CANCEL)

    @classmethod
    def is_valid_history(cls, statuses: List[MessageStatus]) -> bool:
        """Check that a sequence of observed statuses follows the table."""
        for current, following in zip(statuses, statuses[1:]):
            if following not in cls.TRANSITIONS.get(current, {}).values():
                return False
        return True
