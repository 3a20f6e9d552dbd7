"""
CipherChat - Abstract transport interface.

The core never opens sockets itself. A transport (LAN discovery, relay,
...) implements three operations against opaque ciphertext blobs:

- send(peer_id, ciphertext) -> SendAck
- poll_inbound(peer_id) -> list of ciphertext blobs
- presence(peer_id) -> Presence

Transports that can push may also accept a subscriber callback, invoked
with the peer id whenever something arrives; the SyncScheduler then runs
a reconciliation cycle immediately instead of waiting for its interval.

InMemoryTransport connects endpoints through a shared InMemoryHub. It is
a store-and-forward relay inside one process, used for loopback setups
and tests.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Set, Tuple

from .constants import SENT_HISTORY_SIZE
from .errors import ErrorCode, TransportError

logger = logging.getLogger(__name__)

InboundCallback = Callable[[str], None]


class Presence(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class SendAck:
    """Transport's answer to send(): accepted or rejected with a reason."""

    accepted: bool
    detail: str = ""


class Transport(ABC):
    """Interface every transport implementation provides."""

    @abstractmethod
    async def send(self, peer_id: str, ciphertext: bytes) -> SendAck:
        """Hand an encrypted blob to the transport for peer_id.

        Raises:
            TransportError: If the transport fails outright
        """

    @abstractmethod
    async def poll_inbound(self, peer_id: str) -> List[bytes]:
        """Drain blobs that arrived from peer_id since the last poll.

        Raises:
            TransportError: If the peer or relay cannot be reached
        """

    @abstractmethod
    async def presence(self, peer_id: str) -> Presence:
        """Report whether peer_id is currently reachable."""

    def subscribe(self, callback: InboundCallback) -> bool:
        """Register a push callback. Returns False if push is unsupported."""
        return False

    def unsubscribe(self, callback: InboundCallback) -> bool:
        """Remove a push callback. Returns False if it was not registered."""
        return False


class InMemoryHub:
    """Shared relay for InMemoryTransport endpoints."""

    def __init__(self):
        self.endpoints: Dict[str, "InMemoryTransport"] = {}
        # (recipient, sender) -> queued blobs
        self.mailboxes: Dict[Tuple[str, str], List[bytes]] = defaultdict(list)
        self.unreachable: Set[str] = set()

    def endpoint(self, local_id: str) -> "InMemoryTransport":
        """Return (creating if needed) the endpoint for local_id."""
        transport = self.endpoints.get(local_id)
        if transport is None:
            transport = InMemoryTransport(self, local_id)
            self.endpoints[local_id] = transport
        return transport

    def _deliver(self, sender: str, recipient: str, blob: bytes) -> None:
        self.mailboxes[(recipient, sender)].append(blob)
        target = self.endpoints[recipient]
        for callback in list(target.subscribers):
            try:
                callback(sender)
            except Exception as e:
                logger.error(f"Inbound subscriber error: {e}")


class InMemoryTransport(Transport):
    """One endpoint on an InMemoryHub."""

    def __init__(self, hub: InMemoryHub, local_id: str):
        self.hub = hub
        self.local_id = local_id
        self.online = True
        self.subscribers: List[InboundCallback] = []
        # Most recent sends, for loopback inspection
        self.sent: Deque[Tuple[str, bytes]] = deque(maxlen=SENT_HISTORY_SIZE)

    def _check_reachable(self, peer_id: str) -> None:
        if peer_id in self.hub.unreachable:
            raise TransportError(
                ErrorCode.E200_TRANSPORT_ERROR,
                f"Peer unreachable: {peer_id}",
                {"peer_id": peer_id},
            )

    async def send(self, peer_id: str, ciphertext: bytes) -> SendAck:
        self._check_reachable(peer_id)
        if peer_id not in self.hub.endpoints:
            return SendAck(accepted=False, detail="unknown peer")
        self.sent.append((peer_id, ciphertext))
        self.hub._deliver(self.local_id, peer_id, ciphertext)
        return SendAck(accepted=True)

    async def poll_inbound(self, peer_id: str) -> List[bytes]:
        self._check_reachable(peer_id)
        return self.hub.mailboxes.pop((self.local_id, peer_id), [])

    async def presence(self, peer_id: str) -> Presence:
        self._check_reachable(peer_id)
        peer = self.hub.endpoints.get(peer_id)
        if peer is not None and peer.online:
            return Presence.ONLINE
        return Presence.OFFLINE

    def subscribe(self, callback: InboundCallback) -> bool:
        self.subscribers.append(callback)
        return True

    def unsubscribe(self, callback: InboundCallback) -> bool:
        if callback in self.subscribers:
            self.subscribers.remove(callback)
            return True
        return False
