"""
Packet Events

Subscription interface shared by the UDP listener and relay. Subscribers
implement any of the ``on_*`` methods of PacketSubscriber; events are
delivered synchronously, in receive order, on the engine's receive thread.
"""

import logging
from enum import Enum
from typing import List

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Network-side error categories reported through ``on_error``."""
    PORT_IN_USE = 1
    SOCKET_FAILURE = 2
    INVALID_DATA = 3
    UNEXPECTED = 4


class PacketSubscriber:
    """
    Base class for engine subscribers.

    All methods are no-ops; override the ones you care about. Methods are
    called from the engine's receive thread, so implementations that share
    state with other threads must do their own locking.
    """

    def on_packet_received(self, data: bytes, source_address, sequence_number: int):
        """A non-empty datagram was received (relay: and passed magic byte validation)."""

    def on_packet_decoded(self, packet, source_address, sequence_number: int):
        """A received datagram was run through the decoder."""

    def on_packet_forwarded(self, data: bytes):
        """The relay sent a datagram to its destination."""

    def on_error(self, error_kind: ErrorKind, detail: str):
        """A recoverable error occurred."""

    def on_connection_lost(self):
        """The relay's source socket failed while receiving."""


class EventPublisher:
    """Ordered list of subscribers with fault-isolated delivery."""

    def __init__(self):
        self._subscribers: List[PacketSubscriber] = []

    def subscribe(self, subscriber: PacketSubscriber):
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: PacketSubscriber):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def has_subscribers(self) -> bool:
        return bool(self._subscribers)

    def publish(self, event: str, *args):
        """
        Deliver an event to every subscriber.

        A subscriber that raises is logged and skipped; delivery to the
        remaining subscribers continues.

        Args:
            event: Name of the PacketSubscriber method to call
            *args: Event arguments
        """
        # Snapshot; the subscriber list may change from another thread
        for subscriber in list(self._subscribers):
            handler = getattr(subscriber, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Subscriber {type(subscriber).__name__}.{event} failed: {e}", exc_info=True)
