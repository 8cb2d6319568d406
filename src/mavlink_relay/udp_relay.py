"""
UDP Relay for MAVLink telemetry

Receives MAVLink datagrams from a SITL (or any other) source port and
forwards them unmodified to a fixed destination. Datagrams that do not
start with a MAVLink magic byte are counted and dropped.
"""

import socket
import threading
import logging
from typing import Optional

from .config import RelayConfig
from .mavlink_decoder import decode_packet, is_mavlink_frame
from .packet_events import ErrorKind
from .udp_listener import UdpListener

logger = logging.getLogger(__name__)


class UdpRelay(UdpListener):
    """
    Forwards MAVLink datagrams from a source port to a destination.

    In addition to the listener behaviour:
    - Non-MAVLink datagrams are dropped and reported as INVALID_DATA
    - Valid datagrams are sent unmodified to the destination
    - Receive failures raise ``on_connection_lost`` and pause for
      ``reconnect_delay``; rebinding is left to the caller
    - Send failures are reported but never stop the receive loop
    """

    thread_name = 'udp-relay'

    def __init__(self, config: Optional[RelayConfig] = None):
        """
        Initialize the relay.

        Args:
            config: Relay settings (defaults to RelayConfig())
        """
        super().__init__(config or RelayConfig())
        self.forward_sock: Optional[socket.socket] = None
        self.packets_forwarded = 0
        self.packets_dropped = 0

    @property
    def destination(self):
        return self.config.destination

    def start(self, bind_address: Optional[str] = None, port: Optional[int] = None,
              receive_timeout: Optional[float] = None) -> bool:
        started = super().start(bind_address, port, receive_timeout)
        if started:
            logger.info(f"Forwarding packets to {self.config.forward_host}:{self.config.forward_port}")
        return started

    def _open_sockets(self, host: str, port: int, timeout: float):
        super()._open_sockets(host, port, timeout)
        self.forward_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def _close_sockets(self):
        super()._close_sockets()
        forward_sock, self.forward_sock = self.forward_sock, None
        if forward_sock is not None:
            forward_sock.close()
            logger.debug("Forward socket closed")

    def _reset_counters(self):
        super()._reset_counters()
        self.packets_forwarded = 0
        self.packets_dropped = 0

    def _dispatch(self, data: bytes, address, sequence_number: int):
        if not is_mavlink_frame(data):
            self.packets_dropped += 1
            self._report_error(
                ErrorKind.INVALID_DATA,
                f"Received invalid data: {len(data)} bytes (not MAVLink)",
                level=logging.WARNING,
            )
            return

        logger.debug(f"Received valid MAVLink packet: {len(data)} bytes")
        self.events.publish('on_packet_received', data, address, sequence_number)

        if self.config.decode_packets and self.events.has_subscribers:
            self.events.publish('on_packet_decoded', decode_packet(data), address, sequence_number)

        self._forward(data)

    def _forward(self, data: bytes):
        """Send a datagram to the destination; failures are reported, not raised."""
        sock = self.forward_sock
        if sock is None:
            logger.warning("Cannot forward packet: not connected")
            return

        try:
            sock.sendto(data, self.destination)
        except OSError as e:
            self._report_error(ErrorKind.SOCKET_FAILURE, f"Socket error while forwarding: {e} (code: {e.errno})")
            return

        self.packets_forwarded += 1
        logger.debug(f"Forwarded packet to {self.config.forward_host}:{self.config.forward_port}")
        self.events.publish('on_packet_forwarded', data)

    def _on_receive_failure(self, kind: ErrorKind, detail: str, stop_event: threading.Event):
        self._report_error(kind, detail)
        if stop_event.is_set():
            return
        if kind == ErrorKind.SOCKET_FAILURE:
            logger.warning("Connection lost, waiting before receiving again...")
            self.events.publish('on_connection_lost')
        stop_event.wait(self.config.reconnect_delay)

    def get_status(self) -> dict:
        status = super().get_status()
        status.update({
            'destination': self.destination,
            'packets_forwarded': self.packets_forwarded,
            'packets_dropped': self.packets_dropped,
        })
        return status
