"""
UDP Listener for MAVLink telemetry

Binds a UDP port, receives datagrams on a background thread and publishes
each one to subscribers. Handles receive timeouts, socket errors and
graceful shutdown so the listener can be started and stopped repeatedly.
"""

import errno
import socket
import sys
import threading
import time
import logging
from enum import Enum
from typing import Optional

from .config import ListenerConfig, check_port, check_positive
from .mavlink_decoder import decode_packet
from .packet_events import ErrorKind, EventPublisher, PacketSubscriber

logger = logging.getLogger(__name__)

WSAEACCES = 10013


class EngineState(Enum):
    """Listener lifecycle states"""
    IDLE = 1
    LISTENING = 2
    STOPPING = 3


def _is_in_use_error(error: OSError) -> bool:
    if error.errno == errno.EADDRINUSE:
        return True
    # Windows reports an exclusively bound port as WSAEACCES
    return sys.platform == 'win32' and error.errno in (errno.EACCES, WSAEACCES)


def is_port_available(host: str, port: int) -> bool:
    """
    Best-effort check that a UDP port is not already bound.

    Only "address in use" counts as unavailable; any other bind error
    (unresolvable host, non-local address, permission) is left for the
    real bind to report.

    Args:
        host: Local address
        port: UDP port

    Returns:
        bool: False if another socket already holds the port
    """
    check_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        check_sock.bind((host, port))
        return True
    except OSError as e:
        return not _is_in_use_error(e)
    finally:
        check_sock.close()


class UdpListener:
    """
    Receives MAVLink datagrams on a UDP port.

    Supports:
    - Port-in-use detection before binding
    - Background receive loop with bounded receive timeout
    - Cooperative stop with a short grace period before the socket is closed
    - Per-instance counters, so several listeners can run side by side
    """

    thread_name = 'udp-listener'

    def __init__(self, config: Optional[ListenerConfig] = None):
        """
        Initialize the listener.

        Args:
            config: Listener settings (defaults to ListenerConfig())
        """
        self.config = config or ListenerConfig()
        self.config.validate()

        self.sock: Optional[socket.socket] = None
        self.state = EngineState.IDLE
        self.packets_received = 0
        self.last_error: Optional[ErrorKind] = None
        self.last_receive_time = 0.0

        self.events = EventPublisher()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._bound_address = None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, subscriber: PacketSubscriber):
        self.events.subscribe(subscriber)

    def unsubscribe(self, subscriber: PacketSubscriber):
        self.events.unsubscribe(subscriber)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_listening(self) -> bool:
        return self.state == EngineState.LISTENING

    @property
    def local_address(self):
        """(host, port) actually bound, or None when not listening."""
        return self._bound_address

    def start(self, bind_address: Optional[str] = None, port: Optional[int] = None,
              receive_timeout: Optional[float] = None) -> bool:
        """
        Bind the UDP port and start the receive loop.

        Returns as soon as the socket is bound; the loop runs on its own
        thread. Arguments left as None fall back to the listener config.

        Args:
            bind_address: Local address to bind
            port: Local UDP port
            receive_timeout: Seconds each receive waits

        Returns:
            bool: True if listening, False if the port could not be bound
        """
        if self.state != EngineState.IDLE:
            logger.warning(f"Cannot start: listener is {self.state.name}")
            return False

        host = bind_address if bind_address is not None else self.config.host
        port = port if port is not None else self.config.port
        timeout = receive_timeout if receive_timeout is not None else self.config.receive_timeout

        try:
            if not isinstance(host, str):
                raise ValueError(f"bind_address must be a string, got {host!r}")
            check_port('port', port)
            check_positive('receive_timeout', timeout)
        except ValueError as e:
            logger.error(f"Cannot start: {e}")
            return False

        logger.info(f"Attempting to bind UDP {host}:{port}...")

        if not is_port_available(host, port):
            self._report_error(ErrorKind.PORT_IN_USE, f"Port {port} is already in use")
            return False

        try:
            self._open_sockets(host, port, timeout)
        except (OSError, ValueError, OverflowError) as e:
            self._close_sockets()
            self._report_error(ErrorKind.SOCKET_FAILURE, f"Socket error: {e} (code: {getattr(e, 'errno', None)})")
            return False

        self._bound_address = self.sock.getsockname()
        self._reset_counters()
        self.last_error = None
        self.state = EngineState.LISTENING

        # Fresh event per run; a loop left over from a previous run keeps its own
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._listen_loop,
            args=(self.sock, self._stop_event),
            name=f"{self.thread_name}-{self._bound_address[1]}",
            daemon=True,
        )
        self._thread.start()

        logger.info(f"UDP socket bound and listening on {self._bound_address[0]}:{self._bound_address[1]}")
        return True

    def stop(self):
        """
        Stop the receive loop and close the socket.

        The loop gets ``stop_grace_period`` seconds to exit by itself before
        the socket is closed under it. Safe to call repeatedly and from a
        subscriber callback.
        """
        if self.state != EngineState.LISTENING:
            return

        self.state = EngineState.STOPPING
        self._stop_event.set()

        thread = self._thread
        in_loop_thread = thread is threading.current_thread()

        if thread is not None and not in_loop_thread:
            thread.join(self.config.stop_grace_period)

        self._close_sockets()

        if thread is not None and not in_loop_thread:
            thread.join(self.config.receive_timeout + self.config.stop_grace_period)
            if thread.is_alive():
                logger.warning("Receive loop did not exit in time; continuing shutdown")

        self._thread = None
        self._bound_address = None
        self.state = EngineState.IDLE
        logger.info("Listener stopped")

    def _open_sockets(self, host: str, port: int, timeout: float):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((host, port))
        self.sock.settimeout(timeout)

    def _close_sockets(self):
        sock, self.sock = self.sock, None
        if sock is None:
            return
        try:
            # Wakes a thread blocked in recvfrom; unconnected UDP sockets report ENOTCONN
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()
        logger.debug("UDP socket closed")

    def _reset_counters(self):
        self.packets_received = 0
        self.last_receive_time = 0.0

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    def _listen_loop(self, sock: socket.socket, stop_event: threading.Event):
        logger.debug("Receive loop started")

        while not stop_event.is_set():
            try:
                data, address = sock.recvfrom(self.config.buffer_size)
            except socket.timeout:
                # Timeout is normal, just check for stop and wait again
                continue
            except OSError as e:
                if stop_event.is_set():
                    break
                if sock.fileno() == -1:
                    self._on_socket_closed(sock)
                    break
                self._on_receive_failure(ErrorKind.SOCKET_FAILURE, f"Socket error: {e} (code: {e.errno})", stop_event)
                continue
            except Exception as e:
                if stop_event.is_set():
                    break
                self._on_receive_failure(ErrorKind.UNEXPECTED, f"Unexpected error: {e}", stop_event)
                continue

            if not data:
                continue

            self.packets_received += 1
            self.last_receive_time = time.time()
            logger.debug(f"Received packet #{self.packets_received}: {len(data)} bytes from {address}")

            self._dispatch(data, address, self.packets_received)

        logger.debug("Receive loop stopped")

    def _on_socket_closed(self, sock: socket.socket):
        """Return to IDLE when the socket was closed without stop()."""
        if self.sock is not sock or self.state != EngineState.LISTENING:
            return
        logger.warning("UDP socket closed unexpectedly, listener is now idle")
        self._close_sockets()
        self._thread = None
        self._bound_address = None
        self.state = EngineState.IDLE

    def _dispatch(self, data: bytes, address, sequence_number: int):
        """Publish one received datagram to subscribers."""
        if not self.events.has_subscribers:
            return

        self.events.publish('on_packet_received', data, address, sequence_number)

        if self.config.decode_packets:
            self.events.publish('on_packet_decoded', decode_packet(data), address, sequence_number)

    def _on_receive_failure(self, kind: ErrorKind, detail: str, stop_event: threading.Event):
        """Report a receive error and pause before retrying."""
        self._report_error(kind, detail)
        stop_event.wait(self.config.error_pause)

    def _report_error(self, kind: ErrorKind, detail: str, level: int = logging.ERROR):
        self.last_error = kind
        logger.log(level, detail)
        self.events.publish('on_error', kind, detail)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        """
        Get current listener status information.

        Returns:
            dict: State, counters and bound address
        """
        return {
            'state': self.state.name,
            'listening': self.is_listening,
            'local_address': self._bound_address,
            'packets_received': self.packets_received,
            'last_error': self.last_error.name if self.last_error else None,
            'time_since_last_packet': time.time() - self.last_receive_time if self.last_receive_time > 0 else None,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
