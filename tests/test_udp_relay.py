"""
Unit tests for UdpRelay

Tests forwarding, non-MAVLink filtering, connection-loss notification
and send failure handling.
"""

import unittest
from unittest.mock import Mock, patch
import socket
import struct
import time
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from mavlink_relay.config import RelayConfig
from mavlink_relay.packet_events import ErrorKind, PacketSubscriber
from mavlink_relay.udp_listener import EngineState
from mavlink_relay.udp_relay import UdpRelay


HEARTBEAT = bytes([0xFE, 9, 0, 1, 1, 0]) + struct.pack('<IBBBBB', 1, 1, 3, 81, 4, 3) + b'\x00\x00'
TIMESYNC_V2 = bytes([0xFD, 16, 0, 0, 5, 1, 1, 111, 0, 0]) + struct.pack('<qq', 0, 42) + b'\x00\x00'


def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class RecordingSubscriber(PacketSubscriber):
    """Subscriber that records every event it receives."""

    def __init__(self):
        self.events = []

    def on_packet_received(self, data, source_address, sequence_number):
        self.events.append(('received', data))

    def on_packet_decoded(self, packet, source_address, sequence_number):
        self.events.append(('decoded', packet))

    def on_packet_forwarded(self, data):
        self.events.append(('forwarded', data))

    def on_error(self, error_kind, detail):
        self.events.append(('error', error_kind, detail))

    def on_connection_lost(self):
        self.events.append(('connection_lost',))

    def of_type(self, name):
        return [e for e in self.events if e[0] == name]


class MockSocketRelay(UdpRelay):
    """Relay that uses supplied source and forward socket objects."""

    def __init__(self, source_sock, forward_sock, config=None):
        super().__init__(config)
        self.source_sock = source_sock
        self.mock_forward_sock = forward_sock

    def _open_sockets(self, host, port, timeout):
        self.sock = self.source_sock
        self.forward_sock = self.mock_forward_sock


def make_mock_socket(*results):
    """Mock socket returning (or raising) each result, then timing out."""
    queue = list(results)

    def recvfrom(bufsize):
        if queue:
            item = queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        time.sleep(0.01)
        raise socket.timeout()

    mock_sock = Mock()
    mock_sock.recvfrom.side_effect = recvfrom
    mock_sock.getsockname.return_value = ('127.0.0.1', 14550)
    mock_sock.fileno.return_value = 3
    return mock_sock


class TestUdpRelayLoopback(unittest.TestCase):
    """Relay between real loopback sockets"""

    def setUp(self):
        self.destination = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.destination.bind(('127.0.0.1', 0))
        self.destination.settimeout(2.0)

        self.config = RelayConfig(
            host='127.0.0.1',
            port=0,
            forward_host='127.0.0.1',
            forward_port=self.destination.getsockname()[1],
            receive_timeout=0.2,
            reconnect_delay=0.05,
        )
        self.relay = UdpRelay(self.config)
        self.recorder = RecordingSubscriber()
        self.relay.subscribe(self.recorder)
        self.sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.assertTrue(self.relay.start())

    def tearDown(self):
        self.relay.stop()
        self.sender.close()
        self.destination.close()

    def send(self, data):
        self.sender.sendto(data, self.relay.local_address)

    def test_forwards_unmodified(self):
        self.send(HEARTBEAT)
        data, _ = self.destination.recvfrom(65535)

        self.assertEqual(data, HEARTBEAT)
        self.assertTrue(wait_for(lambda: self.relay.packets_forwarded == 1))
        self.assertEqual(self.relay.packets_received, 1)
        self.assertEqual(self.recorder.of_type('forwarded'), [('forwarded', HEARTBEAT)])

    def test_forwards_v2_frames(self):
        self.send(TIMESYNC_V2)
        data, _ = self.destination.recvfrom(65535)
        self.assertEqual(data, TIMESYNC_V2)

    def test_forwards_in_order(self):
        frames = [HEARTBEAT[:2] + bytes([i]) + HEARTBEAT[3:] for i in range(5)]
        for frame in frames:
            self.send(frame)
            time.sleep(0.01)

        received = [self.destination.recvfrom(65535)[0] for _ in frames]
        self.assertEqual(received, frames)

    def test_non_mavlink_dropped(self):
        """Non-MAVLink data is counted as received but never forwarded"""
        self.send(b'\x00not mavlink')
        self.assertTrue(wait_for(lambda: self.relay.packets_dropped == 1))

        self.assertEqual(self.relay.packets_received, 1)
        self.assertEqual(self.relay.packets_forwarded, 0)
        errors = self.recorder.of_type('error')
        self.assertEqual(errors[0][1], ErrorKind.INVALID_DATA)
        self.assertIn('12 bytes', errors[0][2])
        self.assertEqual(self.recorder.of_type('received'), [])

        self.destination.settimeout(0.2)
        with self.assertRaises(socket.timeout):
            self.destination.recvfrom(65535)

    def test_dropped_datagram_sets_last_error(self):
        with self.assertLogs('mavlink_relay', level='WARNING') as logs:
            self.send(b'\x00not mavlink')
            self.assertTrue(wait_for(lambda: self.recorder.of_type('error')))

        self.assertEqual(self.relay.last_error, ErrorKind.INVALID_DATA)
        self.assertEqual(self.relay.get_status()['last_error'], 'INVALID_DATA')
        self.assertIn('not MAVLink', logs.output[0])

    def test_decoding_disabled_by_default(self):
        self.send(HEARTBEAT)
        self.assertTrue(wait_for(lambda: self.relay.packets_forwarded == 1))
        self.assertEqual(self.recorder.of_type('decoded'), [])

    def test_forwards_without_subscribers(self):
        self.relay.unsubscribe(self.recorder)
        self.send(HEARTBEAT)
        data, _ = self.destination.recvfrom(65535)
        self.assertEqual(data, HEARTBEAT)

    def test_restart_resets_counters(self):
        self.send(HEARTBEAT)
        self.assertTrue(wait_for(lambda: self.relay.packets_forwarded == 1))

        self.relay.stop()
        self.assertIsNone(self.relay.forward_sock)
        self.assertEqual(self.relay.state, EngineState.IDLE)

        self.assertTrue(self.relay.start())
        self.assertEqual(self.relay.packets_forwarded, 0)
        self.assertEqual(self.relay.packets_dropped, 0)

    def test_get_status(self):
        status = self.relay.get_status()
        self.assertEqual(status['destination'], self.config.destination)
        self.assertEqual(status['packets_forwarded'], 0)
        self.assertEqual(status['packets_dropped'], 0)


class TestUdpRelayMocked(unittest.TestCase):
    """Failure handling with mock sockets"""

    def setUp(self):
        self.config = RelayConfig(
            host='127.0.0.1',
            port=14550,
            forward_port=14562,
            receive_timeout=0.2,
            reconnect_delay=0.05,
        )
        self.recorder = RecordingSubscriber()
        patcher = patch('mavlink_relay.udp_listener.is_port_available', return_value=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def make_relay(self, source_sock, forward_sock):
        relay = MockSocketRelay(source_sock, forward_sock, self.config)
        relay.subscribe(self.recorder)
        self.addCleanup(relay.stop)
        return relay

    def test_non_mavlink_never_sent(self):
        source = make_mock_socket((b'\x42' * 20, ('127.0.0.1', 5760)))
        forward = Mock()
        relay = self.make_relay(source, forward)

        self.assertTrue(relay.start())
        self.assertTrue(wait_for(lambda: relay.packets_received == 1))
        time.sleep(0.05)

        forward.sendto.assert_not_called()
        self.assertEqual(relay.packets_forwarded, 0)

    def test_send_failure_reported(self):
        """Send errors are reported and the loop keeps going"""
        source = make_mock_socket(
            (HEARTBEAT, ('127.0.0.1', 5760)),
            (HEARTBEAT, ('127.0.0.1', 5760)),
        )
        forward = Mock()
        forward.sendto.side_effect = [OSError(101, 'Network is unreachable'), len(HEARTBEAT)]
        relay = self.make_relay(source, forward)

        self.assertTrue(relay.start())
        self.assertTrue(wait_for(lambda: relay.packets_forwarded == 1))

        errors = self.recorder.of_type('error')
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0][1], ErrorKind.SOCKET_FAILURE)
        self.assertEqual(self.recorder.of_type('connection_lost'), [])
        self.assertEqual(relay.packets_received, 2)
        forward.sendto.assert_called_with(HEARTBEAT, ('127.0.0.1', 14562))

    def test_receive_failure_raises_connection_lost(self):
        source = make_mock_socket(
            OSError(104, 'Connection reset by peer'),
            (HEARTBEAT, ('127.0.0.1', 5760)),
        )
        forward = Mock()
        relay = self.make_relay(source, forward)

        self.assertTrue(relay.start())
        self.assertTrue(wait_for(lambda: relay.packets_forwarded == 1))

        kinds = [e[0] for e in self.recorder.events]
        self.assertEqual(kinds[:2], ['error', 'connection_lost'])
        self.assertTrue(relay.is_listening)

    def test_unexpected_error_does_not_raise_connection_lost(self):
        source = make_mock_socket(RuntimeError('boom'), (HEARTBEAT, ('127.0.0.1', 5760)))
        relay = self.make_relay(source, Mock())

        self.assertTrue(relay.start())
        self.assertTrue(wait_for(lambda: relay.packets_forwarded == 1))
        self.assertEqual(self.recorder.of_type('error')[0][1], ErrorKind.UNEXPECTED)
        self.assertEqual(self.recorder.of_type('connection_lost'), [])

    def test_decoded_when_enabled(self):
        self.config.decode_packets = True
        source = make_mock_socket((TIMESYNC_V2, ('127.0.0.1', 5760)))
        relay = self.make_relay(source, Mock())

        self.assertTrue(relay.start())
        self.assertTrue(wait_for(lambda: relay.packets_forwarded == 1))

        kinds = [e[0] for e in self.recorder.events]
        self.assertEqual(kinds, ['received', 'decoded', 'forwarded'])
        self.assertEqual(self.recorder.of_type('decoded')[0][1].fields.ts1, 42)

    def test_forward_socket_closed_on_stop(self):
        forward = Mock()
        relay = self.make_relay(make_mock_socket(), forward)

        self.assertTrue(relay.start())
        relay.stop()
        forward.close.assert_called_once()
        self.assertIsNone(relay.forward_sock)


if __name__ == '__main__':
    unittest.main()
