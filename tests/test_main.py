"""
Unit tests for the command-line application.
"""

import unittest
from unittest.mock import Mock, patch
import json
import tempfile
import threading
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from mavlink_relay.main import RelayApplication, ConnectionWatcher, parse_arguments, main
from mavlink_relay.packet_log import PacketLog
from mavlink_relay.packet_monitor import PacketMonitor
from mavlink_relay.udp_listener import UdpListener
from mavlink_relay.udp_relay import UdpRelay


class TestArguments(unittest.TestCase):
    """Test command-line parsing"""

    def test_defaults(self):
        args = parse_arguments([])
        self.assertEqual(args.mode, 'receive')
        self.assertIsNone(args.port)
        self.assertFalse(args.rebind)
        self.assertFalse(args.show_hex)

    def test_relay_arguments(self):
        args = parse_arguments([
            '--mode', 'relay', '--port', '14550', '--forward-host', '10.0.0.2',
            '--forward-port', '14600', '--timeout', '2.5', '--reconnect-delay', '0.5',
            '--rebind', '--show-hex', '--hex-length', '8', '--no-color',
        ])
        self.assertEqual(args.mode, 'relay')
        self.assertEqual(args.port, 14550)
        self.assertEqual(args.forward_port, 14600)
        self.assertEqual(args.timeout, 2.5)
        self.assertTrue(args.rebind)
        self.assertEqual(args.hex_length, 8)

    def test_invalid_mode(self):
        with patch('sys.stderr'):
            with self.assertRaises(SystemExit):
                parse_arguments(['--mode', 'broadcast'])


class TestRelayApplication(unittest.TestCase):
    """Test configuration merging and component setup"""

    def make_app(self, argv):
        app = RelayApplication(parse_arguments(argv))
        app.load_config()
        return app

    def test_receive_mode_setup(self):
        app = self.make_app(['--port', '15000', '--show-hex', '--no-color'])
        app.setup()

        self.assertIsInstance(app.engine, UdpListener)
        self.assertNotIsInstance(app.engine, UdpRelay)
        self.assertEqual(app.engine.config.port, 15000)
        self.assertIsInstance(app.monitor, PacketMonitor)
        self.assertTrue(app.monitor.config.show_hex)
        self.assertFalse(app.monitor.config.color_enabled)
        self.assertIsNone(app.packet_log)

    def test_relay_mode_setup(self):
        app = self.make_app(['--mode', 'relay', '--forward-port', '14600', '--reconnect-delay', '0.5'])
        app.setup()

        self.assertIsInstance(app.engine, UdpRelay)
        self.assertEqual(app.engine.config.port, 14550)
        self.assertEqual(app.engine.config.destination, ('127.0.0.1', 14600))
        self.assertEqual(app.engine.config.reconnect_delay, 0.5)
        # Monitor output needs decoded packets
        self.assertTrue(app.engine.config.decode_packets)

    def test_quiet_mode_has_no_monitor(self):
        app = self.make_app(['--mode', 'relay', '--quiet'])
        app.setup()
        self.assertIsNone(app.monitor)
        self.assertFalse(app.engine.config.decode_packets)

    def test_csv_log_subscribed(self):
        app = self.make_app(['--log-csv', 'packets.csv'])
        app.setup()
        self.assertIsInstance(app.packet_log, PacketLog)
        self.assertIn(app.packet_log, app.engine.events._subscribers)

    def test_config_file_with_cli_override(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / 'relay.json'
            path.write_text(json.dumps({
                'relay': {'port': 14555, 'forward_port': 14700},
                'monitor': {'hex_preview_length': 32},
            }))
            app = self.make_app(['--mode', 'relay', '--config', str(path), '--forward-port', '14800'])
            app.setup()

        self.assertEqual(app.engine.config.port, 14555)
        self.assertEqual(app.engine.config.forward_port, 14800)
        self.assertEqual(app.monitor.config.hex_preview_length, 32)

    def test_invalid_config_value(self):
        app = self.make_app(['--port', '99999'])
        with self.assertRaises(ValueError):
            app.setup()

    def test_run_fails_when_engine_cannot_start(self):
        app = self.make_app([])
        app.engine = Mock()
        app.engine.start.return_value = False
        self.assertEqual(app.run(), 1)

    def test_rebind_after_connection_lost(self):
        app = self.make_app(['--mode', 'relay', '--rebind'])
        app.engine = Mock()
        app.engine.start.return_value = True
        app.engine.config.reconnect_delay = 0.0
        app.engine.get_status.return_value = {'packets_received': 0}

        def stop_after_rebind():
            app.running = False

        app.watcher.lost.set()
        timer = threading.Timer(0.5, stop_after_rebind)
        timer.start()
        try:
            self.assertEqual(app.run(), 0)
        finally:
            timer.cancel()

        self.assertEqual(app.stats['rebinds'], 1)
        self.assertEqual(app.engine.start.call_count, 2)
        self.assertFalse(app.watcher.lost.is_set())

    def test_no_rebind_without_flag(self):
        app = self.make_app(['--mode', 'relay'])
        app.engine = Mock()
        app.engine.start.return_value = True
        app.engine.get_status.return_value = {'packets_received': 0}

        app.watcher.lost.set()
        timer = threading.Timer(0.3, lambda: setattr(app, 'running', False))
        timer.start()
        try:
            app.run()
        finally:
            timer.cancel()

        self.assertEqual(app.engine.start.call_count, 1)
        self.assertEqual(app.stats['rebinds'], 0)

    def test_shutdown_writes_csv(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            csv_path = Path(temp_dir) / 'out.csv'
            app = self.make_app(['--log-csv', str(csv_path)])
            app.setup()
            app.shutdown()
            self.assertTrue(csv_path.exists())


class TestConnectionWatcher(unittest.TestCase):

    def test_sets_flag(self):
        watcher = ConnectionWatcher()
        watcher.on_connection_lost()
        self.assertTrue(watcher.lost.is_set())


class TestMain(unittest.TestCase):

    def test_missing_config_file_exits_with_error(self):
        self.assertEqual(main(['--config', '/nonexistent/relay.json']), 1)


if __name__ == '__main__':
    unittest.main()
