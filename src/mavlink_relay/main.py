#!/usr/bin/env python3
"""
MAVLink UDP Relay - Main Application

Command-line entry point for receiving MAVLink telemetry on a UDP port
(receive mode) or forwarding it from a SITL output port to another
address (relay mode), with live console output and optional CSV export.
"""

import argparse
import sys
import signal
import threading
import time
import logging
from typing import Optional, Union

from .config import ListenerConfig, RelayConfig, load_config
from .packet_events import PacketSubscriber
from .packet_log import PacketLog, DEFAULT_MAX_ROWS
from .packet_monitor import PacketMonitor, MonitorConfig
from .udp_listener import UdpListener
from .udp_relay import UdpRelay

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


STATS_INTERVAL = 10.0


class ConnectionWatcher(PacketSubscriber):
    """Flags connection loss so the main thread can rebind the relay."""

    def __init__(self):
        self.lost = threading.Event()

    def on_connection_lost(self):
        self.lost.set()


class RelayApplication:
    """
    Application coordinator.

    Builds the engine and its subscribers from the configuration file and
    command-line arguments, then runs until interrupted.
    """

    def __init__(self, args):
        """
        Initialize the application.

        Args:
            args: Parsed command-line arguments
        """
        self.args = args
        self.running = False
        self.config = {}

        # Components (initialized in setup())
        self.engine: Optional[Union[UdpListener, UdpRelay]] = None
        self.monitor: Optional[PacketMonitor] = None
        self.packet_log: Optional[PacketLog] = None
        self.watcher = ConnectionWatcher()

        self.stats = {
            'rebinds': 0,
            'start_time': time.time(),
            'last_stats_display': time.time(),
        }

    def load_config(self):
        """Load the configuration file (if given) and apply CLI overrides."""
        if self.args.config:
            self.config = load_config(self.args.config)
        else:
            self.config = {'listener': {}, 'relay': {}, 'monitor': {}, 'packet_log': {}}

        self._apply_cli_overrides()

    def _apply_cli_overrides(self):
        """Apply command-line argument overrides to configuration."""
        section = self.config['relay'] if self.args.mode == 'relay' else self.config['listener']

        if self.args.host is not None:
            section['host'] = self.args.host
        if self.args.port is not None:
            section['port'] = self.args.port
        if self.args.timeout is not None:
            section['receive_timeout'] = self.args.timeout

        if self.args.mode == 'relay':
            if self.args.forward_host is not None:
                section['forward_host'] = self.args.forward_host
            if self.args.forward_port is not None:
                section['forward_port'] = self.args.forward_port
            if self.args.reconnect_delay is not None:
                section['reconnect_delay'] = self.args.reconnect_delay
            # The monitor needs decoded packets
            if not self.args.quiet:
                section.setdefault('decode_packets', True)

        monitor = self.config['monitor']
        if self.args.show_hex:
            monitor['show_hex'] = True
        if self.args.hex_length is not None:
            monitor['hex_preview_length'] = self.args.hex_length
        if self.args.verbose:
            monitor['verbose'] = True
        if self.args.no_color:
            monitor['color_enabled'] = False

        if self.args.log_csv:
            self.config['packet_log']['csv_path'] = self.args.log_csv

    def setup(self):
        """
        Set up the engine and its subscribers.

        Raises:
            ValueError: Invalid configuration
        """
        if self.args.mode == 'relay':
            self.engine = UdpRelay(RelayConfig.from_dict(self.config['relay']))
        else:
            self.engine = UdpListener(ListenerConfig.from_dict(self.config['listener']))

        if not self.args.quiet:
            self.monitor = PacketMonitor(MonitorConfig.from_dict(self.config['monitor']))
            self.engine.subscribe(self.monitor)

        log_settings = self.config['packet_log']
        if log_settings.get('csv_path'):
            self.packet_log = PacketLog(log_settings.get('max_rows', DEFAULT_MAX_ROWS))
            self.engine.subscribe(self.packet_log)
            if not self.engine.config.decode_packets:
                logger.warning("Packet decoding is disabled; the CSV log will stay empty")

        self.engine.subscribe(self.watcher)
        logger.info(f"Application set up in {self.args.mode} mode")

    def run(self) -> int:
        """
        Start the engine and block until stopped.

        Returns:
            Process exit code
        """
        if not self.engine.start():
            logger.error("Failed to start engine")
            return 1

        self.running = True
        logger.info("Running - press Ctrl+C to stop")

        try:
            while self.running:
                time.sleep(0.1)

                if self.watcher.lost.is_set():
                    self.watcher.lost.clear()
                    if self.args.rebind:
                        self._rebind()

                if time.time() - self.stats['last_stats_display'] > STATS_INTERVAL:
                    self._display_statistics()
                    self.stats['last_stats_display'] = time.time()

        except KeyboardInterrupt:
            logger.info("Received interrupt signal")
        finally:
            self.shutdown()

        return 0

    def _rebind(self):
        """Restart the engine after the source connection was lost."""
        logger.warning("Rebinding after connection loss...")
        self.engine.stop()
        delay = getattr(self.engine.config, 'reconnect_delay', 0.0)

        while self.running:
            if self.engine.start():
                self.stats['rebinds'] += 1
                logger.info("Rebind successful")
                return
            time.sleep(max(delay, 0.5))

    def _display_statistics(self):
        """Display periodic statistics summary."""
        status = self.engine.get_status()
        if self.monitor:
            self.monitor.display_statistics(status)
        else:
            uptime = time.time() - self.stats['start_time']
            logger.info(f"STATISTICS - Uptime: {uptime:.0f}s, received: {status['packets_received']}")

    def shutdown(self):
        """Stop the engine and write the CSV log."""
        logger.info("Shutting down...")
        self.running = False

        if self.engine:
            self.engine.stop()

        if self.packet_log:
            try:
                self.packet_log.save_csv(self.config['packet_log']['csv_path'])
            except OSError as e:
                logger.error(f"Failed to write packet log: {e}")

        if self.engine:
            status = self.engine.get_status()
            logger.info("Final Statistics:")
            logger.info(f"  Packets received: {status['packets_received']}")
            if 'packets_forwarded' in status:
                logger.info(f"  Packets forwarded: {status['packets_forwarded']}")
                logger.info(f"  Packets dropped: {status['packets_dropped']}")
            logger.info(f"  Rebinds: {self.stats['rebinds']}")
        logger.info(f"  Total runtime: {time.time() - self.stats['start_time']:.1f}s")

        logger.info("Shutdown complete")


def parse_arguments(argv=None):
    """
    Parse command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog='mavlink-relay',
        description='MAVLink UDP receiver and relay',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print packets arriving on the default port (14562)
  %(prog)s --mode receive

  # Relay SITL output (14550) to a ground station on 14562
  %(prog)s --mode relay --forward-host 127.0.0.1 --forward-port 14562

  # Relay with hex previews and a CSV log, rebinding on connection loss
  %(prog)s --mode relay --show-hex --log-csv packets.csv --rebind
        """
    )

    parser.add_argument(
        '--mode', '-m',
        choices=['receive', 'relay'],
        default='receive',
        help='Receive and display packets, or relay them (default: receive)'
    )

    net_group = parser.add_argument_group('Network Options')
    net_group.add_argument('--host', help='Local address to bind (default: 0.0.0.0)')
    net_group.add_argument(
        '--port', '-p',
        type=int,
        help='Local UDP port (default: 14562 for receive, 14550 for relay)'
    )
    net_group.add_argument('--forward-host', help='Relay destination address (default: 127.0.0.1)')
    net_group.add_argument('--forward-port', type=int, help='Relay destination port (default: 14562)')
    net_group.add_argument('--timeout', type=float, help='Receive timeout in seconds (default: 5.0)')
    net_group.add_argument(
        '--reconnect-delay',
        type=float,
        help='Pause after a lost connection in seconds (default: 1.0)'
    )
    net_group.add_argument(
        '--rebind',
        action='store_true',
        help='Restart the relay when the source connection is lost'
    )

    display_group = parser.add_argument_group('Display Options')
    display_group.add_argument('--show-hex', action='store_true', help='Show a hex preview of each packet')
    display_group.add_argument('--hex-length', type=int, help='Bytes in the hex preview (default: 16)')
    display_group.add_argument('--no-color', action='store_true', help='Disable colored output')

    parser.add_argument('--log-csv', help='Write received packets to this CSV file on exit')
    parser.add_argument('--config', help='Path to configuration JSON file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress non-error output')

    return parser.parse_args(argv)


def setup_signal_handlers(app: RelayApplication):
    """
    Set up signal handlers for graceful shutdown.

    Args:
        app: RelayApplication instance
    """
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        app.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.ERROR)

    app = RelayApplication(args)

    try:
        app.load_config()
        app.setup()
    except (OSError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    setup_signal_handlers(app)
    return app.run()


if __name__ == '__main__':
    sys.exit(main())
