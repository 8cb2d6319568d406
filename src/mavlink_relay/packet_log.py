"""
Packet Log Module

Keeps a bounded, thread-safe record of received packets and exports it
as a pandas DataFrame or CSV file for offline analysis.
"""

import threading
import time
import logging
from collections import deque
from pathlib import Path
from typing import Optional, Dict, List, Union

import numpy as np
import pandas as pd

from .mavlink_decoder import DecodedPacket
from .packet_events import PacketSubscriber

logger = logging.getLogger(__name__)


DEFAULT_MAX_ROWS = 10000

COLUMNS = [
    'sequence_number', 'timestamp', 'source', 'version', 'message_id',
    'message_name', 'system_id', 'size', 'valid', 'error', 'summary',
]


class PacketLog(PacketSubscriber):
    """
    Records one row per decoded packet.

    Rows are appended on the engine's receive thread and read from any
    other thread; the oldest rows are dropped once ``max_rows`` is reached.
    """

    def __init__(self, max_rows: int = DEFAULT_MAX_ROWS):
        if max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows!r}")

        self.max_rows = max_rows
        self._rows = deque(maxlen=max_rows)
        self._lock = threading.Lock()
        self.total_logged = 0

    def on_packet_decoded(self, packet: DecodedPacket, source_address, sequence_number: int):
        self.add(packet, source_address, sequence_number)

    def add(self, packet: DecodedPacket, source_address=None, sequence_number: int = 0,
            timestamp: Optional[float] = None):
        """
        Append a packet to the log.

        Args:
            packet: Decoded packet
            source_address: (host, port) the datagram came from
            sequence_number: Receipt number assigned by the engine
            timestamp: Receive time (defaults to now)
        """
        header = packet.header
        error = packet.error or packet.payload_error
        row = {
            'sequence_number': sequence_number,
            'timestamp': timestamp if timestamp is not None else time.time(),
            'source': f"{source_address[0]}:{source_address[1]}" if source_address else None,
            'version': header.version.value if header else None,
            'message_id': header.message_id if header else None,
            'message_name': packet.message_name,
            'system_id': header.system_id if header else None,
            'size': packet.frame_length,
            'valid': packet.is_valid,
            'error': str(error) if error else None,
            'summary': packet.fields.to_dict() if packet.fields is not None else None,
        }

        with self._lock:
            self._rows.append(row)
            self.total_logged += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def rows(self) -> List[Dict]:
        """Snapshot of the logged rows, oldest first."""
        with self._lock:
            return list(self._rows)

    def clear(self):
        with self._lock:
            self._rows.clear()
        logger.info("Packet log cleared")

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert the log to a DataFrame.

        Returns:
            DataFrame with one row per packet; ``timestamp`` is a datetime column
        """
        df = pd.DataFrame(self.rows(), columns=COLUMNS)
        if not df.empty:
            df['timestamp'] = pd.to_datetime(df['timestamp'], unit='s')
        return df

    def save_csv(self, path: Union[str, Path]) -> Path:
        """
        Write the log to a CSV file.

        Args:
            path: Output file; parent directories are created

        Returns:
            Path that was written
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        df = self.to_dataframe()
        df.to_csv(path, index=False)

        logger.info(f"Saved {len(df)} packets to {path}")
        return path

    def message_counts(self) -> Dict[str, int]:
        """Number of logged packets per message name, most frequent first."""
        df = self.to_dataframe()
        if df.empty:
            return {}
        counts = df['message_name'].fillna('NON_MAVLINK').value_counts()
        return {name: int(count) for name, count in counts.items()}

    def get_summary(self) -> Dict:
        """
        Summarize the logged packets.

        Returns:
            Dictionary containing:
                - packet_count: Rows currently held
                - total_logged: Rows ever added (including dropped ones)
                - valid_count / invalid_count
                - duration_s: Time between first and last packet
                - packet_rate: Packets per second over that span
                - mean_interval_ms / max_interval_ms / jitter_ms: inter-arrival statistics
        """
        rows = self.rows()
        summary = {
            'packet_count': len(rows),
            'total_logged': self.total_logged,
            'valid_count': sum(1 for r in rows if r['valid']),
            'invalid_count': sum(1 for r in rows if not r['valid']),
            'duration_s': 0.0,
            'packet_rate': 0.0,
            'mean_interval_ms': None,
            'max_interval_ms': None,
            'jitter_ms': None,
        }

        if len(rows) < 2:
            return summary

        timestamps = np.array([r['timestamp'] for r in rows], dtype=float)
        intervals = np.diff(timestamps) * 1000.0
        duration = float(timestamps[-1] - timestamps[0])

        summary['duration_s'] = duration
        summary['packet_rate'] = (len(rows) - 1) / duration if duration > 0 else 0.0
        summary['mean_interval_ms'] = float(np.mean(intervals))
        summary['max_interval_ms'] = float(np.max(intervals))
        summary['jitter_ms'] = float(np.std(intervals))
        return summary
