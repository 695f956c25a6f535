"""Host network interface statistics with per-interface transfer rates."""

import time
import logging
from datetime import datetime
from typing import Optional, Dict, Any

import psutil

from docker_monitor import RateTracker

logger = logging.getLogger(__name__)


class NetworkMonitor:
    """Reads host interface counters and derives rx/tx rates between polls."""

    def __init__(self, rate_tracker: Optional[RateTracker] = None):
        self.rate_tracker = rate_tracker or RateTracker()

    def get_network_stats(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        counters = psutil.net_io_counters(pernic=True)
        if_stats = psutil.net_if_stats()

        interfaces = []
        for iface, io in counters.items():
            rx_speed, tx_speed = self.rate_tracker.rate(iface, io.bytes_recv, io.bytes_sent, now)
            stats = if_stats.get(iface)
            interfaces.append({
                'interface': iface,
                'operstate': 'up' if stats and stats.isup else 'down',
                'rxBytes': io.bytes_recv,
                'txBytes': io.bytes_sent,
                'rxSpeed': round(rx_speed),
                'txSpeed': round(tx_speed),
                'rxErrors': io.errin,
                'txErrors': io.errout,
                'rxDropped': io.dropin,
                'txDropped': io.dropout,
            })

        return {
            'timestamp': datetime.fromtimestamp(now).isoformat(),
            'interfaces': interfaces,
            'connections': self._connection_counts(),
        }

    def _connection_counts(self) -> Optional[Dict[str, int]]:
        try:
            connections = psutil.net_connections(kind='inet')
        except psutil.AccessDenied:
            logger.debug("Not permitted to list network connections")
            return None

        return {
            'total': len(connections),
            'established': sum(1 for c in connections if c.status == psutil.CONN_ESTABLISHED),
            'listening': sum(1 for c in connections if c.status == psutil.CONN_LISTEN),
            'timeWait': sum(1 for c in connections if c.status == psutil.CONN_TIME_WAIT),
        }

    def get_total_traffic(self) -> Dict[str, Any]:
        stats = self.get_network_stats()
        interfaces = stats['interfaces']
        return {
            'timestamp': stats['timestamp'],
            'totalRxBytes': sum(i['rxBytes'] for i in interfaces),
            'totalTxBytes': sum(i['txBytes'] for i in interfaces),
            'totalRxSpeed': sum(i['rxSpeed'] for i in interfaces),
            'totalTxSpeed': sum(i['txSpeed'] for i in interfaces),
            'connections': stats['connections'],
        }
