"""
Network Probe.

Traffic counters aggregated over physical interfaces, addresses,
TCP connection states and listening ports.
"""

import logging
import socket

import psutil

from ..models import NetworkStats
from .base import Probe, ProbeResult

logger = logging.getLogger(__name__)

ADDRESS_FAMILIES = (socket.AF_INET, socket.AF_INET6)


class NetworkProbe(Probe):
    """Collects network metrics using psutil."""

    domain = "network"
    rate_fields = {
        "aggregate_rx_bytes_sec": "bytes_recv",
        "aggregate_tx_bytes_sec": "bytes_sent",
    }

    def _skip(self, interface: str) -> bool:
        # Skip loopback and virtual interfaces
        return interface.startswith(tuple(self.config.exclude_interfaces))

    def sample(self) -> ProbeResult:
        counters = {"bytes_recv": 0.0, "bytes_sent": 0.0}
        rx_packets = tx_packets = errors = drops = 0

        for interface, io in psutil.net_io_counters(pernic=True).items():
            if self._skip(interface):
                continue
            counters["bytes_recv"] += io.bytes_recv
            counters["bytes_sent"] += io.bytes_sent
            rx_packets += io.packets_recv
            tx_packets += io.packets_sent
            errors += io.errin + io.errout
            drops += io.dropin + io.dropout

        interface_ips = {}
        for interface, addrs in psutil.net_if_addrs().items():
            if self._skip(interface):
                continue
            ips = sorted({
                addr.address.split('%')[0]
                for addr in addrs
                if addr.family in ADDRESS_FAMILIES
            })
            if ips:
                interface_ips[interface] = tuple(ips)

        active, time_wait, ports = self._tcp_states()

        stats = NetworkStats(
            aggregate_rx_packets=rx_packets,
            aggregate_tx_packets=tx_packets,
            total_errors=errors,
            total_drops=drops,
            interface_ips=interface_ips,
            tcp_active_connections=active,
            tcp_time_wait_connections=time_wait,
            listening_ports=tuple(sorted(ports)),
        )
        return ProbeResult(stats=stats, counters=counters)

    @staticmethod
    def _tcp_states() -> tuple[int, int, set[int]]:
        """ESTABLISHED count, TIME_WAIT count and distinct LISTEN ports."""
        try:
            conns = psutil.net_connections(kind='tcp')
        except (psutil.AccessDenied, OSError) as e:
            # Needs root on some platforms; the rest of the section is still valid
            logger.debug(f"TCP connection table unavailable: {e}")
            return 0, 0, set()

        active = time_wait = 0
        ports = set()
        for conn in conns:
            if conn.status == psutil.CONN_ESTABLISHED:
                active += 1
            elif conn.status == psutil.CONN_TIME_WAIT:
                time_wait += 1
            elif conn.status == psutil.CONN_LISTEN and conn.laddr:
                ports.add(conn.laddr.port)
        return active, time_wait, ports

    def empty(self) -> NetworkStats:
        return NetworkStats()
