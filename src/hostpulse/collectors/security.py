"""
Security Probe.

Logged-in users, last login, firewall state and failed sudo attempts.
"""

import logging
import os
import re
import shutil
import subprocess
import time
from datetime import datetime
from typing import Optional

import psutil

from ..models import SecurityStats
from .base import Probe, ProbeResult

logger = logging.getLogger(__name__)

FIREWALL_UNITS = ("ufw", "firewalld", "nftables", "iptables")
IPTABLES_NAMES = "/proc/net/ip_tables_names"
SYSTEMCTL_TIMEOUT = 5.0

SUDO_FAILURE = re.compile(
    r'sudo.*(authentication failure|incorrect password attempt)',
    re.IGNORECASE,
)


class SecurityProbe(Probe):
    """Collects security posture facts."""

    domain = "security"

    def __init__(self, config=None):
        super().__init__(config)
        # End of the auth log as of the last report that used our numbers
        self._auth_log_pos: Optional[int] = None

    def sample(self) -> ProbeResult:
        # The firewall check shells out; keep it well inside the probe timeout
        deadline = time.monotonic() + self.config.timeout / 2

        users = psutil.users()

        last_login = ""
        if users:
            latest = max(u.started for u in users)
            last_login = datetime.fromtimestamp(latest).strftime("%Y-%m-%d %H:%M")

        sudo_failures, log_pos = self._scan_auth_log(self.config.auth_log_path)

        stats = SecurityStats(
            last_login=last_login,
            firewall_active=self._firewall_active(deadline),
            active_users=len({u.name for u in users}),
            sudo_failures=sudo_failures,
        )
        counters = {} if log_pos is None else {"auth_log_pos": float(log_pos)}
        return ProbeResult(stats=stats, counters=counters)

    def derive(self, stats, previous, current):
        # Called only for samples that make it into a report
        if "auth_log_pos" in current.values:
            self._auth_log_pos = int(current.values["auth_log_pos"])
        return stats

    def empty(self) -> SecurityStats:
        return SecurityStats()

    def _firewall_active(self, deadline: float) -> bool:
        """Any known firewall unit active, or any iptables table loaded."""
        if shutil.which("systemctl"):
            for unit in FIREWALL_UNITS:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.debug(f"Firewall check out of time before {unit}")
                    break
                try:
                    result = subprocess.run(
                        ["systemctl", "is-active", unit],
                        capture_output=True, text=True,
                        timeout=min(SYSTEMCTL_TIMEOUT, remaining),
                    )
                except (subprocess.TimeoutExpired, OSError):
                    continue
                if result.stdout.strip() == "active":
                    return True

        try:
            with open(IPTABLES_NAMES) as f:
                return bool(f.read().strip())
        except OSError:
            return False

    def _scan_auth_log(self, path: str) -> tuple[int, Optional[int]]:
        """
        Failed sudo authentications appended since the committed offset.

        Returns (failures, end offset). Nothing is committed here; derive()
        moves the offset once the sample is used.
        """
        try:
            file_size = os.path.getsize(path)
        except OSError:
            return 0, None

        # First scan only marks the current end of the log
        if self._auth_log_pos is None:
            return 0, file_size

        last_pos = self._auth_log_pos
        # If file was truncated (rotated), start from beginning
        if last_pos > file_size:
            last_pos = 0

        failures = 0
        try:
            with open(path, 'r', errors='ignore') as f:
                f.seek(last_pos)
                for line in f:
                    if SUDO_FAILURE.search(line):
                        failures += 1
                end = f.tell()
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return 0, None

        return failures, end
