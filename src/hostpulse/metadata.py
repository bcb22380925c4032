"""
Static Metadata Cache.

Identity facts that never change while the agent runs are probed once, on
first use, and merged with the per-tick uptime and boot time on every call.
"""

import logging
import os
import platform
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import psutil

from .errors import MetadataError
from .models import Metadata

logger = logging.getLogger(__name__)

MACHINE_ID_PATHS = ("/var/lib/dbus/machine-id", "/etc/machine-id")
DMI_DIR = "/sys/class/dmi/id"
TIMEZONE_FILE = "/etc/timezone"
LOCALTIME_LINK = "/etc/localtime"

# Matched case-insensitively against the DMI system vendor
HYPERVISOR_VENDORS = (
    "kvm",
    "qemu",
    "vmware",
    "virtualbox",
    "innotek",
    "xen",
    "bochs",
    "parallels",
    "amazon ec2",
)


@dataclass(frozen=True)
class StaticFacts:
    """The part of Metadata that is computed once."""
    machine_id: str
    hostname: str
    os_distro: str
    kernel_version: str
    virtualization: str
    timezone: str
    bios_vendor: str
    bios_version: str
    bios_serial: str


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, 'r', errors='ignore') as f:
            return f.read().strip()
    except OSError:
        return None


def read_machine_id(paths: Sequence[str] = MACHINE_ID_PATHS) -> str:
    """First readable, non-empty identity file wins."""
    for path in paths:
        value = _read_text(path)
        if value:
            return value
    return ""


def classify_virtualization(vendor: str) -> str:
    """Map a DMI vendor string to 'Physical' or 'Virtual Machine from <vendor>'."""
    lowered = vendor.lower()
    for name in HYPERVISOR_VENDORS:
        if name in lowered:
            return f"Virtual Machine from {vendor}"
    return "Physical"


def read_timezone(timezone_file: str = TIMEZONE_FILE, localtime_link: str = LOCALTIME_LINK) -> str:
    """Zone name from /etc/timezone, else from the /etc/localtime symlink target."""
    value = _read_text(timezone_file)
    if value:
        return value

    try:
        target = os.readlink(localtime_link)
    except OSError:
        return "Unknown"

    marker = "zoneinfo/"
    pos = target.find(marker)
    if pos >= 0 and target[pos + len(marker):]:
        return target[pos + len(marker):]
    return "Unknown"


def read_os_distro() -> str:
    """Pretty distribution name, 'unknown' when the platform does not say."""
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        release = {}

    name = release.get("PRETTY_NAME") or release.get("NAME")
    if name:
        return name

    system = platform.system()
    if system and system != "Linux":
        return f"{system} {platform.release()}".strip()
    return "unknown"


def read_hostname() -> str:
    """Hostname is required; failure here aborts startup."""
    try:
        hostname = socket.gethostname()
    except OSError as e:
        raise MetadataError(f"Could not obtain hostname: {e}") from e
    if not hostname:
        raise MetadataError("Could not obtain hostname: empty result")
    return hostname


class StaticMetadataCache:
    """
    Computes StaticFacts at most once and serves Metadata on every call.

    Safe under concurrent first access from threads or tasks: one caller
    probes, the others wait and observe the same result. A hostname failure
    is raised to every waiting caller and nothing is cached, so a later call
    may try again.
    """

    def __init__(
        self,
        machine_id_paths: Sequence[str] = MACHINE_ID_PATHS,
        dmi_dir: str = DMI_DIR,
        timezone_file: str = TIMEZONE_FILE,
        localtime_link: str = LOCALTIME_LINK,
        hostname_fn: Callable[[], str] = read_hostname,
        distro_fn: Callable[[], str] = read_os_distro,
    ):
        self.machine_id_paths = tuple(machine_id_paths)
        self.dmi_dir = dmi_dir
        self.timezone_file = timezone_file
        self.localtime_link = localtime_link
        self._hostname_fn = hostname_fn
        self._distro_fn = distro_fn

        self._lock = threading.Lock()
        self._facts: Optional[StaticFacts] = None

    @property
    def initialized(self) -> bool:
        return self._facts is not None

    def static(self) -> StaticFacts:
        """Return the cached static facts, probing on first use."""
        facts = self._facts
        if facts is not None:
            return facts

        with self._lock:
            if self._facts is None:
                self._facts = self._probe()
                logger.info(
                    f"Host identity: {self._facts.hostname} "
                    f"({self._facts.os_distro}, {self._facts.virtualization})"
                )
            return self._facts

    def get(self) -> Metadata:
        """Static facts merged with freshly read uptime and boot time."""
        facts = self.static()
        boot_time = self._boot_time()
        uptime = max(0, int(time.time()) - boot_time) if boot_time else 0

        return Metadata(
            machine_id=facts.machine_id,
            hostname=facts.hostname,
            os_distro=facts.os_distro,
            kernel_version=facts.kernel_version,
            virtualization=facts.virtualization,
            timezone=facts.timezone,
            bios_vendor=facts.bios_vendor,
            bios_version=facts.bios_version,
            bios_serial=facts.bios_serial,
            uptime=uptime,
            boot_time=boot_time,
        )

    def _probe(self) -> StaticFacts:
        hostname = self._hostname_fn().strip()

        try:
            distro = self._distro_fn() or "unknown"
        except Exception as e:
            logger.warning(f"Could not read OS distribution: {e}")
            distro = "unknown"

        vendor = self._read_dmi("sys_vendor")

        return StaticFacts(
            machine_id=read_machine_id(self.machine_id_paths),
            hostname=hostname,
            os_distro=distro.strip(),
            kernel_version=platform.release(),
            virtualization=classify_virtualization(vendor),
            timezone=read_timezone(self.timezone_file, self.localtime_link),
            bios_vendor=self._read_dmi("bios_vendor"),
            bios_version=self._read_dmi("bios_version"),
            bios_serial=self._read_dmi("product_serial"),
        )

    def _read_dmi(self, name: str) -> str:
        return _read_text(os.path.join(self.dmi_dir, name)) or ""

    @staticmethod
    def _boot_time() -> int:
        try:
            return int(psutil.boot_time())
        except (OSError, RuntimeError) as e:
            logger.debug(f"boot_time unavailable: {e}")
            return 0
