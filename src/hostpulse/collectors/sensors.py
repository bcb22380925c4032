"""
Sensors Probe.

Temperatures and fan speeds from psutil. Mostly empty on virtual machines.
"""

import psutil

from ..models import PhysicalSensors
from .base import Probe, ProbeResult

CPU_CHIPS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal", "acpitz")
STORAGE_CHIPS = ("nvme", "drivetemp")
PACKAGE_LABELS = ("package id 0", "tctl", "tdie")


class SensorsProbe(Probe):
    """Collects hardware sensor readings."""

    domain = "sensors"

    def sample(self) -> ProbeResult:
        temps = {}
        if hasattr(psutil, "sensors_temperatures"):
            temps = psutil.sensors_temperatures() or {}

        fans = {}
        if hasattr(psutil, "sensors_fans"):
            fans = psutil.sensors_fans() or {}

        cpu_temp = 0.0
        core_temps = []
        for chip in CPU_CHIPS:
            entries = temps.get(chip)
            if not entries:
                continue
            for entry in entries:
                label = (entry.label or "").lower()
                if label.startswith("core"):
                    core_temps.append(float(entry.current))
                elif label in PACKAGE_LABELS and not cpu_temp:
                    cpu_temp = float(entry.current)
            if not cpu_temp:
                cpu_temp = float(entries[0].current)
            break

        storage_temps = []
        for chip in STORAGE_CHIPS:
            for entry in temps.get(chip, []):
                # NVMe drives report several sensors; the composite one is enough
                if chip == "nvme" and entry.label and entry.label.lower() != "composite":
                    continue
                storage_temps.append(float(entry.current))

        fan_speeds = [int(entry.current) for entries in fans.values() for entry in entries]

        stats = PhysicalSensors(
            cpu_temp=cpu_temp,
            core_temps=tuple(core_temps),
            storage_temps=tuple(storage_temps),
            fan_speeds=tuple(fan_speeds),
        )
        return ProbeResult(stats=stats)

    def empty(self) -> PhysicalSensors:
        return PhysicalSensors()
