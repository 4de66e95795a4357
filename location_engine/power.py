"""Battery and memory state, and energy-aware tracking mode selection."""

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional

import orjson
import psutil

from .models import TrackingMode

logger = logging.getLogger(__name__)

STATIONARY_SPEED_MPS = 0.5      # below walking pace
LOW_BATTERY_PERCENT = 20.0

MEMORY_WARNING_PERCENT = 75.0
MEMORY_CRITICAL_PERCENT = 85.0


@dataclass(frozen=True)
class BatteryStatus:
    percentage: float
    charging: Optional[bool]
    seconds_left: Optional[float] = None
    temperature: Optional[float] = None     # °C, Termux only


class BatteryReader:
    """Read battery status from Termux API, or psutil off-device."""

    @staticmethod
    def read():
        """Current BatteryStatus, or None if no battery can be read."""
        try:
            result = subprocess.run(
                ['termux-battery-status'],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=2,
            )
        except FileNotFoundError:
            return BatteryReader.read_psutil()
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("termux-battery-status failed: %s", e)
            return None

        if result.returncode != 0 or not result.stdout:
            return None
        try:
            data = orjson.loads(result.stdout)
        except orjson.JSONDecodeError as e:
            logger.debug("Unreadable battery status: %s", e)
            return None
        if not isinstance(data, dict) or data.get('percentage') is None:
            return None

        status = data.get('status')
        return BatteryStatus(
            percentage=float(data['percentage']),
            charging=None if status is None else status in ('CHARGING', 'FULL'),
            temperature=data.get('temperature'),
        )

    @staticmethod
    def read_psutil():
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError) as e:
            logger.debug("Battery status unavailable: %s", e)
            return None
        if battery is None:
            return None

        seconds_left = battery.secsleft
        if seconds_left in (psutil.POWER_TIME_UNKNOWN, psutil.POWER_TIME_UNLIMITED):
            seconds_left = None
        return BatteryStatus(
            percentage=float(battery.percent),
            charging=battery.power_plugged,
            seconds_left=seconds_left,
        )


def check_memory():
    """Memory pressure: 0 OK, 1 warning, 2 critical."""
    memory = psutil.virtual_memory()
    if memory.percent > MEMORY_CRITICAL_PERCENT:
        return 2
    if memory.percent > MEMORY_WARNING_PERCENT:
        return 1
    return 0


def recommend_mode(velocity_mps, battery=None,
                   stationary_speed_mps=STATIONARY_SPEED_MPS,
                   low_battery_percent=LOW_BATTERY_PERCENT):
    """
    Pick a TrackingMode for the current motion and energy context.

    Not moving -> Stationary. Moving on a low, unplugged battery -> Background.
    Otherwise Active.
    """
    if velocity_mps is not None and velocity_mps < stationary_speed_mps:
        return TrackingMode.STATIONARY
    if battery is not None and not battery.charging and battery.percentage < low_battery_percent:
        return TrackingMode.BACKGROUND
    return TrackingMode.ACTIVE
