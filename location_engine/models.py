"""
Value objects exchanged between the sources, the filter and consumers.

All of them are frozen dataclasses: a consumer that receives a LocationEstimate
owns it and can never observe the filter mutating it afterwards.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class AccuracyLevel(str, Enum):
    """Confidence ring bucket for a 95% horizontal error radius."""

    HIGH = 'high'          # < 10m
    MEDIUM = 'medium'      # 10-50m
    LOW = 'low'            # 50-100m
    DEGRADED = 'degraded'  # >= 100m

    @classmethod
    def from_error(cls, horizontal_error_m95):
        if horizontal_error_m95 is None or math.isnan(horizontal_error_m95):
            return cls.DEGRADED
        if horizontal_error_m95 < 10:
            return cls.HIGH
        if horizontal_error_m95 < 50:
            return cls.MEDIUM
        if horizontal_error_m95 < 100:
            return cls.LOW
        return cls.DEGRADED


# (absolute fix interval ms, inertial sample interval ms)
MODE_INTERVALS = {
    'active': (1000, 20),           # 1s GPS, 50Hz sensors
    'background': (30000, 100),     # 30s GPS, 10Hz sensors
    'stationary': (300000, 1000),   # 5min GPS, 1Hz sensors
    'off': (0, 0),
}


class TrackingMode(str, Enum):
    """Battery/accuracy trade-off selected on the SamplingController."""

    ACTIVE = 'active'
    BACKGROUND = 'background'
    STATIONARY = 'stationary'
    OFF = 'off'

    @property
    def absolute_fix_interval_ms(self):
        return MODE_INTERVALS[self.value][0]

    @property
    def inertial_interval_ms(self):
        return MODE_INTERVALS[self.value][1]


class AppState(str, Enum):
    """Host process lifecycle events delivered by a lifecycle source."""

    FOREGROUND = 'active'
    BACKGROUND = 'background'


@dataclass(frozen=True)
class AbsoluteFix:
    lat: float
    lon: float
    horizontal_error_m: Optional[float]
    timestamp: float
    provider: str = 'gps'


@dataclass(frozen=True)
class InertialSample:
    """
    One accelerometer reading paired with the latest heading.

    acceleration_x is along the heading (forward), acceleration_y points to the
    right of it. Both in m/s² with gravity removed.
    """

    acceleration_x: float
    acceleration_y: float
    heading_radians: float

    def north_east(self):
        """Rotate the body-frame acceleration into (north, east) components."""
        cos_h = math.cos(self.heading_radians)
        sin_h = math.sin(self.heading_radians)
        accel_n = self.acceleration_x * cos_h - self.acceleration_y * sin_h
        accel_e = self.acceleration_x * sin_h + self.acceleration_y * cos_h
        return accel_n, accel_e


@dataclass(frozen=True)
class LocationEstimate:
    lat: float
    lon: float
    horizontal_error_m95: float
    velocity_mps: float
    produced_at: float

    @property
    def accuracy_level(self):
        return AccuracyLevel.from_error(self.horizontal_error_m95)

    def to_dict(self):
        return {
            'lat': self.lat,
            'lon': self.lon,
            'horizontal_error_m95': self.horizontal_error_m95,
            'velocity_mps': self.velocity_mps,
            'produced_at': self.produced_at,
            'accuracy_level': self.accuracy_level.value,
        }


@dataclass(frozen=True)
class BroadcastPosition:
    """Live position as published on the broadcast channel (updated_at in epoch seconds)."""

    lat: float
    lon: float
    horizontal_error_m: Optional[float] = None
    updated_at: Optional[float] = None
