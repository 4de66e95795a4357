"""
Abstract base class for position filters.

Subclasses own the Kalman math on a 4D state [north_m, east_m, vel_n, vel_e]
and its covariance. The base class owns everything around it: the lat/lon
anchor of the local frame, input validation, locking, timestamps and the
conversion to LocationEstimate.
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod

import numpy as np

from ..config import default_config
from ..errors import NumericalDegeneracy
from ..models import LocationEstimate
from .utils import invert_2x2, latlon_to_north_east, north_east_to_latlon

logger = logging.getLogger(__name__)

# Position-only measurement model
H = np.array([
    [1.0, 0.0, 0.0, 0.0],
    [0.0, 1.0, 0.0, 0.0],
])


def constant_velocity_transition(dt):
    """State transition F for the constant-velocity model over dt seconds."""
    return np.array([
        [1.0, 0.0, dt,  0.0],
        [0.0, 1.0, 0.0, dt ],
        [0.0, 0.0, 1.0, 0.0],
        [0.0, 0.0, 0.0, 1.0],
    ])


def acceleration_control(dt):
    """Control matrix B mapping (accel_n, accel_e) into the velocity rows."""
    return np.array([
        [0.0, 0.0],
        [0.0, 0.0],
        [dt,  0.0],
        [0.0, dt ],
    ])


class PositionFilterBase(ABC):
    """
    Linear constant-velocity Kalman filter over [lat, lon, vel_n, vel_e].

    Public contract (all thread safe):
    - reset(lat, lon)
    - predict(dt, inertial_sample=None)
    - update(lat, lon, horizontal_error_m)
    - estimate() -> LocationEstimate, None before the first fix
    """

    def __init__(self, config=None, clock=time.time):
        self.config = config or default_config()
        self.clock = clock
        self.Q = np.diag(self.config.process_noise)

        self.origin = None          # (lat, lon) anchor of the local frame
        self.last_update = None
        self.degenerate_inversions = 0

        self.lock = threading.Lock()

    @property
    def is_initialized(self):
        return self.origin is not None

    # --- Kalman math, implemented by subclasses ---------------------------

    @abstractmethod
    def _reset_state(self, covariance_diag):
        """Zero the state and set P to diag(covariance_diag)."""

    @abstractmethod
    def _predict(self, dt, accel_ne):
        """Time update; accel_ne is (accel_n, accel_e) or None."""

    @abstractmethod
    def _update(self, z, error_m):
        """Measurement update with z = [north_m, east_m]."""

    @abstractmethod
    def _get_x(self):
        """Current 4D state as a flat numpy array (copy)."""

    @abstractmethod
    def _get_P(self):
        """Current 4x4 covariance (copy)."""

    @abstractmethod
    def _shift_origin(self, north, east):
        """Subtract (north, east) from the position components."""

    # --- Shared helpers ----------------------------------------------------

    def _safe_inverse(self, S):
        try:
            return invert_2x2(S)
        except NumericalDegeneracy as e:
            self.degenerate_inversions += 1
            logger.warning("Innovation covariance degenerate, using identity: %s", e)
            return np.eye(2)

    def _measurement_error(self, horizontal_error_m):
        if horizontal_error_m is None or not math.isfinite(horizontal_error_m) or horizontal_error_m <= 0:
            return self.config.default_accuracy_m
        return max(horizontal_error_m, self.config.min_accuracy_m)

    def _reset_locked(self, lat, lon):
        self.origin = (lat, lon)
        self._reset_state(self.config.reset_covariance)
        self.last_update = self.clock()

    def _recenter(self):
        """Move the frame anchor onto the current position estimate."""
        x = self._get_x()
        self.origin = north_east_to_latlon(x[0], x[1], *self.origin)
        self._shift_origin(x[0], x[1])

    # --- Public API -------------------------------------------------------

    def reset(self, lat, lon):
        """Re-initialize at (lat, lon) with zero velocity, discarding all prior state."""
        with self.lock:
            self._reset_locked(lat, lon)

    def predict(self, dt, inertial_sample=None):
        """
        Advance the state dt seconds under constant velocity.

        If an inertial sample is given, its acceleration (rotated north/east
        by its heading) is integrated into the velocity. No-op for dt <= 0
        or before the first reset.
        """
        if dt is None or not math.isfinite(dt) or dt <= 0:
            return
        accel_ne = inertial_sample.north_east() if inertial_sample is not None else None
        with self.lock:
            if self.origin is None:
                return
            self._predict(dt, accel_ne)

    def update(self, lat, lon, horizontal_error_m=None):
        """Absorb an absolute position fix with the given 1-sigma error (meters)."""
        if not (math.isfinite(lat) and math.isfinite(lon)):
            logger.warning("Ignoring non-finite fix (%r, %r)", lat, lon)
            return
        error_m = self._measurement_error(horizontal_error_m)

        with self.lock:
            if self.origin is None:
                self._reset_locked(lat, lon)
                return
            z = np.array(latlon_to_north_east(lat, lon, *self.origin))
            self._update(z, error_m)
            self._recenter()
            self.last_update = self.clock()

    def estimate(self):
        """Current LocationEstimate (fresh immutable object), or None before the first fix."""
        with self.lock:
            if self.origin is None:
                return None
            x = self._get_x()
            P = self._get_P()
            origin = self.origin

        lat, lon = north_east_to_latlon(x[0], x[1], *origin)
        return LocationEstimate(
            lat=lat,
            lon=lon,
            horizontal_error_m95=1.96 * math.sqrt(P[0, 0] + P[1, 1]),
            velocity_mps=math.sqrt(x[2]**2 + x[3]**2),
            produced_at=self.clock(),
        )

    @property
    def state(self):
        """[lat, lon, vel_n, vel_e] as a numpy array, or None before the first fix."""
        with self.lock:
            if self.origin is None:
                return None
            x = self._get_x()
            origin = self.origin
        lat, lon = north_east_to_latlon(x[0], x[1], *origin)
        return np.array([lat, lon, x[2], x[3]])

    @property
    def covariance(self):
        with self.lock:
            return self._get_P()
