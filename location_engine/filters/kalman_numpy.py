"""
Pure numpy linear Kalman filter for GPS position fixes + inertial prediction.

State vector: [north, east, vel_n, vel_e] (meters, m/s) in a local frame that
is re-anchored on every fix, reported outward as [lat, lon, vel_n, vel_e].

Between fixes the filter dead-reckons: constant velocity, optionally nudged by
heading-rotated accelerometer readings. Each fix pulls the state back toward
ground truth in proportion to the covariance accumulated during the gap.
"""

import numpy as np

from .base import H, PositionFilterBase, constant_velocity_transition

_I4 = np.eye(4)


class PositionFilter(PositionFilterBase):
    """
    Pure numpy constant-velocity Kalman filter.

    Covariance update uses the standard form P = (I - KH)P.
    """

    def __init__(self, config=None, **kwargs):
        super().__init__(config=config, **kwargs)
        self.x = np.zeros(4)
        self.P = np.diag(self.config.initial_covariance)

    def _reset_state(self, covariance_diag):
        self.x = np.zeros(4)
        self.P = np.diag(covariance_diag).astype(float)

    def _predict(self, dt, accel_ne):
        F = constant_velocity_transition(dt)

        # Position moves with the previous velocity, then acceleration feeds velocity
        self.x = F @ self.x
        if accel_ne is not None:
            self.x[2] += accel_ne[0] * dt
            self.x[3] += accel_ne[1] * dt

        # P = F*P*F' + Q
        self.P = F @ self.P @ F.T + self.Q

    def _update(self, z, error_m):
        R = np.eye(2) * error_m**2

        # Innovation (measurement residual)
        y = z - H @ self.x

        # Kalman gain: K = P*H'*inv(H*P*H' + R)
        PHt = self.P @ H.T
        S = H @ PHt + R
        K = PHt @ self._safe_inverse(S)

        self.x = self.x + K @ y
        self.P = (_I4 - K @ H) @ self.P

        # Keep P symmetric against floating point drift
        self.P = 0.5 * (self.P + self.P.T)

    def _get_x(self):
        return self.x.copy()

    def _get_P(self):
        return self.P.copy()

    def _shift_origin(self, north, east):
        self.x[0] -= north
        self.x[1] -= east
