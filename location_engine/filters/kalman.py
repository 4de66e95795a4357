"""
filterpy-backed position filter.

Same model and contract as PositionFilter, with the matrix bookkeeping
delegated to filterpy.kalman.KalmanFilter. Inertial acceleration enters as a
control input (B*u). filterpy applies the Joseph form covariance update, which
equals (I - KH)P for the optimal gain, so both backends agree to rounding.
"""

import numpy as np
from filterpy.kalman import KalmanFilter as FilterPyKalmanFilter

from .base import H, PositionFilterBase, acceleration_control, constant_velocity_transition


class FilterPyPositionFilter(PositionFilterBase):
    """Constant-velocity position filter on top of filterpy."""

    def __init__(self, config=None, **kwargs):
        super().__init__(config=config, **kwargs)

        # State: [north, east, vel_n, vel_e]
        self.kf = FilterPyKalmanFilter(dim_x=4, dim_z=2, dim_u=2)
        self.kf.H = H.copy()
        self.kf.Q = self.Q.copy()
        self.kf.P = np.diag(self.config.initial_covariance).astype(float)
        self.kf.x = np.zeros((4, 1))

        # Closed-form 2x2 inverse with identity fallback instead of np.linalg.inv
        self.kf.inv = self._safe_inverse

    def _reset_state(self, covariance_diag):
        self.kf.x = np.zeros((4, 1))
        self.kf.P = np.diag(covariance_diag).astype(float)

    def _predict(self, dt, accel_ne):
        F = constant_velocity_transition(dt)
        if accel_ne is None:
            self.kf.predict(F=F)
        else:
            u = np.array([[accel_ne[0]], [accel_ne[1]]])
            self.kf.predict(u=u, B=acceleration_control(dt), F=F)

    def _update(self, z, error_m):
        R = np.eye(2) * error_m**2
        self.kf.update(z.reshape(2, 1), R=R)

    def _get_x(self):
        return self.kf.x.ravel().copy()

    def _get_P(self):
        return np.array(self.kf.P, dtype=float)

    def _shift_origin(self, north, east):
        self.kf.x[0, 0] -= north
        self.kf.x[1, 0] -= east
