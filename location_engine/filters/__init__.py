"""
Pluggable position filter implementations.

All filters share the PositionFilterBase contract, so the sampling controller
can run on either backend.

Example usage:
    position_filter = get_filter('kalman-numpy')
    position_filter.reset(lat, lon)
    position_filter.predict(0.1, inertial_sample)
    position_filter.update(lat, lon, horizontal_error_m)
    estimate = position_filter.estimate()
"""

from .base import PositionFilterBase


def get_filter(filter_type='kalman-numpy', **kwargs):
    """
    Factory function to get a position filter by name.

    Args:
        filter_type (str): Filter type - options:
            - 'kalman-numpy': Pure numpy constant-velocity Kalman filter (default)
            - 'kalman': Same model on top of filterpy.kalman.KalmanFilter
        **kwargs: Passed to the filter constructor (config, clock)

    Raises:
        ValueError: If filter_type is not recognized
    """
    if filter_type == 'kalman-numpy':
        from .kalman_numpy import PositionFilter
        return PositionFilter(**kwargs)
    elif filter_type == 'kalman':
        from .kalman import FilterPyPositionFilter
        return FilterPyPositionFilter(**kwargs)
    else:
        raise ValueError(f"Unknown filter type: {filter_type}. Use 'kalman-numpy' or 'kalman'")


__all__ = ['get_filter', 'PositionFilterBase']
