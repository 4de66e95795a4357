"""
Geodesy helpers shared by the position filters and the schedule estimator.

The filters work in a local tangent plane (north/east metres) anchored at a
reference lat/lon. An equirectangular projection is accurate to well under a
metre over the few kilometres a filter drifts between re-anchoring.
"""

import math

import numpy as np

from ..errors import NumericalDegeneracy

EARTH_RADIUS_M = 6371000.0


def haversine_distance(lat1, lon1, lat2, lon2):
    """
    Great-circle distance between two coordinates.

    Args:
        lat1, lon1: First coordinate (degrees)
        lat2, lon2: Second coordinate (degrees)

    Returns:
        float: Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi/2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda/2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_M * c


def latlon_to_north_east(lat, lon, origin_lat, origin_lon):
    """
    Project lat/lon to (north, east) metres from an origin.

    Returns:
        tuple: (north_m, east_m)
    """
    north = EARTH_RADIUS_M * math.radians(lat - origin_lat)
    east = EARTH_RADIUS_M * math.radians(lon - origin_lon) * math.cos(math.radians(origin_lat))
    return north, east


def north_east_to_latlon(north, east, origin_lat, origin_lon):
    """
    Inverse of latlon_to_north_east.

    Returns:
        tuple: (latitude, longitude) in degrees
    """
    lat = origin_lat + math.degrees(north / EARTH_RADIUS_M)
    lon = origin_lon + math.degrees(east / (EARTH_RADIUS_M * math.cos(math.radians(origin_lat))))
    return lat, lon


def invert_2x2(matrix, eps=1e-10):
    """
    Closed-form inverse of a 2x2 matrix.

    Raises:
        NumericalDegeneracy: if |det| < eps
    """
    a, b = matrix[0, 0], matrix[0, 1]
    c, d = matrix[1, 0], matrix[1, 1]
    det = a * d - b * c
    if not math.isfinite(det) or abs(det) < eps:
        raise NumericalDegeneracy(f"2x2 determinant {det!r} below {eps}")

    return np.array([[d, -b], [-c, a]]) / det
