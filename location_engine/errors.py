"""
Exception hierarchy for the location engine.

Only PermissionDenied ever escapes a public call (SamplingController.start_tracking).
The others are raised and caught inside the component that owns the failure and
turn into degraded operation plus a log line:

- SensorUnavailable: inertial fusion disabled, tracking continues GPS-only
- NumericalDegeneracy: identity substituted for a singular 2x2 inverse
- BroadcastUnavailable: live feed dropped, resolver falls back to the schedule
"""


class LocationEngineError(Exception):
    """Base class for all location engine errors."""


class PermissionDenied(LocationEngineError):
    """Absolute positioning permission was refused."""


class SensorUnavailable(LocationEngineError):
    """Inertial sensor missing or failing."""


class NumericalDegeneracy(LocationEngineError):
    """Innovation covariance is numerically singular."""


class BroadcastUnavailable(LocationEngineError):
    """Broadcast position channel errored or went offline."""


class RouteDefinitionError(LocationEngineError, ValueError):
    """Route configuration could not be parsed."""
