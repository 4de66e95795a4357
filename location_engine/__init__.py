"""
Hybrid location estimation engine.

Fuses intermittent GPS fixes with inertial dead reckoning, falls back to a
timetable-based estimate, and merges a vehicle's live broadcast with that
estimate into one best available location.

Example usage:
    controller = SamplingController(TermuxLocationSource(), TermuxInertialSource(),
                                    on_estimate_updated=print)
    controller.start_tracking()
"""

from .best_location import BestLocation, BestLocationResolver, LocationSource, ResolverStatus
from .broadcaster import InMemoryBroadcastChannel, LocationBroadcaster
from .config import EngineConfig, default_config, load_config
from .errors import (
    BroadcastUnavailable,
    LocationEngineError,
    NumericalDegeneracy,
    PermissionDenied,
    RouteDefinitionError,
    SensorUnavailable,
)
from .filters import PositionFilterBase, get_filter
from .models import (
    AbsoluteFix,
    AccuracyLevel,
    AppState,
    BroadcastPosition,
    InertialSample,
    LocationEstimate,
    TrackingMode,
)
from .route_loader import load_route, parse_route, sample_route
from .sampling_controller import SamplingController
from .schedule_estimator import RouteDefinition, ScheduleEstimate, ScheduleEstimator, Waypoint
from .subscriptions import Subscription, ThreadScheduler

__version__ = '0.1.0'

__all__ = [
    'AbsoluteFix', 'AccuracyLevel', 'AppState', 'BestLocation', 'BestLocationResolver',
    'BroadcastPosition', 'BroadcastUnavailable', 'EngineConfig', 'InMemoryBroadcastChannel',
    'InertialSample', 'LocationBroadcaster', 'LocationEngineError', 'LocationEstimate',
    'LocationSource', 'NumericalDegeneracy', 'PermissionDenied', 'PositionFilterBase',
    'ResolverStatus', 'RouteDefinition', 'RouteDefinitionError', 'SamplingController',
    'ScheduleEstimate', 'ScheduleEstimator', 'SensorUnavailable', 'Subscription',
    'ThreadScheduler', 'TrackingMode', 'Waypoint', 'default_config', 'get_filter',
    'load_config', 'load_route', 'parse_route', 'sample_route',
]
