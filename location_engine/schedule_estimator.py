"""
Schedule-based position estimate.

When no live position is available the vehicle is assumed to run on time:
its position is interpolated linearly between the two waypoints whose
scheduled times bracket the current time of day. Morning and evening trips
have separate timetables, switched at noon.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .filters.utils import haversine_distance

NOON_MINUTES = 12 * 60
PRE_DEPARTURE_WINDOW_MIN = 10     # operating this long before the first stop
POST_ARRIVAL_WINDOW_MIN = 30      # and this long after the last one
SCHEDULE_CONFIDENCE = 0.6
CITY_SPEED_KMH = 25.0


@dataclass(frozen=True)
class Waypoint:
    id: str
    name: str
    lat: float
    lon: float
    scheduled_minutes_morning: float
    scheduled_minutes_evening: float

    def scheduled_minutes(self, trip_type: str) -> float:
        if trip_type == 'morning':
            return self.scheduled_minutes_morning
        return self.scheduled_minutes_evening


@dataclass(frozen=True)
class RouteDefinition:
    id: str
    name: str
    waypoints: Tuple[Waypoint, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Accept any sequence but store a tuple so the route stays immutable
        object.__setattr__(self, 'waypoints', tuple(self.waypoints))

    def find_waypoint(self, waypoint_id: str) -> Optional[Waypoint]:
        for waypoint in self.waypoints:
            if waypoint.id == waypoint_id:
                return waypoint
        return None


@dataclass(frozen=True)
class ScheduleEstimate:
    is_operating: bool
    position: Optional[Tuple[float, float]] = None
    previous_waypoint_id: Optional[str] = None
    next_waypoint_id: Optional[str] = None
    progress_fraction: float = 0.0
    eta_minutes: Optional[float] = None
    confidence: float = 0.0
    trip_type: Optional[str] = None
    reason: Optional[str] = None

    @property
    def eta_text(self) -> Optional[str]:
        if self.eta_minutes is None:
            return None
        if self.eta_minutes > 0:
            return f"{math.ceil(self.eta_minutes)} min"
        return 'Arriving'


@dataclass(frozen=True)
class WaypointEta:
    distance_m: int
    eta_minutes: int

    @property
    def eta_text(self) -> str:
        if self.eta_minutes > 1:
            return f"{self.eta_minutes} min"
        return 'Less than 1 min'


def minutes_since_midnight(moment: datetime) -> float:
    """Fractional minutes since local midnight (seconds included)."""
    return (moment.hour * 60 + moment.minute + moment.second / 60.0
            + moment.microsecond / 60_000_000.0)


def trip_type_for(minutes: float) -> str:
    return 'morning' if minutes < NOON_MINUTES else 'evening'


class ScheduleEstimator:
    """
    Time-of-day interpolation along one route.

    Args:
        route: RouteDefinition to estimate on
        clock: callable returning the current local datetime
    """

    def __init__(self, route: RouteDefinition, clock: Callable[[], datetime] = datetime.now):
        self._route = route
        self.clock = clock

    @property
    def route(self) -> RouteDefinition:
        return self._route

    @property
    def waypoints(self) -> Tuple[Waypoint, ...]:
        return self._route.waypoints

    def replace_route(self, route: RouteDefinition) -> None:
        self._route = route

    def route_path(self) -> List[Tuple[float, float]]:
        """Ordered (lat, lon) polyline of the route."""
        return [(w.lat, w.lon) for w in self._route.waypoints]

    def estimate(self, now: Optional[datetime] = None) -> ScheduleEstimate:
        route = self._route
        if len(route.waypoints) < 2:
            return ScheduleEstimate(is_operating=False, reason='No route configured')

        current = minutes_since_midnight(now if now is not None else self.clock())
        trip_type = trip_type_for(current)

        stops = sorted(
            ((w.scheduled_minutes(trip_type), w) for w in route.waypoints),
            key=lambda item: item[0],
        )
        first_time, first = stops[0]
        last_time, _ = stops[-1]

        if current < first_time - PRE_DEPARTURE_WINDOW_MIN:
            return ScheduleEstimate(
                is_operating=False,
                next_waypoint_id=first.id,
                eta_minutes=first_time - current,
                trip_type=trip_type,
                reason='Not yet departed',
            )
        if current > last_time + POST_ARRIVAL_WINDOW_MIN:
            return ScheduleEstimate(is_operating=False, trip_type=trip_type, reason='Trip completed')

        # Default to the first segment (covers the pre-departure window)
        (prev_time, prev), (next_time, nxt) = stops[0], stops[1]
        if current >= last_time:
            (prev_time, prev), (next_time, nxt) = stops[-1], stops[-1]
        else:
            for (t0, w0), (t1, w1) in zip(stops, stops[1:]):
                if t0 <= current < t1:
                    (prev_time, prev), (next_time, nxt) = (t0, w0), (t1, w1)
                    break

        duration = next_time - prev_time
        if duration > 0:
            progress = min(1.0, max(0.0, (current - prev_time) / duration))
        else:
            progress = 1.0

        lat = prev.lat + (nxt.lat - prev.lat) * progress
        lon = prev.lon + (nxt.lon - prev.lon) * progress

        return ScheduleEstimate(
            is_operating=True,
            position=(lat, lon),
            previous_waypoint_id=prev.id,
            next_waypoint_id=nxt.id,
            progress_fraction=progress,
            eta_minutes=max(0.0, next_time - current),
            confidence=SCHEDULE_CONFIDENCE,
            trip_type=trip_type,
        )

    def eta_to_waypoint(self, lat: float, lon: float, waypoint_id: str) -> Optional[WaypointEta]:
        """Straight-line ETA from (lat, lon) to a waypoint at average city speed."""
        waypoint = self._route.find_waypoint(waypoint_id)
        if waypoint is None:
            return None

        distance = haversine_distance(lat, lon, waypoint.lat, waypoint.lon)
        km_per_minute = CITY_SPEED_KMH / 60.0
        return WaypointEta(
            distance_m=round(distance),
            eta_minutes=round(distance / 1000.0 / km_per_minute),
        )
