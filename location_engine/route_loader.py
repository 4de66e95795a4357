"""
Route definition loading.

Route files are JSON (optionally gzipped):

    {
      "id": "route_blr_1",
      "name": "Nagasandra to Ramanashree",
      "waypoints": [
        {"id": "stop_1", "name": "Nagasandra", "lat": 13.0431, "lon": 77.5002,
         "morning_time": "07:30", "evening_time": "16:00"},
        ...
      ]
    }

Scheduled times are either "HH:MM" strings or minutes since midnight.
"""

from __future__ import annotations

import gzip
import math
from pathlib import Path
from typing import Any, Dict, Union

import orjson

from .errors import RouteDefinitionError
from .schedule_estimator import RouteDefinition, Waypoint

SAMPLE_ROUTE: Dict[str, Any] = {
    'id': 'route_blr_1',
    'name': 'Nagasandra to Ramanashree',
    'waypoints': [
        {'id': 'stop_1', 'name': 'Nagasandra', 'lat': 13.0431, 'lon': 77.5002, 'morning_time': '07:30', 'evening_time': '16:00'},
        {'id': 'stop_2', 'name': 'Dasarahalli', 'lat': 13.0438, 'lon': 77.5130, 'morning_time': '07:35', 'evening_time': '16:05'},
        {'id': 'stop_3', 'name': 'Jalahalli', 'lat': 13.0528, 'lon': 77.5200, 'morning_time': '07:40', 'evening_time': '16:10'},
        {'id': 'stop_4', 'name': 'Ayappa Temple', 'lat': 13.0580, 'lon': 77.5250, 'morning_time': '07:45', 'evening_time': '16:15'},
        {'id': 'stop_5', 'name': 'K G Halli', 'lat': 13.0545, 'lon': 77.5327, 'morning_time': '07:50', 'evening_time': '16:20'},
        {'id': 'stop_6', 'name': 'Gangamma Circle', 'lat': 13.0566, 'lon': 77.5466, 'morning_time': '07:55', 'evening_time': '16:25'},
        {'id': 'stop_7', 'name': 'M S Palya', 'lat': 13.0813, 'lon': 77.5538, 'morning_time': '08:00', 'evening_time': '16:30'},
        {'id': 'stop_8', 'name': 'Medical Shop', 'lat': 13.0880, 'lon': 77.5600, 'morning_time': '08:03', 'evening_time': '16:33'},
        {'id': 'stop_9', 'name': 'New Turn', 'lat': 13.0930, 'lon': 77.5650, 'morning_time': '08:06', 'evening_time': '16:36'},
        {'id': 'stop_10', 'name': 'Ashram', 'lat': 13.0980, 'lon': 77.5700, 'morning_time': '08:10', 'evening_time': '16:40'},
        {'id': 'stop_11', 'name': 'Transformer', 'lat': 13.1030, 'lon': 77.5750, 'morning_time': '08:13', 'evening_time': '16:43'},
        {'id': 'stop_12', 'name': 'Mrp Layout', 'lat': 13.1080, 'lon': 77.5800, 'morning_time': '08:16', 'evening_time': '16:46'},
        {'id': 'stop_13', 'name': 'Ramanashree', 'lat': 13.1166, 'lon': 77.5877, 'morning_time': '08:20', 'evening_time': '16:50'},
    ],
}


def parse_time_to_minutes(value: Union[str, int, float]) -> float:
    """'HH:MM' (or a plain number of minutes) -> minutes since midnight."""
    if isinstance(value, bool):
        raise RouteDefinitionError(f"Invalid scheduled time: {value!r}")
    if isinstance(value, (int, float)):
        minutes = float(value)
    elif isinstance(value, str):
        parts = value.strip().split(':')
        if len(parts) != 2:
            raise RouteDefinitionError(f"Invalid scheduled time: {value!r} (expected HH:MM)")
        try:
            hours, mins = int(parts[0]), int(parts[1])
        except ValueError:
            raise RouteDefinitionError(f"Invalid scheduled time: {value!r}") from None
        if not (0 <= hours < 24 and 0 <= mins < 60):
            raise RouteDefinitionError(f"Scheduled time out of range: {value!r}")
        minutes = float(hours * 60 + mins)
    else:
        raise RouteDefinitionError(f"Invalid scheduled time: {value!r}")

    if not math.isfinite(minutes) or not (0 <= minutes < 24 * 60):
        raise RouteDefinitionError(f"Scheduled time out of range: {value!r}")
    return minutes


def _parse_coordinate(raw: Dict[str, Any], key: str, limit: float, index: int) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RouteDefinitionError(f"Waypoint {index}: '{key}' must be a number")
    if not math.isfinite(value) or abs(value) > limit:
        raise RouteDefinitionError(f"Waypoint {index}: '{key}' out of range ({value})")
    return float(value)


def _parse_waypoint(raw: Any, index: int) -> Waypoint:
    if not isinstance(raw, dict):
        raise RouteDefinitionError(f"Waypoint {index} must be an object")
    for key in ('morning_time', 'evening_time'):
        if key not in raw:
            raise RouteDefinitionError(f"Waypoint {index}: missing '{key}'")

    return Waypoint(
        id=str(raw.get('id', f'stop_{index + 1}')),
        name=str(raw.get('name', '')),
        lat=_parse_coordinate(raw, 'lat', 90.0, index),
        lon=_parse_coordinate(raw, 'lon', 180.0, index),
        scheduled_minutes_morning=parse_time_to_minutes(raw['morning_time']),
        scheduled_minutes_evening=parse_time_to_minutes(raw['evening_time']),
    )


def parse_route(data: Dict[str, Any]) -> RouteDefinition:
    """Build a RouteDefinition from decoded JSON."""
    if not isinstance(data, dict):
        raise RouteDefinitionError("Route definition must be a JSON object")

    raw_waypoints = data.get('waypoints')
    if not isinstance(raw_waypoints, list):
        raise RouteDefinitionError("Route definition needs a 'waypoints' list")

    waypoints = [_parse_waypoint(raw, i) for i, raw in enumerate(raw_waypoints)]
    ids = [w.id for w in waypoints]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise RouteDefinitionError(f"Duplicate waypoint ids: {', '.join(duplicates)}")

    return RouteDefinition(
        id=str(data.get('id', 'route')),
        name=str(data.get('name', '')),
        waypoints=tuple(waypoints),
    )


def load_route(path) -> RouteDefinition:
    """Load a route file (``.json`` or ``.json.gz``)."""
    path = Path(path)
    opener = gzip.open if path.suffix == ".gz" else open
    try:
        with opener(path, "rb") as handle:
            data = orjson.loads(handle.read())
    except orjson.JSONDecodeError as e:
        raise RouteDefinitionError(f"{path}: invalid JSON ({e})") from e
    return parse_route(data)


def sample_route() -> RouteDefinition:
    return parse_route(SAMPLE_ROUTE)
