"""
Best available location for one vehicle, as seen by an observer.

Prefers the vehicle's own broadcast position while it is fresh, falls back to
the schedule estimate, and reports Offline when neither has an opinion:

    Live       broadcast received less than staleness_threshold_s ago
    Estimated  not Live, schedule says the vehicle is operating
    Offline    otherwise

A one-shot timer fires exactly when the live position goes stale so
observers learn about the cutover without waiting for the next schedule poll.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum

from .config import default_config
from .errors import BroadcastUnavailable
from .subscriptions import ThreadScheduler

logger = logging.getLogger(__name__)

LIVE_CONFIDENCE_ACCURATE = 0.95
LIVE_CONFIDENCE_COARSE = 0.8
LIVE_ACCURATE_THRESHOLD_M = 50.0


class ResolverStatus(str, Enum):
    LIVE = 'live'
    ESTIMATED = 'estimated'
    OFFLINE = 'offline'


class LocationSource(str, Enum):
    LIVE = 'live'
    ESTIMATED = 'estimated'


@dataclass(frozen=True)
class BestLocation:
    lat: float
    lon: float
    source: LocationSource
    confidence: float


def live_confidence(horizontal_error_m):
    if horizontal_error_m is not None and horizontal_error_m < LIVE_ACCURATE_THRESHOLD_M:
        return LIVE_CONFIDENCE_ACCURATE
    return LIVE_CONFIDENCE_COARSE


class BestLocationResolver:
    """
    Merge a live broadcast feed with a schedule estimate.

    Args:
        vehicle_id: broadcast channel key
        channel: subscribe(vehicle_id, on_position, on_error) -> Subscription
        schedule_estimator: ScheduleEstimator for the vehicle's route
        on_best_location_changed: callback(BestLocation or None, ResolverStatus)
        config: EngineConfig (staleness threshold, schedule refresh interval)
        scheduler: timer factory
        clock: wall clock in epoch seconds (same base as BroadcastPosition.updated_at)
    """

    def __init__(self, vehicle_id, channel, schedule_estimator, on_best_location_changed=None,
                 config=None, scheduler=None, clock=time.time):
        self.vehicle_id = vehicle_id
        self.channel = channel
        self.schedule_estimator = schedule_estimator
        self.on_best_location_changed = on_best_location_changed
        self.config = config or default_config()
        self.scheduler = scheduler or ThreadScheduler()
        self.clock = clock

        self._lock = threading.RLock()
        self._started = False
        self._channel_subscription = None
        self._refresh_subscription = None
        self._staleness_timer = None

        self._live_position = None
        self._last_received_at = None
        self._schedule_estimate = None
        self._last_reported = None

    # --- Lifecycle ----------------------------------------------------------

    def start(self):
        with self._lock:
            if self._started:
                return
            self._started = True

        # Channels may replay the current value synchronously, so no lock here
        try:
            subscription = self.channel.subscribe(self.vehicle_id, self._on_position, self._on_channel_error)
        except BroadcastUnavailable as e:
            logger.warning("Live feed for %s unavailable, schedule only: %s", self.vehicle_id, e)
            subscription = None

        self._refresh_schedule()
        refresh = self.scheduler.call_every(
            self.config.schedule_refresh_interval_s, self._refresh_schedule, name='schedule-refresh')

        with self._lock:
            self._channel_subscription = subscription
            self._refresh_subscription = refresh
        logger.info("Resolver started for %s", self.vehicle_id)

    def dispose(self):
        with self._lock:
            if not self._started:
                return
            self._started = False
            handles = [self._channel_subscription, self._refresh_subscription, self._staleness_timer]
            self._channel_subscription = self._refresh_subscription = self._staleness_timer = None
            self._live_position = None
            self._last_received_at = None
            self._last_reported = None

        for handle in handles:
            if handle is not None:
                handle.cancel()
        logger.info("Resolver disposed for %s", self.vehicle_id)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.dispose()

    # --- Queries ------------------------------------------------------------

    @property
    def live_position(self):
        return self._live_position

    @property
    def last_broadcast_received_at(self):
        return self._last_received_at

    @property
    def schedule_estimate(self):
        return self._schedule_estimate

    def status(self, now=None):
        with self._lock:
            return self._status_locked(self.clock() if now is None else now)

    def best_location(self, now=None):
        with self._lock:
            return self._best_locked(self.clock() if now is None else now)

    def _is_live_locked(self, now):
        return (self._live_position is not None and self._last_received_at is not None
                and now - self._last_received_at < self.config.staleness_threshold_s)

    def _status_locked(self, now):
        if self._is_live_locked(now):
            return ResolverStatus.LIVE
        if self._schedule_estimate is not None and self._schedule_estimate.is_operating:
            return ResolverStatus.ESTIMATED
        return ResolverStatus.OFFLINE

    def _best_locked(self, now):
        status = self._status_locked(now)
        if status is ResolverStatus.LIVE:
            live = self._live_position
            return BestLocation(live.lat, live.lon, LocationSource.LIVE,
                                live_confidence(live.horizontal_error_m))
        if status is ResolverStatus.ESTIMATED and self._schedule_estimate.position is not None:
            lat, lon = self._schedule_estimate.position
            return BestLocation(lat, lon, LocationSource.ESTIMATED, self._schedule_estimate.confidence)
        return None

    # --- Inputs -------------------------------------------------------------

    def _on_position(self, position):
        with self._lock:
            if not self._started:
                return
            now = self.clock()
            if position is None:
                self._clear_live_locked()
            else:
                updated_at = position.updated_at
                if updated_at is None or not math.isfinite(updated_at) or updated_at > now:
                    updated_at = now
                self._live_position = position
                self._last_received_at = updated_at
                self._arm_staleness_timer_locked(now)
            change = self._evaluate_locked(now)
        self._notify(change)

    def _on_channel_error(self, error):
        logger.warning("Broadcast channel error for %s: %s", self.vehicle_id, error)
        with self._lock:
            if not self._started:
                return
            self._clear_live_locked()
            change = self._evaluate_locked(self.clock())
        self._notify(change)

    def _refresh_schedule(self):
        estimate = self.schedule_estimator.estimate()
        with self._lock:
            if not self._started:
                return
            self._schedule_estimate = estimate
            change = self._evaluate_locked(self.clock())
        self._notify(change)

    def _on_staleness_timeout(self):
        with self._lock:
            if not self._started:
                return
            self._staleness_timer = None
            now = self.clock()
            if self._is_live_locked(now):
                # Timer fired a hair early
                self._arm_staleness_timer_locked(now)
            change = self._evaluate_locked(now)
        self._notify(change)

    # --- Internals ----------------------------------------------------------

    def _clear_live_locked(self):
        self._live_position = None
        self._last_received_at = None
        if self._staleness_timer is not None:
            self._staleness_timer.cancel()
            self._staleness_timer = None

    def _arm_staleness_timer_locked(self, now):
        if self._staleness_timer is not None:
            self._staleness_timer.cancel()
            self._staleness_timer = None
        delay = self._last_received_at + self.config.staleness_threshold_s - now
        if delay > 0:
            self._staleness_timer = self.scheduler.call_later(
                delay, self._on_staleness_timeout, name='staleness')

    def _evaluate_locked(self, now):
        """Return the new (best, status) pair if it differs from the last one reported."""
        pair = (self._best_locked(now), self._status_locked(now))
        if pair == self._last_reported:
            return None
        if self._last_reported is None or pair[1] is not self._last_reported[1]:
            logger.info("Location status for %s: %s", self.vehicle_id, pair[1].value)
        self._last_reported = pair
        return pair

    def _notify(self, change):
        if change is None or self.on_best_location_changed is None:
            return
        try:
            self.on_best_location_changed(*change)
        except Exception:
            logger.exception("on_best_location_changed callback failed")
