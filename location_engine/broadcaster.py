"""
Publishing side of the live position feed.

LocationBroadcaster plugs into SamplingController.on_estimate_updated and
forwards estimates to a broadcast channel, keyed by vehicle id, while the
driver has sharing switched on. InMemoryBroadcastChannel is an in-process
channel for local wiring; any object with the same subscribe/publish methods
can stand in for a network backend.
"""

import logging
import threading
import time
from collections import defaultdict

from .config import default_config
from .errors import BroadcastUnavailable
from .models import BroadcastPosition
from .subscriptions import Subscription

logger = logging.getLogger(__name__)


class InMemoryBroadcastChannel:
    """Latest-value pub/sub per vehicle id. New subscribers get the current value."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = defaultdict(dict)   # vehicle_id -> {token: (on_position, on_error)}
        self._latest = {}

    def subscribe(self, vehicle_id, on_position, on_error=None):
        token = object()
        with self._lock:
            self._subscribers[vehicle_id][token] = (on_position, on_error)
            current = self._latest.get(vehicle_id)

        if current is not None:
            self._deliver(on_position, current)
        return Subscription(lambda: self._unsubscribe(vehicle_id, token), name=f'broadcast:{vehicle_id}')

    def _unsubscribe(self, vehicle_id, token):
        with self._lock:
            subscribers = self._subscribers.get(vehicle_id)
            if subscribers is not None:
                subscribers.pop(token, None)
                if not subscribers:
                    del self._subscribers[vehicle_id]

    def subscriber_count(self, vehicle_id):
        with self._lock:
            return len(self._subscribers.get(vehicle_id, ()))

    def latest(self, vehicle_id):
        with self._lock:
            return self._latest.get(vehicle_id)

    def publish(self, vehicle_id, position):
        """Publish a position, or None for an empty snapshot (vehicle not sharing)."""
        with self._lock:
            if position is None:
                self._latest.pop(vehicle_id, None)
            else:
                self._latest[vehicle_id] = position
            targets = list(self._subscribers.get(vehicle_id, {}).values())

        for on_position, _ in targets:
            self._deliver(on_position, position)

    def report_error(self, vehicle_id, error=None):
        """Push a channel failure to every subscriber of ``vehicle_id``."""
        error = error or BroadcastUnavailable(f"Channel for {vehicle_id} unavailable")
        with self._lock:
            targets = list(self._subscribers.get(vehicle_id, {}).values())
        for _, on_error in targets:
            if on_error is None:
                continue
            try:
                on_error(error)
            except Exception:
                logger.exception("Broadcast error handler failed")

    @staticmethod
    def _deliver(on_position, position):
        try:
            on_position(position)
        except Exception:
            logger.exception("Broadcast subscriber failed")


class LocationBroadcaster:
    """
    Rate-limited estimate publisher.

    Args:
        vehicle_id: key on the broadcast channel
        channel: object with publish(vehicle_id, position)
        min_interval_s: minimum spacing between publishes (default from config)
        clock: wall clock in epoch seconds, stamped into updated_at
    """

    def __init__(self, vehicle_id, channel, min_interval_s=None, config=None, clock=time.time):
        self.vehicle_id = vehicle_id
        self.channel = channel
        self.config = config or default_config()
        if min_interval_s is None:
            min_interval_s = self.config.broadcast_min_interval_s
        self.min_interval_s = min_interval_s
        self.clock = clock

        self._lock = threading.Lock()
        self._sharing = False
        self._last_published_at = None
        self.published_count = 0
        self.failed_count = 0

    @property
    def sharing(self):
        return self._sharing

    def set_sharing(self, enabled):
        """Toggle sharing. Switching off publishes an empty snapshot."""
        enabled = bool(enabled)
        with self._lock:
            if enabled == self._sharing:
                return
            self._sharing = enabled
            self._last_published_at = None

        logger.info("Location sharing %s for %s", 'enabled' if enabled else 'disabled', self.vehicle_id)
        if not enabled:
            self._publish(None)

    def publish_estimate(self, estimate, accuracy_level=None):
        """
        on_estimate_updated hook. Returns True if the estimate went out.

        The 95% error radius is published as the horizontal error so observers
        get the conservative figure.
        """
        with self._lock:
            if not self._sharing:
                return False
            now = self.clock()
            if self._last_published_at is not None and now - self._last_published_at < self.min_interval_s:
                return False
            self._last_published_at = now

        position = BroadcastPosition(
            lat=estimate.lat,
            lon=estimate.lon,
            horizontal_error_m=estimate.horizontal_error_m95,
            updated_at=now,
        )
        return self._publish(position)

    def _publish(self, position):
        try:
            self.channel.publish(self.vehicle_id, position)
        except Exception as e:
            self.failed_count += 1
            logger.warning("Publishing location for %s failed: %s", self.vehicle_id, e)
            return False
        if position is not None:
            self.published_count += 1
            logger.debug("Published %.6f, %.6f for %s", position.lat, position.lon, self.vehicle_id)
        return True
