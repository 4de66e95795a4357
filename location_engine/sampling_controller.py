"""
Mode-driven sampling controller.

Owns the subscriptions to the absolute positioning source and the inertial
sensors, and drives the position filter:

    fix          -> reset (first fix) or update
    acceleration -> buffered as the pending InertialSample
    heading      -> latest heading, attached to the next acceleration
    10 Hz timer  -> predict, only once the last fix is older than 2 s

Every predict/update produces a fresh LocationEstimate that is handed to
on_estimate_updated(estimate, accuracy_level).

Sources call back on their own threads. All filter access is serialized on
one re-entrant lock and consumer callbacks run outside it. Subscriptions are
cancelled outside the lock too, so a timer thread blocked on the lock can
never stall teardown.
"""

import logging
import math
import threading
import time

from .config import default_config
from .errors import LocationEngineError, PermissionDenied, SensorUnavailable
from .filters import get_filter
from .models import AppState, InertialSample, TrackingMode
from .subscriptions import ThreadScheduler

logger = logging.getLogger(__name__)


def _cancel_all(subscriptions):
    for sub in subscriptions.values():
        sub.cancel()


class SamplingController:
    """
    Tracking lifecycle (Idle <-> Tracking) for one device.

    Args:
        position_source: request_permission() / subscribe(interval_ms, on_fix, on_error)
        inertial_source: subscribe_acceleration(...) / subscribe_heading(...), optional
        lifecycle: subscribe(on_state) delivering AppState events, optional
        position_filter: PositionFilterBase instance (default: numpy backend)
        mode: initial TrackingMode
        enable_sensor_fusion: subscribe to inertial sensors when tracking
        on_estimate_updated: callback(LocationEstimate, AccuracyLevel)
        on_error: callback(LocationEngineError), used for permission denial
        config: EngineConfig
        scheduler: timer factory (call_every / call_later)
        clock: monotonic seconds
    """

    def __init__(self, position_source, inertial_source=None, lifecycle=None,
                 position_filter=None, mode=TrackingMode.ACTIVE, enable_sensor_fusion=True,
                 on_estimate_updated=None, on_error=None, config=None, scheduler=None,
                 clock=time.monotonic):
        self.config = config or default_config()
        self.position_source = position_source
        self.inertial_source = inertial_source
        self.position_filter = position_filter or get_filter('kalman-numpy', config=self.config)
        self.enable_sensor_fusion = enable_sensor_fusion
        self.on_estimate_updated = on_estimate_updated
        self.on_error = on_error
        self.scheduler = scheduler or ThreadScheduler()
        self.clock = clock

        self._mode = TrackingMode(mode)
        self._lock = threading.RLock()

        # Tracking state
        self._tracking = False
        self._wanted = False        # started and not explicitly stopped
        self._resume_mode = None    # mode to restore when the host comes back to foreground
        self._subscriptions = {}    # position / acceleration / heading / prediction
        self._retired = []          # handles to cancel once the lock is released
        self._fusion_active = False
        self._session_started_at = None

        # Inertial buffer: latest heading, acceleration waiting for the next tick
        self._latest_heading = 0.0
        self._pending_sample = None

        # Filter timing
        self._last_fix_at = None
        self._last_tick_at = None
        self._reset_on_next_fix = False
        self.last_estimate = None

        # Statistics (for health monitoring)
        self.fixes_received = 0
        self.predictions_run = 0
        self.inertial_samples_received = 0

        self._lifecycle_subscription = None
        if lifecycle is not None:
            self._lifecycle_subscription = lifecycle.subscribe(self._on_app_state)

    # --- Properties ---------------------------------------------------------

    @property
    def mode(self):
        return self._mode

    @property
    def is_tracking(self):
        return self._tracking

    @property
    def fusion_active(self):
        return self._fusion_active

    @property
    def subscription_names(self):
        with self._lock:
            return sorted(self._subscriptions)

    # --- Public API ---------------------------------------------------------

    def start_tracking(self):
        """
        Enter Tracking in the current mode.

        Returns:
            bool: True if tracking (already or newly), False in Off mode or
            when the sources could not be subscribed.

        Raises:
            PermissionDenied: positioning permission refused
        """
        with self._lock:
            self._wanted = True
        return self._restart()

    def stop_tracking(self):
        """Leave Tracking. Every subscription is cancelled before this returns."""
        with self._lock:
            self._wanted = False
            self._resume_mode = None
            detached = self._detach_locked()
        _cancel_all(detached)

    def set_mode(self, mode):
        """Switch mode; re-subscribes at the new intervals when tracking. Off stops tracking."""
        mode = TrackingMode(mode)
        with self._lock:
            if mode is self._mode:
                return
            logger.info("Tracking mode %s -> %s", self._mode.value, mode.value)
            self._mode = mode
            self._resume_mode = None
            if not self._tracking:
                return
            detached = self._detach_locked()
        _cancel_all(detached)

        if mode is not TrackingMode.OFF:
            self._restart()

    def reset_filter(self):
        """Re-seed the filter at the last known estimate (user recalibration)."""
        with self._lock:
            if not self.position_filter.is_initialized:
                logger.info("Filter reset requested before first fix, nothing to do")
                return None
            current = self.position_filter.estimate()
            self.position_filter.reset(current.lat, current.lon)
            estimate = self._refresh_estimate_locked()
        self._emit(estimate)
        return estimate

    def get_health_status(self):
        """Tracking health metrics for monitoring."""
        with self._lock:
            now = self.clock()
            since_fix = None if self._last_fix_at is None else now - self._last_fix_at
            reference = self._last_fix_at
            if reference is None or (self._session_started_at is not None
                                     and self._session_started_at > reference):
                reference = self._session_started_at
            starved = (self._tracking and reference is not None
                       and now - reference > self.config.starvation_threshold_s)
            return {
                'tracking': self._tracking,
                'mode': self._mode.value,
                'fusion_active': self._fusion_active,
                'fixes_received': self.fixes_received,
                'predictions_run': self.predictions_run,
                'inertial_samples_received': self.inertial_samples_received,
                'time_since_last_fix': since_fix,
                'starved': starved,
                'degenerate_inversions': self.position_filter.degenerate_inversions,
                'subscriptions': sorted(self._subscriptions),
            }

    def close(self):
        """Stop tracking and detach from the lifecycle source."""
        self.stop_tracking()
        if self._lifecycle_subscription is not None:
            self._lifecycle_subscription.cancel()
            self._lifecycle_subscription = None

    # --- Start / teardown ---------------------------------------------------

    def _restart(self):
        try:
            with self._lock:
                return self._start_locked()
        finally:
            self._release_retired()

    def _start_locked(self):
        if self._tracking:
            logger.debug("start_tracking: already tracking")
            return True
        if self._mode is TrackingMode.OFF:
            logger.info("start_tracking: mode is off, not sampling")
            return False

        # 1. Permission
        if not self.position_source.request_permission():
            error = PermissionDenied("Location permission denied")
            self._wanted = False
            logger.warning("Location permission denied, tracking not started")
            self._report_error(error)
            raise error

        now = self.clock()
        try:
            self._subscribe_all_locked(now)
        except Exception as e:
            # Undo the partial start so nothing stays registered while Idle
            self._retire_locked(*list(self._subscriptions))
            self._fusion_active = False
            logger.error("Could not start tracking: %s", e)
            self._report_error(LocationEngineError(f"Tracking could not start: {e}"))
            return False

        self._tracking = True
        self._session_started_at = now
        logger.info("Tracking started (mode=%s, fix every %d ms, fusion=%s)",
                    self._mode.value, self._mode.absolute_fix_interval_ms, self._fusion_active)
        return True

    def _subscribe_all_locked(self, now):
        # 2. Absolute fixes
        self._subscriptions['position'] = self.position_source.subscribe(
            self._mode.absolute_fix_interval_ms, self._on_fix, self._on_position_error)

        if self._last_fix_at is not None and now - self._last_fix_at > self.config.stale_reset_s:
            # Too long without fixes for the old state to mean anything
            self._reset_on_next_fix = True

        # 3. Inertial sensors (optional)
        self._fusion_active = False
        if self.enable_sensor_fusion:
            self._start_inertial_locked()

        # 4. Prediction timer
        self._last_tick_at = now
        self._subscriptions['prediction'] = self.scheduler.call_every(
            self.config.prediction_interval_s, self._on_prediction_tick, name='prediction')

    def _start_inertial_locked(self):
        if self.inertial_source is None:
            logger.info("No inertial source, GPS-only fusion")
            return

        interval_ms = self._mode.inertial_interval_ms
        try:
            self._subscriptions['acceleration'] = self.inertial_source.subscribe_acceleration(
                interval_ms, self._on_acceleration, self._on_inertial_error)
            self._subscriptions['heading'] = self.inertial_source.subscribe_heading(
                interval_ms, self._on_heading, self._on_inertial_error)
        except Exception as e:
            self._disable_fusion_locked(e)
            return
        self._fusion_active = True

    def _disable_fusion_locked(self, error):
        self._retire_locked('acceleration', 'heading')
        self._fusion_active = False
        self._pending_sample = None
        if not isinstance(error, SensorUnavailable):
            error = SensorUnavailable(str(error))
        logger.warning("Inertial sensors unavailable, continuing GPS-only: %s", error)

    def _detach_locked(self):
        """Mark Idle and hand back the subscriptions for cancelling."""
        detached, self._subscriptions = self._subscriptions, {}
        was_tracking = self._tracking
        self._tracking = False
        self._fusion_active = False
        self._pending_sample = None
        if was_tracking:
            logger.info("Tracking stopped")
        return detached

    def _retire_locked(self, *keys):
        for key in keys:
            sub = self._subscriptions.pop(key, None)
            if sub is not None:
                self._retired.append(sub)

    def _release_retired(self):
        """Cancel retired handles. Must be called without holding the lock."""
        with self._lock:
            retired, self._retired = self._retired, []
        for sub in retired:
            sub.cancel()

    # --- Source callbacks ---------------------------------------------------

    def _on_fix(self, fix):
        with self._lock:
            if not self._tracking:
                return
            self.fixes_received += 1
            if not self.position_filter.is_initialized or self._reset_on_next_fix:
                self.position_filter.reset(fix.lat, fix.lon)
                self._reset_on_next_fix = False
                logger.info("Filter seeded at (%.6f, %.6f)", fix.lat, fix.lon)
            else:
                self.position_filter.update(fix.lat, fix.lon, fix.horizontal_error_m)
            self._last_fix_at = self.clock()
            estimate = self._refresh_estimate_locked()
        self._emit(estimate)

    def _on_position_error(self, error):
        # Gaps are expected; prediction carries the estimate until fixes return
        logger.warning("Absolute positioning error (continuing): %s", error)

    def _on_acceleration(self, acceleration_x, acceleration_y):
        if not (math.isfinite(acceleration_x) and math.isfinite(acceleration_y)):
            return
        limit = self.config.max_acceleration_mps2
        acceleration_x = max(-limit, min(limit, acceleration_x))
        acceleration_y = max(-limit, min(limit, acceleration_y))

        with self._lock:
            if not (self._tracking and self._fusion_active):
                return
            self.inertial_samples_received += 1
            self._pending_sample = InertialSample(acceleration_x, acceleration_y, self._latest_heading)

    def _on_heading(self, heading_radians):
        if not math.isfinite(heading_radians):
            return
        with self._lock:
            if self._tracking:
                self._latest_heading = heading_radians

    def _on_inertial_error(self, error):
        with self._lock:
            if not (self._tracking and self._fusion_active):
                return
            self._disable_fusion_locked(error)
        self._release_retired()

    def _on_prediction_tick(self):
        with self._lock:
            if not self._tracking:
                return
            now = self.clock()
            dt = now - self._last_tick_at
            self._last_tick_at = now

            # A sample lives for one tick at most
            sample, self._pending_sample = self._pending_sample, None

            if self._last_fix_at is None or now - self._last_fix_at <= self.config.fix_freshness_s:
                return

            self.position_filter.predict(dt, sample if self._fusion_active else None)
            self.predictions_run += 1
            estimate = self._refresh_estimate_locked()
        self._emit(estimate)

    def _on_app_state(self, state):
        state = AppState(state)
        try:
            if state is AppState.BACKGROUND:
                self._enter_background()
            else:
                self._enter_foreground()
        except PermissionDenied:
            logger.warning("Could not resume tracking on %s: permission denied", state.value)

    def _enter_background(self):
        with self._lock:
            if not (self._tracking and self._mode is TrackingMode.ACTIVE):
                return
            detached = self._detach_locked()
            target = self.config.background_mode
            resume = target is not None and target is not TrackingMode.OFF
            if resume:
                self._resume_mode = TrackingMode.ACTIVE
                self._mode = target
        _cancel_all(detached)
        logger.info("Host backgrounded in active mode%s",
                    f", resuming in {target.value}" if resume else ", tracking suspended")

        if resume:
            self._restart()

    def _enter_foreground(self):
        with self._lock:
            if self._resume_mode is not None:
                self._mode, self._resume_mode = self._resume_mode, None
                detached = self._detach_locked()
            elif self._tracking or not self._wanted:
                return
            else:
                detached = {}
        _cancel_all(detached)
        logger.info("Host foregrounded, resuming tracking in %s mode", self._mode.value)
        self._restart()

    # --- Output -------------------------------------------------------------

    def _refresh_estimate_locked(self):
        self.last_estimate = self.position_filter.estimate()
        return self.last_estimate

    def _emit(self, estimate):
        if estimate is None or self.on_estimate_updated is None:
            return
        try:
            self.on_estimate_updated(estimate, estimate.accuracy_level)
        except Exception:
            logger.exception("on_estimate_updated callback failed")

    def _report_error(self, error):
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("on_error callback failed")
