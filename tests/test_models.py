import math
import threading

import pytest

from location_engine.models import (
    AccuracyLevel,
    InertialSample,
    LocationEstimate,
    TrackingMode,
)
from location_engine.subscriptions import Subscription, ThreadScheduler


class TestAccuracyLevel:

    @pytest.mark.parametrize('error, level', [
        (0.0, AccuracyLevel.HIGH),
        (9.99, AccuracyLevel.HIGH),
        (10.0, AccuracyLevel.MEDIUM),
        (49.9, AccuracyLevel.MEDIUM),
        (50.0, AccuracyLevel.LOW),
        (99.9, AccuracyLevel.LOW),
        (100.0, AccuracyLevel.DEGRADED),
        (float('inf'), AccuracyLevel.DEGRADED),
        (float('nan'), AccuracyLevel.DEGRADED),
    ])
    def test_buckets(self, error, level):
        assert AccuracyLevel.from_error(error) is level


class TestTrackingMode:

    @pytest.mark.parametrize('mode, fix_ms, inertial_ms', [
        (TrackingMode.ACTIVE, 1000, 20),
        (TrackingMode.BACKGROUND, 30000, 100),
        (TrackingMode.STATIONARY, 300000, 1000),
        (TrackingMode.OFF, 0, 0),
    ])
    def test_intervals(self, mode, fix_ms, inertial_ms):
        assert mode.absolute_fix_interval_ms == fix_ms
        assert mode.inertial_interval_ms == inertial_ms

    def test_from_string(self):
        assert TrackingMode('stationary') is TrackingMode.STATIONARY


class TestInertialSample:

    def test_heading_north(self):
        assert InertialSample(1.0, 0.0, 0.0).north_east() == pytest.approx((1.0, 0.0))

    def test_heading_east(self):
        accel_n, accel_e = InertialSample(1.0, 0.0, math.pi / 2).north_east()
        assert accel_n == pytest.approx(0.0, abs=1e-12)
        assert accel_e == pytest.approx(1.0)

    def test_lateral_component(self):
        # Facing north, lateral acceleration to the right points east
        accel_n, accel_e = InertialSample(0.0, 1.0, 0.0).north_east()
        assert accel_n == pytest.approx(0.0)
        assert accel_e == pytest.approx(1.0)


def test_estimate_to_dict():
    estimate = LocationEstimate(10.0, 20.0, 12.0, 3.5, 100.0)
    data = estimate.to_dict()

    assert data['accuracy_level'] == 'medium'
    assert data['lat'] == 10.0
    assert data['velocity_mps'] == 3.5


class TestSubscription:

    def test_cancel_is_idempotent(self):
        calls = []
        subscription = Subscription(lambda: calls.append(1), name='x')

        subscription.cancel()
        subscription.cancel()

        assert calls == [1]
        assert not subscription.active

    def test_thread_scheduler_call_later(self):
        fired = threading.Event()
        ThreadScheduler().call_later(0.01, fired.set)
        assert fired.wait(2)

    def test_thread_scheduler_cancel_stops_ticks(self):
        ticks = []
        ticked = threading.Event()

        def tick():
            ticks.append(1)
            ticked.set()

        subscription = ThreadScheduler().call_every(0.01, tick)
        assert ticked.wait(2)
        subscription.cancel()
        count = len(ticks)
        threading.Event().wait(0.05)

        assert len(ticks) == count

    def test_periodic_timer_survives_callback_errors(self):
        ticks = []
        done = threading.Event()

        def flaky():
            ticks.append(1)
            if len(ticks) == 1:
                raise RuntimeError("boom")
            done.set()

        subscription = ThreadScheduler().call_every(0.01, flaky)
        try:
            assert done.wait(2)
        finally:
            subscription.cancel()
