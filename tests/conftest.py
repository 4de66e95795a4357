"""Deterministic clock, scheduler and source fakes shared by the tests."""

from datetime import datetime

import pytest

from location_engine.config import default_config
from location_engine.errors import SensorUnavailable
from location_engine.models import AbsoluteFix
from location_engine.subscriptions import Subscription


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class _Timer:
    def __init__(self, due, interval, callback, name):
        self.due = due
        self.interval = interval
        self.callback = callback
        self.name = name
        self.subscription = Subscription(name=name)


class ManualScheduler:
    """Scheduler whose timers only fire inside advance()."""

    def __init__(self, clock):
        self.clock = clock
        self.timers = []

    def call_every(self, interval_s, callback, name='periodic-timer'):
        return self._add(_Timer(self.clock.now + interval_s, interval_s, callback, name))

    def call_later(self, delay_s, callback, name='one-shot-timer'):
        return self._add(_Timer(self.clock.now + max(0.0, delay_s), None, callback, name))

    def _add(self, timer):
        self.timers.append(timer)
        return timer.subscription

    def active(self, name=None):
        return [t for t in self.timers
                if t.subscription.active and (name is None or t.name == name)]

    def advance(self, seconds):
        """Move the clock forward, firing due timers in order at their due time."""
        target = self.clock.now + seconds
        while True:
            due = [t for t in self.active() if t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.clock.now = max(self.clock.now, timer.due)
            if timer.interval is None:
                timer.subscription.cancel()
            else:
                timer.due += timer.interval
            timer.callback()
        self.clock.now = target


class _Registration:
    def __init__(self, interval_ms, callback, on_error, name):
        self.interval_ms = interval_ms
        self.callback = callback
        self.on_error = on_error
        self.subscription = Subscription(name=name)

    @property
    def active(self):
        return self.subscription.active


class FakePositionSource:
    def __init__(self, permission=True):
        self.permission = permission
        self.permission_requests = 0
        self.registrations = []

    def request_permission(self):
        self.permission_requests += 1
        return self.permission

    def subscribe(self, interval_ms, on_fix, on_error=None):
        registration = _Registration(interval_ms, on_fix, on_error, 'position')
        self.registrations.append(registration)
        return registration.subscription

    @property
    def active(self):
        return [r for r in self.registrations if r.active]

    def emit(self, lat, lon, error_m=5.0, timestamp=0.0):
        fix = AbsoluteFix(lat=lat, lon=lon, horizontal_error_m=error_m, timestamp=timestamp)
        for registration in self.active:
            registration.callback(fix)

    def fail(self, error):
        for registration in self.active:
            if registration.on_error is not None:
                registration.on_error(error)


class FakeInertialSource:
    def __init__(self, available=True):
        self.available = available
        self.acceleration = []
        self.heading = []

    def subscribe_acceleration(self, interval_ms, on_sample, on_error=None):
        if not self.available:
            raise SensorUnavailable("no accelerometer")
        registration = _Registration(interval_ms, on_sample, on_error, 'acceleration')
        self.acceleration.append(registration)
        return registration.subscription

    def subscribe_heading(self, interval_ms, on_heading, on_error=None):
        if not self.available:
            raise SensorUnavailable("no magnetometer")
        registration = _Registration(interval_ms, on_heading, on_error, 'heading')
        self.heading.append(registration)
        return registration.subscription

    @property
    def active_acceleration(self):
        return [r for r in self.acceleration if r.active]

    @property
    def active_heading(self):
        return [r for r in self.heading if r.active]

    def emit_acceleration(self, acceleration_x, acceleration_y):
        for registration in self.active_acceleration:
            registration.callback(acceleration_x, acceleration_y)

    def emit_heading(self, heading_radians):
        for registration in self.active_heading:
            registration.callback(heading_radians)

    def fail(self, error):
        for registration in self.active_acceleration + self.active_heading:
            if registration.on_error is not None:
                registration.on_error(error)


class FakeLifecycle:
    def __init__(self):
        self.listeners = []

    def subscribe(self, on_state):
        subscription = Subscription(name='lifecycle')
        self.listeners.append((on_state, subscription))
        return subscription

    def emit(self, state):
        for on_state, subscription in list(self.listeners):
            if subscription.active:
                on_state(state)


class FakeDateClock:
    """datetime clock for the schedule estimator."""

    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment

    def set(self, hour, minute, second=0):
        self.moment = datetime(2026, 1, 5, hour, minute, second)


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def position_source():
    return FakePositionSource()


@pytest.fixture
def inertial_source():
    return FakeInertialSource()


@pytest.fixture
def lifecycle():
    return FakeLifecycle()
