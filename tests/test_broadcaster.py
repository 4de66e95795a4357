from datetime import datetime

import pytest

from location_engine.best_location import BestLocationResolver, LocationSource, ResolverStatus
from location_engine.broadcaster import InMemoryBroadcastChannel, LocationBroadcaster
from location_engine.errors import BroadcastUnavailable
from location_engine.filters import get_filter
from location_engine.models import LocationEstimate
from location_engine.route_loader import sample_route
from location_engine.sampling_controller import SamplingController
from location_engine.schedule_estimator import ScheduleEstimator

from .conftest import FakeDateClock

VEHICLE = 'bus-7'


def estimate_at(lat, lon, error=8.0):
    return LocationEstimate(lat=lat, lon=lon, horizontal_error_m95=error, velocity_mps=4.0, produced_at=0.0)


@pytest.fixture
def channel():
    return InMemoryBroadcastChannel()


@pytest.fixture
def broadcaster(channel, clock):
    return LocationBroadcaster(VEHICLE, channel, clock=clock)


class TestLocationBroadcaster:

    def test_nothing_published_until_sharing(self, broadcaster, channel):
        assert broadcaster.publish_estimate(estimate_at(10.0, 20.0)) is False
        assert channel.latest(VEHICLE) is None

    def test_publishes_when_sharing(self, broadcaster, channel, clock):
        broadcaster.set_sharing(True)

        assert broadcaster.publish_estimate(estimate_at(10.0, 20.0))

        position = channel.latest(VEHICLE)
        assert (position.lat, position.lon) == (10.0, 20.0)
        assert position.horizontal_error_m == 8.0
        assert position.updated_at == clock.now

    def test_rate_limited(self, broadcaster, channel, clock):
        broadcaster.set_sharing(True)
        broadcaster.publish_estimate(estimate_at(10.0, 20.0))

        clock.advance(4.9)
        assert broadcaster.publish_estimate(estimate_at(10.1, 20.1)) is False
        assert channel.latest(VEHICLE).lat == 10.0

        clock.advance(0.2)
        assert broadcaster.publish_estimate(estimate_at(10.2, 20.2))
        assert channel.latest(VEHICLE).lat == 10.2
        assert broadcaster.published_count == 2

    def test_custom_interval(self, channel, clock):
        broadcaster = LocationBroadcaster(VEHICLE, channel, min_interval_s=0.0, clock=clock)
        broadcaster.set_sharing(True)

        assert broadcaster.publish_estimate(estimate_at(10.0, 20.0))
        assert broadcaster.publish_estimate(estimate_at(10.1, 20.1))

    def test_stop_sharing_publishes_empty_snapshot(self, broadcaster, channel):
        received = []
        channel.subscribe(VEHICLE, received.append)
        broadcaster.set_sharing(True)
        broadcaster.publish_estimate(estimate_at(10.0, 20.0))

        broadcaster.set_sharing(False)

        assert received[-1] is None
        assert channel.latest(VEHICLE) is None
        assert not broadcaster.sharing

    def test_publish_failure_is_contained(self, clock, caplog):
        class BrokenChannel:
            def publish(self, vehicle_id, position):
                raise BroadcastUnavailable("network down")

        broadcaster = LocationBroadcaster(VEHICLE, BrokenChannel(), clock=clock)
        broadcaster.set_sharing(True)

        assert broadcaster.publish_estimate(estimate_at(10.0, 20.0)) is False
        assert broadcaster.failed_count == 1
        assert 'network down' in caplog.text


class TestInMemoryBroadcastChannel:

    def test_late_subscriber_gets_current_value(self, channel):
        channel.publish(VEHICLE, estimate_at(1.0, 2.0))
        received = []

        channel.subscribe(VEHICLE, received.append)

        assert len(received) == 1

    def test_unsubscribe(self, channel):
        received = []
        subscription = channel.subscribe(VEHICLE, received.append)
        subscription.cancel()

        channel.publish(VEHICLE, estimate_at(1.0, 2.0))

        assert received == []
        assert channel.subscriber_count(VEHICLE) == 0

    def test_subscriber_exception_does_not_block_others(self, channel):
        received = []

        def broken(position):
            raise RuntimeError("subscriber bug")

        channel.subscribe(VEHICLE, broken)
        channel.subscribe(VEHICLE, received.append)
        channel.publish(VEHICLE, estimate_at(1.0, 2.0))

        assert len(received) == 1


def test_tracked_device_shows_up_live_for_observers(clock, scheduler, position_source, channel):
    """Driver's controller -> broadcaster -> channel -> observer's resolver."""
    broadcaster = LocationBroadcaster(VEHICLE, channel, clock=clock)
    broadcaster.set_sharing(True)
    controller = SamplingController(
        position_source=position_source,
        position_filter=get_filter(clock=clock),
        on_estimate_updated=broadcaster.publish_estimate,
        scheduler=scheduler,
        clock=clock,
    )
    # Outside the timetable, so only the live feed can produce a location
    estimator = ScheduleEstimator(sample_route(), clock=FakeDateClock(datetime(2026, 1, 5, 3, 0)))
    resolver = BestLocationResolver(VEHICLE, channel, estimator, scheduler=scheduler, clock=clock)

    with resolver:
        assert resolver.status() is ResolverStatus.OFFLINE

        controller.start_tracking()
        position_source.emit(13.0431, 77.5002, 4.0)

        best = resolver.best_location()
        assert resolver.status() is ResolverStatus.LIVE
        assert best.source is LocationSource.LIVE
        assert best.lat == pytest.approx(13.0431)

        broadcaster.set_sharing(False)
        assert resolver.status() is ResolverStatus.OFFLINE

    controller.close()
