"""
Termux source parsing and process handling, with subprocess replaced by fakes
(no Termux:API needed).
"""

import math
import subprocess

import orjson
import pytest

from location_engine import termux_sources
from location_engine.errors import SensorUnavailable
from location_engine.termux_sources import (
    JsonStreamParser,
    TermuxInertialSource,
    TermuxLocationPoller,
    TermuxLocationSource,
    TermuxSensorStream,
    iter_sensor_values,
    parse_location_output,
)

SENSOR_OUTPUT = """{
  "Linear Acceleration": {
    "values": [
      0.25,
      1.5,
      9.7
    ]
  }
}
{
  "Linear Acceleration": {
    "values": [
      0.1,
      -0.4,
      9.8
    ]
  }
}
"""


class FakeProcess:
    def __init__(self, returncode=0, stdout='', stderr=''):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self.killed = False
        self.pid = 4242

    def poll(self):
        return self.returncode

    def communicate(self, timeout=None):
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True

    def wait(self, timeout=None):
        return self.returncode


class TestParsing:

    def test_location_output(self):
        stdout = orjson.dumps({'latitude': 13.04, 'longitude': 77.5, 'accuracy': 12.5, 'provider': 'gps'})
        fix = parse_location_output(stdout, timestamp=5.0)

        assert (fix.lat, fix.lon) == (13.04, 77.5)
        assert fix.horizontal_error_m == 12.5
        assert fix.timestamp == 5.0
        assert fix.provider == 'gps'

    def test_location_without_accuracy(self):
        fix = parse_location_output('{"latitude": 1.0, "longitude": 2.0}', provider='network')
        assert fix.horizontal_error_m == 999.0
        assert fix.provider == 'network'

    def test_location_without_position(self):
        assert parse_location_output('{"error": "timeout"}') is None

    def test_stream_parser_reassembles_objects(self):
        parser = JsonStreamParser()
        objects = [obj for obj in map(parser.feed, SENSOR_OUTPUT.splitlines(keepends=True)) if obj]

        assert len(objects) == 2
        assert objects[1]['Linear Acceleration']['values'] == [0.1, -0.4, 9.8]
        assert parser.objects_parsed == 2

    def test_stream_parser_recovers_from_garbage(self):
        parser = JsonStreamParser()
        assert parser.feed('{ "broken": [1, 2 }\n') is None
        assert parser.malformed == 1

        objects = [obj for obj in map(parser.feed, SENSOR_OUTPUT.splitlines()) if obj]
        assert len(objects) == 2

    def test_stream_parser_skips_noise(self):
        parser = JsonStreamParser()
        assert parser.feed('Sensor started\n') is None
        assert parser.buffer == ''

    def test_iter_sensor_values(self):
        obj = {'A': {'values': [1, 2, 3]}, 'B': {'values': [1]}, 'C': 'x'}
        assert list(iter_sensor_values(obj)) == [('A', [1, 2, 3])]


class TestLocationPoller:

    def make_poller(self, config, process):
        poller = TermuxLocationPoller(1.0, on_fix=lambda fix: None, config=config)
        poller.current_process = process
        poller.request_start_time = 0.0
        return poller

    def test_completed_request(self, config):
        stdout = orjson.dumps({'latitude': 13.0, 'longitude': 77.0, 'accuracy': 8.0}).decode()
        poller = self.make_poller(config, FakeProcess(0, stdout))

        fix = poller.check_request()

        assert fix.lat == 13.0
        assert poller.requests_completed == 1
        assert poller.current_process is None

    def test_low_quality_fix_rejected(self, config):
        stdout = orjson.dumps({'latitude': 13.0, 'longitude': 77.0, 'accuracy': 150.0}).decode()
        poller = self.make_poller(config, FakeProcess(0, stdout))

        assert poller.check_request() is None
        assert poller.low_quality_rejections == 1

    def test_garbage_reply(self, config):
        poller = self.make_poller(config, FakeProcess(0, 'not json'))
        assert poller.check_request() is None
        assert poller.current_process is None

    def test_stalled_request_is_killed(self, config, monkeypatch):
        process = FakeProcess(returncode=None)
        poller = self.make_poller(config, process)
        monkeypatch.setattr(termux_sources.time, 'time', lambda: 100.0)

        assert poller.check_request() is None
        assert process.killed
        assert poller.requests_timeout == 1
        assert poller.current_process is None

    def test_network_fallback_after_gps_drought(self, config, monkeypatch):
        launched = []
        monkeypatch.setattr(termux_sources.subprocess, 'Popen',
                            lambda args, **kwargs: launched.append(args) or FakeProcess(None))
        poller = TermuxLocationPoller(1.0, on_fix=lambda fix: None, config=config)
        poller.last_success_time -= config.provider_fallback_s + 1

        assert poller.start_request()

        assert launched == [['termux-location', '-p', 'network']]
        assert poller.get_health_status()['current_provider'] == 'network'

    def test_missing_binary_reports_error(self, config, monkeypatch):
        def missing(*args, **kwargs):
            raise FileNotFoundError('termux-location')

        errors = []
        monkeypatch.setattr(termux_sources.subprocess, 'Popen', missing)
        poller = TermuxLocationPoller(1.0, on_fix=lambda fix: None, on_error=errors.append, config=config)

        assert poller.start_request() is False
        assert isinstance(errors[0], FileNotFoundError)


class TestLocationPermission:

    def run_returning(self, monkeypatch, stdout, returncode=0):
        result = subprocess.CompletedProcess(['termux-location'], returncode, stdout, '')
        monkeypatch.setattr(termux_sources.subprocess, 'run', lambda *args, **kwargs: result)

    def test_granted(self, monkeypatch):
        self.run_returning(monkeypatch, '{"latitude": 1.0, "longitude": 2.0}')
        assert TermuxLocationSource().request_permission() is True

    def test_error_reply(self, monkeypatch):
        self.run_returning(monkeypatch, '{"error": "Location permission denied"}')
        assert TermuxLocationSource().request_permission() is False

    def test_failed_command(self, monkeypatch):
        self.run_returning(monkeypatch, '', returncode=1)
        assert TermuxLocationSource().request_permission() is False

    def test_not_on_termux(self, monkeypatch):
        def missing(*args, **kwargs):
            raise FileNotFoundError('termux-location')

        monkeypatch.setattr(termux_sources.subprocess, 'run', missing)
        assert TermuxLocationSource().request_permission() is False


class TestInertialSource:

    @pytest.fixture
    def streams(self, monkeypatch):
        created = []

        class FakeStream:
            def __init__(self, sensor, delay_ms, on_values, on_error=None):
                self.sensor = sensor
                self.delay_ms = delay_ms
                self.on_values = on_values
                self.stopped = False
                created.append(self)

            def start(self):
                pass

            def stop(self):
                self.stopped = True

        monkeypatch.setattr(termux_sources, 'TermuxSensorStream', FakeStream)
        return created

    def test_acceleration_axes(self, streams):
        samples = []
        TermuxInertialSource().subscribe_acceleration(20, lambda ax, ay: samples.append((ax, ay)))

        streams[0].on_values('Linear Acceleration', [0.25, 1.5, 9.7])

        assert streams[0].sensor == 'Linear Acceleration'
        assert streams[0].delay_ms == 20
        assert samples == [(1.5, 0.25)]

    def test_heading_from_magnetometer(self, streams):
        headings = []
        TermuxInertialSource().subscribe_heading(100, headings.append)

        streams[0].on_values('Magnetic Field', [0.0, 30.0, -10.0])

        assert headings == [pytest.approx(math.pi / 2)]

    def test_cancel_stops_stream(self, streams):
        subscription = TermuxInertialSource().subscribe_heading(100, lambda h: None)
        subscription.cancel()
        assert streams[0].stopped

    def test_missing_termux_sensor(self, monkeypatch):
        def missing(*args, **kwargs):
            raise FileNotFoundError('termux-sensor')

        monkeypatch.setattr(termux_sources.subprocess, 'Popen', missing)

        with pytest.raises(SensorUnavailable):
            TermuxSensorStream('Linear Acceleration', 20, lambda name, values: None).start()

    def test_sensor_exits_immediately(self, monkeypatch):
        class DeadProcess(FakeProcess):
            stdout = None
            stdin = None

            def __init__(self):
                super().__init__(returncode=1)
                self.stderr = self

            def read(self):
                return 'no such sensor'

            def terminate(self):
                pass

            def close(self):
                pass

        monkeypatch.setattr(termux_sources.subprocess, 'Popen', lambda *args, **kwargs: DeadProcess())

        with pytest.raises(SensorUnavailable, match='no such sensor'):
            TermuxSensorStream('Linear Acceleration', 20, lambda name, values: None).start()
