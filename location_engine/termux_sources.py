"""
Position and inertial sources backed by the Termux:API command line tools.

TermuxLocationSource polls ``termux-location`` without ever blocking on it:
each request is a non-blocking Popen that is polled every 100ms and killed
after a timeout, because the Android LocationAPI regularly stalls. Poor fixes
are rejected, and after a long GPS drought the poller falls back to the
network provider.

TermuxInertialSource keeps one ``termux-sensor`` process running per
subscription and reads its continuous stream. termux-sensor pretty-prints
every reading over several lines, so objects are reassembled by brace depth.
"""

import logging
import math
import subprocess
import threading
import time

import orjson

from .config import default_config
from .errors import SensorUnavailable
from .models import AbsoluteFix
from .subscriptions import Subscription

logger = logging.getLogger(__name__)

ACCELERATION_SENSOR = 'Linear Acceleration'
HEADING_SENSOR = 'Magnetic Field'


def parse_location_output(stdout, provider='gps', timestamp=None):
    """
    Parse one ``termux-location`` JSON reply.

    Returns:
        AbsoluteFix, or None if the reply carries no position. A missing
        accuracy is reported as 999m so the quality filter rejects it.
    """
    data = orjson.loads(stdout)
    if not isinstance(data, dict):
        return None
    lat = data.get('latitude')
    lon = data.get('longitude')
    if lat is None or lon is None:
        return None
    return AbsoluteFix(
        lat=float(lat),
        lon=float(lon),
        horizontal_error_m=float(data.get('accuracy', 999.0)),
        timestamp=time.time() if timestamp is None else timestamp,
        provider=data.get('provider', provider),
    )


class JsonStreamParser:
    """Reassemble multi-line JSON objects from a line stream by brace depth."""

    def __init__(self):
        self.buffer = ''
        self.depth = 0
        self.objects_parsed = 0
        self.malformed = 0

    def feed(self, line):
        """Add one line; returns the completed object, or None."""
        if not line.strip():
            return None
        if self.depth == 0 and '{' not in line:
            # Noise between objects
            return None

        self.buffer += line if line.endswith('\n') else line + '\n'
        self.depth += line.count('{') - line.count('}')
        if self.depth > 0:
            return None

        text, self.buffer, self.depth = self.buffer, '', 0
        try:
            obj = orjson.loads(text)
        except orjson.JSONDecodeError:
            self.malformed += 1
            return None
        self.objects_parsed += 1
        return obj


def iter_sensor_values(obj):
    """Yield (sensor_name, values) pairs from one termux-sensor object."""
    if not isinstance(obj, dict):
        return
    for sensor_key, sensor_data in obj.items():
        if isinstance(sensor_data, dict) and 'values' in sensor_data:
            values = sensor_data['values']
            if isinstance(values, list) and len(values) >= 3:
                yield sensor_key, values


class TermuxLocationPoller(threading.Thread):
    """Non-blocking termux-location poller delivering AbsoluteFix objects."""

    def __init__(self, interval_s, on_fix, on_error=None, config=None):
        super().__init__(daemon=True, name='termux-location')
        self.interval_s = interval_s
        self.on_fix = on_fix
        self.on_error = on_error
        self.config = config or default_config()
        self.stop_event = threading.Event()

        # Async state tracking
        self.current_process = None
        self.request_start_time = None
        self.last_success_time = time.time()
        self.current_provider = 'gps'

        # Statistics (for health monitoring)
        self.requests_sent = 0
        self.requests_completed = 0
        self.requests_timeout = 0
        self.low_quality_rejections = 0

    def start_request(self):
        """Start a new location request without blocking."""
        if self.current_process is not None:
            return False

        # Network provider (WiFi/cellular) during a GPS drought
        if time.time() - self.last_success_time > self.config.provider_fallback_s:
            self.current_provider = 'network'
        else:
            self.current_provider = 'gps'

        try:
            self.current_process = subprocess.Popen(
                ['termux-location', '-p', self.current_provider],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            self._report_error(e)
            return False

        self.request_start_time = time.time()
        self.requests_sent += 1
        return True

    def check_request(self):
        """Poll the running request. Returns an AbsoluteFix when one completed."""
        if self.current_process is None:
            return None

        returncode = self.current_process.poll()
        if returncode is None:
            if time.time() - self.request_start_time > self.config.location_request_timeout_s:
                logger.warning("Location request exceeded %.0fs, killing",
                               self.config.location_request_timeout_s)
                self._kill_current()
                self.requests_timeout += 1
            return None

        process, self.current_process = self.current_process, None
        try:
            stdout, _ = process.communicate(timeout=0.1)
        except subprocess.TimeoutExpired:
            process.kill()
            return None

        if returncode != 0 or not stdout:
            return None
        try:
            fix = parse_location_output(stdout, provider=self.current_provider)
        except (orjson.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning("Could not parse location reply: %s", e)
            return None
        if fix is None:
            return None

        if fix.horizontal_error_m > self.config.location_quality_threshold_m:
            self.low_quality_rejections += 1
            logger.warning("Rejected low-quality fix (accuracy %.1fm > %.0fm)",
                           fix.horizontal_error_m, self.config.location_quality_threshold_m)
            return None

        self.last_success_time = time.time()
        self.requests_completed += 1
        return fix

    def _kill_current(self):
        process, self.current_process = self.current_process, None
        if process is None:
            return
        try:
            process.kill()
            process.wait(timeout=1)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Could not reap location request: %s", e)

    def _report_error(self, error):
        logger.warning("Location request (%s) failed: %s", self.current_provider, error)
        if self.on_error is not None:
            self.on_error(error)

    def get_health_status(self):
        time_since_last = time.time() - self.last_success_time
        success_rate = self.requests_completed / self.requests_sent if self.requests_sent > 0 else 0
        return {
            'alive': self.is_alive(),
            'time_since_last_fix': time_since_last,
            'requests_sent': self.requests_sent,
            'requests_completed': self.requests_completed,
            'requests_timeout': self.requests_timeout,
            'success_rate': success_rate,
            'has_process_running': self.current_process is not None,
            'current_provider': self.current_provider,
            'low_quality_rejections': self.low_quality_rejections,
        }

    def run(self):
        next_poll_time = time.time()
        while not self.stop_event.is_set():
            try:
                fix = self.check_request()
                if fix is not None:
                    self.on_fix(fix)

                current_time = time.time()
                if current_time >= next_poll_time:
                    if self.start_request():
                        next_poll_time = current_time + self.interval_s
                    else:
                        # Failed to start, try again soon
                        next_poll_time = current_time + 0.5
            except Exception:
                logger.exception("Location poller iteration failed (continuing)")

            # 100ms check interval, never blocks long
            self.stop_event.wait(0.1)

        self._kill_current()

    def stop(self):
        self.stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=2)


class TermuxLocationSource:
    """Absolute positioning source on top of termux-location."""

    def __init__(self, config=None):
        self.config = config or default_config()
        self.pollers = []

    def request_permission(self):
        """
        One-shot network location request. Termux:API prompts for the
        location permission on first use; refusal shows up as an error reply.
        """
        try:
            result = subprocess.run(
                ['termux-location', '-p', 'network', '-r', 'once'],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.config.location_request_timeout_s * 3,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("termux-location unavailable: %s", e)
            return False

        if result.returncode != 0 or not result.stdout:
            logger.warning("Location permission check failed: %s", result.stderr.strip())
            return False
        try:
            data = orjson.loads(result.stdout)
        except orjson.JSONDecodeError:
            return False
        if isinstance(data, dict) and 'error' in data:
            logger.warning("Location permission check failed: %s", data['error'])
            return False
        return True

    def subscribe(self, interval_ms, on_fix, on_error=None):
        poller = TermuxLocationPoller(interval_ms / 1000.0, on_fix, on_error, config=self.config)
        poller.start()
        self.pollers.append(poller)

        def cancel():
            poller.stop()
            if poller in self.pollers:
                self.pollers.remove(poller)

        return Subscription(cancel, name='termux-location')


class TermuxSensorStream:
    """One persistent termux-sensor process feeding on_values(sensor_name, values)."""

    def __init__(self, sensor, delay_ms, on_values, on_error=None):
        self.sensor = sensor
        self.delay_ms = max(1, int(delay_ms))
        self.on_values = on_values
        self.on_error = on_error
        self.stop_event = threading.Event()
        self.sensor_process = None
        self.reader_thread = None
        self.parser = JsonStreamParser()

    def start(self):
        """
        Start the sensor process and its reader thread.

        Raises:
            SensorUnavailable: termux-sensor missing or exited immediately
        """
        self.stop_event.clear()
        try:
            # -n: large batch, termux-sensor continuous mode can hang otherwise
            self.sensor_process = subprocess.Popen(
                ['termux-sensor', '-s', self.sensor, '-d', str(self.delay_ms), '-n', '100000'],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                bufsize=1,
                close_fds=True,
            )
        except OSError as e:
            raise SensorUnavailable(f"termux-sensor could not start: {e}") from e

        if self.sensor_process.poll() is not None:
            stderr_out = self.sensor_process.stderr.read() if self.sensor_process.stderr else ''
            self._close_process()
            raise SensorUnavailable(f"termux-sensor exited immediately: {stderr_out.strip()}")

        self.reader_thread = threading.Thread(target=self._read_loop, daemon=True,
                                              name=f'termux-sensor:{self.sensor}')
        self.reader_thread.start()
        logger.info("Sensor stream started (%s, %d ms, PID %d)",
                    self.sensor, self.delay_ms, self.sensor_process.pid)

    def _read_loop(self):
        try:
            for line in self.sensor_process.stdout:
                if self.stop_event.is_set():
                    break
                obj = self.parser.feed(line)
                if obj is None:
                    continue
                for sensor_name, values in iter_sensor_values(obj):
                    try:
                        self.on_values(sensor_name, values)
                    except Exception:
                        logger.exception("Sensor callback failed (continuing)")
        except (OSError, ValueError) as e:
            # ValueError: stdout closed under us by stop()
            if not self.stop_event.is_set():
                logger.warning("Sensor stream %s read error: %s", self.sensor, e)

        logger.debug("Sensor stream %s exited after %d objects", self.sensor, self.parser.objects_parsed)
        if not self.stop_event.is_set() and self.on_error is not None:
            self.on_error(SensorUnavailable(f"termux-sensor stream for {self.sensor} ended"))

    def is_alive(self):
        return self.sensor_process is not None and self.sensor_process.poll() is None

    def stop(self):
        """Stop the process and close its pipes to avoid leaking descriptors."""
        self.stop_event.set()
        self._close_process()
        if (self.reader_thread is not None and self.reader_thread.is_alive()
                and threading.current_thread() is not self.reader_thread):
            self.reader_thread.join(timeout=2)

    def _close_process(self):
        process = self.sensor_process
        if process is None:
            return
        try:
            process.terminate()
            process.wait(timeout=1)
        except subprocess.TimeoutExpired:
            process.kill()
            try:
                process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                logger.warning("termux-sensor (PID %d) did not exit", process.pid)
        except OSError as e:
            logger.debug("Sensor process already gone: %s", e)
        finally:
            for pipe in (process.stdout, process.stderr, process.stdin):
                if pipe is not None:
                    try:
                        pipe.close()
                    except OSError:
                        pass


class TermuxInertialSource:
    """
    Linear acceleration and magnetometer heading from termux-sensor.

    The phone is assumed mounted upright facing forward: device y is the
    direction of travel, device x points to the right.
    """

    def __init__(self, acceleration_sensor=ACCELERATION_SENSOR, heading_sensor=HEADING_SENSOR):
        self.acceleration_sensor = acceleration_sensor
        self.heading_sensor = heading_sensor

    def subscribe_acceleration(self, interval_ms, on_sample, on_error=None):
        def on_values(sensor_name, values):
            # forward, right
            on_sample(float(values[1]), float(values[0]))

        return self._subscribe(self.acceleration_sensor, interval_ms, on_values, on_error)

    def subscribe_heading(self, interval_ms, on_heading, on_error=None):
        def on_values(sensor_name, values):
            on_heading(math.atan2(float(values[1]), float(values[0])))

        return self._subscribe(self.heading_sensor, interval_ms, on_values, on_error)

    def _subscribe(self, sensor, interval_ms, on_values, on_error):
        stream = TermuxSensorStream(sensor, interval_ms, on_values, on_error)
        stream.start()
        return Subscription(stream.stop, name=f'termux-sensor:{sensor}')
