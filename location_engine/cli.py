"""
Command line runner.

    location-engine track [--mode active] [--duration 10] [--output track.jsonl]
    location-engine schedule [--route route.json] [--at 07:05]
"""

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

import orjson

from .config import default_config, load_config
from .errors import LocationEngineError, PermissionDenied
from .filters import get_filter
from .models import TrackingMode
from .power import BatteryReader, check_memory, recommend_mode
from .route_loader import load_route, parse_time_to_minutes, sample_route
from .sampling_controller import SamplingController
from .schedule_estimator import ScheduleEstimator
from .termux_sources import TermuxInertialSource, TermuxLocationSource

logger = logging.getLogger('location_engine')


class EstimateRecorder:
    """Log every estimate and optionally append it as a JSON line."""

    def __init__(self, output_path=None):
        self.output_path = output_path
        self.handle = open(output_path, 'ab') if output_path else None
        self.count = 0

    def __call__(self, estimate, accuracy_level):
        self.count += 1
        logger.info("%.6f, %.6f  ±%.1fm (%s)  %.1f m/s",
                    estimate.lat, estimate.lon, estimate.horizontal_error_m95,
                    accuracy_level.value, estimate.velocity_mps)
        if self.handle is not None:
            self.handle.write(orjson.dumps(estimate.to_dict()) + b'\n')
            self.handle.flush()

    def close(self):
        if self.handle is not None:
            self.handle.close()
            self.handle = None


def build_parser():
    parser = argparse.ArgumentParser(
        prog='location-engine',
        description='Hybrid GPS + inertial location tracking',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Track for 10 minutes, writing estimates to a file
  location-engine track --duration 10 --output track.jsonl

  # Where should the bus be at 07:05 on the bundled route?
  location-engine schedule --at 07:05
        """,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--config', type=Path, help='JSON file with EngineConfig overrides')
    sub = parser.add_subparsers(dest='command', required=True)

    track = sub.add_parser('track', help='Track this device with Termux sensors')
    track.add_argument('--mode', choices=[m.value for m in TrackingMode if m is not TrackingMode.OFF],
                       default=TrackingMode.ACTIVE.value)
    track.add_argument('--filter', dest='filter_type', choices=['kalman-numpy', 'kalman'],
                       default='kalman-numpy')
    track.add_argument('--no-fusion', action='store_true', help='GPS only, no inertial sensors')
    track.add_argument('--duration', type=float, help='Minutes to run (default: until Ctrl+C)')
    track.add_argument('--output', type=Path, help='Append estimates as JSON lines')
    track.add_argument('--auto-mode', action='store_true',
                       help='Switch modes from speed and battery state')
    track.add_argument('--status-interval', type=float, default=30.0,
                       help='Seconds between health reports')

    schedule = sub.add_parser('schedule', help='Print the schedule-based position estimate')
    schedule.add_argument('--route', type=Path, help='Route JSON (.json or .json.gz)')
    schedule.add_argument('--at', help='Time of day HH:MM (default: now)')
    return parser


def run_track(args, config):
    recorder = EstimateRecorder(args.output)
    controller = SamplingController(
        position_source=TermuxLocationSource(config=config),
        inertial_source=None if args.no_fusion else TermuxInertialSource(),
        position_filter=get_filter(args.filter_type, config=config),
        mode=TrackingMode(args.mode),
        enable_sensor_fusion=not args.no_fusion,
        on_estimate_updated=recorder,
        on_error=lambda error: logger.error("%s", error),
        config=config,
    )

    try:
        controller.start_tracking()
    except PermissionDenied:
        logger.error("Location permission denied. Grant it to Termux:API and retry.")
        recorder.close()
        return 2

    end_time = time.time() + args.duration * 60 if args.duration else None
    next_status = time.time() + args.status_interval
    try:
        while end_time is None or time.time() < end_time:
            time.sleep(1)
            if time.time() < next_status:
                continue
            next_status = time.time() + args.status_interval

            health = controller.get_health_status()
            logger.info("Health: %s", health)
            if health['starved']:
                logger.warning("No fix for %.0fs", health['time_since_last_fix'] or 0)
            if check_memory() > 0:
                logger.warning("Memory pressure high, consider --mode background")

            if args.auto_mode and controller.last_estimate is not None:
                mode = recommend_mode(controller.last_estimate.velocity_mps, BatteryReader.read())
                if mode is not controller.mode:
                    controller.set_mode(mode)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        controller.close()
        recorder.close()

    logger.info("Recorded %d estimates", recorder.count)
    return 0


def run_schedule(args, config):
    route = load_route(args.route) if args.route else sample_route()
    estimator = ScheduleEstimator(route)

    now = datetime.now()
    if args.at:
        minutes = parse_time_to_minutes(args.at)
        now = now.replace(hour=int(minutes // 60), minute=int(minutes % 60), second=0, microsecond=0)

    estimate = estimator.estimate(now)
    print(f"Route: {route.name} ({len(route.waypoints)} waypoints)")
    if not estimate.is_operating:
        print(f"Not operating: {estimate.reason}")
        return 0

    lat, lon = estimate.position
    print(f"Position:  {lat:.6f}, {lon:.6f}")
    print(f"Segment:   {estimate.previous_waypoint_id} -> {estimate.next_waypoint_id} "
          f"({estimate.progress_fraction:.0%})")
    print(f"Next stop: {estimate.eta_text}")
    print(f"Trip:      {estimate.trip_type}, confidence {estimate.confidence:.2f}")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)-7s %(name)s: %(message)s',
    )

    try:
        config = load_config(args.config) if args.config else default_config()
        if args.command == 'track':
            return run_track(args, config)
        return run_schedule(args, config)
    except (LocationEngineError, ValueError, OSError) as e:
        logger.error("%s", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
