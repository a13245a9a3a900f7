"""
Command line entry point: ``lidar-bridge``.

Subcommands:
    run    (default) drive the sensor and publish telemetry
    relay  forward pub/sub telemetry to Foxglove and/or an MCAP file
    park   stop the sensor motor and exit
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import zmq

from . import __version__
from .base import DummyLidar, LidarError
from .config import (
    SINK_KINDS,
    BridgeConfig,
    ConfigError,
    SinkConfig,
    config_from_dict,
    load_config,
    to_dict,
)
from .drivers import RPLidarDriver
from .log import setup_logging
from .pipeline import LidarBridge, RelayBridge, park
from .sinks import SinkError

logger = logging.getLogger(__name__)

EPILOG = """
Examples:
    lidar-bridge --serial-port /dev/ttyUSB0 --listen tcp://*:7447 --connect tcp://ground:7446
    lidar-bridge --dummy --sink pubsub --sink foxglove --sink mcap --mcap-path run.mcap
    lidar-bridge relay --connect tcp://robot:7447 --sink foxglove
    lidar-bridge park --serial-port /dev/ttyUSB0

Remote control: publish "on" or "off" on the control topic (lidar_state).
"""


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", "-c", help="YAML configuration file")
    parser.add_argument("--log-level", help="Log level (default: $LIDAR_BRIDGE_LOG or INFO)")
    parser.add_argument("--listen", action="append", metavar="ENDPOINT",
                        help="Pub/sub endpoint to publish on (repeatable)")
    parser.add_argument("--connect", action="append", metavar="ENDPOINT",
                        help="Pub/sub endpoint to subscribe from (repeatable)")
    parser.add_argument("--scan-topic", help="Laser scan topic (default: laser_scan)")
    parser.add_argument("--cloud-topic", help="Point cloud topic (default: point_cloud)")
    parser.add_argument("--topic-prefix", help="Prefix for every topic")
    parser.add_argument("--sink", action="append", choices=SINK_KINDS,
                        help="Sink to deliver to (repeatable, replaces the configured list)")
    parser.add_argument("--foxglove-host", help="Foxglove server bind address (default: 127.0.0.1)")
    parser.add_argument("--foxglove-port", type=int, help="Foxglove server port (default: 8765)")
    parser.add_argument("--latched", action="store_true",
                        help="Replay the last frame to new Foxglove subscribers")
    parser.add_argument("--mcap-path", help="MCAP output file (default: out.mcap)")


def _add_sensor(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--serial-port", "--port", "-p", dest="port",
                        help="Sensor serial port (default: /dev/ttyUSB0)")
    parser.add_argument("--baudrate", "-b", type=int, help="Baudrate (default: 115200)")
    parser.add_argument("--dummy", action="store_true",
                        help="Use a simulated sensor instead of hardware")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lidar-bridge",
        description="Bridge a spinning lidar to pub/sub, Foxglove and MCAP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Drive the sensor and publish telemetry (default)")
    _add_common(run)
    _add_sensor(run)
    run.add_argument("--lidar-off", action="store_true",
                     help="Start with the sensor stopped until an 'on' command arrives")
    run.add_argument("--control-topic", help="Remote control topic (default: lidar_state)")
    run.add_argument("--frame-id", help="Frame id stamped on every record (default: lidar)")

    relay = subparsers.add_parser("relay", help="Forward pub/sub telemetry to Foxglove/MCAP")
    _add_common(relay)

    park_cmd = subparsers.add_parser("park", help="Stop the sensor motor and exit")
    park_cmd.add_argument("--config", "-c", help="YAML configuration file")
    park_cmd.add_argument("--log-level", help="Log level (default: $LIDAR_BRIDGE_LOG or INFO)")
    _add_sensor(park_cmd)

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    # `run` is the default subcommand
    if not argv or (argv[0] not in ("run", "relay", "park", "-h", "--help", "--version")):
        argv.insert(0, "run")
    return parser.parse_args(argv)


def _set(target, name: str, value) -> None:
    if value is not None:
        setattr(target, name, value)


def build_config(args: argparse.Namespace) -> BridgeConfig:
    """Load the configuration file, if any, and apply command line overrides."""
    config = load_config(args.config) if args.config else config_from_dict(None)

    _set(config.lidar, "port", getattr(args, "port", None))
    _set(config.lidar, "baudrate", getattr(args, "baudrate", None))
    if getattr(args, "lidar_off", False):
        config.lidar.run_at_startup = False
    _set(config, "frame_id", getattr(args, "frame_id", None))

    _set(config.topics, "laser_scan", getattr(args, "scan_topic", None))
    _set(config.topics, "point_cloud", getattr(args, "cloud_topic", None))
    _set(config.topics, "control", getattr(args, "control_topic", None))
    _set(config.topics, "prefix", getattr(args, "topic_prefix", None))

    _set(config.pubsub, "listen", getattr(args, "listen", None))
    _set(config.pubsub, "connect", getattr(args, "connect", None))

    kinds = getattr(args, "sink", None)
    if kinds:
        config.sinks = [SinkConfig(kind) for kind in dict.fromkeys(kinds)]
    elif args.command == "relay" and config.sinks == [SinkConfig("pubsub")]:
        # unchanged default; relay cannot publish back to pub/sub
        config.sinks = [SinkConfig("foxglove")]

    for sink in config.sinks:
        if sink.kind == "foxglove":
            _set(sink, "host", getattr(args, "foxglove_host", None))
            _set(sink, "port", getattr(args, "foxglove_port", None))
            if getattr(args, "latched", False):
                sink.latched = True
        elif sink.kind == "mcap":
            _set(sink, "path", getattr(args, "mcap_path", None))

    return config.validate(relay=args.command == "relay")


def make_driver_factory(config: BridgeConfig, dummy: bool):
    if dummy:
        return lambda: DummyLidar(config.lidar)
    return lambda: RPLidarDriver(config.lidar)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        setup_logging(args.log_level)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    try:
        config = build_config(args)
        logger.debug("Configuration: %s", to_dict(config))
        factory = make_driver_factory(config, getattr(args, "dummy", False))

        if args.command == "park":
            park(factory())
        elif args.command == "relay":
            asyncio.run(RelayBridge(config).run())
        else:
            asyncio.run(LidarBridge(config, factory).run())
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    except LidarError as exc:
        logger.error("Lidar error: %s", exc)
        return 1
    except SinkError as exc:
        logger.error("Sink error: %s", exc)
        return 1
    except OSError as exc:
        logger.error("%s", exc)
        return 1
    except zmq.ZMQError as exc:
        logger.error("Pub/sub error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
