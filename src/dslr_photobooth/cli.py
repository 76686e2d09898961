"""CLI entry point for dslr-photobooth.

Provides the ``dslr-photobooth`` console script with subcommands:

- ``serve``: Run the camera service (default if no subcommand)
- ``discover``: List detected cameras and exit
- ``reclaim``: Kill stale driver processes holding the camera

Usage::

    # Simulated camera on port 9000
    dslr-photobooth

    # Tethered camera through gphoto2
    dslr-photobooth serve --mode hardware --image-dir /srv/booth/images

    # Which cameras can gphoto2 see?
    dslr-photobooth discover --mode hardware

    # Free a camera grabbed by the desktop's volume monitor
    dslr-photobooth reclaim
"""

from __future__ import annotations

import argparse
import logging
import sys
from functools import lru_cache
from pathlib import Path

from dslr_photobooth.devices.session import (
    ExponentialBackoff,
    FixedBackoff,
    RetryPolicy,
    SessionConfig,
    init_controller,
)
from dslr_photobooth.drivers import config as driver_config
from dslr_photobooth.drivers.cameras.types import DeviceError
from dslr_photobooth.drivers.reclaimer import DEFAULT_SETTLE_SECONDS, ProcessReclaimer
from dslr_photobooth.observability import configure_logging

PROG = "dslr-photobooth"
SUBCOMMANDS = ("serve", "discover", "reclaim")
LOG_LEVELS = ["critical", "error", "warning", "info", "debug"]


@lru_cache(maxsize=1)
def _get_logger() -> logging.Logger:
    """Plain message-only logger for command output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    return logging.getLogger(PROG)


def _log(message: str, *, emoji: str = "") -> None:
    prefix = f"{emoji} " if emoji else ""
    _get_logger().info(f"{prefix}{message}")


def _add_mode_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in driver_config.DriverMode],
        default=driver_config.DriverMode.DIGITAL_TWIN.value,
        help=(
            "Driver mode: 'hardware' for a tethered camera via gphoto2, "
            "'digital_twin' for simulation (default)"
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="DSLR photobooth camera service (live view, capture, recovery)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve = subparsers.add_parser(
        "serve", help="Run the camera service (default if no subcommand)"
    )
    serve.add_argument("--host", type=str, default="0.0.0.0", help="Bind address")
    serve.add_argument("--port", type=int, default=9000, help="HTTP port")
    _add_mode_argument(serve)
    serve.add_argument(
        "--image-dir",
        type=Path,
        default=None,
        help="Directory for downloaded captures (default: ./images)",
    )
    serve.add_argument(
        "--max-attempts",
        type=int,
        default=5,
        help="Acquisition attempts before giving up (default: 5)",
    )
    serve.add_argument(
        "--retry-delay",
        type=float,
        default=2.0,
        help="Seconds between attempts; base delay for exponential (default: 2)",
    )
    serve.add_argument(
        "--backoff",
        choices=["fixed", "exponential"],
        default="fixed",
        help="Delay strategy between attempts (default: fixed)",
    )
    serve.add_argument(
        "--preview-interval",
        type=float,
        default=0.05,
        help="Live-view poll period in seconds (default: 0.05)",
    )
    serve.add_argument(
        "--device-timeout",
        type=float,
        default=10.0,
        help="Bound on any single camera call in seconds (default: 10)",
    )
    serve.add_argument(
        "--dispatch-failure-threshold",
        type=int,
        default=None,
        help="Consecutive failed downloads that force a reconnect (default: off)",
    )
    serve.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="info",
        help="Log level (default: info)",
    )
    serve.add_argument(
        "--json-logs", action="store_true", help="Emit logs as JSON lines"
    )

    discover = subparsers.add_parser("discover", help="List detected cameras")
    _add_mode_argument(discover)

    reclaim = subparsers.add_parser(
        "reclaim", help="Terminate stale processes holding the camera"
    )
    reclaim.add_argument(
        "--settle",
        type=float,
        default=DEFAULT_SETTLE_SECONDS,
        help="Seconds to wait after the sweep (default: 1)",
    )
    return parser


def _retry_policy(args: argparse.Namespace) -> RetryPolicy:
    if args.backoff == "exponential":
        return ExponentialBackoff(
            max_attempts=args.max_attempts, base_delay=args.retry_delay
        )
    return FixedBackoff(max_attempts=args.max_attempts, delay_seconds=args.retry_delay)


def _session_config(args: argparse.Namespace) -> SessionConfig:
    config = SessionConfig(
        preview_interval=args.preview_interval,
        device_timeout=args.device_timeout,
        dispatch_failure_threshold=args.dispatch_failure_threshold,
    )
    if args.image_dir is not None:
        config.image_dir = args.image_dir
    return config


def run_serve(args: argparse.Namespace) -> int:
    """Wire the controller to the web app and serve until interrupted."""
    from dslr_photobooth.web import app as web_app
    from dslr_photobooth.web.broadcast import Broadcaster

    # Imported modules already installed the defaults through get_logger.
    configure_logging(level=args.log_level, json_format=args.json_logs, force=True)
    driver_config.configure(
        driver_config.DriverConfig(mode=driver_config.DriverMode(args.mode))
    )
    factory = driver_config.get_factory()
    init_controller(
        factory.create_camera_driver(),
        reclaimer=factory.create_reclaimer(),
        publisher=Broadcaster(),
        config=_session_config(args),
        retry_policy=_retry_policy(args),
    )
    web_app.main(host=args.host, port=args.port, log_level=args.log_level)
    return 0


def run_discover(args: argparse.Namespace) -> int:
    """Print detected cameras; exit 1 when none are found."""
    factory = driver_config.DriverFactory(
        driver_config.DriverConfig(mode=driver_config.DriverMode(args.mode))
    )
    try:
        devices = factory.create_camera_driver().discover()
    except DeviceError as e:
        _log(f"Discovery failed: {e}", emoji="❌")
        return 1
    if not devices:
        _log("No camera detected", emoji="⚠️")
        return 1
    for device in devices:
        _log(f"{device.name}  {device.port}  ({device.device_id})", emoji="📷")
    return 0


def run_reclaim(args: argparse.Namespace) -> int:
    """Run one sweep; exit 1 if any process could not be terminated."""
    report = ProcessReclaimer(settle_seconds=args.settle).reclaim()
    if not report.matched:
        _log("No stale camera processes found", emoji="✅")
        return 0
    _log(f"Terminated {len(report.terminated)} of {len(report.matched)} processes")
    for failure in report.failures:
        _log(failure, emoji="❌")
    return 1 if report.partial_failure else 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point for dslr-photobooth.

    Args:
        argv: Arguments without the program name; ``sys.argv[1:]`` if None.

    Returns:
        Exit code 0 for success, non-zero for errors.

    Raises:
        SystemExit: On --help or argument parsing errors.
    """
    args_list = list(sys.argv[1:] if argv is None else argv)
    # No subcommand (or only serve flags) means serve.
    if not args_list or args_list[0] not in (*SUBCOMMANDS, "-h", "--help"):
        args_list.insert(0, "serve")

    args = build_parser().parse_args(args_list)
    if args.command == "discover":
        return run_discover(args)
    if args.command == "reclaim":
        return run_reclaim(args)
    return run_serve(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
