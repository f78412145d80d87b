"""
Mock TCP Server command line

Starts either a single server on an explicit port, or one server per port
listed in the configuration file, and runs until interrupted.
"""
import argparse
import signal
import sys
import threading
from importlib.metadata import PackageNotFoundError, version
from typing import List, Optional

import structlog

from mocktcp.config import settings
from mocktcp.configuration import ConfigurationSettings
from mocktcp.engine.pool import ServerPool
from mocktcp.engine.server import MockTCPServer
from mocktcp.exceptions import ConfigurationError, ServerStartError
from mocktcp.logging import setup_logging

logger = structlog.get_logger()

DISTRIBUTION_NAME = "mocktcp-server"


def get_version() -> str:
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "Version number cannot be identified."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mocktcp",
        description="A TCP server that simulates success and failure conditions in system/integration test environments.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Listen on a single port
  mocktcp --port 6789

  # Listen on every port in the configuration file
  mocktcp --pool --config configuration/mocktcpserver.json
        """,
    )
    startup = parser.add_mutually_exclusive_group()
    startup.add_argument(
        "-p",
        "--port",
        type=int,
        help="the port that the server will listen on.",
    )
    startup.add_argument(
        "--pool",
        action="store_true",
        help="start one server for each port in the configuration file.",
    )
    parser.add_argument(
        "--config",
        default=str(settings.configuration_file),
        help=f"configuration file (default: {settings.configuration_file})",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"interface to bind to (default: {settings.host})",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"DEBUG, INFO, WARNING or ERROR (default: {settings.log_level})",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="store_true",
        help="print product version and exit.",
    )
    return parser


def _install_signal_handlers(stop: threading.Event) -> None:
    def _handler(signum, frame):
        logger.info("operating_system_interrupt", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run(args: argparse.Namespace, stop: Optional[threading.Event] = None) -> int:
    """Start the requested servers and block until `stop` is set."""
    stop = stop or threading.Event()
    pool = ServerPool()
    configuration = ConfigurationSettings(args.config)

    try:
        if args.pool:
            logger.info("starting_server_pool", config=args.config)
            pool.bootstrap(configuration, host=args.host)
        else:
            logger.info("starting_single_server", port=args.port)
            pool.add(
                MockTCPServer(
                    port=args.port,
                    host=args.host,
                    registry=configuration.responses(args.port),
                )
            )
    except ConfigurationError as e:
        logger.error("configuration_error", message=e.message, details=e.details)
        pool.shutdown()
        return 2
    except ServerStartError as e:
        logger.error("server_start_failed", error=e.message)
        pool.shutdown()
        return 1

    try:
        while not stop.wait(0.5):
            pass
    finally:
        pool.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(get_version())
        return 0
    if args.port is None and not args.pool:
        parser.print_help()
        return 0

    try:
        setup_logging("mocktcpserver", args.log_level)
    except ConfigurationError as e:
        print(f"mocktcp: {e.message}", file=sys.stderr)
        return 2
    stop = threading.Event()
    _install_signal_handlers(stop)
    return run(args, stop)


if __name__ == "__main__":
    sys.exit(main())
