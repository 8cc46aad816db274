"""
hostlink - Entry Point

Run with: python -m hostlink --socket /tmp/hostlink.sock
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from hostlink import __version__
from hostlink.config import ConfigError, load_config
from hostlink.server import HostLinkService


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from the event loop
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="hostlink",
        description="hostlink - Unix socket control interface for an emulated machine",
    )

    parser.add_argument(
        "-s",
        "--socket",
        type=str,
        required=True,
        help="Path of the control socket to create",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="TOML file overriding the default settings",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args(argv)


async def run_service(socket_path: str, config_path: Path | None) -> bool:
    """Load configuration, then start and run the service."""
    config = load_config(config_path)
    service = HostLinkService(socket_path, config)
    return await service.run()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)
    logger.info("Starting hostlink %s...", __version__)

    try:
        if not asyncio.run(run_service(args.socket, args.config)):
            logger.error("Control socket failed to start")
            return 1
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    logger.info("hostlink stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
