"""Command line entry point: python -m printstreamer --config config.json."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress

from .app import PrintStreamerApp
from .config import PrintStreamerConfig, load_config
from .errors import ConfigError

logger = logging.getLogger(__name__)


async def _run(config: PrintStreamerConfig) -> None:
    app = PrintStreamerApp(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await app.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await app.stop()


def main() -> int:
    """Run printstreamer until interrupted."""
    parser = argparse.ArgumentParser(description="3D printer live streaming controller")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(args.config)
    except ConfigError as err:
        logger.error("%s", err)
        return 2
    asyncio.run(_run(config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
