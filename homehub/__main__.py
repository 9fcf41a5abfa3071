"""Run the hub: ``python -m homehub [--config PATH]``."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from loguru import logger

from homehub import __version__
from homehub.config.loader import get_config_path, load_config
from homehub.config.schema import LoggingConfig
from homehub.engine.hub import HomeHub


def setup_logging(cfg: LoggingConfig) -> None:
    """Replace loguru's default sink with the configured ones."""
    logger.remove()
    logger.add(sys.stderr, level=cfg.level.upper())
    if cfg.file:
        logger.add(
            cfg.file,
            level=cfg.level.upper(),
            rotation=cfg.rotation,
            retention=cfg.retention,
            enqueue=True,
        )


async def run(config_path: str | None) -> None:
    config = load_config(config_path)
    setup_logging(config.logging)
    logger.info(f"homehub {__version__} starting (config: {config_path or get_config_path()})")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows event loops

    async with HomeHub(config):
        await stop.wait()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="homehub", description=__doc__)
    parser.add_argument("-c", "--config", help="path to config.json")
    parser.add_argument("--version", action="version", version=__version__)
    args = parser.parse_args(argv)
    try:
        asyncio.run(run(args.config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
