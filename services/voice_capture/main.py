"""Entrypoint for the voice capture bot."""

from __future__ import annotations

import asyncio

from services.common.structured_logging import configure_logging, get_logger

from .bot import run_bot
from .config import load_config


def main() -> None:
    config = load_config()
    configure_logging(
        config.logging.level,
        json_logs=config.logging.json_logs,
        service_name=config.logging.service_name,
    )
    logger = get_logger(__name__, service_name=config.logging.service_name)
    logger.info(
        "voice_capture.starting",
        recordings_dir=config.capture.recordings_dir,
        auto_join=config.discord.auto_join,
    )
    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        logger.info("voice_capture.interrupted")


if __name__ == "__main__":
    main()
