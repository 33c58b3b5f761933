#!/usr/bin/env python3
"""
Entry point for the Deadside killfeed bot

Reads settings from the environment (and a .env file when present),
connects to MongoDB, loads the ingestion cog and logs in to Discord.
"""
import asyncio
import logging

from dotenv import load_dotenv

from bot import Bot
from utils.config import IngestionConfig
from utils.logging_setup import setup_logging

logger = logging.getLogger("main")

EXTENSIONS = [
    'cogs.ingestion',
]


async def main() -> int:
    config = IngestionConfig.from_env()

    missing = config.missing_required()
    if missing:
        logger.critical(f"Cannot start, missing environment variables: {', '.join(missing)}")
        return 1

    bot = Bot(config, production=True)
    if not await bot.init_db(max_retries=3, retry_delay=5):
        logger.critical("Cannot start without a database")
        return 1

    for extension in EXTENSIONS:
        await bot.load_extension(extension)
    if bot.failed_extensions:
        logger.warning(f"Running without extensions: {', '.join(bot.failed_extensions)}")

    try:
        logger.info(
            f"Logging in, ingesting every {config.interval_minutes} minutes "
            f"in batches of {config.batch_size}"
        )
        await bot.start(config.discord_token)
    except Exception as e:
        logger.critical(f"Bot stopped with an error: {e}", exc_info=True)
        return 1
    finally:
        await bot.close()
    return 0


if __name__ == "__main__":
    load_dotenv()
    setup_logging()
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
