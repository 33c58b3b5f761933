"""
Background ingestion for every registered server
"""
import asyncio
import logging
import time
from typing import Any, Dict, List

from discord.ext import commands, tasks

logger = logging.getLogger(__name__)


class IngestionCog(commands.Cog):
    """Background task feeding new log data into the statistics store"""

    def __init__(self, bot, coordinator, directory, config):
        """Initialize the ingestion cog

        Args:
            bot: Bot instance
            coordinator: IngestionCoordinator running each server
            directory: TenantDirectory listing registered servers
            config: IngestionConfig with interval, batch size and timeouts
        """
        self.bot = bot
        self.coordinator = coordinator
        self.directory = directory
        self.config = config
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.ingest_task.change_interval(minutes=config.interval_minutes)

    async def cog_load(self):
        self.ingest_task.start()

    async def cog_unload(self):
        """Stop the background task when the cog is unloaded"""
        self.ingest_task.cancel()

    @tasks.loop(minutes=5.0)
    async def ingest_task(self):
        """Ingest new data for all servers"""
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Error in ingestion task: {e}", exc_info=True)

    @ingest_task.before_loop
    async def before_ingest_task(self):
        """Wait for bot to be ready before starting task"""
        await self.bot.wait_until_ready()

    async def run_once(self) -> List[Dict[str, Any]]:
        """Process every registered server once, a batch at a time

        Returns:
            Coordinator results, one per server
        """
        start_time = time.time()
        profiles = await self.directory.list_profiles()
        if not profiles:
            logger.debug("No servers registered, skipping ingestion")
            return []

        batch_size = max(1, self.config.batch_size)
        results = []
        for i in range(0, len(profiles), batch_size):
            batch = profiles[i:i + batch_size]
            batch_results = await asyncio.gather(
                *[
                    asyncio.wait_for(
                        self.coordinator.process_server(profile.guild_id, profile.server_id),
                        timeout=self.config.server_timeout,
                    )
                    for profile in batch
                ],
                return_exceptions=True,
            )

            for profile, result in zip(batch, batch_results):
                key = f"{profile.guild_id}:{profile.server_id}"
                if isinstance(result, asyncio.TimeoutError):
                    logger.warning(f"Ingestion timed out for server {profile.server_id} in guild {profile.guild_id}")
                    result = {"success": False, "guild_id": profile.guild_id, "server_id": profile.server_id,
                              "error": "Timed out"}
                elif isinstance(result, Exception):
                    logger.error(f"Error ingesting server {profile.server_id} in guild {profile.guild_id}: {result}")
                    result = {"success": False, "guild_id": profile.guild_id, "server_id": profile.server_id,
                              "error": str(result)}
                elif isinstance(result, BaseException):
                    raise result
                self.last_results[key] = result
                results.append(result)

        succeeded = sum(1 for result in results if result.get("success"))
        logger.info(f"Ingestion pass finished for {len(results)} servers ({succeeded} ok) in {time.time() - start_time:.2f}s")
        return results


async def setup(bot) -> None:
    """Set up the ingestion cog

    Args:
        bot: Bot instance exposing coordinator, directory and config
    """
    await bot.add_cog(IngestionCog(bot, bot.coordinator, bot.directory, bot.config))
