"""
Ingestion Coordinator
Runs ingestion and validation for one guild/server pair at a time, with
per-pair locking and guild isolation.
"""
import logging
import asyncio
import time
from typing import Dict, Any

from utils.ingestion import IngestionEngine
from utils.isolation import IsolationError
from utils.validation import ValidationEngine

logger = logging.getLogger(__name__)


class IngestionCoordinator:
    """
    Coordinates ingestion across servers and guilds so that each pair is
    processed by at most one run at a time.
    """

    def __init__(self, isolation, connector, record_store, directory, top_limit: int = 10, backfill_days: int = 0):
        """
        Initialize the coordinator

        Args:
            isolation: IsolationManager creating per-run contexts
            connector: SFTPConnector shared by all runs
            record_store: RecordStore receiving statistics
            directory: TenantDirectory holding server profiles
            top_limit: Leaderboard size checked during validation
            backfill_days: Day window for a server's first run, zero for all files
        """
        self.isolation = isolation
        self.connector = connector
        self.record_store = record_store
        self.directory = directory
        self.backfill_days = backfill_days
        self.validation = ValidationEngine(record_store, top_limit=top_limit)
        self.processing_locks = {}  # guild_id -> {server_id -> lock}

    def _get_processing_lock(self, guild_id: int, server_id: str) -> asyncio.Lock:
        """
        Get a processing lock for a specific guild and server

        Args:
            guild_id: Discord guild ID
            server_id: Game server ID

        Returns:
            asyncio.Lock for this guild/server combination
        """
        if guild_id not in self.processing_locks:
            self.processing_locks[guild_id] = {}

        if server_id not in self.processing_locks[guild_id]:
            self.processing_locks[guild_id][server_id] = asyncio.Lock()

        return self.processing_locks[guild_id][server_id]

    def is_processing(self, guild_id: int, server_id: str) -> bool:
        return self._get_processing_lock(guild_id, server_id).locked()

    async def process_server(self, guild_id: int, server_id: str) -> Dict[str, Any]:
        """
        Ingest and validate one server

        Args:
            guild_id: Discord guild ID
            server_id: Game server ID

        Returns:
            Dictionary with ingestion and validation results
        """
        lock = self._get_processing_lock(guild_id, server_id)

        # Prevent concurrent processing for the same guild/server
        if lock.locked():
            return {
                "success": False,
                "error": "Processing already in progress for this server",
                "guild_id": guild_id,
                "server_id": server_id,
            }

        async with lock:
            start_time = time.time()
            logger.info(f"Starting ingestion for guild={guild_id}, server={server_id}")

            result: Dict[str, Any] = {
                "success": False,
                "guild_id": guild_id,
                "server_id": server_id,
                "ingestion": None,
                "validation": None,
                "elapsed_time": 0,
            }

            try:
                async with self.isolation.scope(guild_id, server_id) as ctx:
                    baseline = await self.validation.snapshot_totals(ctx)

                    engine = IngestionEngine(
                        self.connector, self.record_store, self.directory, backfill_days=self.backfill_days,
                    )
                    ingestion = await engine.run(ctx)
                    summary = await self.validation.validate(ctx, ingestion, baseline)

                    result["ingestion"] = ingestion.to_dict()
                    result["validation"] = summary.to_dict()
                    result["success"] = ingestion.success and summary.successful
                    if ingestion.message:
                        result["message"] = ingestion.message
                    if not ingestion.success:
                        result["error"] = "; ".join(ingestion.errors)

            except IsolationError as e:
                logger.error(f"Rejected ingestion for guild={guild_id}, server={server_id}: {e}")
                result["error"] = str(e)

            except Exception as e:
                logger.error(f"Ingestion for guild={guild_id}, server={server_id} failed: {e}", exc_info=True)
                result["error"] = str(e) or type(e).__name__

            finally:
                result["elapsed_time"] = time.time() - start_time
                logger.info(f"Ingestion for guild={guild_id}, server={server_id} completed in {result['elapsed_time']:.2f}s")

            return result
