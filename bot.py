import sys
import logging
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

import discord
from discord.ext import commands
from pymongo.errors import PyMongoError

from utils.config import IngestionConfig
from utils.db_connection import DatabaseConnectionError, get_database
from utils.ingestion_coordinator import IngestionCoordinator
from utils.isolation import IsolationManager
from utils.record_store import MongoRecordStore
from utils.sftp import SFTPConnector
from utils.tenant_directory import MongoTenantDirectory

logger = logging.getLogger(__name__)


class Bot(commands.Bot):
    """Discord client hosting the killfeed ingestion services

    The database and every service built on it are created by ``init_db``,
    before any extension is loaded.
    """

    def __init__(self, config: IngestionConfig, *, production: bool = False):
        super().__init__(
            command_prefix=commands.when_mentioned_or("!"),
            intents=discord.Intents.default(),
            case_insensitive=True,
        )

        self.config = config
        self.production = production
        self._db = None
        self.ready = False

        self.connector = SFTPConnector(connect_timeout=config.sftp_connect_timeout)
        self.directory: Optional[MongoTenantDirectory] = None
        self.record_store: Optional[MongoRecordStore] = None
        self.isolation: Optional[IsolationManager] = None
        self.coordinator: Optional[IngestionCoordinator] = None

        self.loaded_extensions = []
        self.failed_extensions = []
        self.started_at = datetime.utcnow()
        self.last_error: Optional[Dict[str, Any]] = None

    @property
    def db(self):
        """MongoDB database

        Raises:
            RuntimeError: If init_db has not succeeded yet
        """
        if self._db is None:
            raise RuntimeError("Database has not been initialized. Call init_db() first.")
        return self._db

    async def init_db(self, max_retries: int = 3, retry_delay: float = 2) -> bool:
        """Connect to MongoDB and create the ingestion services

        Returns:
            bool: True if the services are ready
        """
        try:
            db = await get_database(
                self.config.mongodb_uri,
                self.config.db_name,
                max_retries=max_retries,
                retry_delay=retry_delay,
            )
            self.setup_services(db)
            await self.directory.ensure_indexes()
            await self.record_store.ensure_indexes()
        except (DatabaseConnectionError, PyMongoError) as e:
            logger.critical(f"Database unavailable: {e}")
            return False

        logger.info(f"Ingestion services ready on database '{db.name}'")
        return True

    def setup_services(self, db) -> None:
        """Create the ingestion services on top of a database"""
        self._db = db
        self.directory = MongoTenantDirectory(db)
        self.record_store = MongoRecordStore(db)
        self.isolation = IsolationManager(self.directory)
        self.coordinator = IngestionCoordinator(
            self.isolation,
            self.connector,
            self.record_store,
            self.directory,
            top_limit=self.config.leaderboard_limit,
            backfill_days=self.config.recent_file_days,
        )

    def status(self) -> Dict[str, Any]:
        """Snapshot of the process state for diagnostics"""
        return {
            "started_at": self.started_at.isoformat(),
            "ready": self.ready,
            "guilds": len(self.guilds),
            "extensions": list(self.loaded_extensions),
            "failed_extensions": list(self.failed_extensions),
            "active_contexts": self.isolation.active_count if self.isolation else 0,
            "remote_errors": len(self.connector.errors),
            "last_error": self.last_error,
        }

    async def on_ready(self):
        if self.ready:
            logger.info("Bot reconnected")
            return

        self.ready = True
        logger.info(f"Bot logged in as {self.user.name if self.user is not None else ''}")
        logger.info(f"Connected to {len(self.guilds)} guilds")

    async def on_error(self, event_method, *args, **kwargs):
        exc_type, exc_value, exc_traceback = sys.exc_info()
        logger.error(f"Error in event {event_method}: {exc_value}")
        logger.error("".join(traceback.format_exception(exc_type, exc_value, exc_traceback)))
        self.last_error = {
            "time": datetime.utcnow().isoformat(),
            "event": event_method,
            "error": str(exc_value),
        }

    async def load_extension(self, name: str, *, package: Optional[str] = None) -> None:
        """Load an extension, recording failures instead of raising"""
        try:
            await super().load_extension(name, package=package)
        except commands.ExtensionError as e:
            logger.error(f"Failed to load extension {name}: {e}", exc_info=True)
            self.failed_extensions.append(name)
            return
        self.loaded_extensions.append(name)
        logger.info(f"Loaded extension: {name}")
