"""
Tenant directory

Looks up server profiles and persists ingestion progress. The MongoDB
implementation stores one document per (guild_id, server_id) in the
``game_servers`` collection.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from pymongo import ASCENDING

from models.server_profile import ServerProfile

logger = logging.getLogger(__name__)


class TenantDirectory(ABC):
    """Source of server profiles for the ingestion core"""

    @abstractmethod
    async def get_profile(self, guild_id: int, server_id: str) -> Optional[ServerProfile]:
        ...

    @abstractmethod
    async def list_profiles(self) -> List[ServerProfile]:
        ...

    @abstractmethod
    async def save_progress(self, profile: ServerProfile) -> bool:
        ...


class MongoTenantDirectory(TenantDirectory):
    """Tenant directory backed by a motor database"""

    def __init__(self, db):
        self.db = db
        self.collection = db[ServerProfile.collection_name]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("guild_id", ASCENDING), ("server_id", ASCENDING)],
            unique=True,
            name="guild_server_unique",
        )

    async def get_profile(self, guild_id: int, server_id: str) -> Optional[ServerProfile]:
        """Look up a single server profile

        Args:
            guild_id: Discord guild ID
            server_id: Game server ID

        Returns:
            ServerProfile or None if not registered
        """
        document = await self.collection.find_one({"guild_id": int(guild_id), "server_id": str(server_id)})
        if document is None:
            # Some older documents stored the guild id as a string
            document = await self.collection.find_one({"guild_id": str(guild_id), "server_id": str(server_id)})
        return ServerProfile.from_document(document)

    async def list_profiles(self) -> List[ServerProfile]:
        profiles = []
        async for document in self.collection.find({}):
            profile = ServerProfile.from_document(document)
            if profile is not None:
                profiles.append(profile)
        logger.debug(f"Loaded {len(profiles)} server profiles")
        return profiles

    async def register(self, profile: ServerProfile) -> None:
        """Create or replace a server profile"""
        await self.collection.replace_one(
            {"guild_id": profile.guild_id, "server_id": profile.server_id},
            profile.to_document(),
            upsert=True,
        )
        logger.info(f"Registered server {profile.server_id} for guild {profile.guild_id}")

    async def save_progress(self, profile: ServerProfile) -> bool:
        """Persist watermark and server-log progress for a profile

        Returns:
            True if a profile document was updated
        """
        result = await self.collection.update_one(
            {"guild_id": profile.guild_id, "server_id": profile.server_id},
            {"$set": profile.progress_fields()},
        )
        if result.matched_count == 0:
            logger.warning(f"No profile document to save progress for {profile.guild_id}/{profile.server_id}")
            return False
        return True
