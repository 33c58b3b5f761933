"""
Record store for player statistics

Statistics are kept per (guild_id, server_id, player_name) in the ``players``
collection. Every applied event leaves its key in the ``kills`` collection
under a unique index, so applying the same event twice is a no-op.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, List, Optional, Set

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from models.player import METRIC_FIELDS, PlayerDelta, PlayerStats

logger = logging.getLogger(__name__)

EVENTS_COLLECTION = "kills"
TOTAL_FIELDS = ("players", "kills", "deaths", "suicides")


def empty_totals() -> Dict[str, int]:
    return {name: 0 for name in TOTAL_FIELDS}


class RecordStore(ABC):
    """Persistence for per-player aggregates"""

    @abstractmethod
    async def upsert_player_stats(
        self,
        guild_id: int,
        server_id: str,
        deltas: List[PlayerDelta],
        event_key: Optional[str] = None,
    ) -> bool:
        """Apply deltas, returning False if the event was already applied"""

    @abstractmethod
    async def query_top_by_metric(self, guild_id: int, server_id: str, metric: str, limit: int) -> List[PlayerStats]:
        ...

    @abstractmethod
    async def count_players(self, guild_id: int, server_id: str) -> int:
        ...

    @abstractmethod
    async def aggregate_totals(self, guild_id: int, server_id: str) -> Dict[str, int]:
        ...


class MongoRecordStore(RecordStore):
    """Record store backed by a motor database"""

    def __init__(self, db):
        self.db = db
        self.players = db[PlayerStats.collection_name]
        self.events = db[EVENTS_COLLECTION]

    async def ensure_indexes(self) -> None:
        await self.players.create_index(
            [("guild_id", ASCENDING), ("server_id", ASCENDING), ("player_name", ASCENDING)],
            unique=True,
            name="player_scope_unique",
        )
        await self.players.create_index(
            [("guild_id", ASCENDING), ("server_id", ASCENDING), ("kills", DESCENDING)],
            name="player_kills",
        )
        await self.events.create_index(
            [("guild_id", ASCENDING), ("server_id", ASCENDING), ("event_key", ASCENDING)],
            unique=True,
            name="event_key_unique",
        )

    @staticmethod
    def _scope(guild_id: int, server_id: str) -> Dict[str, Any]:
        return {"guild_id": guild_id, "server_id": server_id}

    async def upsert_player_stats(
        self,
        guild_id: int,
        server_id: str,
        deltas: List[PlayerDelta],
        event_key: Optional[str] = None,
    ) -> bool:
        """Apply an event's deltas atomically per player

        The event document lists the indexes of the deltas already applied,
        so an event interrupted part way is resumed without reapplying them.

        Args:
            guild_id: Discord guild ID
            server_id: Game server ID
            deltas: Changes to apply
            event_key: Key of the event, used to skip already-applied events

        Returns:
            True if applied, False if the event key was seen before
        """
        now = datetime.utcnow()
        if event_key is None:
            for delta in deltas:
                await self._apply_delta(guild_id, server_id, delta, now)
            return True

        event_query = {**self._scope(guild_id, server_id), "event_key": event_key}
        done: Set[int] = set()
        try:
            await self.events.insert_one({
                **event_query,
                "players": [delta.player_name for delta in deltas],
                "applied": [],
                "complete": False,
                "applied_at": now,
            })
        except DuplicateKeyError:
            existing = await self.events.find_one(event_query)
            # Documents written before partial tracking existed are complete
            if existing is None or existing.get("complete", True):
                logger.debug(f"Event already applied for {guild_id}/{server_id}: {event_key}")
                return False
            done = set(existing.get("applied", []))
            logger.info(f"Resuming partially applied event for {guild_id}/{server_id}: {event_key}")

        for index, delta in enumerate(deltas):
            if index in done:
                continue
            await self._apply_delta(guild_id, server_id, delta, now)
            await self.events.update_one(event_query, {"$addToSet": {"applied": index}})

        await self.events.update_one(event_query, {"$set": {"complete": True}})
        return True

    async def _apply_delta(self, guild_id: int, server_id: str, delta: PlayerDelta, now: datetime) -> None:
        query = {**self._scope(guild_id, server_id), "player_name": delta.player_name}
        document = await self.players.find_one_and_update(
            query,
            delta.to_update(now),
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if document is None or not delta.kills:
            return

        followup: Dict[str, Any] = {"$max": {"longest_streak": document.get("current_streak", 0)}}
        if delta.distance > 0 and document.get("longest_kill_distance") == delta.distance:
            followup["$set"] = {"longest_kill_weapon": delta.weapon}
        await self.players.update_one(query, followup)

    async def query_top_by_metric(self, guild_id: int, server_id: str, metric: str, limit: int) -> List[PlayerStats]:
        """Top players for a metric

        Args:
            guild_id: Discord guild ID
            server_id: Game server ID
            metric: One of kills, deaths, kd, distance, streak, suicides
            limit: Maximum number of players

        Returns:
            Players in descending metric order

        Raises:
            ValueError: If the metric is unknown
        """
        if metric not in METRIC_FIELDS:
            raise ValueError(f"Unknown leaderboard metric: {metric}")

        scope = self._scope(guild_id, server_id)
        if metric == "kd":
            pipeline = [
                {"$match": {**scope, "kills": {"$gt": 0}}},
                {"$addFields": {
                    "kd": {
                        "$cond": [
                            {"$eq": ["$deaths", 0]},
                            "$kills",
                            {"$divide": ["$kills", "$deaths"]}
                        ]
                    }
                }},
                {"$sort": {"kd": -1, "kills": -1, "player_name": 1}},
                {"$limit": limit}
            ]
            cursor = self.players.aggregate(pipeline)
        else:
            field_name = METRIC_FIELDS[metric]
            cursor = (
                self.players.find({**scope, field_name: {"$gt": 0}})
                .sort([(field_name, DESCENDING), ("player_name", ASCENDING)])
                .limit(limit)
            )

        results = []
        async for document in cursor:
            stats = PlayerStats.from_document(document)
            if stats is not None:
                results.append(stats)
        return results

    async def count_players(self, guild_id: int, server_id: str) -> int:
        return await self.players.count_documents(self._scope(guild_id, server_id))

    async def aggregate_totals(self, guild_id: int, server_id: str) -> Dict[str, int]:
        """Sum kills, deaths and suicides across a server's players"""
        pipeline = [
            {"$match": self._scope(guild_id, server_id)},
            {"$group": {
                "_id": None,
                "players": {"$sum": 1},
                "kills": {"$sum": "$kills"},
                "deaths": {"$sum": "$deaths"},
                "suicides": {"$sum": "$suicides"},
            }},
        ]
        totals = empty_totals()
        async for document in self.players.aggregate(pipeline):
            for name in TOTAL_FIELDS:
                totals[name] = int(document.get(name, 0) or 0)
        return totals
