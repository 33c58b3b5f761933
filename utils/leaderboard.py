"""
Leaderboards

Per-server rankings read from the record store. Restricted servers always
produce empty rankings together with a neutral explanation.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from models.player import METRIC_FIELDS, PlayerStats

logger = logging.getLogger(__name__)

LEADERBOARD_METRICS = tuple(METRIC_FIELDS)


@dataclass
class LeaderboardEntry:
    rank: int
    player_name: str
    value: float
    kills: int
    deaths: int
    weapon: Optional[str] = None


@dataclass
class Leaderboard:
    metric: str
    entries: List[LeaderboardEntry] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.entries


class LeaderboardService:
    def __init__(self, record_store, default_limit: int = 10):
        self.record_store = record_store
        self.default_limit = default_limit

    async def top(self, ctx, metric: str, limit: Optional[int] = None) -> List[PlayerStats]:
        """Top players on the context's server for a metric

        Args:
            ctx: Active isolation context
            metric: One of kills, deaths, kd, distance, streak, suicides
            limit: Maximum entries, defaults to the service limit

        Returns:
            Players in ranking order, empty for restricted servers

        Raises:
            ValueError: If the metric is unknown
        """
        if metric not in METRIC_FIELDS:
            raise ValueError(f"Unknown leaderboard metric: {metric}")
        if ctx.is_restricted():
            logger.debug(f"Leaderboard {metric} requested for {ctx.mode.value} server {ctx.guild_id}/{ctx.server_id}")
            return []

        players = await self.record_store.query_top_by_metric(
            ctx.guild_id, ctx.server_id, metric, limit or self.default_limit,
        )
        # Never hand out another server's rows
        return [player for player in players if ctx.verify_entity(player)]

    async def board(self, ctx, metric: str, limit: Optional[int] = None) -> Leaderboard:
        """Leaderboard ready for display, with a message when empty"""
        players = await self.top(ctx, metric, limit)
        entries = []
        for rank, player in enumerate(players, start=1):
            weapon = player.longest_kill_weapon if metric == "distance" else player.favorite_weapon
            entries.append(LeaderboardEntry(
                rank=rank,
                player_name=player.player_name,
                value=player.metric_value(metric),
                kills=player.kills,
                deaths=player.deaths,
                weapon=weapon,
            ))

        leaderboard = Leaderboard(metric=metric, entries=entries)
        if not entries:
            leaderboard.message = ctx.unavailability_reason()
        return leaderboard
