"""
Player statistics model

Per-server aggregates for one player name, plus the delta type produced by
parsed events and applied by the record store.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Leaderboard metric -> stored field
METRIC_FIELDS = {
    "kills": "kills",
    "deaths": "deaths",
    "suicides": "suicides",
    "kd": "kd",
    "distance": "longest_kill_distance",
    "streak": "longest_streak",
}


def weapon_key(weapon: str) -> str:
    """Make a weapon name safe to use as a MongoDB field name"""
    cleaned = weapon.strip().replace(".", "_").replace("$", "_")
    return cleaned or "unknown"


@dataclass
class PlayerDelta:
    """Change to a single player's aggregates caused by one event"""
    player_name: str
    kills: int = 0
    deaths: int = 0
    suicides: int = 0
    weapon: Optional[str] = None
    distance: float = 0.0

    @property
    def ends_streak(self) -> bool:
        return self.deaths > 0 or self.suicides > 0

    def to_update(self, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        """Build the MongoDB update document for this delta

        Longest kill weapon is handled separately by the store since it
        depends on the stored distance.
        """
        inc: Dict[str, Any] = {}
        if self.kills:
            inc["kills"] = self.kills
            inc["current_streak"] = self.kills
            if self.weapon:
                inc[f"weapons.{weapon_key(self.weapon)}"] = self.kills
        if self.deaths:
            inc["deaths"] = self.deaths
        if self.suicides:
            inc["suicides"] = self.suicides

        update: Dict[str, Any] = {
            "$set": {"updated_at": timestamp or datetime.utcnow()},
            "$setOnInsert": {"created_at": timestamp or datetime.utcnow()},
        }
        if inc:
            update["$inc"] = inc
        if self.ends_streak:
            update["$set"]["current_streak"] = 0
        if self.kills and self.distance > 0:
            update["$max"] = {"longest_kill_distance": self.distance}
        return update


class PlayerStats:
    """Aggregated statistics for one player on one server"""

    collection_name = "players"

    def __init__(
        self,
        guild_id: int,
        server_id: str,
        player_name: str,
        kills: int = 0,
        deaths: int = 0,
        suicides: int = 0,
        weapons: Optional[Dict[str, int]] = None,
        longest_kill_distance: float = 0.0,
        longest_kill_weapon: Optional[str] = None,
        current_streak: int = 0,
        longest_streak: int = 0,
        updated_at: Optional[datetime] = None,
    ):
        self.guild_id = guild_id
        self.server_id = server_id
        self.player_name = player_name
        self.kills = kills
        self.deaths = deaths
        self.suicides = suicides
        self.weapons = dict(weapons or {})
        self.longest_kill_distance = longest_kill_distance
        self.longest_kill_weapon = longest_kill_weapon
        self.current_streak = current_streak
        self.longest_streak = longest_streak
        self.updated_at = updated_at

    @property
    def kd_ratio(self) -> float:
        """K/D ratio, with kills returned as-is when there are no deaths"""
        if self.deaths == 0:
            return float(self.kills)
        return float(self.kills) / float(self.deaths)

    @property
    def favorite_weapon(self) -> Optional[str]:
        if not self.weapons:
            return None
        return max(self.weapons.items(), key=lambda item: item[1])[0]

    def metric_value(self, metric: str) -> float:
        if metric == "kd":
            return self.kd_ratio
        return getattr(self, METRIC_FIELDS[metric])

    def apply(self, delta: PlayerDelta) -> None:
        """Apply a delta in memory, mirroring the stored update"""
        self.kills += delta.kills
        self.deaths += delta.deaths
        self.suicides += delta.suicides

        if delta.kills:
            self.current_streak += delta.kills
            self.longest_streak = max(self.longest_streak, self.current_streak)
            if delta.weapon:
                key = weapon_key(delta.weapon)
                self.weapons[key] = self.weapons.get(key, 0) + delta.kills
            if delta.distance > self.longest_kill_distance:
                self.longest_kill_distance = delta.distance
                self.longest_kill_weapon = delta.weapon

        if delta.ends_streak:
            self.current_streak = 0

    def __repr__(self) -> str:
        return (
            f"PlayerStats(name={self.player_name}, server={self.server_id}, "
            f"k={self.kills}, d={self.deaths}, s={self.suicides})"
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "server_id": self.server_id,
            "player_name": self.player_name,
            "kills": self.kills,
            "deaths": self.deaths,
            "suicides": self.suicides,
            "weapons": dict(self.weapons),
            "longest_kill_distance": self.longest_kill_distance,
            "longest_kill_weapon": self.longest_kill_weapon,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> Optional["PlayerStats"]:
        """Create player stats from a stored document

        Args:
            document: MongoDB document, can be None

        Returns:
            PlayerStats or None if the document is unusable
        """
        if document is None:
            return None

        player_name = document.get("player_name")
        if not player_name:
            logger.warning(f"Player document without a name: {document.get('_id')}")
            return None

        try:
            return cls(
                guild_id=int(document.get("guild_id", 0)),
                server_id=str(document.get("server_id", "")),
                player_name=str(player_name),
                kills=int(document.get("kills", 0) or 0),
                deaths=int(document.get("deaths", 0) or 0),
                suicides=int(document.get("suicides", 0) or 0),
                weapons=document.get("weapons") or {},
                longest_kill_distance=float(document.get("longest_kill_distance", 0.0) or 0.0),
                longest_kill_weapon=document.get("longest_kill_weapon"),
                current_streak=int(document.get("current_streak", 0) or 0),
                longest_streak=int(document.get("longest_streak", 0) or 0),
                updated_at=document.get("updated_at"),
            )
        except (ValueError, TypeError) as e:
            logger.error(f"Error creating PlayerStats from document: {e}")
            return None
