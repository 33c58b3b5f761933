"""
Parsed killfeed event model

One decoded kill, death or suicide record from an event-log line, together
with where it came from and which tenant it belongs to.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List

from models.player import PlayerDelta


class EventKind(str, Enum):
    KILL = "kill"
    DEATH = "death"
    SUICIDE = "suicide"


@dataclass(frozen=True)
class ParsedEvent:
    """Immutable record of a single event-log line"""
    guild_id: int
    server_id: str
    timestamp: datetime
    kind: EventKind
    actor: str
    target: str
    weapon: str
    distance: float
    source_file: str
    line_number: int

    @property
    def dedup_key(self) -> str:
        """Key identifying this line across re-parses of the same file"""
        return "|".join([
            self.source_file,
            str(self.line_number),
            self.timestamp.isoformat(),
            self.actor,
            self.target,
        ])

    def to_deltas(self) -> List[PlayerDelta]:
        """Convert the event into per-player stat changes

        A kill credits the actor with a kill (weapon, distance, streak) and
        the target with a death. A death line names only the player who died.
        A suicide counts against the actor and ends their streak.

        Returns:
            List of deltas, one per affected player
        """
        if self.kind is EventKind.KILL:
            deltas = [
                PlayerDelta(
                    player_name=self.actor,
                    kills=1,
                    weapon=self.weapon or None,
                    distance=self.distance,
                ),
            ]
            if self.target:
                deltas.append(PlayerDelta(player_name=self.target, deaths=1))
            return deltas

        if self.kind is EventKind.DEATH:
            return [PlayerDelta(player_name=self.actor, deaths=1)]

        return [PlayerDelta(player_name=self.actor, suicides=1)]
