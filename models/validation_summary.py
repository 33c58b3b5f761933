"""
Validation summary model

Transient report produced after an ingestion run.
"""
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional


@dataclass
class ReconciliationMismatch:
    """A derived total that does not match what the run applied"""
    field_name: str
    expected: int
    actual: int

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field_name, "expected": self.expected, "actual": self.actual}


@dataclass
class ValidationSummary:
    guild_id: int
    server_id: str
    files_processed: int = 0
    lines_processed: int = 0
    error_count: int = 0
    parse_errors: int = 0
    top_kills_count: int = 0
    top_deaths_count: int = 0
    top_kd_count: int = 0
    total_players: int = 0
    total_kills: int = 0
    total_deaths: int = 0
    total_suicides: int = 0
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    elapsed_time: float = 0.0
    successful: bool = True
    error_message: Optional[str] = None
    restricted: bool = False

    @property
    def reconciled(self) -> bool:
        return not self.mismatches

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form for logs and API responses"""
        return {
            "guild_id": self.guild_id,
            "server_id": self.server_id,
            "files_processed": self.files_processed,
            "lines_processed": self.lines_processed,
            "error_count": self.error_count,
            "parse_errors": self.parse_errors,
            "leaderboards": {
                "kills": self.top_kills_count,
                "deaths": self.top_deaths_count,
                "kd": self.top_kd_count,
            },
            "totals": {
                "players": self.total_players,
                "kills": self.total_kills,
                "deaths": self.total_deaths,
                "suicides": self.total_suicides,
            },
            "mismatches": [mismatch.to_dict() for mismatch in self.mismatches],
            "elapsed_time": round(self.elapsed_time, 3),
            "successful": self.successful,
            "error_message": self.error_message,
            "restricted": self.restricted,
        }
