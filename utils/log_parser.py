"""
Server log parser

Extracts player connection, mission and server start records from the
rotating ``Deadside.log`` file.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_PATTERN = re.compile(r'\[(\d{4}\.\d{2}\.\d{2}-\d{2}\.\d{2}\.\d{2}:\d{3})\]')

LOG_PATTERNS = {
    'player_joined': re.compile(r'LogOnline: Warning: Player \|([a-f0-9]+) successfully registered!', re.IGNORECASE),
    'player_left': re.compile(r'UChannel::Close: Sending CloseBunch.*UniqueId: EOS:\|([a-f0-9]+)', re.IGNORECASE),
    'queue_join': re.compile(r'LogNet: Join request: /Game/Maps/world_\d+/World_\d+\?.*Name=([^&\?]+).*eosid=\|([a-f0-9]+)', re.IGNORECASE),
    'mission_ready': re.compile(r'LogSFPS: Mission (GA_[A-Za-z0-9_]*_[Mm]is[_0-9]*) switched to READY', re.IGNORECASE),
    'mission_waiting': re.compile(r'LogSFPS: Mission (GA_[A-Za-z0-9_]*_[Mm]is[_0-9]*) switched to WAITING', re.IGNORECASE),
    'server_start': re.compile(r'LogWorld: Bringing World.*up for play', re.IGNORECASE),
}


@dataclass(frozen=True)
class LogEntry:
    """One recognised server-log line"""
    entry_type: str
    timestamp: Optional[datetime]
    subject: str
    line_number: int
    player_name: Optional[str] = None


def parse_log_timestamp(line: str) -> Optional[datetime]:
    match = TIMESTAMP_PATTERN.search(line)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y.%m.%d-%H.%M.%S:%f")
    except ValueError:
        return None


def parse_log_line(line: str, line_number: int = 0) -> Optional[LogEntry]:
    """Match a server-log line against the known patterns

    Args:
        line: Raw log line
        line_number: 1-based line number within the log

    Returns:
        LogEntry or None if the line is not interesting
    """
    for entry_type, pattern in LOG_PATTERNS.items():
        match = pattern.search(line)
        if not match:
            continue

        timestamp = parse_log_timestamp(line)
        if entry_type == 'queue_join':
            return LogEntry(entry_type, timestamp, match.group(2), line_number, player_name=match.group(1))
        if entry_type == 'server_start':
            return LogEntry(entry_type, timestamp, "world", line_number)
        return LogEntry(entry_type, timestamp, match.group(1), line_number)

    return None


def parse_log_lines(lines: Iterable[str], first_line_number: int = 1) -> List[LogEntry]:
    entries = []
    for offset, line in enumerate(lines):
        entry = parse_log_line(line, first_line_number + offset)
        if entry is not None:
            entries.append(entry)
    return entries


def summarize_entries(entries: Iterable[LogEntry]) -> Dict[str, int]:
    """Count entries by type"""
    counts: Dict[str, int] = {}
    for entry in entries:
        counts[entry.entry_type] = counts.get(entry.entry_type, 0) + 1
    return counts
