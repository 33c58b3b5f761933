"""
Event log parser

Parses killfeed CSV lines into ParsedEvent records. Two layouts are
understood:

    <timestamp>,<kill|death|suicide>,<actor>,<target>,<weapon>,<distance>

and the semicolon layout written by the game server itself:

    <timestamp>;<killer>;<killer_id>;<victim>;<victim_id>;<weapon>;<distance>[;<platform>]

Bad lines raise ParseError, which callers count and skip.
"""
import csv
import logging
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from models.event import EventKind, ParsedEvent

logger = logging.getLogger(__name__)

HEADER_MARKERS = ("time", "date", "timestamp")


class EventParseError(Exception):
    """Base exception for event parsing errors"""
    pass


class ParseError(EventParseError):
    """A single line could not be parsed"""

    def __init__(self, message: str, line_number: int = 0, line: str = ""):
        super().__init__(message)
        self.line_number = line_number
        self.line = line


def iter_lines(content: str, after_line: int = 0) -> Iterator[Tuple[int, str]]:
    """Yield (line_number, text) for non-blank lines after a given line

    Line numbers are 1-based and count blank lines, so they stay stable
    between reads of the same file.
    """
    for line_number, raw in enumerate(content.splitlines(), start=1):
        if line_number <= after_line:
            continue
        text = raw.strip()
        if text:
            yield line_number, text


def parse_distance(value: str) -> float:
    """Parse a distance such as ``137.5``, ``137,5`` or ``137.5m``"""
    dist_str = value.strip().lower()
    if dist_str.endswith("m"):
        dist_str = dist_str[:-1].strip()
    # Handle comma instead of period for decimal separator
    if "," in dist_str and "." not in dist_str:
        dist_str = dist_str.replace(",", ".")
    clean_dist = "".join(c for c in dist_str if c.isdigit() or c == ".")
    if not clean_dist:
        return 0.0
    try:
        return float(clean_dist)
    except ValueError:
        logger.warning(f"Could not parse distance value: {value}")
        return 0.0


class EventParser:
    """Parser for killfeed event lines"""

    def __init__(self):
        # Known timestamp formats to try when parsing
        self.timestamp_formats = [
            '%Y.%m.%d-%H.%M.%S',
            '%Y.%m.%d-%H.%M.%S:%f',
            '%Y.%m.%d-%H:%M:%S',
            '%Y.%m.%d %H.%M.%S',
            '%Y.%m.%d %H:%M:%S',
            '%Y-%m-%d %H:%M:%S',
            '%Y-%m-%d %H.%M.%S',
            '%m/%d/%Y %H:%M:%S',
            '%d/%m/%Y %H:%M:%S',
        ]

    def parse_timestamp(self, timestamp_str: str) -> Optional[datetime]:
        """Parse a timestamp in any supported format

        Args:
            timestamp_str: The timestamp string to parse

        Returns:
            Parsed datetime or None if no format matches
        """
        timestamp_str = timestamp_str.strip()
        if not timestamp_str:
            return None

        for fmt in self.timestamp_formats:
            try:
                return datetime.strptime(timestamp_str, fmt)
            except ValueError:
                continue

        try:
            parsed = datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
        except ValueError:
            return None
        # Stored timestamps are naive UTC
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    def parse_line(
        self,
        line: str,
        guild_id: int,
        server_id: str,
        source_file: str,
        line_number: int,
    ) -> ParsedEvent:
        """Parse one event line

        Args:
            line: Raw line text
            guild_id: Guild the line belongs to
            server_id: Server the line belongs to
            source_file: Path of the file the line came from
            line_number: 1-based line number within the file

        Returns:
            The parsed event

        Raises:
            ParseError: If the line is malformed
        """
        if ";" in line:
            fields = self._split(line, ";", line_number)
            timestamp, kind, actor, target, weapon, distance = self._from_server_layout(fields, line, line_number)
        else:
            fields = self._split(line, ",", line_number)
            timestamp, kind, actor, target, weapon, distance = self._from_event_layout(fields, line, line_number)

        parsed_timestamp = self.parse_timestamp(timestamp)
        if parsed_timestamp is None:
            raise ParseError(f"Unrecognised timestamp '{timestamp}'", line_number, line)

        if not actor:
            raise ParseError("Missing player name", line_number, line)

        # A kill where both sides are the same player is a suicide
        if kind is EventKind.KILL and actor == target:
            kind = EventKind.SUICIDE

        return ParsedEvent(
            guild_id=guild_id,
            server_id=server_id,
            timestamp=parsed_timestamp,
            kind=kind,
            actor=actor,
            target=target,
            weapon=weapon,
            distance=parse_distance(distance),
            source_file=source_file,
            line_number=line_number,
        )

    @staticmethod
    def is_header(line: str) -> bool:
        first = line.split(";", 1)[0].split(",", 1)[0].strip().lower()
        return any(marker in first for marker in HEADER_MARKERS)

    @staticmethod
    def _split(line: str, delimiter: str, line_number: int) -> List[str]:
        try:
            row = next(csv.reader([line], delimiter=delimiter))
        except (csv.Error, StopIteration) as e:
            raise ParseError(f"Unreadable row: {e}", line_number, line)
        return [field.strip() for field in row]

    @staticmethod
    def _from_event_layout(fields: List[str], line: str, line_number: int):
        # An unquoted comma decimal leaves the distance split across two fields
        if len(fields) == 7 and fields[5].isdigit() and fields[6].rstrip("mM").isdigit():
            fields = fields[:5] + [f"{fields[5]},{fields[6]}"]

        if len(fields) < 3:
            raise ParseError(f"Expected at least 3 fields, got {len(fields)}", line_number, line)

        kind_str = fields[1].lower()
        try:
            kind = EventKind(kind_str)
        except ValueError:
            raise ParseError(f"Unknown event kind '{fields[1]}'", line_number, line)

        fields = fields + [""] * (6 - len(fields))
        return fields[0], kind, fields[2], fields[3], fields[4], fields[5]

    @staticmethod
    def _from_server_layout(fields: List[str], line: str, line_number: int):
        if len(fields) < 7:
            raise ParseError(f"Expected at least 7 fields, got {len(fields)}", line_number, line)

        killer_name, killer_id = fields[1], fields[2]
        victim_name, victim_id = fields[3], fields[4]

        kind = EventKind.KILL
        if killer_id and killer_id == victim_id:
            kind = EventKind.SUICIDE
        return fields[0], kind, killer_name, victim_name, fields[5], fields[6]
