"""
Incremental ingestion engine

Pulls new killfeed CSV lines and server-log lines for one server, applies the
resulting player deltas to the record store and advances the server's
watermark after every file.

Each engine instance handles one run at a time; the coordinator creates one
per run.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

from models.event import ParsedEvent
from models.server_profile import ServerProfile
from utils.event_parser import EventParser, ParseError, iter_lines
from utils.file_discovery import SERVER_LOG_NAME, event_file_key, join_path
from utils.log_parser import parse_log_lines, summarize_entries
from utils.sftp import ConnectionFailure, NoCredentials, RemoteFileStat

logger = logging.getLogger(__name__)


class IngestionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PARSING = "parsing"
    COMMITTING = "committing"


@dataclass
class IngestionResult:
    """Outcome and running counters of one ingestion run"""
    guild_id: int
    server_id: str
    files_processed: int = 0
    lines_processed: int = 0
    events_applied: int = 0
    duplicates_skipped: int = 0
    parse_errors: int = 0
    boundary_violations: int = 0
    kills: int = 0
    deaths: int = 0
    suicides: int = 0
    log_lines_processed: int = 0
    log_entries: Dict[str, int] = field(default_factory=dict)
    rotation_detected: bool = False
    restricted: bool = False
    message: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    elapsed_time: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def count_applied(self, event: ParsedEvent) -> None:
        self.events_applied += 1
        for delta in event.to_deltas():
            self.kills += delta.kills
            self.deaths += delta.deaths
            self.suicides += delta.suicides

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guild_id": self.guild_id,
            "server_id": self.server_id,
            "success": self.success,
            "files_processed": self.files_processed,
            "lines_processed": self.lines_processed,
            "events_applied": self.events_applied,
            "duplicates_skipped": self.duplicates_skipped,
            "parse_errors": self.parse_errors,
            "kills": self.kills,
            "deaths": self.deaths,
            "suicides": self.suicides,
            "log_lines_processed": self.log_lines_processed,
            "log_entries": dict(self.log_entries),
            "rotation_detected": self.rotation_detected,
            "restricted": self.restricted,
            "message": self.message,
            "errors": list(self.errors),
            "elapsed_time": round(self.elapsed_time, 3),
        }


def detect_rotation(profile: ServerProfile, stat: RemoteFileStat) -> bool:
    """Check whether the server log was replaced since the last scan

    The log has rotated when it is smaller than last time, or older than the
    last recorded rotation.
    """
    if stat.size < profile.last_log_size:
        return True
    if profile.last_rotation_timestamp and stat.mtime < profile.last_rotation_timestamp:
        return True
    return False


class IngestionEngine:
    """Moves one server's new log data into the record store

    Args:
        connector: SFTPConnector for remote access
        record_store: RecordStore receiving player deltas
        directory: TenantDirectory persisting watermarks
        parser: EventParser, created if not given
        backfill_days: On a server's first run, only files from this many
            recent days are read. Zero reads the whole history.
    """

    def __init__(self, connector, record_store, directory, parser: Optional[EventParser] = None, backfill_days: int = 0):
        self.connector = connector
        self.record_store = record_store
        self.directory = directory
        self.parser = parser or EventParser()
        self.backfill_days = backfill_days
        self.state = IngestionState.IDLE

    async def run(self, ctx) -> IngestionResult:
        """Ingest everything new for the context's server

        Args:
            ctx: Active isolation context

        Returns:
            IngestionResult with counters; failures are reported in ``errors``
        """
        result = IngestionResult(guild_id=ctx.guild_id, server_id=ctx.server_id)
        start_time = time.time()

        if ctx.is_restricted():
            logger.info(f"Skipping ingestion for {ctx.guild_id}/{ctx.server_id}: server is {ctx.mode.value}")
            result.restricted = True
            result.message = ctx.unavailability_reason()
            return result

        profile = ctx.profile
        if profile is None:
            result.errors.append(f"Server {ctx.server_id} not found in guild {ctx.guild_id}")
            return result

        try:
            async with self.connector.connect(ctx) as sftp:
                await self._ingest_event_files(ctx, profile, sftp, result)
                await self._ingest_server_log(ctx, profile, sftp, result)
        except NoCredentials:
            logger.info(f"No SFTP credentials for {ctx.guild_id}/{ctx.server_id}, nothing to ingest")
            result.message = ctx.unavailability_reason()
        except ConnectionFailure as e:
            logger.warning(f"Ingestion for {ctx.guild_id}/{ctx.server_id} could not connect: {e}")
            result.errors.append(str(e))
        except Exception as e:
            # Watermark stays at the last file whose progress was saved
            logger.error(f"Ingestion for {ctx.guild_id}/{ctx.server_id} stopped: {e}", exc_info=True)
            result.errors.append(f"Ingestion stopped: {e}")
        finally:
            self.state = IngestionState.IDLE
            result.elapsed_time = time.time() - start_time

        for error in ctx.remote_errors:
            result.errors.append(f"{error.operation} {error.path}: {error.message}")

        logger.info(
            f"Ingested {result.events_applied} events from {result.files_processed} files "
            f"for {ctx.guild_id}/{ctx.server_id} in {result.elapsed_time:.2f}s"
        )
        return result

    async def select_files(self, ctx, profile: ServerProfile, files: List[str], client=None) -> List[str]:
        """Files that are new or changed since the watermark, in name order"""
        watermark = profile.last_processed_file
        if not watermark:
            return list(files)

        selected = [path for path in files if event_file_key(path) > event_file_key(watermark)]
        if watermark in files:
            stat = await self.connector.stat_file(ctx, join_path(profile.deathlogs_directory, watermark), client=client)
            if stat is not None and stat.mtime > profile.last_processed_timestamp:
                selected.insert(0, watermark)
        return selected

    async def _ingest_event_files(self, ctx, profile: ServerProfile, sftp, result: IngestionResult) -> None:
        self.state = IngestionState.SCANNING
        if not profile.last_processed_file and self.backfill_days > 0:
            files = await self.connector.find_recent_event_files(ctx, -self.backfill_days, client=sftp)
        else:
            files = await self.connector.find_event_files(ctx, client=sftp)
        pending = await self.select_files(ctx, profile, files, client=sftp)
        logger.debug(f"{len(pending)} of {len(files)} event files need processing for {ctx.guild_id}/{ctx.server_id}")

        for relative in pending:
            failures = len(ctx.remote_errors)
            await self._ingest_event_file(ctx, profile, sftp, relative, result)
            if len(ctx.remote_errors) > failures:
                # Later files would move the watermark past the unread one
                logger.warning(f"Stopping at {relative} for {ctx.guild_id}/{ctx.server_id}, it could not be read")
                break

    async def _ingest_event_file(self, ctx, profile: ServerProfile, sftp, relative: str, result: IngestionResult) -> None:
        path = join_path(profile.deathlogs_directory, relative)
        stat = await self.connector.stat_file(ctx, path, client=sftp)

        self.state = IngestionState.PARSING
        content = await self.connector.read_file(ctx, path, client=sftp)
        if not content:
            return

        start_line = profile.last_processed_line if relative == profile.last_processed_file else 0
        if start_line and len(content.splitlines()) < start_line:
            logger.info(f"{relative} is shorter than its watermark, reprocessing from the start")
            result.rotation_detected = True
            start_line = 0

        last_line = start_line
        for line_number, text in iter_lines(content, start_line):
            if line_number == 1 and self.parser.is_header(text):
                last_line = line_number
                continue

            result.lines_processed += 1
            try:
                event = self.parser.parse_line(text, ctx.guild_id, ctx.server_id, relative, line_number)
            except ParseError as e:
                result.parse_errors += 1
                logger.debug(f"Skipping line {line_number} of {relative}: {e}")
                last_line = line_number
                continue

            if not ctx.verify_entity(event):
                result.boundary_violations += 1
                logger.error(f"Event from {relative}:{line_number} is outside {ctx.guild_id}/{ctx.server_id}")
                last_line = line_number
                continue

            self.state = IngestionState.COMMITTING
            applied = await self.record_store.upsert_player_stats(
                ctx.guild_id, ctx.server_id, event.to_deltas(), event_key=event.dedup_key,
            )
            if applied:
                result.count_applied(event)
            else:
                result.duplicates_skipped += 1
            last_line = line_number
            self.state = IngestionState.PARSING

        mtime = stat.mtime if stat is not None else profile.last_processed_timestamp
        profile.advance_watermark(relative, last_line, mtime)
        await self.directory.save_progress(profile)
        result.files_processed += 1

    async def _ingest_server_log(self, ctx, profile: ServerProfile, sftp, result: IngestionResult) -> None:
        self.state = IngestionState.SCANNING
        path = join_path(profile.log_directory, SERVER_LOG_NAME)
        stat = await self.connector.stat_file(ctx, path, client=sftp)
        if stat is None:
            logger.debug(f"No server log at {path} for {ctx.guild_id}/{ctx.server_id}")
            return

        start_line = profile.last_log_line
        rotated = detect_rotation(profile, stat)
        if not rotated and stat.size == profile.last_log_size and stat.mtime <= profile.last_log_mtime:
            return

        self.state = IngestionState.PARSING
        content = await self.connector.read_file(ctx, path, client=sftp)
        if not content and stat.size > 0:
            # Read failed, already recorded by the connector
            return
        lines = content.splitlines()
        if len(lines) < start_line:
            rotated = True

        if rotated:
            logger.info(f"Server log rotated for {ctx.guild_id}/{ctx.server_id}, restarting at line 0")
            result.rotation_detected = True
            start_line = 0
            profile.last_rotation_timestamp = stat.mtime

        new_lines = lines[start_line:]
        entries = parse_log_lines(new_lines, first_line_number=start_line + 1)
        result.log_lines_processed += len(new_lines)
        for entry_type, count in summarize_entries(entries).items():
            result.log_entries[entry_type] = result.log_entries.get(entry_type, 0) + count

        self.state = IngestionState.COMMITTING
        profile.record_log_progress(len(lines), stat.size, stat.mtime)
        await self.directory.save_progress(profile)
