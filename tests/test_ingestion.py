"""
Tests for the incremental ingestion engine.
"""
import asyncio
from datetime import date, timedelta

import pytest
from pymongo.errors import PyMongoError

from models.server_profile import IsolationMode
from utils.ingestion import IngestionEngine, IngestionState, detect_rotation
from utils.isolation import MISSING_CONFIG_MESSAGE, IsolationManager
from utils.leaderboard import LeaderboardService
from utils.sftp import RemoteFileStat
from tests.conftest import GUILD_ID, SERVER_ID, FakeRecordStore, FakeTenantDirectory, build_profile

EVENT_FILE = "deathlogs/2025.05.01-12.00.00.csv"

FIVE_LINES = "\n".join([
    "2025.05.01-12.00.00,kill,Player1,Player2,AK-47,137.5",
    "2025.05.01-12.05.00,kill,Player3,Player4,MP5,42.8",
    "2025.05.01-12.10.00,kill,Player2,Player3,M4A1,88.2",
    "2025.05.01-12.15.00,kill,Player1,Player4,SVD,242.1",
    "2025.05.01-12.20.00,kill,Player4,Player1,Knife,5.3",
]) + "\n"

NEXT_FILE = "deathlogs/2025.05.02-00.00.00.csv"
NEXT_LINES = "2025.05.02-00.10.00,kill,Player3,Player2,SVD,300\n2025.05.02-00.20.00,kill,Player2,Player3,MP5,20\n"

SERVER_LOG = "\n".join([
    "[2025.05.01-12.00.00:123][  1]LogWorld: Bringing World /Game/Maps/world_1/World_1.World_1 up for play (max tick rate 30) at 2025.05.01-12.00.00",
    "[2025.05.01-12.01.00:000][  2]LogOnline: Warning: Player |0002abcdef successfully registered!",
    "[2025.05.01-12.02.00:000][  3]LogSFPS: Mission GA_Airport_Mis_01 switched to READY",
]) + "\n"


async def run_engine(directory, connector, store):
    ctx = await IsolationManager(directory).enter(GUILD_ID, SERVER_ID)
    engine = IngestionEngine(connector, store, directory)
    try:
        result = await engine.run(ctx)
        assert engine.state is IngestionState.IDLE
        return result
    finally:
        ctx.exit()


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_five_line_scenario(self, directory, connector, store, remote_fs):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)

        result = await run_engine(directory, connector, store)

        assert result.success
        assert result.files_processed == 1
        assert result.events_applied == 5
        assert (result.kills, result.deaths, result.suicides) == (5, 5, 0)

        kills = {name: store.get(name).kills for name in ("Player1", "Player2", "Player3", "Player4")}
        deaths = {name: store.get(name).deaths for name in ("Player1", "Player2", "Player3", "Player4")}
        assert kills == {"Player1": 2, "Player2": 1, "Player3": 1, "Player4": 1}
        # Player4 is the victim of two of the five kills
        assert deaths == {"Player1": 1, "Player2": 1, "Player3": 1, "Player4": 2}

        async with IsolationManager(directory).scope(GUILD_ID, SERVER_ID) as ctx:
            board = await LeaderboardService(store).board(ctx, "distance")
        top = board.entries[0]
        assert (top.player_name, top.value, top.weapon) == ("Player1", 242.1, "SVD")

    @pytest.mark.asyncio
    async def test_watermark_is_saved(self, directory, connector, store, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        await run_engine(directory, connector, store)

        assert profile.last_processed_file == "2025.05.01-12.00.00.csv"
        assert profile.last_processed_line == 5
        assert profile.last_processed_timestamp == 2000.0
        assert directory.saved[-1]["last_processed_line"] == 5


class TestIncremental:
    @pytest.mark.asyncio
    async def test_unchanged_file_is_skipped(self, directory, connector, store, remote_fs):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        await run_engine(directory, connector, store)
        second = await run_engine(directory, connector, store)
        assert second.files_processed == 0
        assert store.get("Player1").kills == 2

    @pytest.mark.asyncio
    async def test_reparsing_does_not_double_count(self, directory, connector, store, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        await run_engine(directory, connector, store)

        profile.advance_watermark("", 0, 0.0)
        again = await run_engine(directory, connector, store)

        assert again.duplicates_skipped == 5
        assert again.events_applied == 0
        assert store.get("Player1").kills == 2
        assert store.get("Player4").deaths == 2

    @pytest.mark.asyncio
    async def test_appended_lines_resume_after_watermark(self, directory, connector, store, remote_fs):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        await run_engine(directory, connector, store)

        appended = FIVE_LINES + "2025.05.01-12.25.00,kill,Player2,Player1,AK-47,12\n"
        appended += "2025.05.01-12.30.00,suicide,Player3,,,\n"
        remote_fs.put(EVENT_FILE, appended, mtime=2100.0)
        result = await run_engine(directory, connector, store)

        assert result.events_applied == 2
        assert result.duplicates_skipped == 0
        assert store.get("Player2").kills == 2
        assert store.get("Player3").suicides == 1

        lines = [saved["last_processed_line"] for saved in directory.saved]
        assert lines == sorted(lines)
        assert lines[-1] == 7

    @pytest.mark.asyncio
    async def test_newer_files_are_processed_in_order(self, directory, connector, store, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        await run_engine(directory, connector, store)

        remote_fs.put("deathlogs/2025.05.02-00.00.00.csv", "2025.05.02-00.10.00,kill,Player3,Player2,SVD,300\n", mtime=3000.0)
        remote_fs.put("deathlogs/2025.04.30-00.00.00.csv", "2025.04.30-00.10.00,kill,Player9,Player2,SVD,300\n", mtime=3000.0)
        result = await run_engine(directory, connector, store)

        assert result.files_processed == 1
        assert store.get("Player9") is None
        assert profile.last_processed_file == "2025.05.02-00.00.00.csv"
        assert profile.last_processed_line == 1

    @pytest.mark.asyncio
    async def test_parse_errors_are_counted_and_skipped(self, directory, connector, store, remote_fs, profile):
        content = "Timestamp,Kind,Actor,Target,Weapon,Distance\n" + FIVE_LINES + "garbage line\n"
        remote_fs.put(EVENT_FILE, content, mtime=2000.0)
        result = await run_engine(directory, connector, store)

        assert result.parse_errors == 1
        assert result.events_applied == 5
        assert profile.last_processed_line == 7

    @pytest.mark.asyncio
    async def test_truncated_event_file_restarts(self, directory, connector, store, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        await run_engine(directory, connector, store)

        remote_fs.put(EVENT_FILE, "2025.05.01-13.00.00,kill,Player5,Player6,AK-47,10\n", mtime=2500.0)
        result = await run_engine(directory, connector, store)

        assert result.rotation_detected is True
        assert result.events_applied == 1
        assert profile.last_processed_line == 1


class TestServerLog:
    @pytest.mark.asyncio
    async def test_new_lines_are_parsed(self, directory, connector, store, remote_fs, profile):
        remote_fs.put("Logs/Deadside.log", SERVER_LOG, mtime=100.0)
        result = await run_engine(directory, connector, store)

        assert result.log_lines_processed == 3
        assert result.log_entries == {"server_start": 1, "player_joined": 1, "mission_ready": 1}
        assert profile.last_log_line == 3
        assert profile.last_log_size == len(SERVER_LOG)

    @pytest.mark.asyncio
    async def test_shrinking_log_resets_to_line_zero(self, directory, connector, store, remote_fs, profile):
        remote_fs.put("Logs/Deadside.log", SERVER_LOG, mtime=100.0)
        await run_engine(directory, connector, store)

        fresh = "[2025.05.02-00.00.00:000][  1]LogOnline: Warning: Player |00ff successfully registered!\n"
        remote_fs.put("Logs/Deadside.log", fresh, mtime=200.0)
        result = await run_engine(directory, connector, store)

        assert result.rotation_detected is True
        assert result.log_lines_processed == 1
        assert result.log_entries == {"player_joined": 1}
        assert profile.last_log_line == 1
        assert profile.last_rotation_timestamp == 200.0

    def test_detect_rotation(self):
        profile = build_profile(last_log_size=500, last_rotation_timestamp=1000.0)
        assert detect_rotation(profile, RemoteFileStat("Logs/Deadside.log", 400, 1500.0)) is True
        assert detect_rotation(profile, RemoteFileStat("Logs/Deadside.log", 600, 900.0)) is True
        assert detect_rotation(profile, RemoteFileStat("Logs/Deadside.log", 600, 1500.0)) is False


class TestRestrictedAndUnconfigured:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [IsolationMode.READ_ONLY, IsolationMode.DISABLED, IsolationMode.SENTINEL])
    async def test_restricted_returns_empty_result(self, connector, fake_connect, store, remote_fs, mode):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        directory = FakeTenantDirectory([build_profile(isolation_mode=mode)])

        result = await run_engine(directory, connector, store)

        assert result.restricted is True
        assert result.success is True
        assert result.events_applied == 0
        assert fake_connect.attempts == []
        assert store.upsert_calls == 0
        assert directory.saved == []

    @pytest.mark.asyncio
    async def test_missing_credentials_is_empty_but_valid(self, connector, store):
        directory = FakeTenantDirectory([build_profile(host="", username="")])
        result = await run_engine(directory, connector, store)
        assert result.success is True
        assert result.message == MISSING_CONFIG_MESSAGE
        assert result.files_processed == 0

    @pytest.mark.asyncio
    async def test_unknown_server_is_an_error(self, connector, store):
        result = await run_engine(FakeTenantDirectory(), connector, store)
        assert result.success is False


class TestBackfillWindow:
    @pytest.mark.asyncio
    async def test_first_run_reads_only_recent_files(self, directory, connector, store, remote_fs):
        today = date.today()
        recent = (today - timedelta(days=1)).strftime("%Y.%m.%d")
        old = (today - timedelta(days=30)).strftime("%Y.%m.%d")
        remote_fs.put(f"deathlogs/{old}-00.00.00.csv", f"{old}-00.10.00,kill,Old,Victim,AK-47,10\n")
        remote_fs.put(f"deathlogs/{recent}-00.00.00.csv", f"{recent}-00.10.00,kill,New,Victim,AK-47,10\n")

        ctx = await IsolationManager(directory).enter(GUILD_ID, SERVER_ID)
        try:
            result = await IngestionEngine(connector, store, directory, backfill_days=7).run(ctx)
        finally:
            ctx.exit()

        assert result.files_processed == 1
        assert store.get("Old") is None
        assert store.get("New").kills == 1


class FailingRecordStore(FakeRecordStore):
    """Raises for events read from one file"""

    def __init__(self, failing_file):
        super().__init__()
        self.failing_file = failing_file

    async def upsert_player_stats(self, guild_id, server_id, deltas, event_key=None):
        if event_key is not None and event_key.startswith(self.failing_file):
            raise PyMongoError("mongo down")
        return await super().upsert_player_stats(guild_id, server_id, deltas, event_key=event_key)


class BlockingRecordStore(FakeRecordStore):
    """Holds writes for one file until released"""

    def __init__(self, blocking_file):
        super().__init__()
        self.blocking_file = blocking_file
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def upsert_player_stats(self, guild_id, server_id, deltas, event_key=None):
        if event_key is not None and event_key.startswith(self.blocking_file) and not self.release.is_set():
            self.started.set()
            await self.release.wait()
        return await super().upsert_player_stats(guild_id, server_id, deltas, event_key=event_key)


class TestFailures:
    @pytest.mark.asyncio
    async def test_header_text_after_first_line_is_a_parse_error(self, directory, connector, store, remote_fs, profile):
        lines = FIVE_LINES.splitlines()
        content = "\n".join(lines[:2] + ["Timestamp,Kind,Actor,Target,Weapon,Distance"] + lines[2:]) + "\n"
        remote_fs.put(EVENT_FILE, content, mtime=2000.0)

        result = await run_engine(directory, connector, store)

        assert result.parse_errors == 1
        assert result.events_applied == 5
        assert profile.last_processed_line == 6

    @pytest.mark.asyncio
    async def test_store_failure_keeps_last_saved_watermark(self, directory, connector, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        remote_fs.put(NEXT_FILE, NEXT_LINES, mtime=3000.0)
        store = FailingRecordStore("2025.05.02-00.00.00.csv")

        result = await run_engine(directory, connector, store)

        assert result.success is False
        assert "Ingestion stopped: mongo down" in result.errors
        assert result.files_processed == 1
        assert profile.last_processed_file == "2025.05.01-12.00.00.csv"
        assert profile.last_processed_line == 5

    @pytest.mark.asyncio
    async def test_directory_failure_is_reported(self, directory, connector, store, remote_fs):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)

        async def unavailable(profile):
            raise PyMongoError("directory down")

        directory.save_progress = unavailable
        result = await run_engine(directory, connector, store)

        assert result.success is False
        assert result.errors == ["Ingestion stopped: directory down"]

    @pytest.mark.asyncio
    async def test_unreadable_file_is_reported_and_retried(self, directory, connector, store, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        remote_fs.put(NEXT_FILE, NEXT_LINES, mtime=3000.0)
        remote_fs.unreadable.add(EVENT_FILE)

        result = await run_engine(directory, connector, store)

        assert result.success is False
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"read {EVENT_FILE}: ")
        assert result.files_processed == 0
        assert profile.last_processed_file == ""
        assert store.upsert_calls == 0

        remote_fs.unreadable.clear()
        retry = await run_engine(directory, connector, store)

        assert retry.success is True
        assert retry.files_processed == 2
        assert store.get("Player1").kills == 2
        assert store.get("Player3").kills == 2

    @pytest.mark.asyncio
    async def test_cancelled_run_resumes_after_last_complete_file(self, directory, connector, remote_fs, profile):
        remote_fs.put(EVENT_FILE, FIVE_LINES, mtime=2000.0)
        remote_fs.put(NEXT_FILE, NEXT_LINES, mtime=3000.0)
        store = BlockingRecordStore("2025.05.02-00.00.00.csv")

        ctx = await IsolationManager(directory).enter(GUILD_ID, SERVER_ID)
        engine = IngestionEngine(connector, store, directory)
        task = asyncio.create_task(engine.run(ctx))
        await store.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        ctx.exit()

        assert engine.state is IngestionState.IDLE
        assert profile.last_processed_file == "2025.05.01-12.00.00.csv"
        assert profile.last_processed_line == 5
        assert store.get("Player1").kills == 2

        store.release.set()
        result = await run_engine(directory, connector, store)

        assert result.success is True
        assert result.files_processed == 1
        assert result.events_applied == 2
        assert store.get("Player1").kills == 2
        assert store.get("Player3").kills == 2
        assert store.get("Player2").deaths == 2
        assert profile.last_processed_file == "2025.05.02-00.00.00.csv"
        assert profile.last_processed_line == 2
