"""
Shared fixtures and in-memory stand-ins for MongoDB and the SFTP host.
"""
import posixpath
from types import SimpleNamespace
from typing import Dict, List, Optional

import asyncssh
from asyncssh.constants import FILEXFER_TYPE_DIRECTORY, FILEXFER_TYPE_REGULAR
import pytest

from models.player import METRIC_FIELDS, PlayerStats
from models.server_profile import IsolationMode, ServerProfile
from utils.file_discovery import normalize_path
from utils.isolation import IsolationManager
from utils.record_store import RecordStore, empty_totals
from utils.sftp import SFTPConnector
from utils.tenant_directory import TenantDirectory

GUILD_ID = 1001
SERVER_ID = "srv-1"


class FakeRemoteFile:
    def __init__(self, fs: "FakeFileSystem", path: str, mode: str):
        self.fs = fs
        self.path = path
        self.mode = mode

    async def __aenter__(self):
        if "r" in self.mode and self.path not in self.fs.files:
            raise asyncssh.SFTPNoSuchFile(f"No such file: {self.path}")
        return self

    async def __aexit__(self, *exc):
        return False

    async def read(self):
        if self.path in self.fs.unreadable:
            raise asyncssh.SFTPPermissionDenied(f"Permission denied: {self.path}")
        return self.fs.files[self.path][0]

    async def write(self, data):
        self.fs.put(self.path, data)


class FakeFileSystem:
    """Remote file tree keyed by normalized POSIX path"""

    def __init__(self):
        self.files: Dict[str, tuple] = {}
        self.dirs = {"."}
        self.unreadable = set()

    def put(self, path: str, content, mtime: float = 1000.0) -> None:
        path = normalize_path(path)
        data = content.encode("utf-8") if isinstance(content, str) else content
        self.files[path] = (data, mtime)
        self.mkdirs(posixpath.dirname(path))

    def mkdirs(self, path: str) -> None:
        while path and path not in (".", "/"):
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def children(self, directory: str):
        for path in sorted(self.dirs):
            if path != directory and posixpath.dirname(path) == directory:
                yield posixpath.basename(path), True, 0, 0
        for path, (data, mtime) in sorted(self.files.items()):
            if posixpath.dirname(path) == directory:
                yield posixpath.basename(path), False, len(data), mtime


class FakeSFTPClient:
    def __init__(self, fs: FakeFileSystem):
        self.fs = fs
        self.closed = False

    async def exists(self, path):
        path = normalize_path(path)
        return path in self.fs.files or path in self.fs.dirs

    async def makedirs(self, path, exist_ok=False):
        self.fs.mkdirs(normalize_path(path))

    async def readdir(self, path):
        path = normalize_path(path)
        if path not in self.fs.dirs:
            raise asyncssh.SFTPNoSuchFile(f"No such directory: {path}")
        entries = []
        for name, is_dir, size, mtime in self.fs.children(path):
            file_type = FILEXFER_TYPE_DIRECTORY if is_dir else FILEXFER_TYPE_REGULAR
            entries.append(SimpleNamespace(filename=name, attrs=SimpleNamespace(type=file_type, size=size, mtime=mtime)))
        return entries

    def open(self, path, mode="r"):
        return FakeRemoteFile(self.fs, normalize_path(path), mode)

    async def stat(self, path):
        path = normalize_path(path)
        if path not in self.fs.files:
            raise asyncssh.SFTPNoSuchFile(f"No such file: {path}")
        data, mtime = self.fs.files[path]
        return SimpleNamespace(size=len(data), mtime=mtime)

    async def realpath(self, path):
        return "/" + normalize_path(path).lstrip(".")

    def exit(self):
        self.closed = True


class FakeConnection:
    def __init__(self, fs: FakeFileSystem):
        self.client = FakeSFTPClient(fs)
        self.closed = False

    async def start_sftp_client(self):
        return self.client

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None


class FakeConnect:
    """Stands in for asyncssh.connect"""

    def __init__(self, fs: FakeFileSystem, failing_hosts: Optional[set] = None):
        self.fs = fs
        self.failing_hosts = set(failing_hosts or ())
        self.attempts: List[dict] = []
        self.connections: List[FakeConnection] = []

    async def __call__(self, host, port=22, username=None, password=None, known_hosts=None):
        self.attempts.append({"host": host, "port": port, "username": username, "password": password})
        if host in self.failing_hosts:
            raise OSError(f"Connection refused by {host}")
        connection = FakeConnection(self.fs)
        self.connections.append(connection)
        return connection


class FakeRecordStore(RecordStore):
    def __init__(self):
        self.players: Dict[tuple, PlayerStats] = {}
        self.applied_keys = set()
        self.upsert_calls = 0

    async def upsert_player_stats(self, guild_id, server_id, deltas, event_key=None):
        self.upsert_calls += 1
        if event_key is not None:
            if (guild_id, server_id, event_key) in self.applied_keys:
                return False
            self.applied_keys.add((guild_id, server_id, event_key))
        for delta in deltas:
            key = (guild_id, server_id, delta.player_name)
            if key not in self.players:
                self.players[key] = PlayerStats(guild_id, server_id, delta.player_name)
            self.players[key].apply(delta)
        return True

    def _scoped(self, guild_id, server_id):
        return [p for (g, s, _), p in self.players.items() if g == guild_id and s == server_id]

    async def query_top_by_metric(self, guild_id, server_id, metric, limit):
        if metric not in METRIC_FIELDS:
            raise ValueError(f"Unknown leaderboard metric: {metric}")
        gate = "kills" if metric == "kd" else metric
        players = [p for p in self._scoped(guild_id, server_id) if p.metric_value(gate) > 0]
        players.sort(key=lambda p: (-p.metric_value(metric), p.player_name))
        return players[:limit]

    async def count_players(self, guild_id, server_id):
        return len(self._scoped(guild_id, server_id))

    async def aggregate_totals(self, guild_id, server_id):
        totals = empty_totals()
        for player in self._scoped(guild_id, server_id):
            totals["players"] += 1
            totals["kills"] += player.kills
            totals["deaths"] += player.deaths
            totals["suicides"] += player.suicides
        return totals

    def get(self, name, guild_id=GUILD_ID, server_id=SERVER_ID) -> Optional[PlayerStats]:
        return self.players.get((guild_id, server_id, name))


class FakeTenantDirectory(TenantDirectory):
    def __init__(self, profiles=()):
        self.profiles = {(p.guild_id, p.server_id): p for p in profiles}
        self.saved: List[dict] = []
        self.fail_lookups = False

    async def get_profile(self, guild_id, server_id):
        if self.fail_lookups:
            raise ConnectionError("directory unavailable")
        return self.profiles.get((guild_id, server_id))

    async def list_profiles(self):
        return list(self.profiles.values())

    async def save_progress(self, profile):
        self.saved.append(dict(profile.progress_fields()))
        return True


def build_profile(**overrides) -> ServerProfile:
    values = dict(
        guild_id=GUILD_ID,
        server_id=SERVER_ID,
        name="Test Server",
        host="game.example.net",
        port=2222,
        username="deadside",
        password="secret",
        deathlogs_directory="deathlogs",
        log_directory="Logs",
        isolation_mode=IsolationMode.STANDARD,
    )
    values.update(overrides)
    return ServerProfile(**values)


@pytest.fixture
def profile():
    return build_profile()


@pytest.fixture
def directory(profile):
    return FakeTenantDirectory([profile])


@pytest.fixture
def isolation(directory):
    return IsolationManager(directory)


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def remote_fs():
    return FakeFileSystem()


@pytest.fixture
def fake_connect(remote_fs):
    return FakeConnect(remote_fs)


@pytest.fixture
def connector(fake_connect):
    return SFTPConnector(connect_timeout=5, connect=fake_connect)
