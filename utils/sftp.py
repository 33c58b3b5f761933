"""
SFTP connector

Lists, reads and writes files on a game server's host through asyncssh.
Every operation takes the caller's IsolationContext and honours its access
policy: restricted servers are never contacted.

Dedicated file-transfer credentials are tried first, then the server's
primary credentials.
"""
import asyncio
import logging
import posixpath
import stat
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import AsyncIterator, Deque, List, Optional

import asyncssh
from asyncssh.constants import FILEXFER_TYPE_DIRECTORY

from utils.file_discovery import (
    date_prefix_cutoff,
    is_event_file,
    is_recent_event_file,
    join_path,
    normalize_path,
    relative_path,
    sort_event_files,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
MAX_RECORDED_ERRORS = 200
ENCODINGS = ('utf-8', 'latin-1')

# Errors an SFTP operation can raise that we treat as recoverable
REMOTE_ERRORS = (asyncio.TimeoutError, OSError, asyncssh.Error)


class SFTPError(Exception):
    """Base exception for SFTP errors"""
    pass


class NoCredentials(SFTPError):
    """Raised when a server has no usable credential set"""
    pass


class ConnectionFailure(SFTPError):
    """Raised when every credential set failed to connect"""
    pass


@dataclass
class RemoteError:
    """A recoverable failure recorded by the connector"""
    guild_id: int
    server_id: str
    operation: str
    path: str
    message: str
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RemoteFileStat:
    path: str
    size: int
    mtime: float


def _decode(data) -> str:
    if isinstance(data, str):
        return data
    for encoding in ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode('utf-8', errors='replace')


def _is_directory(entry) -> bool:
    attrs = entry.attrs
    if getattr(attrs, "type", None) == FILEXFER_TYPE_DIRECTORY:
        return True
    permissions = getattr(attrs, "permissions", None)
    return bool(permissions) and stat.S_ISDIR(permissions)


class SFTPConnector:
    """Remote file access for one bot process

    Args:
        connect_timeout: Seconds allowed for each connection attempt
        connect: Callable opening an SSH connection, defaults to asyncssh.connect
    """

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT, connect=None):
        self.connect_timeout = connect_timeout
        self._connect = connect or asyncssh.connect
        # Most recent failures across all servers, for diagnostics
        self.errors: Deque[RemoteError] = deque(maxlen=MAX_RECORDED_ERRORS)

    def _record_error(self, ctx, operation: str, path: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        remote_error = RemoteError(ctx.guild_id, ctx.server_id, operation, path, message)
        self.errors.append(remote_error)
        ctx.record_remote_error(remote_error)
        logger.warning(f"SFTP {operation} failed for {ctx.guild_id}/{ctx.server_id} ({path}): {message}")

    def _skip_restricted(self, ctx, operation: str) -> bool:
        if ctx.is_restricted():
            logger.info(f"Skipping SFTP {operation} for {ctx.guild_id}/{ctx.server_id}: server is {ctx.mode.value}")
            return True
        return False

    async def _open(self, credentials):
        conn = await asyncio.wait_for(
            self._connect(
                credentials.host,
                port=credentials.port,
                username=credentials.username,
                password=credentials.password,
                known_hosts=None,
            ),
            timeout=self.connect_timeout,
        )
        try:
            sftp = await asyncio.wait_for(conn.start_sftp_client(), timeout=self.connect_timeout)
        except BaseException:
            conn.close()
            raise
        return conn, sftp

    @asynccontextmanager
    async def connect(self, ctx) -> AsyncIterator[asyncssh.SFTPClient]:
        """Open an SFTP session for the context's server

        Raises:
            NoCredentials: If the server has no usable credential set
            ConnectionFailure: If every credential set failed
        """
        profile = ctx.profile
        attempts = []
        if profile is not None:
            attempts = [creds for creds in (profile.dedicated_credentials(), profile.primary_credentials()) if creds]
        if not attempts:
            raise NoCredentials(f"No SFTP credentials configured for {ctx.guild_id}/{ctx.server_id}")

        conn = sftp = None
        last_error: Optional[BaseException] = None
        for credentials in attempts:
            try:
                logger.debug(f"Connecting to {credentials.host}:{credentials.port} for {ctx.guild_id}/{ctx.server_id}")
                conn, sftp = await self._open(credentials)
                break
            except REMOTE_ERRORS as e:
                last_error = e
                logger.warning(f"SFTP connection to {credentials.host}:{credentials.port} failed: {e or type(e).__name__}")

        if sftp is None:
            raise ConnectionFailure(
                f"Could not connect to any SFTP host for {ctx.guild_id}/{ctx.server_id}: {last_error}"
            ) from last_error

        try:
            yield sftp
        finally:
            sftp.exit()
            conn.close()
            await conn.wait_closed()

    @asynccontextmanager
    async def _session(self, ctx, client=None):
        if client is not None:
            yield client
        else:
            async with self.connect(ctx) as sftp:
                yield sftp

    async def list_files(self, ctx, directory: str, client=None) -> List[str]:
        """List the regular files in a remote directory

        A missing directory is created and reported as empty.

        Args:
            ctx: Isolation context
            directory: Remote directory
            client: Open SFTP client to reuse

        Returns:
            File names, or an empty list on any failure
        """
        if self._skip_restricted(ctx, "list"):
            return []

        directory = normalize_path(directory)
        try:
            async with self._session(ctx, client) as sftp:
                if not await sftp.exists(directory):
                    logger.info(f"Creating missing directory {directory} for {ctx.guild_id}/{ctx.server_id}")
                    await sftp.makedirs(directory, exist_ok=True)
                    return []
                entries = await sftp.readdir(directory)
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "list", directory, e)
            return []

        return sorted(
            entry.filename for entry in entries
            if entry.filename not in (".", "..") and not _is_directory(entry)
        )

    async def read_file(self, ctx, path: str, client=None) -> str:
        """Read a remote file as text

        Returns:
            File content, or an empty string when unavailable
        """
        if self._skip_restricted(ctx, "read"):
            return ""

        path = normalize_path(path)
        try:
            async with self._session(ctx, client) as sftp:
                async with sftp.open(path, 'rb') as remote_file:
                    data = await remote_file.read()
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "read", path, e)
            return ""
        return _decode(data)

    async def read_lines_after(self, ctx, path: str, after_line: int, client=None) -> List[str]:
        """Lines of a remote file following the first ``after_line`` lines"""
        content = await self.read_file(ctx, path, client=client)
        return content.splitlines()[max(0, after_line):]

    async def write_file(self, ctx, path: str, content: str, client=None) -> bool:
        """Write text to a remote file, creating parent directories

        Returns:
            True if written, False for restricted servers or on failure
        """
        if self._skip_restricted(ctx, "write"):
            return False

        path = normalize_path(path)
        parent = posixpath.dirname(path)
        try:
            async with self._session(ctx, client) as sftp:
                if parent and parent != "." and not await sftp.exists(parent):
                    await sftp.makedirs(parent, exist_ok=True)
                async with sftp.open(path, 'wb') as remote_file:
                    await remote_file.write(content.encode('utf-8'))
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "write", path, e)
            return False
        return True

    async def file_exists(self, ctx, path: str, client=None) -> bool:
        if self._skip_restricted(ctx, "exists"):
            return False

        path = normalize_path(path)
        try:
            async with self._session(ctx, client) as sftp:
                return await sftp.exists(path)
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "exists", path, e)
            return False

    async def stat_file(self, ctx, path: str, client=None) -> Optional[RemoteFileStat]:
        """Size and modification time of a remote file

        Returns:
            RemoteFileStat, or None if missing, unreachable or restricted
        """
        if self._skip_restricted(ctx, "stat"):
            return None

        path = normalize_path(path)
        try:
            async with self._session(ctx, client) as sftp:
                attrs = await sftp.stat(path)
        except asyncssh.SFTPNoSuchFile:
            return None
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "stat", path, e)
            return None
        return RemoteFileStat(path=path, size=int(attrs.size or 0), mtime=float(attrs.mtime or 0))

    async def find_event_files(self, ctx, client=None) -> List[str]:
        """Recursively collect .csv files under the server's deathlogs directory

        Returns:
            Paths relative to the deathlogs directory, in name order
        """
        if self._skip_restricted(ctx, "discovery"):
            return []
        if ctx.profile is None:
            return []

        base_directory = normalize_path(ctx.profile.deathlogs_directory)
        found: List[str] = []
        try:
            async with self._session(ctx, client) as sftp:
                if not await sftp.exists(base_directory):
                    logger.info(f"Creating missing directory {base_directory} for {ctx.guild_id}/{ctx.server_id}")
                    await sftp.makedirs(base_directory, exist_ok=True)
                    return []

                pending = [base_directory]
                while pending:
                    directory = pending.pop()
                    for entry in await sftp.readdir(directory):
                        if entry.filename in (".", ".."):
                            continue
                        full_path = join_path(directory, entry.filename)
                        if _is_directory(entry):
                            pending.append(full_path)
                        elif is_event_file(entry.filename):
                            found.append(relative_path(base_directory, full_path))
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "discovery", base_directory, e)
            return []

        logger.debug(f"Found {len(found)} event files for {ctx.guild_id}/{ctx.server_id}")
        return sort_event_files(found)

    async def find_recent_event_files(self, ctx, n: int, today: Optional[date] = None, client=None) -> List[str]:
        """Most recent event files

        Args:
            ctx: Isolation context
            n: When zero or positive, the number of newest files to return.
               When negative, the number of days to look back by the date
               prefix of each file name.
            today: Reference date for the day window

        Returns:
            Relative paths in name order
        """
        files = await self.find_event_files(ctx, client=client)
        if n >= 0:
            return files[-n:] if n else []

        cutoff = date_prefix_cutoff(n, today)
        return [path for path in files if is_recent_event_file(path, cutoff)]

    async def test_connection(self, ctx) -> bool:
        """Check that the server can be reached

        Restricted servers report success without being contacted.
        """
        if ctx.is_restricted():
            return True
        try:
            async with self.connect(ctx) as sftp:
                await sftp.realpath(".")
        except (SFTPError, *REMOTE_ERRORS) as e:
            self._record_error(ctx, "test", ".", e)
            return False
        return True
