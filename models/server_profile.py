"""
Server profile model for the Deadside killfeed ingestion core

A server profile holds the remote-host configuration and ingestion progress
for one game server owned by one Discord guild. Documents live in the
``game_servers`` collection.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_SERVER_NAME = "Default Server"
DEFAULT_SFTP_PORT = 22
DEFAULT_LOG_DIRECTORY = "Logs"
DEFAULT_DEATHLOGS_DIRECTORY = "deathlogs"


@runtime_checkable
class HasTenantScope(Protocol):
    """Anything persisted for a tenant exposes its guild and server id"""
    guild_id: int
    server_id: str


class IsolationMode(str, Enum):
    """Access policy for a server profile"""
    STANDARD = "standard"
    READ_ONLY = "read-only"
    DISABLED = "disabled"
    SENTINEL = "sentinel"

    @property
    def is_restricted(self) -> bool:
        return self is not IsolationMode.STANDARD

    @classmethod
    def from_legacy(cls, document: Dict[str, Any]) -> "IsolationMode":
        """Resolve the mode of a stored server document

        Older documents flag the placeholder server by name, carry a separate
        ``read_only`` boolean, or store free-form mode strings. They are all
        folded into a single mode here so nothing downstream has to look at
        names again.

        Args:
            document: Raw server document

        Returns:
            The resolved isolation mode
        """
        raw_mode = str(document.get("isolation_mode") or "").strip().lower()

        for mode in cls:
            if raw_mode == mode.value:
                return mode

        if raw_mode in ("default server", "default"):
            return cls.SENTINEL
        if document.get("name") == DEFAULT_SERVER_NAME or document.get("server_name") == DEFAULT_SERVER_NAME:
            return cls.SENTINEL
        if "disabled" in raw_mode:
            return cls.DISABLED
        if "read-only" in raw_mode or document.get("read_only") is True:
            return cls.READ_ONLY

        if raw_mode:
            logger.warning(f"Unknown isolation mode '{raw_mode}', treating as standard")
        return cls.STANDARD


def _ensure_integer(value: Any, default: int = 0) -> int:
    """Convert a stored value to int, falling back to a default"""
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        try:
            return int(float(value))
        except (ValueError, TypeError):
            logger.warning(f"Could not convert {value!r} to integer, using {default}")
            return default


def _ensure_float(value: Any, default: float = 0.0) -> float:
    """Convert a stored timestamp to epoch seconds"""
    if value is None:
        return default
    if isinstance(value, datetime):
        # pymongo returns naive datetimes in UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    try:
        return float(value)
    except (ValueError, TypeError):
        logger.warning(f"Could not convert {value!r} to timestamp, using {default}")
        return default


def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


class Credentials:
    """One set of remote-access credentials"""

    def __init__(self, host: str, port: int, username: str, password: str):
        self.host = host
        self.port = port
        self.username = username
        self.password = password

    def __repr__(self) -> str:
        # Never print the password
        return f"Credentials(host={self.host!r}, port={self.port}, username={self.username!r})"


class ServerProfile:
    """Configuration and ingestion progress for one game server

    Watermark timestamps are stored as epoch seconds so they compare directly
    against remote file modification times.
    """

    collection_name = "game_servers"

    def __init__(
        self,
        guild_id: int,
        server_id: str,
        name: Optional[str] = None,
        host: str = "",
        port: int = DEFAULT_SFTP_PORT,
        username: str = "",
        password: str = "",
        sftp_host: str = "",
        sftp_port: int = 0,
        sftp_username: str = "",
        sftp_password: str = "",
        log_directory: str = DEFAULT_LOG_DIRECTORY,
        deathlogs_directory: str = DEFAULT_DEATHLOGS_DIRECTORY,
        isolation_mode: IsolationMode = IsolationMode.STANDARD,
        last_processed_file: str = "",
        last_processed_line: int = 0,
        last_processed_timestamp: float = 0.0,
        last_rotation_timestamp: float = 0.0,
        last_log_line: int = 0,
        last_log_size: int = 0,
        last_log_mtime: float = 0.0,
    ):
        self.guild_id = _ensure_integer(guild_id)
        self.server_id = _clean(server_id)
        self.name = name or self.server_id

        # Primary credentials
        self.host = _clean(host)
        self.port = _ensure_integer(port, DEFAULT_SFTP_PORT) or DEFAULT_SFTP_PORT
        self.username = _clean(username)
        self.password = password or ""

        # Dedicated file-transfer credentials
        self.sftp_host = _clean(sftp_host)
        self.sftp_port = _ensure_integer(sftp_port)
        self.sftp_username = _clean(sftp_username)
        self.sftp_password = sftp_password or ""

        self.log_directory = log_directory or DEFAULT_LOG_DIRECTORY
        self.deathlogs_directory = deathlogs_directory or DEFAULT_DEATHLOGS_DIRECTORY
        self.isolation_mode = IsolationMode(isolation_mode)

        # Event-log watermark
        self.last_processed_file = last_processed_file or ""
        self.last_processed_line = _ensure_integer(last_processed_line)
        self.last_processed_timestamp = _ensure_float(last_processed_timestamp)

        # Server-log progress
        self.last_rotation_timestamp = _ensure_float(last_rotation_timestamp)
        self.last_log_line = _ensure_integer(last_log_line)
        self.last_log_size = _ensure_integer(last_log_size)
        self.last_log_mtime = _ensure_float(last_log_mtime)

    def __repr__(self) -> str:
        return (
            f"ServerProfile(guild_id={self.guild_id}, server_id={self.server_id!r}, "
            f"name={self.name!r}, mode={self.isolation_mode.value})"
        )

    @property
    def is_restricted(self) -> bool:
        return self.isolation_mode.is_restricted

    def dedicated_credentials(self) -> Optional[Credentials]:
        """Dedicated transfer credentials, blanks filled from the primary set

        Returns:
            Credentials or None when no dedicated host is configured
        """
        if not self.sftp_host:
            return None
        username = self.sftp_username or self.username
        if not username:
            return None
        return Credentials(
            host=self.sftp_host,
            port=self.sftp_port if self.sftp_port > 0 else DEFAULT_SFTP_PORT,
            username=username,
            password=self.sftp_password or self.password,
        )

    def primary_credentials(self) -> Optional[Credentials]:
        """Primary credentials, or None when host or username is missing"""
        if not self.host or not self.username:
            return None
        return Credentials(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
        )

    def has_sftp_config(self) -> bool:
        """Check whether any usable credential set exists"""
        return self.dedicated_credentials() is not None or self.primary_credentials() is not None

    def advance_watermark(self, filename: str, line: int, timestamp: float) -> None:
        """Record the last committed event-log position"""
        self.last_processed_file = filename
        self.last_processed_line = line
        self.last_processed_timestamp = timestamp

    def record_log_progress(self, line: int, size: int, mtime: float) -> None:
        """Record the last committed server-log position"""
        self.last_log_line = line
        self.last_log_size = size
        self.last_log_mtime = mtime

    def progress_fields(self) -> Dict[str, Any]:
        """Fields written back after an ingestion batch"""
        return {
            "last_processed_file": self.last_processed_file,
            "last_processed_line": self.last_processed_line,
            "last_processed_timestamp": self.last_processed_timestamp,
            "last_rotation_timestamp": self.last_rotation_timestamp,
            "last_log_line": self.last_log_line,
            "last_log_size": self.last_log_size,
            "last_log_mtime": self.last_log_mtime,
        }

    def to_document(self) -> Dict[str, Any]:
        """Convert the profile to a MongoDB document"""
        document = {
            "guild_id": self.guild_id,
            "server_id": self.server_id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password,
            "sftp_host": self.sftp_host,
            "sftp_port": self.sftp_port,
            "sftp_username": self.sftp_username,
            "sftp_password": self.sftp_password,
            "log_directory": self.log_directory,
            "deathlogs_directory": self.deathlogs_directory,
            "isolation_mode": self.isolation_mode.value,
        }
        document.update(self.progress_fields())
        return document

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> Optional["ServerProfile"]:
        """Create a profile from a stored document

        Args:
            document: MongoDB document, can be None

        Returns:
            ServerProfile or None when the document is missing its scope
        """
        if document is None:
            return None

        guild_id = _ensure_integer(document.get("guild_id"))
        server_id = _clean(document.get("server_id"))
        if guild_id <= 0 or not server_id:
            logger.error(f"Server document without a valid scope: guild={document.get('guild_id')}, server={document.get('server_id')}")
            return None

        # The sftp_host field sometimes carries "host:port"
        sftp_host = _clean(document.get("sftp_host"))
        sftp_port = _ensure_integer(document.get("sftp_port"))
        if ":" in sftp_host:
            host_part, _, port_part = sftp_host.partition(":")
            sftp_host = host_part
            if port_part.isdigit():
                sftp_port = int(port_part)

        return cls(
            guild_id=guild_id,
            server_id=server_id,
            name=document.get("name") or document.get("server_name"),
            host=document.get("host") or document.get("ip_address") or "",
            port=document.get("port", DEFAULT_SFTP_PORT),
            username=document.get("username", ""),
            password=document.get("password", ""),
            sftp_host=sftp_host,
            sftp_port=sftp_port,
            sftp_username=document.get("sftp_username", ""),
            sftp_password=document.get("sftp_password", ""),
            log_directory=document.get("log_directory") or DEFAULT_LOG_DIRECTORY,
            deathlogs_directory=document.get("deathlogs_directory") or DEFAULT_DEATHLOGS_DIRECTORY,
            isolation_mode=IsolationMode.from_legacy(document),
            last_processed_file=document.get("last_processed_file", ""),
            last_processed_line=document.get("last_processed_line", 0),
            last_processed_timestamp=document.get("last_processed_timestamp", 0.0),
            last_rotation_timestamp=document.get("last_rotation_timestamp", 0.0),
            last_log_line=document.get("last_log_line", 0),
            last_log_size=document.get("last_log_size", 0),
            last_log_mtime=document.get("last_log_mtime", 0.0),
        )

    @classmethod
    def sentinel(cls, guild_id: int) -> "ServerProfile":
        """Placeholder profile for a guild without a configured server"""
        return cls(
            guild_id=guild_id,
            server_id="default",
            name=DEFAULT_SERVER_NAME,
            isolation_mode=IsolationMode.SENTINEL,
        )
