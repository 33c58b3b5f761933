"""
Ingestion configuration

Settings are read from environment variables, which main.py loads from a
.env file when one is present.
"""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "deadside_killfeed"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {value!r}, using {default}")
        return default


@dataclass
class IngestionConfig:
    mongodb_uri: str = ""
    db_name: str = DEFAULT_DB_NAME
    discord_token: str = ""
    sftp_connect_timeout: float = 30.0
    interval_minutes: float = 5.0
    batch_size: int = 4
    server_timeout: float = 300.0
    leaderboard_limit: int = 10
    recent_file_days: int = 7

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "IngestionConfig":
        """Build the configuration from environment variables

        Args:
            env: Mapping to read from, defaults to os.environ

        Returns:
            IngestionConfig with defaults for anything unset
        """
        env = os.environ if env is None else env
        return cls(
            mongodb_uri=env.get("MONGODB_URI", ""),
            db_name=env.get("DB_NAME") or DEFAULT_DB_NAME,
            discord_token=env.get("DISCORD_TOKEN", ""),
            sftp_connect_timeout=_env_float(env, "SFTP_CONNECT_TIMEOUT", cls.sftp_connect_timeout),
            interval_minutes=_env_float(env, "INGEST_INTERVAL_MINUTES", cls.interval_minutes),
            batch_size=max(1, _env_int(env, "INGEST_BATCH_SIZE", cls.batch_size)),
            server_timeout=_env_float(env, "INGEST_SERVER_TIMEOUT", cls.server_timeout),
            leaderboard_limit=max(1, _env_int(env, "LEADERBOARD_LIMIT", cls.leaderboard_limit)),
            recent_file_days=_env_int(env, "RECENT_FILE_DAYS", cls.recent_file_days),
        )

    def missing_required(self) -> list:
        """Names of required variables that are not set"""
        missing = []
        if not self.mongodb_uri:
            missing.append("MONGODB_URI")
        if not self.discord_token:
            missing.append("DISCORD_TOKEN")
        return missing
