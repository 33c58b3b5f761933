"""
Guild isolation

Every ingestion, remote-access and query operation runs inside an
IsolationContext scoped to exactly one (guild, server) pair. Contexts are
created by an IsolationManager and passed explicitly to whatever needs them.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Set, Tuple

from models.server_profile import HasTenantScope, IsolationMode, ServerProfile

logger = logging.getLogger(__name__)


class IsolationError(Exception):
    """Base exception for isolation errors"""
    pass


class InvalidScope(IsolationError):
    """Raised when a context is requested for an invalid guild or server"""
    pass


UNAVAILABLE_MESSAGES = {
    IsolationMode.SENTINEL: "No game server has been set up for this guild yet.",
    IsolationMode.DISABLED: "Statistics collection is turned off for this server.",
    IsolationMode.READ_ONLY: "This server is in read-only mode, so new statistics are not being collected.",
}
MISSING_CONFIG_MESSAGE = "This server's remote access configuration is missing."
NO_DATA_MESSAGE = "No statistics have been recorded for this server yet."


class IsolationContext:
    """Scope and access policy of a single operation"""

    def __init__(
        self,
        guild_id: int,
        server_id: str,
        mode: IsolationMode = IsolationMode.STANDARD,
        profile: Optional[ServerProfile] = None,
        manager: Optional["IsolationManager"] = None,
    ):
        self.guild_id = guild_id
        self.server_id = server_id
        self.mode = mode
        self.profile = profile
        self._manager = manager
        self._released = False
        # Recoverable remote failures seen while this context was active
        self.remote_errors: List[Any] = []

    def __repr__(self) -> str:
        state = "released" if self._released else "active"
        return f"IsolationContext(guild={self.guild_id}, server={self.server_id!r}, mode={self.mode.value}, {state})"

    @property
    def active(self) -> bool:
        return not self._released

    def _require_active(self) -> None:
        if self._released:
            raise RuntimeError(f"Isolation context for {self.guild_id}/{self.server_id} has already been released")

    def is_restricted(self) -> bool:
        """True for read-only, disabled and sentinel profiles"""
        self._require_active()
        return self.mode.is_restricted

    def exit(self) -> None:
        """Release the context. Must be called exactly once."""
        self._require_active()
        self._released = True
        if self._manager is not None:
            self._manager._release(self)
        logger.debug(f"Exited isolation context for guild {self.guild_id}, server {self.server_id}")

    def record_remote_error(self, error) -> None:
        self.remote_errors.append(error)

    def verify_boundary(self, entity_guild_id: int, entity_server_id: str) -> bool:
        """Check that an entity belongs to this context's guild and server"""
        if self._released:
            return False
        return entity_guild_id == self.guild_id and entity_server_id == self.server_id

    def verify_entity(self, entity: HasTenantScope) -> bool:
        if not isinstance(entity, HasTenantScope):
            return False
        return self.verify_boundary(entity.guild_id, entity.server_id)

    def unavailability_reason(self) -> str:
        """Neutral text explaining why no data is shown for this server"""
        if self.mode in UNAVAILABLE_MESSAGES:
            return UNAVAILABLE_MESSAGES[self.mode]
        if self.profile is None or not self.profile.has_sftp_config():
            return MISSING_CONFIG_MESSAGE
        return NO_DATA_MESSAGE


class IsolationManager:
    """Creates isolation contexts from the tenant directory

    Args:
        directory: TenantDirectory used to resolve server profiles
    """

    def __init__(self, directory):
        self.directory = directory
        self._active: Set[Tuple[int, str, int]] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def enter(self, guild_id: int, server_id: str) -> IsolationContext:
        """Create a context for a guild and server

        Args:
            guild_id: Discord guild ID, must be positive
            server_id: Game server ID, must be non-empty

        Returns:
            Active IsolationContext

        Raises:
            InvalidScope: If the guild or server id is invalid
        """
        if guild_id is None or guild_id <= 0:
            raise InvalidScope(f"Invalid guild id: {guild_id}")
        if not server_id or not str(server_id).strip():
            raise InvalidScope(f"Invalid server id for guild {guild_id}")

        server_id = str(server_id).strip()
        mode = IsolationMode.STANDARD
        profile = None

        try:
            profile = await self.directory.get_profile(guild_id, server_id)
        except Exception as e:
            logger.debug(f"Profile lookup failed for {guild_id}/{server_id}, using standard mode: {e}")

        if profile is not None:
            mode = profile.isolation_mode

        context = IsolationContext(guild_id, server_id, mode=mode, profile=profile, manager=self)
        self._active.add((guild_id, server_id, id(context)))
        logger.debug(f"Entered isolation context for guild {guild_id}, server {server_id} ({mode.value})")
        return context

    def _release(self, context: IsolationContext) -> None:
        self._active.discard((context.guild_id, context.server_id, id(context)))

    @asynccontextmanager
    async def scope(self, guild_id: int, server_id: str) -> AsyncIterator[IsolationContext]:
        """Enter a context and release it however the block exits"""
        context = await self.enter(guild_id, server_id)
        try:
            yield context
        finally:
            context.exit()
