"""
MongoDB connection helpers

Builds the motor client used by the tenant directory and the record store.
URIs are checked before connecting and never logged with their password.
"""
import asyncio
import logging
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConfigurationError, ConnectionFailure, ServerSelectionTimeoutError

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = 5000

# Host lists may carry ports for mongodb://, never for mongodb+srv://
HOST_LIST_PATTERN = re.compile(r'^[^:@/,]+(?::\d+)?(?:,[^:@/,]+(?::\d+)?)*$')
SRV_HOST_PATTERN = re.compile(r'^[^:@/,]+$')

CONNECT_ERRORS = (ConnectionFailure, ServerSelectionTimeoutError, ConfigurationError)


class DatabaseConnectionError(Exception):
    """Raised when no usable database connection could be made"""
    pass


def mask_uri(uri: str) -> str:
    """URI with the password replaced, safe for log output"""
    return re.sub(r'(://[^:@/]+:)[^@]+@', r'\1****@', uri or "")


def validate_mongodb_uri(uri: str) -> Tuple[bool, str]:
    """Check that a URI looks like something motor can connect to

    Args:
        uri: MongoDB connection URI

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not uri:
        return False, "URI is empty"

    parsed = urlparse(uri)
    if parsed.scheme not in ("mongodb", "mongodb+srv"):
        return False, f"Invalid scheme: {parsed.scheme or 'none'}"

    hosts = parsed.netloc.rsplit("@", 1)[-1]
    if not hosts:
        return False, "Missing hostname"

    if parsed.scheme == "mongodb+srv":
        if ":" in hosts:
            return False, "SRV URI should not include port number"
        if not SRV_HOST_PATTERN.match(hosts):
            return False, "Invalid MongoDB SRV URI format"
    elif not HOST_LIST_PATTERN.match(hosts):
        return False, "Invalid MongoDB standard URI format"

    return True, ""


def database_name_from_uri(uri: str) -> Optional[str]:
    """Database named in the URI path, if any"""
    name = urlparse(uri).path.lstrip("/")
    return name or None


async def get_database_client(
    uri: str,
    max_retries: int = 3,
    retry_delay: float = 2,
    client_factory=AsyncIOMotorClient,
) -> AsyncIOMotorClient:
    """Connect to MongoDB, pinging until the server answers

    Args:
        uri: MongoDB connection URI
        max_retries: Maximum number of connection attempts
        retry_delay: Seconds to wait between attempts
        client_factory: Callable creating the client

    Returns:
        Connected AsyncIOMotorClient

    Raises:
        DatabaseConnectionError: If the URI is invalid or every attempt failed
    """
    is_valid, error_message = validate_mongodb_uri(uri)
    if not is_valid:
        logger.critical(f"Invalid MongoDB URI {mask_uri(uri)!r}: {error_message}")
        raise DatabaseConnectionError(f"Invalid MongoDB URI: {error_message}")

    last_error: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            logger.info(f"Connecting to {mask_uri(uri)} (attempt {attempt}/{max_retries})...")
            client = client_factory(uri, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
            await client.admin.command('ping')
            logger.info("Connected to MongoDB")
            return client
        except CONNECT_ERRORS as e:
            last_error = e
            logger.error(f"MongoDB connection attempt {attempt}/{max_retries} failed: {e}")
            if attempt < max_retries:
                await asyncio.sleep(retry_delay)

    raise DatabaseConnectionError(
        f"Failed to connect to MongoDB after {max_retries} attempts"
    ) from last_error


async def get_database(uri: str, db_name: Optional[str] = None, max_retries: int = 3, retry_delay: float = 2):
    """Database handle for the ingestion core

    The name falls back to the database given in the URI path.

    Raises:
        DatabaseConnectionError: If connection fails or no name is known
    """
    name = db_name or database_name_from_uri(uri)
    if not name:
        raise DatabaseConnectionError("No database name configured")
    client = await get_database_client(uri, max_retries=max_retries, retry_delay=retry_delay)
    return client[name]
