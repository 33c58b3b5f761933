"""
File discovery utilities for remote event logs

Remote hosts always use POSIX paths, so everything here works with
``posixpath`` regardless of the platform the bot runs on.
"""
import logging
import posixpath
import re
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

# Regex patterns for file matching
CSV_TIMESTAMP_PATTERN = re.compile(r'(\d{4}\.\d{2}\.\d{2}-\d{2}\.\d{2}\.\d{2})\.csv$')
DATE_PREFIX_PATTERN = re.compile(r'^(\d{4}\.\d{2}\.\d{2})')

SERVER_LOG_NAME = "Deadside.log"
DEFAULT_RECENT_DAYS = 7


def normalize_path(path: str) -> str:
    """Normalize a remote path for consistent handling

    Args:
        path: Path to normalize

    Returns:
        Normalized POSIX path without a trailing separator
    """
    if not path:
        return "."
    normalized = posixpath.normpath(path.replace("\\", "/"))

    # normpath keeps a leading "//", collapse it
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def join_path(directory: str, *parts: str) -> str:
    return normalize_path(posixpath.join(directory, *parts))


def relative_path(base_directory: str, path: str) -> str:
    """Path of a file relative to the directory it was discovered in"""
    return posixpath.relpath(normalize_path(path), normalize_path(base_directory))


def is_event_file(filename: str) -> bool:
    return filename.lower().endswith(".csv")


def extract_timestamp_from_filename(filename: str) -> Optional[datetime]:
    """Extract timestamp from a CSV filename

    Args:
        filename: Filename to extract timestamp from

    Returns:
        Extracted timestamp or None if not found
    """
    basename = posixpath.basename(filename)

    match = CSV_TIMESTAMP_PATTERN.search(basename)
    if match:
        try:
            # Convert from "yyyy.mm.dd-hh.mm.ss" format
            return datetime.strptime(match.group(1), "%Y.%m.%d-%H.%M.%S")
        except ValueError:
            pass

    return None


def date_prefix_cutoff(days: int, today: Optional[date] = None) -> str:
    """Earliest ``yyyy.mm.dd`` prefix to keep for a window of days

    Args:
        days: Size of the window, 0 means the default window
        today: Reference date, defaults to the current date

    Returns:
        Cutoff prefix string
    """
    days = abs(days) or DEFAULT_RECENT_DAYS
    reference = today or date.today()
    return (reference - timedelta(days=days)).strftime("%Y.%m.%d")


def is_recent_event_file(filename: str, cutoff: str) -> bool:
    """Check a file's date prefix against a cutoff

    Prefixes compare correctly as strings because they are zero padded.
    Files without a date prefix are never considered recent.
    """
    match = DATE_PREFIX_PATTERN.match(posixpath.basename(filename))
    if not match:
        return False
    return match.group(1) >= cutoff


def event_file_key(path: str) -> Tuple[str, str]:
    """Ordering key for event files: file name first, then full path"""
    return posixpath.basename(path), path


def sort_event_files(files: List[str]) -> List[str]:
    """Sort event files by name, which orders them chronologically"""
    return sorted(files, key=event_file_key)
