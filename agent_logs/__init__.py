"""Session discovery and transcript normalization for local coding agents."""

from .config import AgentLogsConfig, load_config
from .errors import (
    AgentLogsError,
    AmbiguousSessionError,
    ConfigError,
    ProjectNotFoundError,
    RecordParseError,
    SessionNotFoundError,
)
from .models import CanonicalEntry, JobInfo, SessionDescriptor
from .monitor import OffsetTracker, TranscriptMonitor
from .providers.opencode import OpenCodeAssembler
from .resolver import find_job_sessions, resolve_session_info
from .scanner import SessionScanner, scan_sessions
from .store import SQLiteMessageStore
from .stream import follow, iter_job_segment, normalize_stream, read_entries_from_offset

__version__ = "0.1.0"

__all__ = [
    "AgentLogsConfig",
    "load_config",
    "AgentLogsError",
    "AmbiguousSessionError",
    "ConfigError",
    "ProjectNotFoundError",
    "RecordParseError",
    "SessionNotFoundError",
    "CanonicalEntry",
    "JobInfo",
    "SessionDescriptor",
    "OffsetTracker",
    "TranscriptMonitor",
    "OpenCodeAssembler",
    "find_job_sessions",
    "resolve_session_info",
    "SessionScanner",
    "scan_sessions",
    "SQLiteMessageStore",
    "follow",
    "iter_job_segment",
    "normalize_stream",
    "read_entries_from_offset",
]
