"""Base classes for transcript providers and their normalizers."""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import AgentLogsConfig
from ..errors import RecordParseError
from ..models import CanonicalEntry, JobInfo

_FRACTION = re.compile(r"\.\d+")


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an RFC 3339 string or epoch milliseconds. ``None`` if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        # fromisoformat() before 3.11 takes neither "Z" nor nanoseconds
        value = value.replace("Z", "+00:00")
        value = _FRACTION.sub(lambda m: "." + m.group(0)[1:7].ljust(6, "0"), value)
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def content_text(content) -> str:
    """Extract the plain text of a message body (string or list of blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, str):
                texts.append(item)
            elif isinstance(item, dict) and item.get("type") in ("text", "input_text", "output_text"):
                text = item.get("text", "")
                if text:
                    texts.append(text)
        return "\n".join(texts)
    return ""


@dataclass
class TranscriptHead:
    """What discovery recovers from the head of one transcript artifact."""

    path: Path
    provider: str
    session_id: str = ""
    cwd: str = ""
    started_at: Optional[datetime] = None
    jobs: list[JobInfo] = field(default_factory=list)
    # True once session id and working directory were both recovered
    found: bool = False


class TranscriptNormalizer(ABC):
    """Converts one provider's raw records into canonical entries.

    ``normalize`` may return several entries (a record can complete earlier
    buffered ones) or none (records without displayable content). Callers must
    call ``flush`` after the last record.
    """

    provider: str = ""

    # Byte offset of the line being normalized, when the caller knows it
    position: Optional[int] = None

    @abstractmethod
    def normalize(self, record: dict) -> list[CanonicalEntry]:
        ...

    def normalize_line(
        self, line, line_number: Optional[int] = None, position: Optional[int] = None
    ) -> list[CanonicalEntry]:
        """Decode one JSONL line and normalize it."""
        try:
            record = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RecordParseError(str(e), line_number) from e
        if not isinstance(record, dict):
            raise RecordParseError("record is not a JSON object", line_number)
        self.position = position
        return self.normalize(record)

    def held_position(self) -> Optional[int]:
        """Byte offset of the oldest line whose entries are still buffered.

        Re-reading from here rebuilds every buffered entry. ``None`` when
        nothing is buffered.
        """
        return None

    def flush(self) -> list[CanonicalEntry]:
        """Release anything still buffered. Stateless normalizers have nothing."""
        return []


class SessionProvider(ABC):
    """Abstract base class for transcript providers.

    Each agent runtime (Claude Code, Codex, OpenCode) implements this interface
    to locate its session artifacts and to hand out a normalizer for them.
    """

    # Provider identity
    name: str = ""  # canonical tag: "claude", "codex", "opencode"
    display_name: str = ""

    # JSONL providers keep one transcript file per session that can be read
    # line by line and from a byte offset. OpenCode assembles sessions instead.
    jsonl: bool = True

    def __init__(self, config: AgentLogsConfig):
        self.config = config

    @abstractmethod
    def get_sessions_dir(self) -> Path:
        """Return the directory where sessions are stored."""
        ...

    def is_available(self) -> bool:
        """Check if this provider's sessions directory exists."""
        return self.get_sessions_dir().exists()

    def owns_path(self, path: Path) -> bool:
        """Whether ``path`` lives under this provider's storage."""
        try:
            Path(path).resolve().relative_to(self.get_sessions_dir().resolve())
            return True
        except ValueError:
            return False

    @abstractmethod
    def discover_session_files(self) -> list[Path]:
        """Discover all session artifacts, in a stable order."""
        ...

    def parse_session_prefix(self, path: Path) -> TranscriptHead:
        """Parse the first records of a transcript for identity and jobs."""
        raise NotImplementedError(f"{self.name} sessions are not line-oriented")

    def scan_sessions(self) -> list[TranscriptHead]:
        """Discover and parse every session this provider can see."""
        return [self.parse_session_prefix(path) for path in self.discover_session_files()]

    @abstractmethod
    def new_normalizer(self) -> TranscriptNormalizer:
        ...
