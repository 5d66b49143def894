"""OpenCode sessions: one JSON file per message, one per message part.

Layout under the storage root::

    session/<project-hash>/ses_*.json   session metadata (id, directory, time)
    project/*.json                      project id -> worktree
    message/<session-id>/msg_*.json     message metadata (role, time, tokens)
    part/<message-id>/prt_*.json        message content, one part per file
"""

import json
import logging
from pathlib import Path

from ..errors import SessionNotFoundError
from ..models import (
    ASSISTANT,
    OPENCODE,
    CanonicalEntry,
    StepPart,
    TextPart,
    TokenUsage,
    ToolCallPart,
)
from . import register_provider
from .base import SessionProvider, TranscriptHead, TranscriptNormalizer, parse_timestamp

logger = logging.getLogger(__name__)

STEP_TYPES = ("step-start", "step-finish", "patch")


def _read_json(path: Path) -> dict | None:
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.debug(f"Skipping {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def _created_ms(message: dict) -> int:
    time_data = message.get("time")
    if isinstance(time_data, dict) and isinstance(time_data.get("created"), (int, float)):
        return int(time_data["created"])
    return 0


def _token_usage(tokens) -> TokenUsage | None:
    if not isinstance(tokens, dict):
        return None
    if not (tokens.get("input") or tokens.get("output")):
        return None
    cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
    return TokenUsage(
        input=tokens.get("input") or 0,
        output=tokens.get("output") or 0,
        reasoning=tokens.get("reasoning") or 0,
        cache_read=cache.get("read") or 0,
        cache_write=cache.get("write") or 0,
    )


def _step_data(part: dict) -> dict:
    kind = part.get("type")
    if kind == "step-start":
        return {"snapshot": part.get("snapshot", "")}
    if kind == "step-finish":
        return {
            "reason": part.get("reason", ""),
            "snapshot": part.get("snapshot", ""),
            "tokens": part.get("tokens") or {},
        }
    return {"hash": part.get("hash", ""), "files": part.get("files") or []}


class OpenCodeNormalizer(TranscriptNormalizer):
    """Converts one assembled message record into a canonical entry.

    The record is a message file's JSON with its raw part dicts, already
    sorted, under ``"parts"``.
    """

    provider = OPENCODE

    def __init__(self, include_steps: bool = False):
        self.include_steps = include_steps

    def normalize(self, record: dict) -> list[CanonicalEntry]:
        entry = CanonicalEntry(
            role=record.get("role") or ASSISTANT,
            provider=OPENCODE,
            timestamp=parse_timestamp(_created_ms(record)),
            message_id=record.get("id", ""),
            tokens=_token_usage(record.get("tokens")),
        )

        for part in record.get("parts") or []:
            kind = part.get("type")
            if kind == "text":
                if part.get("text"):
                    entry.parts.append(TextPart(text=part["text"]))
            elif kind == "tool":
                state = part.get("state") if isinstance(part.get("state"), dict) else {}
                metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
                tool_input = state.get("input")
                output = state.get("output", "")
                entry.parts.append(ToolCallPart(
                    id=part.get("callID", ""),
                    name=part.get("tool", ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                    output=output if isinstance(output, str) else json.dumps(output),
                    status=state.get("status", ""),
                    title=state.get("title", ""),
                    diff=metadata.get("diff", ""),
                ))
            elif kind in STEP_TYPES:
                if self.include_steps:
                    entry.parts.append(StepPart(kind=kind, data=_step_data(part)))

        if not entry.parts:
            return []
        return [entry]


class OpenCodeAssembler:
    """Reconstructs OpenCode transcripts from the fragmented storage format."""

    def __init__(self, storage_dir: Path):
        self.storage_dir = Path(storage_dir)

    @property
    def message_dir(self) -> Path:
        return self.storage_dir / "message"

    @property
    def part_dir(self) -> Path:
        return self.storage_dir / "part"

    def load_parts(self, message_id: str) -> list[dict]:
        """Raw part dicts for a message, sorted by part id."""
        parts_dir = self.part_dir / message_id
        if not message_id or not parts_dir.is_dir():
            return []

        parts = []
        for part_file in parts_dir.glob("prt_*.json"):
            part = _read_json(part_file)
            if part is None:
                continue
            part.setdefault("id", part_file.stem)
            parts.append(part)
        # Part ids are time-ordered
        parts.sort(key=lambda p: str(p["id"]))
        return parts

    def load_records(self, session_id: str) -> list[dict]:
        """Message records with their parts attached, sorted by creation time."""
        messages_dir = self.message_dir / session_id
        if not messages_dir.is_dir():
            raise SessionNotFoundError(session_id, f"no message directory at {messages_dir}")

        records = []
        for msg_file in sorted(messages_dir.glob("msg_*.json")):
            message = _read_json(msg_file)
            if message is None:
                continue
            message.setdefault("id", msg_file.stem)
            message["parts"] = self.load_parts(message["id"])
            records.append(message)

        # Stable: ties keep file-name order
        records.sort(key=_created_ms)
        return records

    def assemble(self, session_id: str, include_steps: bool = False) -> list[CanonicalEntry]:
        """Return the session's canonical entries in timestamp order."""
        normalizer = OpenCodeNormalizer(include_steps=include_steps)
        entries = []
        for record in self.load_records(session_id):
            entries.extend(normalizer.normalize(record))
        return entries

    def message_texts(self, session_id: str) -> list[str]:
        """Text-only lines (``User: ...`` / ``Assistant: ...``) for summary views."""
        messages = []
        for entry in self.assemble(session_id):
            prefix = "Assistant: " if entry.role == ASSISTANT else "User: "
            for part in entry.parts:
                if isinstance(part, TextPart):
                    messages.append(prefix + part.text)
        return messages


@register_provider
class OpenCodeProvider(SessionProvider):
    """Provider for OpenCode sessions."""

    name = OPENCODE
    display_name = "OpenCode"
    jsonl = False

    def get_sessions_dir(self) -> Path:
        return self.config.opencode_storage_dir

    def discover_session_files(self) -> list[Path]:
        """Discover session metadata files, ``session/<project>/ses_*.json``."""
        sessions_dir = self.get_sessions_dir() / "session"
        if not sessions_dir.exists():
            return []

        files = []
        for project_dir in sorted(sessions_dir.iterdir()):
            if project_dir.is_dir():
                files.extend(sorted(project_dir.glob("ses_*.json")))
        return files

    def load_projects(self) -> dict[str, str]:
        """Map project id to worktree path."""
        projects = {}
        projects_dir = self.get_sessions_dir() / "project"
        if not projects_dir.exists():
            return projects
        for project_file in sorted(projects_dir.glob("*.json")):
            project = _read_json(project_file)
            if project and project.get("id"):
                projects[project["id"]] = project.get("worktree", "")
        logger.debug(f"Loaded {len(projects)} OpenCode projects")
        return projects

    def read_session_meta(self, path: Path, projects: dict[str, str]) -> TranscriptHead | None:
        meta = _read_json(path)
        if meta is None:
            return None
        time_data = meta.get("time") if isinstance(meta.get("time"), dict) else {}
        head = TranscriptHead(
            path=path,
            provider=self.name,
            session_id=meta.get("id") or path.stem,
            cwd=meta.get("directory") or projects.get(meta.get("projectID", ""), ""),
            started_at=parse_timestamp(time_data.get("created")),
        )
        head.found = True
        return head

    def scan_sessions(self) -> list[TranscriptHead]:
        """Read every session metadata file, joined with project worktrees."""
        if not self.is_available():
            logger.debug("OpenCode storage directory does not exist")
            return []

        projects = self.load_projects()
        heads = []
        for path in self.discover_session_files():
            head = self.read_session_meta(path, projects)
            if head is not None:
                heads.append(head)
        return heads

    def assembler(self) -> OpenCodeAssembler:
        return OpenCodeAssembler(self.get_sessions_dir())

    def new_normalizer(self) -> OpenCodeNormalizer:
        return OpenCodeNormalizer()
