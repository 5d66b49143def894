"""Claude Code transcripts: per-project JSONL files with split tool results."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..jobs import JobTracker
from ..models import (
    ASSISTANT,
    CLAUDE,
    USER,
    CanonicalEntry,
    ReasoningPart,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from . import register_provider
from .base import SessionProvider, TranscriptHead, TranscriptNormalizer, content_text, parse_timestamp

logger = logging.getLogger(__name__)

# Claude's internal sub-agent side channels, not primary transcripts
SIDECHAIN_PREFIX = "agent-"


def _tool_result_output(content) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return content_text(content)
    return json.dumps(content)


def parse_content(content) -> list:
    """Convert a Claude message body into canonical parts, in order."""
    if isinstance(content, str):
        return [TextPart(text=content)] if content else []
    if not isinstance(content, list):
        return []

    parts = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text":
            if item.get("text"):
                parts.append(TextPart(text=item["text"]))
        elif item_type == "thinking":
            # Extended thinking
            if item.get("thinking"):
                parts.append(ReasoningPart(text=item["thinking"]))
        elif item_type == "tool_use":
            tool_input = item.get("input")
            parts.append(ToolCallPart(
                id=item.get("id", ""),
                name=item.get("name", ""),
                input=tool_input if isinstance(tool_input, dict) else {},
            ))
        elif item_type == "tool_result":
            parts.append(ToolResultPart(
                tool_call_id=item.get("tool_use_id", ""),
                output=_tool_result_output(item.get("content")),
                is_error=bool(item.get("is_error")),
            ))
    return parts


def _token_usage(usage) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    tokens = TokenUsage(
        input=usage.get("input_tokens") or 0,
        output=usage.get("output_tokens") or 0,
        cache_read=usage.get("cache_read_input_tokens") or 0,
        cache_write=usage.get("cache_creation_input_tokens") or 0,
    )
    if not (tokens.input or tokens.output or tokens.cache_read or tokens.cache_write):
        return None
    return tokens


@dataclass
class _Buffered:
    """An arena slot: an entry plus the number of its tool calls still awaiting results."""

    entry: CanonicalEntry
    open_calls: int = 0
    # Byte offset of the source line
    position: Optional[int] = None
    # API message id; records of one assistant turn share it
    turn: str = ""


class ClaudeNormalizer(TranscriptNormalizer):
    """Normalizes Claude records, merging tool results into their tool calls.

    Assistant entries with tool calls are held until every call has seen its
    result; the result output is written into the held entry in place and the
    user record carrying it is not emitted. Entries leave the buffer in source
    order, so an assistant entry keeps its position even if a later entry is
    ready first.

    Claude writes every result before the next assistant turn starts, so calls
    still open when a new turn begins are given up on and their entries go out
    with empty output.
    """

    provider = CLAUDE

    def __init__(self):
        self._queue: list[_Buffered] = []
        # call id -> (slot, index into slot.entry.parts)
        self._pending_calls: dict[str, tuple[_Buffered, int]] = {}

    @property
    def pending_call_ids(self) -> list[str]:
        return list(self._pending_calls)

    def normalize(self, record: dict) -> list[CanonicalEntry]:
        record_type = record.get("type")
        if record_type not in (USER, ASSISTANT):
            return []

        entry = self._build_entry(record)
        if record_type == ASSISTANT:
            message = record.get("message")
            turn = message.get("id") if isinstance(message, dict) else None
            turn = turn if isinstance(turn, str) else ""
            self._abandon_earlier_turns(turn)
            self._add_assistant(entry, turn)
        else:
            self._add_user(entry)
        return self._release()

    def held_position(self) -> Optional[int]:
        return self._queue[0].position if self._queue else None

    def flush(self) -> list[CanonicalEntry]:
        entries = [slot.entry for slot in self._queue]
        if self._pending_calls:
            logger.debug(f"Flushing {len(self._pending_calls)} tool calls without results")
        self._queue = []
        self._pending_calls = {}
        return entries

    def _build_entry(self, record: dict) -> CanonicalEntry:
        message = record.get("message")
        if not isinstance(message, dict):
            message = {}
        entry = CanonicalEntry(
            role=record["type"],
            provider=CLAUDE,
            timestamp=parse_timestamp(record.get("timestamp")),
            message_id=record.get("uuid") or message.get("id", ""),
            parts=parse_content(message.get("content")),
        )
        if entry.role == ASSISTANT:
            entry.tokens = _token_usage(message.get("usage"))
        return entry

    def _abandon_earlier_turns(self, turn: str) -> None:
        stale = [
            call_id for call_id, (slot, _) in self._pending_calls.items()
            if not turn or slot.turn != turn
        ]
        for call_id in stale:
            slot, _ = self._pending_calls.pop(call_id)
            slot.open_calls -= 1
        if stale:
            logger.debug(f"Releasing {len(stale)} tool calls left without results")

    def _add_assistant(self, entry: CanonicalEntry, turn: str = "") -> None:
        if not entry.parts:
            return
        slot = _Buffered(entry, position=self.position, turn=turn)
        for index, part in enumerate(entry.parts):
            if not isinstance(part, ToolCallPart) or not part.id:
                continue
            previous = self._pending_calls.get(part.id)
            if previous is not None:
                # Same call id reused; the older call will never be answered
                previous[0].open_calls -= 1
            self._pending_calls[part.id] = (slot, index)
            slot.open_calls += 1
        self._queue.append(slot)

    def _add_user(self, entry: CanonicalEntry) -> None:
        matched = False
        for part in entry.parts:
            if not isinstance(part, ToolResultPart):
                continue
            ref = self._pending_calls.pop(part.tool_call_id, None)
            if ref is None:
                continue
            slot, index = ref
            call = slot.entry.parts[index]
            call.output = part.output
            call.status = "error" if part.is_error else "completed"
            slot.open_calls -= 1
            matched = True

        if matched:
            return

        # Unmatched tool results are dropped; genuine text still goes out
        remaining = [p for p in entry.parts if not isinstance(p, ToolResultPart)]
        entry.parts = remaining
        if entry.has_text():
            self._queue.append(_Buffered(entry, position=self.position))

    def _release(self) -> list[CanonicalEntry]:
        ready = []
        while self._queue and self._queue[0].open_calls <= 0:
            ready.append(self._queue.pop(0).entry)
        return ready


@register_provider
class ClaudeProvider(SessionProvider):
    """Provider for Claude Code sessions."""

    name = CLAUDE
    display_name = "Claude Code"

    def get_sessions_dir(self) -> Path:
        return self.config.claude_projects_dir

    def discover_session_files(self) -> list[Path]:
        """Discover primary JSONL transcripts, skipping sub-agent side channels."""
        files = []
        sessions_dir = self.get_sessions_dir()
        if not sessions_dir.exists():
            return files

        for project_dir in sorted(sessions_dir.iterdir()):
            if not project_dir.is_dir():
                continue
            for jsonl_file in sorted(project_dir.glob("*.jsonl")):
                if jsonl_file.name.startswith(SIDECHAIN_PREFIX):
                    continue
                files.append(jsonl_file)

        return files

    def parse_session_prefix(self, path: Path) -> TranscriptHead:
        head = TranscriptHead(path=path, provider=self.name)
        tracker = JobTracker()

        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                for line_index, line in enumerate(f):
                    if line_index >= self.config.scan_max_lines:
                        break
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(data, dict):
                        continue

                    if not head.found:
                        started = parse_timestamp(data.get("timestamp"))
                        if data.get("cwd") and data.get("sessionId") and started:
                            head.session_id = data["sessionId"]
                            head.cwd = data["cwd"]
                            head.started_at = started
                            head.found = True

                    message = data.get("message")
                    if data.get("type") == USER and isinstance(message, dict) and message.get("role") == USER:
                        tracker.feed(content_text(message.get("content")), line_index)
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")

        head.jobs = tracker.jobs
        return head

    def new_normalizer(self) -> ClaudeNormalizer:
        return ClaudeNormalizer()

    def find_transcript(self, session_id: str) -> Path | None:
        """Locate ``<projects>/*/<session_id>.jsonl``."""
        sessions_dir = self.get_sessions_dir()
        if not sessions_dir.exists():
            return None
        matches = sorted(sessions_dir.glob(f"*/{session_id}.jsonl"))
        return matches[0] if matches else None
