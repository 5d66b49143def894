"""Codex CLI transcripts: date-partitioned JSONL rollouts."""

import json
import logging
import re
from pathlib import Path

from ..jobs import JobTracker
from ..models import (
    ASSISTANT,
    CODEX,
    USER,
    CanonicalEntry,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from . import register_provider
from .base import SessionProvider, TranscriptHead, TranscriptNormalizer, parse_timestamp

logger = logging.getLogger(__name__)

ENVIRONMENT_MARKER = "<environment_context>"
CWD_PATTERN = re.compile(r"<cwd>(.*)</cwd>")


def _command_of(arguments) -> str:
    """Pull the display command out of a function_call ``arguments`` string.

    Shell calls look like ``{"command": ["bash", "-lc", "actual command"]}``.
    """
    try:
        args = json.loads(arguments) if isinstance(arguments, str) else arguments
    except json.JSONDecodeError:
        return ""
    if not isinstance(args, dict):
        return ""

    command = args.get("command")
    if isinstance(command, str):
        return command
    if isinstance(command, list) and command:
        value = command[2] if len(command) >= 3 else command[-1]
        return value if isinstance(value, str) else ""
    return ""


def _tool_output(raw) -> tuple[str, bool]:
    """Decode a function_call_output ``output`` string into (text, is_error)."""
    if not isinstance(raw, str):
        return "", False
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw, False
    if not isinstance(data, dict):
        return raw, False

    metadata = data.get("metadata") or {}
    exit_code = metadata.get("exit_code", 0) if isinstance(metadata, dict) else 0
    output = data.get("output", "")
    return (output if isinstance(output, str) else json.dumps(output)), bool(exit_code)


class CodexNormalizer(TranscriptNormalizer):
    """Stateless normalizer for Codex envelopes (``event_msg`` / ``response_item``).

    Assistant prose comes from ``event_msg/agent_message``; the duplicate
    ``response_item`` assistant messages are ignored. Tool calls and their
    outputs stay separate entries.
    """

    provider = CODEX

    def normalize(self, record: dict) -> list[CanonicalEntry]:
        payload = record.get("payload")
        if not isinstance(payload, dict):
            return []

        envelope = record.get("type")
        payload_type = payload.get("type")
        timestamp = parse_timestamp(record.get("timestamp"))

        if envelope == "event_msg":
            entry = self._event_entry(payload_type, payload)
        elif envelope == "response_item":
            entry = self._response_entry(payload_type, payload)
        else:
            entry = None

        if entry is None or not entry.parts:
            return []
        entry.timestamp = timestamp
        return [entry]

    def _event_entry(self, payload_type, payload: dict) -> CanonicalEntry | None:
        entry = CanonicalEntry(role=ASSISTANT, provider=CODEX)
        if payload_type == "agent_reasoning":
            if isinstance(payload.get("text"), str):
                entry.parts.append(ReasoningPart(text=payload["text"]))
        elif payload_type == "agent_message":
            if isinstance(payload.get("message"), str):
                entry.parts.append(TextPart(text=payload["message"]))
        else:
            return None
        return entry

    def _response_entry(self, payload_type, payload: dict) -> CanonicalEntry | None:
        if payload_type == "message":
            # Assistant prose comes from event_msg; developer/system preambles are not shown
            if (payload.get("role") or USER) != USER:
                return None
            entry = CanonicalEntry(role=USER, provider=CODEX)
            content = payload.get("content")
            for block in content if isinstance(content, list) else []:
                if not isinstance(block, dict) or block.get("type") not in ("input_text", "output_text"):
                    continue
                text = block.get("text")
                if not isinstance(text, str) or not text:
                    continue
                # Injected sandbox/cwd preamble, not something the user typed
                if ENVIRONMENT_MARKER in text:
                    return None
                entry.parts.append(TextPart(text=text))
            return entry

        if payload_type == "function_call":
            entry = CanonicalEntry(role=ASSISTANT, provider=CODEX)
            entry.parts.append(ToolCallPart(
                id=payload.get("call_id", ""),
                name=payload.get("name", ""),
                input={"command": _command_of(payload.get("arguments"))},
            ))
            return entry

        if payload_type == "function_call_output":
            output, is_error = _tool_output(payload.get("output"))
            entry = CanonicalEntry(role=ASSISTANT, provider=CODEX)
            entry.parts.append(ToolResultPart(
                tool_call_id=payload.get("call_id", ""),
                output=output,
                is_error=is_error,
            ))
            return entry

        return None


@register_provider
class CodexProvider(SessionProvider):
    """Provider for Codex CLI sessions."""

    name = CODEX
    display_name = "Codex"

    def get_sessions_dir(self) -> Path:
        return self.config.codex_sessions_dir

    def discover_session_files(self) -> list[Path]:
        """Discover rollouts under ``sessions/YYYY/MM/DD/``."""
        sessions_dir = self.get_sessions_dir()
        if not sessions_dir.exists():
            return []
        return sorted(sessions_dir.glob("*/*/*/*.jsonl"))

    def parse_session_prefix(self, path: Path) -> TranscriptHead:
        head = TranscriptHead(path=path, provider=self.name)
        tracker = JobTracker()
        meta_cwd = ""

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
                    if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
                        continue

                    payload = data["payload"]
                    if data.get("type") == "session_meta":
                        if isinstance(payload.get("id"), str):
                            head.session_id = payload["id"]
                        head.started_at = parse_timestamp(payload.get("timestamp")) or head.started_at
                        if isinstance(payload.get("cwd"), str):
                            meta_cwd = payload["cwd"]

                    elif (data.get("type") == "response_item"
                          and payload.get("type") == "message"
                          and payload.get("role") == USER):
                        self._scan_user_message(payload, line_index, head, tracker)
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")

        head.cwd = head.cwd or meta_cwd
        head.found = bool(head.session_id and head.cwd)
        head.jobs = tracker.jobs
        return head

    def _scan_user_message(self, payload: dict, line_index: int, head: TranscriptHead,
                           tracker: JobTracker) -> None:
        content = payload.get("content")
        for block in content if isinstance(content, list) else []:
            if not isinstance(block, dict) or block.get("type") != "input_text":
                continue
            text = block.get("text")
            if not isinstance(text, str):
                continue
            if ENVIRONMENT_MARKER in text:
                match = CWD_PATTERN.search(text)
                if match:
                    head.cwd = match.group(1)
            else:
                tracker.feed(text, line_index)

    def new_normalizer(self) -> CodexNormalizer:
        return CodexNormalizer()
