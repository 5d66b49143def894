"""Reading transcripts as canonical entry streams."""

import logging
import threading
from pathlib import Path
from typing import Iterator, Optional, Union

from .config import AgentLogsConfig, load_config
from .errors import AgentLogsError, RecordParseError, SessionNotFoundError
from .models import CLAUDE, OPENCODE, CanonicalEntry, JobInfo, SessionDescriptor
from .providers import get_provider
from .providers.base import SessionProvider, TranscriptNormalizer
from .providers.opencode import OpenCodeAssembler

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _get_provider(name: str, config: Optional[AgentLogsConfig]) -> SessionProvider:
    provider = get_provider(name, config or load_config())
    if provider is None:
        raise AgentLogsError(f"Unknown provider: {name}")
    return provider


def _normalize(normalizer: TranscriptNormalizer, line: bytes, line_number: Optional[int],
               position: Optional[int] = None) -> list[CanonicalEntry]:
    if not line.strip():
        return []
    try:
        return normalizer.normalize_line(line, line_number, position)
    except RecordParseError as e:
        logger.debug(f"Skipping record: {e}")
        return []


def read_entries_from_offset(
    path: PathLike, normalizer: TranscriptNormalizer, offset: int = 0
) -> tuple[list[CanonicalEntry], int]:
    """Normalize the complete lines written after ``offset``.

    Returns the entries and the offset just past the last complete line. A
    trailing line without its newline is left for the next call, and the
    offset never moves backwards. The normalizer is not flushed, so tool calls
    still waiting for results carry over to the next call; each line's byte
    offset is handed to the normalizer so ``held_position()`` can say where
    re-reading must start to rebuild them.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read()
    except FileNotFoundError as e:
        raise SessionNotFoundError(str(path), "transcript file is missing") from e

    end = data.rfind(b"\n")
    if end == -1:
        return [], offset

    entries = []
    position = offset
    for line in data[:end].split(b"\n"):
        entries.extend(_normalize(normalizer, line, None, position))
        position += len(line) + 1
    return entries, offset + end + 1


def normalize_stream(
    path: PathLike,
    provider: str,
    offset: int = 0,
    config: Optional[AgentLogsConfig] = None,
    include_steps: bool = False,
) -> Iterator[CanonicalEntry]:
    """Yield every canonical entry of a transcript.

    For OpenCode ``path`` is the session metadata file; the session named by
    its stem is assembled from storage and ``offset`` is ignored.
    """
    path = Path(path)
    source = _get_provider(provider, config)
    if provider == OPENCODE:
        assembler = OpenCodeAssembler(source.get_sessions_dir())
        yield from assembler.assemble(path.stem, include_steps=include_steps)
        return

    normalizer = source.new_normalizer()
    try:
        f = open(path, "rb")
    except FileNotFoundError as e:
        raise SessionNotFoundError(str(path), "transcript file is missing") from e

    with f:
        f.seek(offset)
        for line_number, line in enumerate(f, start=1):
            yield from _normalize(normalizer, line, line_number)
    yield from normalizer.flush()


def read_session(descriptor: SessionDescriptor, config: Optional[AgentLogsConfig] = None,
                 include_steps: bool = False) -> list[CanonicalEntry]:
    return list(normalize_stream(descriptor.log_path, descriptor.provider, config=config,
                                 include_steps=include_steps))


def iter_job_segment(
    descriptor: SessionDescriptor,
    job: JobInfo,
    next_line_index: Optional[int] = None,
    config: Optional[AgentLogsConfig] = None,
) -> Iterator[CanonicalEntry]:
    """Yield the entries of one job: from its line up to the next job's line."""
    if descriptor.provider == OPENCODE:
        raise AgentLogsError("Job segments need a line-oriented transcript")

    normalizer = _get_provider(descriptor.provider, config).new_normalizer()
    try:
        f = open(descriptor.log_path, "rb")
    except FileNotFoundError as e:
        raise SessionNotFoundError(descriptor.log_path, "transcript file is missing") from e

    with f:
        for line_index, line in enumerate(f):
            if next_line_index is not None and line_index >= next_line_index:
                break
            if line_index < job.line_index:
                continue
            yield from _normalize(normalizer, line, line_index + 1)
    yield from normalizer.flush()


def _follow_jsonl(path: Path, normalizer: TranscriptNormalizer, stop_event: threading.Event,
                  poll_interval: float, from_start: bool) -> Iterator[CanonicalEntry]:
    try:
        f = open(path, "rb")
    except FileNotFoundError as e:
        raise SessionNotFoundError(str(path), "transcript file is missing") from e

    with f:
        if not from_start:
            f.seek(0, 2)
        partial = b""
        while True:
            line = f.readline()
            if line:
                partial += line
                if partial.endswith(b"\n"):
                    yield from _normalize(normalizer, partial, None)
                    partial = b""
                continue

            if not path.exists():
                raise SessionNotFoundError(str(path), "transcript file is no longer accessible")
            if stop_event.wait(poll_interval):
                break
    yield from normalizer.flush()


def _follow_opencode(assembler: OpenCodeAssembler, session_id: str, stop_event: threading.Event,
                     poll_interval: float, from_start: bool) -> Iterator[CanonicalEntry]:
    seen: set[str] = set()
    for entry in assembler.assemble(session_id):
        seen.add(entry.message_id)
        if from_start:
            yield entry

    while not stop_event.wait(poll_interval):
        try:
            entries = assembler.assemble(session_id)
        except SessionNotFoundError:
            # Storage is rewritten while OpenCode runs
            continue
        for entry in entries:
            if entry.message_id not in seen:
                seen.add(entry.message_id)
                yield entry


def follow(
    path: PathLike,
    provider: str,
    stop_event: Optional[threading.Event] = None,
    poll_interval: float = 0.5,
    config: Optional[AgentLogsConfig] = None,
    from_start: bool = False,
) -> Iterator[CanonicalEntry]:
    """Yield entries as they are appended to a live transcript.

    Starts at the end of the transcript unless ``from_start``. Runs until
    ``stop_event`` is set; a JSONL file that disappears raises
    SessionNotFoundError. OpenCode sessions are re-assembled every poll and
    only unseen messages are yielded.
    """
    path = Path(path)
    stop_event = stop_event or threading.Event()
    source = _get_provider(provider, config)
    if provider == OPENCODE:
        assembler = OpenCodeAssembler(source.get_sessions_dir())
        yield from _follow_opencode(assembler, path.stem, stop_event, poll_interval, from_start)
        return
    yield from _follow_jsonl(path, source.new_normalizer(), stop_event, poll_interval, from_start)


def find_transcript_path(session_id: str, config: Optional[AgentLogsConfig] = None) -> Path:
    """Locate a Claude transcript by session id."""
    path = _get_provider(CLAUDE, config).find_transcript(session_id)
    if path is None:
        raise SessionNotFoundError(session_id, "transcript not found")
    return path
