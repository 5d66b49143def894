"""Incremental transcript monitor.

Periodically reads whatever active sessions appended since the last pass and
hands the new entries to a message store.
"""

import logging
import signal
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .config import AgentLogsConfig, load_config
from .errors import AgentLogsError, SessionNotFoundError
from .log import configure_logging
from .models import CLAUDE, OPENCODE, CanonicalEntry, SessionDescriptor
from .providers import get_provider
from .providers.base import TranscriptNormalizer
from .providers.opencode import OpenCodeAssembler
from .scanner import SessionScanner
from .store import SQLiteMessageStore
from .stream import find_transcript_path, read_entries_from_offset

logger = logging.getLogger(__name__)

SessionKey = tuple[str, str]  # (provider, session_id)


class MessageStore(Protocol):
    def upsert_entries(self, provider: str, session_id: str, entries: list[CanonicalEntry]) -> int:
        ...

    def load_offsets(self) -> dict[SessionKey, int]:
        ...

    def save_offset(self, provider: str, session_id: str, offset: int,
                    transcript_path: str = "", last_message_id: str = "") -> None:
        ...


class OffsetTracker:
    """Per-session read positions that only ever move forward.

    JSONL sessions track byte offsets. OpenCode sessions track the creation
    time (epoch ms) of the newest message handed out, plus the ids handed out
    at exactly that time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._offsets: dict[SessionKey, int] = {}
        self._seen_messages: dict[str, set[str]] = {}

    def get(self, provider: str, session_id: str) -> int:
        with self._lock:
            return self._offsets.get((provider, session_id), 0)

    def advance(self, provider: str, session_id: str, offset: int) -> bool:
        """Move the offset to ``offset`` if that is forward. Returns whether it moved."""
        with self._lock:
            key = (provider, session_id)
            if offset <= self._offsets.get(key, 0):
                return False
            self._offsets[key] = offset
            return True

    def load(self, offsets: dict[SessionKey, int]) -> None:
        for (provider, session_id), offset in offsets.items():
            self.advance(provider, session_id, offset)

    def snapshot(self) -> dict[SessionKey, int]:
        with self._lock:
            return dict(self._offsets)

    def seen_messages(self, session_id: str) -> set[str]:
        with self._lock:
            return set(self._seen_messages.get(session_id, ()))

    def mark_seen(self, session_id: str, message_ids, reset: bool = False) -> None:
        with self._lock:
            if reset:
                self._seen_messages[session_id] = set(message_ids)
            else:
                self._seen_messages.setdefault(session_id, set()).update(message_ids)

    def retain_seen(self, session_ids) -> None:
        """Forget seen message ids of every session not in ``session_ids``."""
        keep = set(session_ids)
        with self._lock:
            for session_id in [s for s in self._seen_messages if s not in keep]:
                del self._seen_messages[session_id]


class RecentlyActiveSessions:
    """Sessions whose artifacts changed within the last ``window`` seconds."""

    def __init__(self, scanner: SessionScanner, window: float):
        self.scanner = scanner
        self.window = window

    def _artifact_mtime(self, descriptor: SessionDescriptor) -> float:
        if descriptor.provider == OPENCODE:
            # New messages land in message/<session>/, not in the session file
            path = self.scanner.config.opencode_storage_dir / "message" / descriptor.session_id
        else:
            path = Path(descriptor.log_path)
        try:
            return path.stat().st_mtime
        except OSError:
            return 0.0

    def __call__(self) -> list[SessionDescriptor]:
        cutoff = time.time() - self.window
        return [d for d in self.scanner.scan() if self._artifact_mtime(d) >= cutoff]


@dataclass
class _LiveTranscript:
    """A JSONL session being followed, with the normalizer kept between passes."""

    descriptor: SessionDescriptor
    normalizer: TranscriptNormalizer
    path: Path


def _created_ms(entry: CanonicalEntry) -> int:
    return round(entry.timestamp.timestamp() * 1000) if entry.timestamp else 0


class TranscriptMonitor:
    """Extracts new entries from active sessions on a background thread.

    ``tick`` does one synchronous pass and can be driven directly. Each JSONL
    session keeps its normalizer between passes so tool calls whose results
    arrive in a later pass are still merged. The persisted offset stops at the
    first line whose entries are still held, so a restart re-reads and
    rebuilds them; sessions that drop out of the active set are flushed.
    """

    def __init__(
        self,
        store: MessageStore,
        tracker: Optional[OffsetTracker] = None,
        active_sessions: Optional[Callable[[], list[SessionDescriptor]]] = None,
        interval: Optional[float] = None,
        config: Optional[AgentLogsConfig] = None,
        on_entries: Optional[Callable[[SessionDescriptor, list[CanonicalEntry]], None]] = None,
    ):
        self.config = config or load_config()
        self.store = store
        self.tracker = tracker or OffsetTracker()
        self.interval = interval if interval is not None else self.config.monitor_interval
        self.active_sessions = active_sessions or RecentlyActiveSessions(
            SessionScanner(self.config), self.config.active_window
        )
        self.on_entries = on_entries

        self._live: dict[SessionKey, _LiveTranscript] = {}
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting transcript monitor")
        self.tracker.load(self.store.load_offsets())
        self._stop_event.clear()
        self.tick()
        self._thread = threading.Thread(target=self._run, name="transcript-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the in-flight pass, then store anything still buffered."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        with self._tick_lock:
            self._retire_inactive(set())
        logger.info("Stopped transcript monitor")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.tick()

    def tick(self) -> int:
        """Process every active session once. Returns the number of newly stored entries."""
        with self._tick_lock:
            try:
                sessions = self.active_sessions()
            except (OSError, AgentLogsError) as e:
                logger.warning(f"Failed to list active sessions: {e}")
                return 0

            logger.debug(f"Processing {len(sessions)} active sessions")
            stored = 0
            active: set[SessionKey] = set()
            for descriptor in sessions:
                active.add((descriptor.provider, descriptor.session_id))
                try:
                    stored += self.process_session(descriptor)
                except (OSError, AgentLogsError, sqlite3.Error) as e:
                    logger.warning(f"Failed to process session {descriptor.session_id}: {e}")
            return stored + self._retire_inactive(active)

    def process_session(self, descriptor: SessionDescriptor) -> int:
        if descriptor.provider == OPENCODE:
            return self._process_opencode(descriptor)

        path = Path(descriptor.log_path)
        if not path.exists() and descriptor.provider == CLAUDE:
            try:
                path = find_transcript_path(descriptor.session_id, self.config)
            except SessionNotFoundError:
                # Normal until the agent writes its first record
                logger.debug(f"Transcript not found for session {descriptor.session_id}")
                return 0

        key = (descriptor.provider, descriptor.session_id)
        live = self._live_transcript(descriptor, path)
        offset = self.tracker.get(*key)
        entries, new_offset = read_entries_from_offset(path, live.normalizer, offset)

        stored = self._store(descriptor, entries)
        if self.tracker.advance(*key, new_offset):
            self._save_position(live, entries[-1].message_id if entries else "")
        return stored

    def _process_opencode(self, descriptor: SessionDescriptor) -> int:
        session_id = descriptor.session_id
        assembler = OpenCodeAssembler(self.config.opencode_storage_dir)
        watermark = self.tracker.get(OPENCODE, session_id)
        seen = self.tracker.seen_messages(session_id)
        entries = [
            e for e in assembler.assemble(session_id)
            if _created_ms(e) > watermark or (_created_ms(e) == watermark and e.message_id not in seen)
        ]
        if not entries:
            return 0

        stored = self._store(descriptor, entries)
        newest = max(_created_ms(e) for e in entries)
        at_newest = [e.message_id for e in entries if _created_ms(e) == newest]
        if self.tracker.advance(OPENCODE, session_id, newest):
            self.tracker.mark_seen(session_id, at_newest, reset=True)
            self.store.save_offset(
                OPENCODE, session_id, newest,
                transcript_path=descriptor.log_path,
                last_message_id=entries[-1].message_id,
            )
        else:
            self.tracker.mark_seen(session_id, at_newest)
        return stored

    def _store(self, descriptor: SessionDescriptor, entries: list[CanonicalEntry]) -> int:
        if not entries:
            return 0
        stored = self.store.upsert_entries(descriptor.provider, descriptor.session_id, entries)
        logger.info(f"Stored {stored} new of {len(entries)} entries for session {descriptor.session_id}")
        if self.on_entries is not None:
            self.on_entries(descriptor, entries)
        return stored

    def _save_position(self, live: _LiveTranscript, last_message_id: str = "") -> None:
        provider, session_id = live.descriptor.provider, live.descriptor.session_id
        held = live.normalizer.held_position()
        position = held if held is not None else self.tracker.get(provider, session_id)
        self.store.save_offset(
            provider, session_id, position,
            transcript_path=str(live.path),
            last_message_id=last_message_id,
        )

    def _live_transcript(self, descriptor: SessionDescriptor, path: Path) -> _LiveTranscript:
        key = (descriptor.provider, descriptor.session_id)
        live = self._live.get(key)
        if live is None:
            provider = get_provider(descriptor.provider, self.config)
            if provider is None:
                raise AgentLogsError(f"Unknown provider: {descriptor.provider}")
            live = _LiveTranscript(descriptor, provider.new_normalizer(), path)
            self._live[key] = live
        live.path = path
        return live

    def _retire_inactive(self, active: set[SessionKey]) -> int:
        """Flush and drop per-session state of sessions not in ``active``."""
        stored = 0
        for key in [k for k in self._live if k not in active]:
            live = self._live.pop(key)
            try:
                stored += self._store(live.descriptor, live.normalizer.flush())
                self._save_position(live)
            except sqlite3.Error as e:
                logger.warning(f"Failed to store buffered entries for {live.descriptor.session_id}: {e}")
        self.tracker.retain_seen(session_id for provider, session_id in active if provider == OPENCODE)
        return stored


def run_forever(config: Optional[AgentLogsConfig] = None, stop_event: Optional[threading.Event] = None) -> None:
    """Run the monitor against the default SQLite store until interrupted or terminated."""
    config = config or load_config()
    configure_logging(config.log_level)
    store = SQLiteMessageStore(config.db_path)
    monitor = TranscriptMonitor(store, config=config)
    stop_event = stop_event or threading.Event()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

    monitor.start()
    try:
        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        monitor.stop()
        store.close()
