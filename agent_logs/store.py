import hashlib
import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .models import CanonicalEntry

SCHEMA_VERSION = 1


@dataclass
class MessageRow:
    provider: str
    session_id: str
    message_id: str
    role: str
    timestamp: Optional[int]  # epoch ms
    content: str
    parts: list[dict]
    tokens: Optional[dict]
    sequence: int


@dataclass
class ExtractionState:
    provider: str
    session_id: str
    transcript_path: str
    offset: int
    last_message_id: str
    extracted_at: int


def compute_entry_key(entry: CanonicalEntry) -> str:
    """Stable identifier for an entry; content-derived when the provider has none."""
    if entry.message_id:
        return entry.message_id
    content = json.dumps(entry.to_dict(), sort_keys=True, default=str)
    return "sha1:" + hashlib.sha1(content.encode()).hexdigest()[:16]


class SQLiteMessageStore:
    """Persists extracted entries and per-session read offsets.

    Upserts are keyed by (provider, session_id, message_id), so re-reading a
    transcript region never duplicates rows.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._connection: Optional[sqlite3.Connection] = None
        self._initialized = False
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA journal_mode = WAL")
        return self._connection

    def _ensure_schema(self):
        if self._initialized:
            return
        conn = self._get_connection()
        current_version = self._get_schema_version(conn)
        if current_version < SCHEMA_VERSION:
            conn.executescript(self._get_schema_sql())
            conn.execute(
                "INSERT INTO schema_meta (version, description) VALUES (?, ?)",
                (SCHEMA_VERSION, f"Schema version {SCHEMA_VERSION}"),
            )
        self._initialized = True

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT MAX(version) as v FROM schema_meta").fetchone()
            return row["v"] if row and row["v"] else 0
        except sqlite3.OperationalError:
            return 0

    def _get_schema_sql(self) -> str:
        return """
            CREATE TABLE IF NOT EXISTS schema_meta (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER DEFAULT (strftime('%s', 'now')),
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                provider TEXT NOT NULL,
                session_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                role TEXT NOT NULL,
                timestamp INTEGER,
                content TEXT,
                parts TEXT,
                tokens TEXT,
                sequence INTEGER NOT NULL,
                stored_at INTEGER,
                PRIMARY KEY (provider, session_id, message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_sequence ON messages(session_id, sequence);

            CREATE TABLE IF NOT EXISTS extraction_state (
                provider TEXT NOT NULL,
                session_id TEXT NOT NULL,
                transcript_path TEXT,
                byte_offset INTEGER NOT NULL DEFAULT 0,
                last_message_id TEXT,
                extracted_at INTEGER,
                PRIMARY KEY (provider, session_id)
            );
        """

    def initialize(self):
        with self._lock:
            self._ensure_schema()

    def close(self):
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                self._initialized = False

    def upsert_entries(self, provider: str, session_id: str, entries: list[CanonicalEntry]) -> int:
        """Store entries, returning how many were not stored before."""
        if not entries:
            return 0
        with self._lock:
            self._ensure_schema()
            conn = self._get_connection()
            before = self._count(conn, session_id, provider)
            row = conn.execute(
                "SELECT MAX(sequence) AS s FROM messages WHERE provider = ? AND session_id = ?",
                (provider, session_id),
            ).fetchone()
            next_sequence = (row["s"] if row["s"] is not None else -1) + 1
            now = int(time.time())

            rows = []
            for offset, entry in enumerate(entries):
                data = entry.to_dict()
                rows.append((
                    provider,
                    session_id,
                    compute_entry_key(entry),
                    entry.role,
                    int(entry.timestamp.timestamp() * 1000) if entry.timestamp else None,
                    entry.text(),
                    json.dumps(data["parts"], default=str),
                    json.dumps(data["tokens"]) if data["tokens"] else None,
                    next_sequence + offset,
                    now,
                ))
            # Sequence is kept from the first insert
            conn.executemany(
                """
                INSERT INTO messages (
                    provider, session_id, message_id, role, timestamp, content,
                    parts, tokens, sequence, stored_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, session_id, message_id) DO UPDATE SET
                    role = excluded.role,
                    timestamp = excluded.timestamp,
                    content = excluded.content,
                    parts = excluded.parts,
                    tokens = excluded.tokens,
                    stored_at = excluded.stored_at
                """,
                rows,
            )
            return self._count(conn, session_id, provider) - before

    def load_offsets(self) -> dict[tuple[str, str], int]:
        with self._lock:
            self._ensure_schema()
            rows = self._get_connection().execute(
                "SELECT provider, session_id, byte_offset FROM extraction_state"
            ).fetchall()
        return {(r["provider"], r["session_id"]): r["byte_offset"] for r in rows}

    def save_offset(
        self,
        provider: str,
        session_id: str,
        offset: int,
        transcript_path: str = "",
        last_message_id: str = "",
    ) -> None:
        with self._lock:
            self._ensure_schema()
            self._get_connection().execute(
                """
                INSERT INTO extraction_state (
                    provider, session_id, transcript_path, byte_offset, last_message_id, extracted_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, session_id) DO UPDATE SET
                    transcript_path = excluded.transcript_path,
                    byte_offset = MAX(extraction_state.byte_offset, excluded.byte_offset),
                    last_message_id = COALESCE(NULLIF(excluded.last_message_id, ''),
                                               extraction_state.last_message_id),
                    extracted_at = excluded.extracted_at
                """,
                (provider, session_id, transcript_path, offset, last_message_id, int(time.time())),
            )

    def get_extraction_state(self, provider: str, session_id: str) -> Optional[ExtractionState]:
        with self._lock:
            self._ensure_schema()
            row = self._get_connection().execute(
                "SELECT * FROM extraction_state WHERE provider = ? AND session_id = ?",
                (provider, session_id),
            ).fetchone()
        if not row:
            return None
        return ExtractionState(
            provider=row["provider"],
            session_id=row["session_id"],
            transcript_path=row["transcript_path"] or "",
            offset=row["byte_offset"],
            last_message_id=row["last_message_id"] or "",
            extracted_at=row["extracted_at"],
        )

    def get_messages(self, session_id: str, provider: Optional[str] = None) -> list[MessageRow]:
        query = "SELECT * FROM messages WHERE session_id = ?"
        params: list = [session_id]
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        query += " ORDER BY sequence"

        with self._lock:
            self._ensure_schema()
            rows = self._get_connection().execute(query, params).fetchall()
        return [
            MessageRow(
                provider=r["provider"],
                session_id=r["session_id"],
                message_id=r["message_id"],
                role=r["role"],
                timestamp=r["timestamp"],
                content=r["content"] or "",
                parts=json.loads(r["parts"]) if r["parts"] else [],
                tokens=json.loads(r["tokens"]) if r["tokens"] else None,
                sequence=r["sequence"],
            )
            for r in rows
        ]

    def count_messages(self, session_id: Optional[str] = None, provider: Optional[str] = None) -> int:
        with self._lock:
            self._ensure_schema()
            return self._count(self._get_connection(), session_id, provider)

    def _count(self, conn: sqlite3.Connection, session_id: Optional[str], provider: Optional[str]) -> int:
        query = "SELECT COUNT(*) as c FROM messages WHERE 1 = 1"
        params: list = []
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if provider:
            query += " AND provider = ?"
            params.append(provider)
        row = conn.execute(query, params).fetchone()
        return row["c"] if row else 0
