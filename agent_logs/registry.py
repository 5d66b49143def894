"""Session registry and archived-session sources.

The plan runner records every agent session it launches in
``<registry_dir>/<flow-id>/metadata.json``; when a job finishes its transcript
is archived next to the plan in ``<plan>/.artifacts/<job>/``. Both sources carry
authoritative plan/job associations, unlike the instruction heuristic.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import CLAUDE, JobInfo, SessionDescriptor
from .providers.base import parse_timestamp
from .workspace import PlanLocator, ProjectLookup, project_fields

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
ARCHIVED_TRANSCRIPT = "transcript.jsonl"


@dataclass
class SessionMetadata:
    """One registry record."""

    session_id: str = ""  # flow job id
    claude_session_id: str = ""  # native agent session id
    provider: str = ""
    plan_name: str = ""
    job_file_path: str = ""
    working_directory: str = ""
    transcript_path: str = ""
    started_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMetadata":
        def text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        return cls(
            session_id=text("session_id"),
            claude_session_id=text("claude_session_id"),
            provider=text("provider"),
            plan_name=text("plan_name"),
            job_file_path=text("job_file_path"),
            working_directory=text("working_directory"),
            transcript_path=text("transcript_path"),
            started_at=parse_timestamp(data.get("started_at")),
        )

    def job(self, line_index: int = 0) -> JobInfo | None:
        """The plan/job this session was launched for, if recorded."""
        if not self.plan_name or not self.job_file_path:
            return None
        return JobInfo(plan=self.plan_name, job=Path(self.job_file_path).name, line_index=line_index)


def _read_metadata(path: Path) -> SessionMetadata | None:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning(f"Skipping invalid session metadata {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Skipping invalid session metadata {path}: not an object")
        return None
    return SessionMetadata.from_dict(data)


def load_session_registry(registry_dir: Path) -> dict[str, SessionMetadata]:
    """Map native session id to its registry record.

    Legacy records without ``claude_session_id`` are keyed by their directory
    name.
    """
    registry: dict[str, SessionMetadata] = {}
    registry_dir = Path(registry_dir)
    if not registry_dir.is_dir():
        logger.debug(f"Session registry does not exist: {registry_dir}")
        return registry

    try:
        entries = sorted(registry_dir.iterdir())
    except OSError as e:
        logger.warning(f"Cannot read session registry {registry_dir}: {e}")
        return registry

    for entry in entries:
        if not entry.is_dir():
            continue
        metadata = _read_metadata(entry / METADATA_FILE)
        if metadata is None:
            logger.debug(f"Skipping {entry.name}: no metadata file")
            continue
        key = metadata.claude_session_id or entry.name
        registry[key] = metadata

    logger.debug(f"Loaded {len(registry)} sessions from registry")
    return registry


def scan_archived_sessions(locator: PlanLocator, lookup: ProjectLookup) -> list[SessionDescriptor]:
    """Descriptors for transcripts archived under ``<plan>/.artifacts/<job>/``."""
    sessions = []
    for plan_dir in locator.find_plan_dirs():
        artifacts_dir = plan_dir / ".artifacts"
        try:
            job_dirs = sorted(d for d in artifacts_dir.iterdir() if d.is_dir())
        except OSError:
            continue

        for job_dir in job_dirs:
            metadata = _read_metadata(job_dir / METADATA_FILE)
            if metadata is None:
                continue
            session_id = metadata.claude_session_id or metadata.session_id
            if not session_id:
                logger.debug(f"Skipping archive without session id: {job_dir}")
                continue

            project_path, project_name, worktree, ecosystem = project_fields(
                lookup, metadata.working_directory
            )
            job = metadata.job()
            sessions.append(SessionDescriptor(
                session_id=session_id,
                # Archived sessions are almost always Claude
                provider=metadata.provider or CLAUDE,
                log_path=str(job_dir / ARCHIVED_TRANSCRIPT),
                project_path=project_path,
                project_name=project_name,
                worktree=worktree,
                ecosystem=ecosystem,
                jobs=[job] if job else [],
                started_at=metadata.started_at,
            ))
    return sessions
