"""Resolve user-supplied specifiers to sessions."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import AmbiguousSessionError, SessionNotFoundError
from .models import JobInfo, SessionDescriptor
from .scanner import SessionScanner

logger = logging.getLogger(__name__)


@dataclass
class JobMatch:
    """A job found in a session, with where the following job starts."""

    descriptor: SessionDescriptor
    job: JobInfo
    # Line index of the next job in the same session, None if it runs to the end
    next_line_index: Optional[int] = None


def _started_key(descriptor: SessionDescriptor) -> float:
    return descriptor.started_at.timestamp() if descriptor.started_at else float("-inf")


def _sessions(scanner: Optional[SessionScanner]) -> list[SessionDescriptor]:
    return (scanner or SessionScanner()).scan()


def _single(spec: str, matches: list[SessionDescriptor]) -> SessionDescriptor | None:
    distinct: dict[str, SessionDescriptor] = {}
    for descriptor in matches:
        distinct.setdefault(descriptor.session_id, descriptor)
    if not distinct:
        return None
    if len(distinct) > 1:
        raise AmbiguousSessionError(spec, list(distinct.values()))
    return next(iter(distinct.values()))


def resolve_session_info(spec: str, scanner: Optional[SessionScanner] = None) -> SessionDescriptor:
    """Find the session a specifier refers to.

    Tried in order: the transcript path itself, the native session id, a
    ``plan/job.md`` pair, then a path to a job file on disk (plan taken from
    its directory name). Job-based lookups that hit more than one session raise
    AmbiguousSessionError.
    """
    sessions = _sessions(scanner)
    if not sessions:
        raise SessionNotFoundError(spec, "no sessions found")

    abs_spec = os.path.abspath(os.path.expanduser(spec))
    for descriptor in sessions:
        if descriptor.log_path == abs_spec:
            return descriptor

    for descriptor in sessions:
        if descriptor.session_id == spec:
            return descriptor

    parts = spec.split("/")
    if len(parts) == 2 and parts[1].endswith(".md"):
        found = _single(spec, [s for s in sessions if s.has_job(parts[0], parts[1])])
        if found is not None:
            return found

    job_file = Path(abs_spec)
    if job_file.exists():
        plan, job = job_file.parent.name, job_file.name
        found = _single(spec, [s for s in sessions if s.has_job(plan, job)])
        if found is not None:
            return found

    raise SessionNotFoundError(spec)


def find_job_sessions(
    plan: str,
    job: str,
    scanner: Optional[SessionScanner] = None,
    session_id: str = "",
    project: str = "",
) -> list[JobMatch]:
    """Every session that ran ``plan/job``, one match per session.

    Descriptors sharing a session id are treated as one session whose jobs run
    in start-time order. ``project`` filters by case-insensitive substring of
    the project name.
    """
    by_session: dict[str, list[SessionDescriptor]] = {}
    for descriptor in _sessions(scanner):
        if project and project.lower() not in descriptor.project_name.lower():
            continue
        if session_id and descriptor.session_id != session_id:
            continue
        by_session.setdefault(descriptor.session_id, []).append(descriptor)

    matches = []
    for descriptors in by_session.values():
        descriptors.sort(key=_started_key)
        owned = [(d, j) for d in descriptors for j in d.jobs]
        for index, (descriptor, info) in enumerate(owned):
            if info.plan != plan or info.job != job:
                continue
            next_line = owned[index + 1][1].line_index if index + 1 < len(owned) else None
            matches.append(JobMatch(descriptor=descriptor, job=info, next_line_index=next_line))
            break
    return matches


def resolve_job_session(
    plan: str,
    job: str,
    scanner: Optional[SessionScanner] = None,
    session_id: str = "",
    project: str = "",
) -> JobMatch:
    """The single session that ran ``plan/job``."""
    spec = f"{plan}/{job}"
    matches = find_job_sessions(plan, job, scanner, session_id=session_id, project=project)
    if not matches:
        raise SessionNotFoundError(spec, "no sessions found with this job")
    if len(matches) > 1:
        raise AmbiguousSessionError(spec, [m.descriptor for m in matches])
    logger.debug(f"Resolved {spec} to session {matches[0].descriptor.session_id}")
    return matches[0]
