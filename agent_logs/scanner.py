"""Session discovery across providers and precedence sources."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import AgentLogsConfig, load_config
from .models import SessionDescriptor
from .providers import get_all_providers, provider_for_path
from .providers.base import SessionProvider, TranscriptHead
from .registry import SessionMetadata, load_session_registry, scan_archived_sessions
from .workspace import (
    FilesystemPlanLocator,
    FilesystemProjectLookup,
    PlanLocator,
    ProjectLookup,
    project_fields,
)

logger = logging.getLogger(__name__)


class SessionScanner:
    """Builds the list of session descriptors.

    Precedence per native session id is registry, then archive, then live
    transcript. Each source degrades to no results when its storage is absent.
    """

    def __init__(
        self,
        config: Optional[AgentLogsConfig] = None,
        project_lookup: Optional[ProjectLookup] = None,
        plan_locator: Optional[PlanLocator] = None,
        providers: Optional[list[SessionProvider]] = None,
    ):
        self.config = config or load_config()
        self.project_lookup = project_lookup or FilesystemProjectLookup()
        self.plan_locator = plan_locator or FilesystemPlanLocator(self.config.plan_roots)
        self.providers = providers if providers is not None else get_all_providers(self.config)

    def scan(self) -> list[SessionDescriptor]:
        registry = load_session_registry(self.config.registry_dir)
        archived = self._scan_archived()
        # Insertion-ordered set of archived ids still owed a descriptor
        archived_ids = dict.fromkeys(d.session_id for d in archived)

        sessions: list[SessionDescriptor] = []
        emitted: set[str] = set()
        matched_registry: set[str] = set()

        for head in self._parse_live_files():
            session_id = head.session_id

            if session_id and session_id in registry:
                if session_id in matched_registry:
                    logger.debug(f"Skipping duplicate registry session {session_id} at {head.path}")
                    continue
                matched_registry.add(session_id)
                archived_ids.pop(session_id, None)
                sessions.append(self._registry_descriptor(session_id, registry[session_id], head))
                emitted.add(session_id)
                continue

            if session_id and session_id in archived_ids:
                logger.debug(f"Skipping live parse of {session_id}; archived copy takes precedence")
                continue

            descriptor = self._live_descriptor(head)
            if descriptor is not None:
                sessions.append(descriptor)
                emitted.add(descriptor.session_id)

        # Registry records no live file matched, if their transcript survives
        unmatched = []
        for session_id, metadata in registry.items():
            if session_id in matched_registry or session_id in emitted:
                continue
            if metadata.transcript_path and Path(metadata.transcript_path).is_file():
                archived_ids.pop(session_id, None)
                unmatched.append(self._registry_descriptor(session_id, metadata, None))

        for descriptor in archived:
            if descriptor.session_id in archived_ids and descriptor.session_id not in emitted:
                del archived_ids[descriptor.session_id]
                sessions.append(descriptor)
                emitted.add(descriptor.session_id)

        for descriptor in unmatched:
            sessions.append(descriptor)
            emitted.add(descriptor.session_id)

        sessions.extend(self._scan_opencode())
        logger.debug(f"Discovered {len(sessions)} sessions")
        return sessions

    def _scan_archived(self) -> list[SessionDescriptor]:
        try:
            return scan_archived_sessions(self.plan_locator, self.project_lookup)
        except OSError as e:
            logger.warning(f"Could not scan for archived sessions, proceeding without them: {e}")
            return []

    def _parse_live_files(self) -> list[TranscriptHead]:
        work = []
        for provider in self.providers:
            if not provider.jsonl:
                continue
            try:
                files = provider.discover_session_files()
            except OSError as e:
                logger.warning(f"Could not list {provider.display_name} transcripts: {e}")
                continue
            logger.debug(f"Found {len(files)} {provider.display_name} transcript files")
            work.extend((provider, path) for path in files)

        def parse(item: tuple[SessionProvider, Path]) -> TranscriptHead:
            provider, path = item
            return provider.parse_session_prefix(path)

        if self.config.scan_workers > 1 and len(work) > 1:
            # map() keeps input order
            with ThreadPoolExecutor(max_workers=self.config.scan_workers) as executor:
                return list(executor.map(parse, work))
        return [parse(item) for item in work]

    def _registry_descriptor(
        self, session_id: str, metadata: SessionMetadata, head: Optional[TranscriptHead]
    ) -> SessionDescriptor:
        log_path = metadata.transcript_path or (str(head.path) if head else "")
        line_index = head.jobs[0].line_index if head and head.jobs else 0
        job = metadata.job(line_index)
        project_path, project_name, worktree, ecosystem = project_fields(
            self.project_lookup, metadata.working_directory
        )
        if metadata.provider:
            provider = metadata.provider
        elif head is not None and log_path == str(head.path):
            provider = head.provider
        else:
            provider = provider_for_path(Path(log_path), self.config)

        return SessionDescriptor(
            session_id=session_id,
            provider=provider,
            log_path=log_path,
            project_path=project_path,
            project_name=project_name,
            worktree=worktree,
            ecosystem=ecosystem,
            jobs=[job] if job else [],
            started_at=metadata.started_at or (head.started_at if head else None),
        )

    def _live_descriptor(self, head: TranscriptHead) -> SessionDescriptor | None:
        if not head.found:
            try:
                mtime = head.path.stat().st_mtime
            except OSError:
                return None
            return SessionDescriptor(
                session_id=head.path.stem,
                provider=head.provider,
                log_path=str(head.path),
                project_path="unknown",
                project_name="unknown",
                started_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
            )

        project_path, project_name, worktree, ecosystem = project_fields(self.project_lookup, head.cwd)
        return SessionDescriptor(
            session_id=head.session_id,
            provider=head.provider,
            log_path=str(head.path),
            project_path=project_path,
            project_name=project_name,
            worktree=worktree,
            ecosystem=ecosystem,
            jobs=list(head.jobs),
            started_at=head.started_at,
        )

    def _scan_opencode(self) -> list[SessionDescriptor]:
        sessions = []
        for provider in self.providers:
            if provider.jsonl:
                continue
            try:
                heads = provider.scan_sessions()
            except OSError as e:
                logger.warning(f"Could not scan for {provider.display_name} sessions: {e}")
                continue
            for head in heads:
                project_path, project_name, worktree, ecosystem = project_fields(
                    self.project_lookup, head.cwd
                )
                sessions.append(SessionDescriptor(
                    session_id=head.session_id,
                    provider=head.provider,
                    log_path=str(head.path),
                    project_path=project_path,
                    project_name=project_name,
                    worktree=worktree,
                    ecosystem=ecosystem,
                    started_at=head.started_at,
                ))
            logger.debug(f"Added {len(heads)} {provider.display_name} sessions")
        return sessions


def scan_sessions(config: Optional[AgentLogsConfig] = None, **kwargs) -> list[SessionDescriptor]:
    """Discover every session with a default-configured scanner."""
    return SessionScanner(config, **kwargs).scan()
