"""Project and plan lookup.

The scanner only needs two questions answered: which project does a working
directory belong to, and which plan directories may hold archived sessions.
Both are collaborators so tests and embedding tools can substitute their own.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol

import yaml

from .errors import ProjectNotFoundError

logger = logging.getLogger(__name__)

ECOSYSTEM_FILE = "grove.yml"
ARTIFACTS_DIR = ".artifacts"


@dataclass
class ProjectInfo:
    name: str
    path: str
    is_worktree: bool = False
    parent_project_path: str = ""
    root_ecosystem_path: str = ""
    parent_ecosystem_path: str = ""


class ProjectLookup(Protocol):
    def get_project_by_path(self, path: str) -> ProjectInfo:
        """Return the project containing ``path`` or raise ProjectNotFoundError."""


class PlanLocator(Protocol):
    def find_plan_dirs(self) -> list[Path]:
        """Return every plan directory that may hold archived sessions."""


def _parse_gitdir(git_file: Path) -> Optional[Path]:
    try:
        content = git_file.read_text().strip()
    except OSError:
        return None
    if not content.startswith("gitdir:"):
        return None
    gitdir = Path(content[len("gitdir:"):].strip())
    if not gitdir.is_absolute():
        gitdir = (git_file.parent / gitdir).resolve()
    return gitdir


def _is_ecosystem(directory: Path) -> bool:
    config_file = directory / ECOSYSTEM_FILE
    if not config_file.is_file():
        return False
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.debug(f"Ignoring unreadable {config_file}: {e}")
        return False
    return isinstance(data, dict) and "workspaces" in data


class FilesystemProjectLookup:
    """Finds projects by walking up to the nearest ``.git`` entry.

    A ``.git`` *file* pointing into ``<repo>/.git/worktrees/<name>`` marks a
    worktree of ``<repo>``. Ancestors whose ``grove.yml`` declares
    ``workspaces`` are ecosystems.
    """

    def get_project_by_path(self, path: str) -> ProjectInfo:
        if not path:
            raise ProjectNotFoundError(path)
        start = Path(path).expanduser()
        if not start.is_absolute() or not start.exists():
            raise ProjectNotFoundError(path)

        root = next((d for d in (start, *start.parents) if (d / ".git").exists()), None)
        if root is None:
            raise ProjectNotFoundError(path)

        info = ProjectInfo(name=root.name, path=str(root))
        git_entry = root / ".git"
        if git_entry.is_file():
            gitdir = _parse_gitdir(git_entry)
            # <repo>/.git/worktrees/<name>
            if gitdir is not None and gitdir.parent.name == "worktrees":
                info.is_worktree = True
                if gitdir.parent.parent.name == ".git":
                    info.parent_project_path = str(gitdir.parent.parent.parent)

        anchor = Path(info.parent_project_path) if info.parent_project_path else root
        ecosystems = [d for d in anchor.parents if _is_ecosystem(d)]
        if ecosystems:
            info.parent_ecosystem_path = str(ecosystems[0])
            info.root_ecosystem_path = str(ecosystems[-1])
        return info


class FilesystemPlanLocator:
    """Yields directories under the plan roots that contain ``.artifacts``."""

    def __init__(self, plan_roots: Iterable[Path]):
        self.plan_roots = [Path(p) for p in plan_roots]

    def find_plan_dirs(self) -> list[Path]:
        plan_dirs = set()
        for root in self.plan_roots:
            if not root.is_dir():
                logger.debug(f"Plan root does not exist: {root}")
                continue
            for artifacts in root.rglob(ARTIFACTS_DIR):
                if artifacts.is_dir():
                    plan_dirs.add(artifacts.parent)
        return sorted(plan_dirs)


def project_fields(lookup: ProjectLookup, cwd: str) -> tuple[str, str, str, str]:
    """Return ``(project_path, project_name, worktree, ecosystem)`` for a cwd.

    Worktrees are reported under their parent project. When the lookup cannot
    place the directory, the cwd and its basename are used as-is.
    """
    if not cwd:
        return "unknown", "unknown", "", ""
    try:
        info = lookup.get_project_by_path(cwd)
    except ProjectNotFoundError:
        return cwd, Path(cwd).name, "", ""

    worktree = ""
    if info.is_worktree:
        worktree = info.name
        if info.parent_project_path:
            project_path = info.parent_project_path
            project_name = Path(info.parent_project_path).name
        else:
            project_path, project_name = info.path, info.name
    else:
        project_path, project_name = info.path, info.name

    ecosystem = ""
    if info.root_ecosystem_path:
        ecosystem = Path(info.root_ecosystem_path).name
    elif info.parent_ecosystem_path:
        ecosystem = Path(info.parent_ecosystem_path).name
    return project_path, project_name, worktree, ecosystem
