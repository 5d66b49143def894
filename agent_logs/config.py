"""Configuration: storage locations and tuning knobs."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV = "AGENT_LOGS_CONFIG"
HOME_ENV = "AGENT_LOGS_HOME"
LOG_LEVEL_ENV = "AGENT_LOGS_LOG_LEVEL"

# YAML section/key -> config field
_YAML_KEYS = {
    ("paths", "claude_dir"): "claude_dir",
    ("paths", "codex_dir"): "codex_dir",
    ("paths", "opencode_storage_dir"): "opencode_storage_dir",
    ("paths", "registry_dir"): "registry_dir",
    ("paths", "plan_roots"): "plan_roots",
    ("paths", "db_path"): "db_path",
    ("scan", "max_lines"): "scan_max_lines",
    ("scan", "workers"): "scan_workers",
    ("monitor", "interval"): "monitor_interval",
    ("monitor", "active_window"): "active_window",
    ("logging", "level"): "log_level",
}

_PATH_FIELDS = {"claude_dir", "codex_dir", "opencode_storage_dir", "registry_dir", "db_path"}
_NUMBER_FIELDS = {"scan_max_lines": int, "scan_workers": int, "monitor_interval": float, "active_window": float}


def default_config_path(home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / ".config" / "agent-logs" / "config.yml"


@dataclass
class AgentLogsConfig:
    """Where each provider keeps its data, plus scan and monitor settings."""

    claude_dir: Path
    codex_dir: Path
    opencode_storage_dir: Path
    registry_dir: Path
    db_path: Path
    plan_roots: list[Path] = field(default_factory=list)

    # Number of records read from the head of a transcript during discovery
    scan_max_lines: int = 100
    scan_workers: int = 1

    # Seconds
    monitor_interval: float = 5.0
    active_window: float = 300.0

    log_level: str = "WARNING"

    @classmethod
    def for_home(cls, home: Path) -> "AgentLogsConfig":
        """Default layout rooted at ``home``."""
        home = Path(home)
        return cls(
            claude_dir=home / ".claude",
            codex_dir=home / ".codex",
            opencode_storage_dir=home / ".local" / "share" / "opencode" / "storage",
            registry_dir=home / ".grove" / "hooks" / "sessions",
            db_path=home / ".cache" / "agent-logs" / "messages.db",
            plan_roots=[home / ".grove" / "notebooks"],
        )

    @property
    def claude_projects_dir(self) -> Path:
        return self.claude_dir / "projects"

    @property
    def codex_sessions_dir(self) -> Path:
        return self.codex_dir / "sessions"

    def apply(self, overrides: dict[str, Any]) -> None:
        """Apply ``field -> value`` overrides, coercing paths and numbers."""
        known = {f.name: f for f in fields(self)}
        for name, value in overrides.items():
            if name not in known:
                logger.warning(f"Ignoring unknown config key: {name}")
                continue
            if name in _PATH_FIELDS:
                value = Path(value).expanduser()
            elif name == "plan_roots":
                if isinstance(value, (str, Path)):
                    value = [value]
                value = [Path(v).expanduser() for v in value]
            elif name in _NUMBER_FIELDS:
                try:
                    value = _NUMBER_FIELDS[name](value)
                except (TypeError, ValueError) as e:
                    raise ConfigError(f"Invalid value for {name}: {value!r}") from e
            elif name == "log_level":
                value = str(value).upper()
            setattr(self, name, value)


def _flatten(data: dict) -> dict[str, Any]:
    """Map nested YAML sections onto config field names."""
    overrides = {}
    for section, body in data.items():
        if isinstance(body, dict):
            for key, value in body.items():
                name = _YAML_KEYS.get((section, key))
                if name is None:
                    logger.warning(f"Ignoring unknown config key: {section}.{key}")
                    continue
                overrides[name] = value
        else:
            # Top-level scalars may name a field directly
            overrides[section] = body
    return overrides


def _load_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


def load_config(path: Optional[Path] = None) -> AgentLogsConfig:
    """Build the effective configuration.

    Defaults are rooted at ``$AGENT_LOGS_HOME`` (or the user's home), then the
    YAML file at ``path`` / ``$AGENT_LOGS_CONFIG`` / ``~/.config/agent-logs/config.yml``
    is applied, then ``$AGENT_LOGS_LOG_LEVEL``.
    """
    home = Path(os.environ[HOME_ENV]).expanduser() if os.environ.get(HOME_ENV) else Path.home()
    config = AgentLogsConfig.for_home(home)

    if path is None and os.environ.get(CONFIG_ENV):
        path = Path(os.environ[CONFIG_ENV]).expanduser()
    explicit = path is not None
    path = path or default_config_path(home)

    if path.exists():
        config.apply(_flatten(_load_yaml(path)))
        logger.debug(f"Loaded config from {path}")
    elif explicit:
        raise ConfigError(f"Config file not found: {path}")

    if os.environ.get(LOG_LEVEL_ENV):
        config.apply({"log_level": os.environ[LOG_LEVEL_ENV]})

    return config
