"""Exception types raised by agent-logs."""

from typing import Optional


class AgentLogsError(Exception):
    """Base class for all agent-logs errors."""


class ConfigError(AgentLogsError):
    """The configuration file could not be read or parsed."""


class RecordParseError(AgentLogsError):
    """A single transcript record could not be decoded.

    Stream readers catch this, log it and move on to the next record.
    """

    def __init__(self, reason: str, line_number: Optional[int] = None):
        self.reason = reason
        self.line_number = line_number
        where = f" at line {line_number}" if line_number is not None else ""
        super().__init__(f"Unparseable record{where}: {reason}")


class SessionNotFoundError(AgentLogsError):
    """No session or transcript artifact matches the given specifier."""

    def __init__(self, spec: str, detail: str = ""):
        self.spec = spec
        message = f"Could not find session matching spec: {spec}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class AmbiguousSessionError(AgentLogsError):
    """More than one session matches the given specifier."""

    def __init__(self, spec: str, choices: list):
        self.spec = spec
        self.choices = choices
        ids = ", ".join(c.session_id for c in choices)
        super().__init__(f"Multiple sessions match {spec}: {ids}")


class ProjectNotFoundError(AgentLogsError):
    """The project lookup could not place a working directory in a project."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No project found for path: {path}")
