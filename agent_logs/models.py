"""Canonical transcript and session models shared by all providers."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional, Union

# Provider tags
CLAUDE = "claude"
CODEX = "codex"
OPENCODE = "opencode"
PROVIDERS = (CLAUDE, CODEX, OPENCODE)

USER = "user"
ASSISTANT = "assistant"


@dataclass
class TextPart:
    text: str

    type: ClassVar[str] = "text"


@dataclass
class ReasoningPart:
    """Thinking / chain-of-thought content, displayed distinctly from text."""

    text: str

    type: ClassVar[str] = "reasoning"


@dataclass
class ToolCallPart:
    """A tool invocation.

    ``output`` is filled in once a matching result has been merged (Claude) or
    when the provider stores it natively (OpenCode). Codex keeps calls and
    results as separate parts.
    """

    id: str
    name: str
    input: dict = field(default_factory=dict)
    output: str = ""
    status: str = ""
    title: str = ""
    diff: str = ""

    type: ClassVar[str] = "tool_call"


@dataclass
class ToolResultPart:
    tool_call_id: str
    output: str = ""
    is_error: bool = False

    type: ClassVar[str] = "tool_result"


@dataclass
class StepPart:
    """OpenCode step-start / step-finish / patch marker (diagnostic display only)."""

    kind: str
    data: dict = field(default_factory=dict)

    type: ClassVar[str] = "step"


Part = Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart, StepPart]


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass
class CanonicalEntry:
    """One conversational turn, normalized across providers."""

    role: str  # "user" or "assistant"
    provider: str  # "claude", "codex", "opencode"
    timestamp: Optional[datetime] = None
    message_id: str = ""
    parts: list[Part] = field(default_factory=list)
    tokens: Optional[TokenUsage] = None

    def text(self) -> str:
        """Join the text parts of this entry."""
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart) and p.text)

    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    def has_text(self) -> bool:
        return any(isinstance(p, TextPart) and p.text for p in self.parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "messageID": self.message_id,
            "provider": self.provider,
            "parts": [{"type": p.type, "content": asdict(p)} for p in self.parts],
            "tokens": asdict(self.tokens) if self.tokens else None,
        }


@dataclass
class JobInfo:
    """An association between a transcript and an external plan job."""

    plan: str
    job: str
    line_index: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.plan, self.job)


@dataclass
class SessionDescriptor:
    """A located session, recomputed on every discovery pass."""

    # Identity
    session_id: str  # native, provider-scoped
    provider: str
    log_path: str  # transcript file, or the session metadata file for OpenCode

    # Project context
    project_path: str = ""
    project_name: str = ""
    worktree: str = ""
    ecosystem: str = ""

    jobs: list[JobInfo] = field(default_factory=list)
    started_at: Optional[datetime] = None

    def has_job(self, plan: str, job: str) -> bool:
        return any(j.plan == plan and j.job == job for j in self.jobs)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "sessionId": self.session_id,
            "projectName": self.project_name,
            "projectPath": self.project_path,
            "logFilePath": self.log_path,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "provider": self.provider,
        }
        if self.worktree:
            data["worktree"] = self.worktree
        if self.ecosystem:
            data["ecosystem"] = self.ecosystem
        if self.jobs:
            data["jobs"] = [
                {"plan": j.plan, "job": j.job, "lineIndex": j.line_index} for j in self.jobs
            ]
        return data
