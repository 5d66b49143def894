"""Shared fixtures: provider storage trees rooted in tmp_path."""

import json
from pathlib import Path

import pytest

from agent_logs.config import AgentLogsConfig
from agent_logs.errors import ProjectNotFoundError
from agent_logs.workspace import ProjectInfo


def write_jsonl(path: Path, records: list) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for record in records:
            f.write((record if isinstance(record, str) else json.dumps(record)) + "\n")
    return path


def write_json(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def claude_user(text, session_id="sess-1", cwd="/work/proj", uuid="u1",
                timestamp="2025-01-01T10:00:00Z"):
    return {
        "type": "user",
        "sessionId": session_id,
        "cwd": cwd,
        "uuid": uuid,
        "timestamp": timestamp,
        "message": {"role": "user", "content": text},
    }


def claude_assistant(content, session_id="sess-1", cwd="/work/proj", uuid="a1",
                     timestamp="2025-01-01T10:00:01Z", usage=None):
    message = {"role": "assistant", "id": f"msg_{uuid}", "content": content}
    if usage:
        message["usage"] = usage
    return {
        "type": "assistant",
        "sessionId": session_id,
        "cwd": cwd,
        "uuid": uuid,
        "timestamp": timestamp,
        "message": message,
    }


def tool_use(call_id, name="Bash", command="ls"):
    return {"type": "tool_use", "id": call_id, "name": name, "input": {"command": command}}


def tool_result(call_id, content="ok", is_error=False, uuid="r1", session_id="sess-1"):
    return {
        "type": "user",
        "sessionId": session_id,
        "uuid": uuid,
        "timestamp": "2025-01-01T10:00:02Z",
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": call_id, "content": content,
                         "is_error": is_error}],
        },
    }


def job_instruction(plan="demo", job="01-setup.md"):
    return (f"Read the file /home/u/notebooks/proj/plans/{plan}/{job} "
            f"and execute the agent job")


class FakeProjectLookup:
    """Maps cwd -> ProjectInfo; unknown paths raise like the real lookup."""

    def __init__(self, projects=None):
        self.projects = projects or {}

    def get_project_by_path(self, path):
        if path in self.projects:
            return self.projects[path]
        raise ProjectNotFoundError(path)


class FakePlanLocator:
    def __init__(self, plan_dirs=None):
        self.plan_dirs = plan_dirs or []

    def find_plan_dirs(self):
        return list(self.plan_dirs)


@pytest.fixture
def home(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def config(home):
    return AgentLogsConfig.for_home(home)


@pytest.fixture
def project_lookup():
    return FakeProjectLookup({
        "/work/proj": ProjectInfo(name="proj", path="/work/proj"),
    })


class OpenCodeStorage:
    """Builder for an OpenCode storage tree."""

    def __init__(self, root: Path):
        self.root = root

    def project(self, project_id, worktree):
        write_json(self.root / "project" / f"{project_id}.json", {"id": project_id, "worktree": worktree})

    def session(self, session_id, project_id="proj1", directory="", created=1700000000000):
        data = {"id": session_id, "projectID": project_id, "time": {"created": created}}
        if directory:
            data["directory"] = directory
        return write_json(self.root / "session" / project_id / f"{session_id}.json", data)

    def message(self, session_id, message_id, role, created, tokens=None):
        data = {"id": message_id, "sessionID": session_id, "role": role,
                "time": {"created": created, "completed": created + 10}}
        if tokens:
            data["tokens"] = tokens
        write_json(self.root / "message" / session_id / f"{message_id}.json", data)

    def part(self, message_id, part_id, **fields):
        write_json(self.root / "part" / message_id / f"{part_id}.json",
                   {"id": part_id, "messageID": message_id, **fields})


@pytest.fixture
def opencode_storage(config):
    return OpenCodeStorage(config.opencode_storage_dir)
