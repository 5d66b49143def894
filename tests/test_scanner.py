"""Tests for session discovery and source precedence."""

import pytest

from agent_logs.scanner import SessionScanner, scan_sessions

from conftest import (
    FakePlanLocator,
    claude_assistant,
    claude_user,
    job_instruction,
    write_json,
    write_jsonl,
)


def claude_session(config, session_id, records=None, project="-work-proj"):
    records = records or [claude_user("hello", session_id=session_id)]
    return write_jsonl(config.claude_projects_dir / project / f"{session_id}.jsonl", records)


def registry_record(config, flow_id, **fields):
    return write_json(config.registry_dir / flow_id / "metadata.json", {"session_id": flow_id, **fields})


def archived_session(plan_dir, job_dir, **fields):
    artifacts = plan_dir / ".artifacts" / job_dir
    write_jsonl(artifacts / "transcript.jsonl", [claude_user("archived")])
    return write_json(artifacts / "metadata.json", fields)


@pytest.fixture
def scanner_factory(config, project_lookup):
    def make(plan_dirs=None, **kwargs):
        return SessionScanner(config, project_lookup=project_lookup,
                              plan_locator=FakePlanLocator(plan_dirs), **kwargs)
    return make


class TestLiveDiscovery:
    def test_claude_session(self, config, scanner_factory):
        claude_session(config, "sess-1", [
            claude_user(job_instruction(), session_id="sess-1"),
            claude_assistant([{"type": "text", "text": "ok"}], session_id="sess-1"),
        ])

        sessions = scanner_factory().scan()
        assert len(sessions) == 1
        session = sessions[0]
        assert session.session_id == "sess-1"
        assert session.provider == "claude"
        assert session.project_name == "proj"
        assert session.project_path == "/work/proj"
        assert [(j.plan, j.job, j.line_index) for j in session.jobs] == [("demo", "01-setup.md", 0)]

    def test_unknown_project_falls_back_to_cwd(self, config, scanner_factory):
        claude_session(config, "sess-1", [claude_user("x", session_id="sess-1", cwd="/tmp/scratch")])
        session = scanner_factory().scan()[0]
        assert (session.project_path, session.project_name) == ("/tmp/scratch", "scratch")

    def test_sidechain_files_excluded(self, config, scanner_factory):
        claude_session(config, "sess-1")
        write_jsonl(config.claude_projects_dir / "-work-proj" / "agent-123.jsonl",
                    [claude_user("sub", session_id="sess-1")])
        assert [s.log_path for s in scanner_factory().scan()] == [
            str(config.claude_projects_dir / "-work-proj" / "sess-1.jsonl")
        ]

    def test_unidentified_file_gets_fallback_descriptor(self, config, scanner_factory):
        claude_session(config, "mystery", [{"type": "summary", "summary": "x"}])
        session = scanner_factory().scan()[0]
        assert session.session_id == "mystery"
        assert session.project_name == "unknown"
        assert session.project_path == "unknown"
        assert session.started_at is not None

    def test_codex_session(self, config, scanner_factory):
        write_jsonl(config.codex_sessions_dir / "2025" / "01" / "02" / "rollout.jsonl", [
            {"type": "session_meta", "payload": {"id": "codex-1", "timestamp": "2025-01-02T00:00:00Z",
                                                 "cwd": "/work/proj"}},
        ])
        session = scanner_factory().scan()[0]
        assert (session.session_id, session.provider, session.project_name) == ("codex-1", "codex", "proj")

    def test_no_sources_at_all(self, scanner_factory):
        assert scanner_factory().scan() == []

    def test_parallel_scan_keeps_order(self, config, scanner_factory):
        for i in range(8):
            claude_session(config, f"sess-{i}", [claude_user("x", session_id=f"sess-{i}")])
        sequential = [s.session_id for s in scanner_factory().scan()]

        config.scan_workers = 4
        assert [s.session_id for s in scanner_factory().scan()] == sequential


class TestPrecedence:
    def test_registry_overrides_live(self, config, scanner_factory, tmp_path):
        live = claude_session(config, "sess-1", [
            claude_user("warmup", session_id="sess-1", uuid="u0"),
            claude_user(job_instruction("other", "99-guess.md"), session_id="sess-1", uuid="u1"),
        ])
        registry_record(
            config, "flow-1",
            claude_session_id="sess-1",
            plan_name="demo",
            job_file_path="/nb/plans/demo/01-setup.md",
            working_directory="/work/proj",
            transcript_path=str(live),
            started_at="2025-03-01T00:00:00Z",
        )

        sessions = scanner_factory().scan()
        assert len(sessions) == 1
        session = sessions[0]
        assert session.log_path == str(live)
        # Registry job, positioned at the first job the heuristic saw
        assert [(j.plan, j.job, j.line_index) for j in session.jobs] == [("demo", "01-setup.md", 1)]
        assert session.started_at.month == 3

    def test_registry_without_transcript_path_uses_live_file(self, config, scanner_factory):
        live = claude_session(config, "sess-1")
        registry_record(config, "flow-1", claude_session_id="sess-1", working_directory="/work/proj")

        session = scanner_factory().scan()[0]
        assert session.log_path == str(live)
        assert session.jobs == []

    def test_legacy_registry_keyed_by_directory(self, config, scanner_factory):
        claude_session(config, "sess-1")
        registry_record(config, "sess-1", plan_name="demo", job_file_path="/p/01.md",
                        working_directory="/work/proj")

        session = scanner_factory().scan()[0]
        assert [j.job for j in session.jobs] == ["01.md"]

    def test_registry_session_emitted_once(self, config, scanner_factory):
        claude_session(config, "sess-1", project="a")
        claude_session(config, "sess-1", project="b")
        registry_record(config, "flow-1", claude_session_id="sess-1", working_directory="/work/proj")

        assert [s.session_id for s in scanner_factory().scan()] == ["sess-1"]

    def test_archived_suppresses_live(self, config, scanner_factory, tmp_path):
        plan = tmp_path / "plans" / "demo"
        archived_session(plan, "01-setup", claude_session_id="sess-1", plan_name="demo",
                         job_file_path="/x/01-setup.md", working_directory="/work/proj")
        claude_session(config, "sess-1")
        claude_session(config, "sess-2", [claude_user("x", session_id="sess-2")])

        sessions = scanner_factory([plan]).scan()
        by_id = {s.session_id: s for s in sessions}
        assert [s.session_id for s in sessions] == ["sess-2", "sess-1"]
        assert by_id["sess-1"].log_path == str(plan / ".artifacts" / "01-setup" / "transcript.jsonl")
        assert [j.line_index for j in by_id["sess-1"].jobs] == [0]

    def test_registry_beats_archive(self, config, scanner_factory, tmp_path):
        plan = tmp_path / "plans" / "demo"
        archived_session(plan, "01-setup", claude_session_id="sess-1", working_directory="/work/proj")
        live = claude_session(config, "sess-1")
        registry_record(config, "flow-1", claude_session_id="sess-1", working_directory="/work/proj")

        sessions = scanner_factory([plan]).scan()
        assert len(sessions) == 1
        assert sessions[0].log_path == str(live)

    def test_unmatched_registry_record_with_transcript(self, config, scanner_factory, tmp_path):
        transcript = write_jsonl(tmp_path / "kept" / "t.jsonl", [claude_user("x")])
        registry_record(config, "flow-1", claude_session_id="gone-live", transcript_path=str(transcript),
                        working_directory="/work/proj")
        registry_record(config, "flow-2", claude_session_id="no-file",
                        transcript_path=str(tmp_path / "missing.jsonl"))

        sessions = scanner_factory().scan()
        assert [s.session_id for s in sessions] == ["gone-live"]
        assert sessions[0].provider == "claude"

    def test_opencode_sessions_last(self, config, scanner_factory, opencode_storage):
        opencode_storage.session("ses_1", directory="/work/proj")
        claude_session(config, "sess-1")

        sessions = scanner_factory().scan()
        assert [(s.session_id, s.provider) for s in sessions] == [("sess-1", "claude"), ("ses_1", "opencode")]
        assert sessions[1].log_path.endswith("ses_1.json")

    def test_invalid_registry_metadata_skipped(self, config, scanner_factory):
        (config.registry_dir / "flow-1").mkdir(parents=True)
        (config.registry_dir / "flow-1" / "metadata.json").write_text("{nope")
        claude_session(config, "sess-1")

        assert [s.session_id for s in scanner_factory().scan()] == ["sess-1"]


def test_scan_sessions_uses_given_config(config, project_lookup):
    claude_session(config, "sess-1")
    sessions = scan_sessions(config, project_lookup=project_lookup, plan_locator=FakePlanLocator())
    assert [s.session_id for s in sessions] == ["sess-1"]
