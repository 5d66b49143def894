"""Property-based tests using Hypothesis."""

import json
import tempfile
from pathlib import Path

from hypothesis import given, settings
from hypothesis import strategies as st

from agent_logs.jobs import JobTracker
from agent_logs.monitor import OffsetTracker
from agent_logs.providers.claude import ClaudeNormalizer
from agent_logs.providers.opencode import OpenCodeAssembler

TEXT = st.text(min_size=1, max_size=40, alphabet=st.characters(blacklist_categories=("Cs",)))


@st.composite
def claude_conversation(draw: st.DrawFn) -> tuple[list[dict], dict[str, str]]:
    """Assistant turns with tool calls, each followed by results for some of its calls in any order.

    Returns the records and the expected output per call id.
    """
    records = []
    outputs = {}
    for turn in range(draw(st.integers(min_value=1, max_value=5))):
        blocks = [{"type": "text", "text": draw(TEXT)}]
        call_ids = []
        for n in range(draw(st.integers(min_value=0, max_value=3))):
            call_id = f"t{turn}_{n}"
            call_ids.append(call_id)
            blocks.append({"type": "tool_use", "id": call_id, "name": "Bash", "input": {"command": "ls"}})
        records.append({
            "type": "assistant",
            "uuid": f"a{turn}",
            "timestamp": "2025-01-01T10:00:00Z",
            "message": {"role": "assistant", "id": f"msg_{turn}", "content": blocks},
        })

        answered = [c for c in call_ids if draw(st.booleans())]
        for call_id in draw(st.permutations(answered)):
            outputs[call_id] = f"out {call_id}"
            records.append({
                "type": "user",
                "uuid": f"r_{call_id}",
                "timestamp": "2025-01-01T10:00:01Z",
                "message": {"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": call_id, "content": outputs[call_id]},
                ]},
            })
    return records, outputs


class TestClaudeMergeProperties:
    @given(claude_conversation())
    @settings(max_examples=100)
    def test_each_assistant_entry_once_in_order(self, conversation):
        records, _ = conversation
        normalizer = ClaudeNormalizer()
        entries = []
        for record in records:
            entries.extend(normalizer.normalize(record))
        entries.extend(normalizer.flush())

        expected = [r["uuid"] for r in records if r["type"] == "assistant"]
        assert [e.message_id for e in entries] == expected

    @given(claude_conversation())
    @settings(max_examples=100)
    def test_results_land_on_their_calls(self, conversation):
        records, outputs = conversation
        normalizer = ClaudeNormalizer()
        entries = []
        for record in records:
            entries.extend(normalizer.normalize(record))
        entries.extend(normalizer.flush())

        for entry in entries:
            for call in entry.tool_calls():
                assert call.output == outputs.get(call.id, "")
                assert call.status == ("completed" if call.id in outputs else "")
        assert normalizer.pending_call_ids == []


class TestOpenCodeOrdering:
    @given(st.lists(st.integers(min_value=1, max_value=50), min_size=1, max_size=8))
    @settings(max_examples=30, deadline=None)
    def test_messages_ordered_by_creation(self, created_times):
        with tempfile.TemporaryDirectory() as tmpdir:
            storage = Path(tmpdir)
            for i, created in enumerate(created_times):
                message_id = f"msg_{i:03d}"
                message_dir = storage / "message" / "ses_1"
                message_dir.mkdir(parents=True, exist_ok=True)
                (message_dir / f"{message_id}.json").write_text(json.dumps({
                    "id": message_id, "sessionID": "ses_1", "role": "user", "time": {"created": created},
                }))
                part_dir = storage / "part" / message_id
                part_dir.mkdir(parents=True)
                (part_dir / "prt_1.json").write_text(json.dumps({"id": "prt_1", "type": "text", "text": "x"}))

            entries = OpenCodeAssembler(storage).assemble("ses_1")

            # Stable: equal creation times keep file-name order
            expected = sorted(range(len(created_times)), key=lambda i: created_times[i])
            assert [e.message_id for e in entries] == [f"msg_{i:03d}" for i in expected]


class TestTrackerProperties:
    @given(st.lists(st.integers(min_value=0, max_value=10_000)))
    def test_offset_is_running_maximum(self, offsets):
        tracker = OffsetTracker()
        for offset in offsets:
            tracker.advance("claude", "s", offset)
        assert tracker.get("claude", "s") == max(offsets, default=0)

    @given(st.lists(st.sampled_from(["01-a.md", "02-b.md", "03-c.md", "noise"]), max_size=20))
    def test_jobs_unique_and_increasing(self, lines):
        tracker = JobTracker()
        for index, name in enumerate(lines):
            text = name if name == "noise" else f"Read the file /x/plans/demo/{name} and execute the agent job"
            tracker.feed(text, index)

        keys = [j.key for j in tracker.jobs]
        indexes = [j.line_index for j in tracker.jobs]
        assert len(keys) == len(set(keys))
        assert indexes == sorted(indexes)
