"""Tests for flowtree.runtime.recorder - trace accumulation and run log files."""

from __future__ import annotations

import io
import json
from datetime import datetime

from flowtree.runtime.recorder import RunRecorder, TraceEntry

STAMP = datetime(2026, 3, 1, 9, 30, 5)


def sample_recorder(stream=None) -> RunRecorder:
    recorder = RunRecorder("Release checklist", stream=stream)
    recorder.append_output('{"answer": "yes"}')
    recorder.record(TraceEntry("Tests present?", "decision", '{"answer": "yes"}'))
    recorder.append_output("done\n")
    recorder.record(
        TraceEntry(
            "Run tests",
            "process",
            "done",
            validation={"fully_completed": True, "warnings": []},
            retries=1,
        )
    )
    return recorder


class TestTraceEntry:
    def test_short_log_shape(self):
        entry = TraceEntry("Run tests", "process", "done", validation={"fully_completed": True}, retries=2)
        assert entry.to_dict() == {
            "node_name": "Run tests",
            "node_type": "process",
            "response": "done",
            "validation": {"fully_completed": True},
            "retries": {"count": 2},
        }

    def test_validation_omitted_when_absent(self):
        assert "validation" not in TraceEntry("Pick", "decision", "{}").to_dict()


class TestTranscript:
    def test_separator_after_each_output(self):
        recorder = sample_recorder()
        assert recorder.transcript == '{"answer": "yes"}\n\n---\ndone\n\n---\n'

    def test_empty_output_skipped(self):
        recorder = RunRecorder()
        recorder.append_output("")
        assert recorder.transcript == ""

    def test_stream_mirrors_transcript(self):
        stream = io.StringIO()
        recorder = sample_recorder(stream)
        recorder.flush()
        assert stream.getvalue() == recorder.transcript

    def test_flush_failure_is_logged(self, caplog):
        stream = io.StringIO()
        recorder = RunRecorder(stream=stream)
        stream.close()
        recorder.flush()
        assert "Could not flush" in caplog.text

    def test_entries_is_a_copy(self):
        recorder = sample_recorder()
        recorder.entries.clear()
        assert len(recorder.entries) == 2


class TestWrite:
    def test_writes_both_logs(self, tmp_path):
        recorder = sample_recorder()
        paths = recorder.write(tmp_path / "logs", timestamp=STAMP)

        assert [p.name for p in paths] == ["run_20260301_093005.json", "run_20260301_093005.log"]
        payload = json.loads(paths[0].read_text(encoding="utf-8"))
        assert payload["chart"] == "Release checklist"
        assert [n["node_name"] for n in payload["nodes"]] == ["Tests present?", "Run tests"]
        assert payload["nodes"][1]["retries"] == {"count": 1}

        log = paths[1].read_text(encoding="utf-8")
        assert log.startswith("Chart: Release checklist\n\n")
        assert log.endswith("done\n\n---\n")

    def test_short_only(self, tmp_path):
        paths = sample_recorder().write(tmp_path, write_long=False, timestamp=STAMP)
        assert [p.suffix for p in paths] == [".json"]

    def test_nothing_enabled(self, tmp_path):
        assert sample_recorder().write(tmp_path / "none", False, False) == []
        assert not (tmp_path / "none").exists()

    def test_empty_run_writes_no_short_log(self, tmp_path):
        paths = RunRecorder("Empty").write(tmp_path, timestamp=STAMP)
        assert [p.suffix for p in paths] == [".log"]
