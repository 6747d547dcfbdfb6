"""Tests for the event emitter."""

import json
from datetime import datetime, timezone

from quibble.context import ContextFile
from quibble.events import EventEmitter, QuibbleEvent
from quibble.models import RoundTimings, SessionStatistics


def _collect(emitter: EventEmitter) -> list[QuibbleEvent]:
    events: list[QuibbleEvent] = []
    emitter.subscribe(events.append)
    return events


class TestQuibbleEvent:
    def test_to_dict_flattens_data(self):
        ts = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        event = QuibbleEvent("round_start", {"round": 2}, timestamp=ts)
        assert event.to_dict() == {"type": "round_start", "round": 2, "timestamp": "2026-10-19T12:00:00+00:00"}

    def test_format_single_line(self):
        event = QuibbleEvent("consensus", {"round": 1, "reached": True, "outstanding": []})
        line = event.format()
        assert "\n" not in line
        assert json.loads(line)["type"] == "consensus"

    def test_format_keeps_unicode(self):
        event = QuibbleEvent("error", {"message": "café"})
        assert "café" in event.format()


class TestEmitter:
    def test_publish_reaches_all_subscribers(self):
        emitter = EventEmitter()
        first = _collect(emitter)
        second = _collect(emitter)
        emitter.round_start(1)
        assert len(first) == len(second) == 1

    def test_unsubscribe(self):
        emitter = EventEmitter()
        events: list[QuibbleEvent] = []
        unsubscribe = emitter.subscribe(events.append)
        emitter.round_start(1)
        unsubscribe()
        unsubscribe()
        emitter.round_start(2)
        assert [e.data["round"] for e in events] == [1]

    def test_failing_subscriber_does_not_stop_delivery(self, caplog):
        emitter = EventEmitter()

        def broken(event):
            raise BrokenPipeError("stdout closed")

        emitter.subscribe(broken)
        events = _collect(emitter)
        with caplog.at_level("ERROR", logger="quibble.events"):
            emitter.round_start(1)
        assert [e.type for e in events] == ["round_start"]
        assert "Event handler failed on round_start" in caplog.text

    def test_publish_returns_event(self):
        event = EventEmitter().publish("custom", value=3)
        assert event.type == "custom"
        assert event.data == {"value": 3}


class TestTypedHelpers:
    def test_start(self):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.start("s1", "/a.md", "/a-quibbled.md", 5)
        assert events[0].type == "start"
        assert events[0].data == {
            "session_id": "s1", "input_file": "/a.md", "output_file": "/a-quibbled.md", "max_rounds": 5,
        }

    def test_context(self):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.context(1, [ContextFile(path="src/a.py", content="x", truncated=True, bytes=1)], 1)
        assert events[0].data["files"] == [{"path": "src/a.py", "bytes": 1, "truncated": True}]
        assert events[0].data["total_bytes"] == 1

    def test_codex_review(self, sample_review):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.codex_review(1, sample_review)
        assert events[0].data["issues"] == [
            {"id": "issue-1", "severity": "critical"},
            {"id": "issue-2", "severity": "major"},
        ]
        assert events[0].data["opportunities"] == [{"id": "opp-1", "impact": "medium"}]

    def test_round_items_joins_verdicts(self, sample_review, sample_response):
        emitter = EventEmitter()
        events = _collect(emitter)
        partial = sample_response.model_copy(deep=True)
        partial.responses = partial.responses[:1]
        emitter.round_items(1, sample_review, partial)

        issues = events[0].data["issues"]
        assert issues[0]["verdict"] == "agree"
        assert issues[1]["verdict"] == "unknown"
        assert events[0].data["opportunities"][0]["verdict"] == "unknown"

    def test_round_complete_drops_missing_timings(self):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.round_complete(1, RoundTimings(codex_review_ms=10, round_total_ms=10, session_elapsed_ms=10))
        assert events[0].data["timings"] == {
            "codex_review_ms": 10, "round_total_ms": 10, "session_elapsed_ms": 10,
        }

    def test_complete(self):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.complete("completed", 0, 2, SessionStatistics(issues_resolved=3), "/out.md", "s1")
        data = events[0].data
        assert data["status"] == "completed"
        assert data["exit_code"] == 0
        assert data["statistics"]["issues_resolved"] == 3

    def test_error_uses_round_key(self):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.error("AGENT_TIMEOUT", "slow", "codex_review", 2, True)
        assert events[0].data == {
            "code": "AGENT_TIMEOUT", "message": "slow", "phase": "codex_review",
            "round": 2, "recoverable": True,
        }

    def test_progress(self):
        emitter = EventEmitter()
        events = _collect(emitter)
        emitter.codex_progress(1, "", 120, "thinking")
        emitter.claude_progress(1, "chunk", 5)
        assert events[0].data == {"round": 1, "text": "", "token_count": 120, "status": "thinking"}
        assert events[1].data == {"round": 1, "text": "chunk", "token_count": 5}
