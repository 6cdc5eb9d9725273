"""Tests for the JSONL event client."""

import json
import threading

from seqbatch.event_client import EventClient, new_correlation_id


class TestEventClient:
    """Tests for EventClient."""

    def test_log_event(self, tmp_path):
        """Events are appended as JSON lines."""
        client = EventClient(tmp_path / "state" / "events.jsonl")

        client.log_event("batch.started", "batch_1", "started", payload={"jobs": 3})
        client.log_event("job.failed", "batch_1", "failed", error_message="exit 1")

        lines = (tmp_path / "state" / "events.jsonl").read_text().splitlines()
        first, second = (json.loads(line) for line in lines)
        assert first["event_type"] == "batch.started"
        assert first["payload"] == {"jobs": 3}
        assert "error_message" not in first
        assert second["error_message"] == "exit 1"
        assert "payload" not in second

    def test_non_json_values(self, tmp_path):
        """Paths and other objects are stringified."""
        client = EventClient(tmp_path / "events.jsonl")

        client.log_event("x", "c", "ok", payload={"path": tmp_path})

        assert client.read_events()[0]["payload"]["path"] == str(tmp_path)

    def test_filter_by_correlation_id(self, tmp_path):
        """read_events can limit to one batch."""
        client = EventClient(tmp_path / "events.jsonl")
        client.log_event("a", "batch_1", "ok")
        client.log_event("b", "batch_2", "ok")

        assert [e["event_type"] for e in client.read_events("batch_2")] == ["b"]
        assert client.read_events("batch_3") == []

    def test_concurrent_writers(self, tmp_path):
        """Lines from many threads never interleave."""
        client = EventClient(tmp_path / "events.jsonl")

        def write(n):
            for i in range(50):
                client.log_event("tick", f"batch_{n}", "ok", payload={"i": i})

        threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(client.read_events()) == 200

    def test_missing_file(self, tmp_path):
        """No file means no events."""
        assert EventClient(tmp_path / "none.jsonl").read_events() == []


def test_correlation_id_format():
    """Correlation ids are short and unique."""
    first, second = new_correlation_id(), new_correlation_id()

    assert first.startswith("batch_")
    assert len(first) == len("batch_") + 12
    assert first != second
