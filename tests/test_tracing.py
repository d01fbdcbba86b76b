"""Tests for trace events, redaction and the JSON file sink."""

import asyncio
import json

from whif.core.tracing import JsonFileTraceSink, TraceEvent, emit, sanitize_for_logs


def test_sanitize_redacts_secrets_and_free_text():
    payload = sanitize_for_logs(
        {
            "api_key": "sk-test-secret",
            "Authorization": "Bearer abc123",
            "prompt": "Build free public transit",
            "messages": [{"role": "user", "content": "Sensitive proposal"}],
            "usage": {"input_tokens": 21, "output_tokens": 9},
            "model": "gpt-4o-mini",
        }
    )

    assert payload["api_key"] == "[REDACTED_SECRET]"
    assert payload["Authorization"] == "[REDACTED_SECRET]"
    assert payload["prompt"] == "[REDACTED_TEXT length=25]"
    assert payload["messages"][0]["content"] == "[REDACTED_TEXT length=18]"
    assert payload["messages"][0]["role"] == "user"
    assert payload["usage"] == {"input_tokens": 21, "output_tokens": 9}
    assert payload["model"] == "gpt-4o-mini"


def test_sanitize_truncates_long_strings():
    value = sanitize_for_logs({"error": "x" * 500})["error"]
    assert value.startswith("x" * 200)
    assert value.endswith("...[truncated]")


def test_json_sink_writes_one_file_per_event(tmp_path):
    sink = JsonFileTraceSink(tmp_path / "traces")

    sink.on_event(
        TraceEvent(
            kind="end",
            model="claude-3-5-haiku-latest",
            attempt=1,
            analysis_id="a1",
            user_id="u1",
            name="extract_statements",
            elapsed_ms=812.5,
            metadata={"input_tokens": 100, "output_tokens": 50, "api_key": "sk-x"},
        )
    )

    [log_file] = list((tmp_path / "traces").glob("*_extract_statements_a1_end.json"))
    payload = json.loads(log_file.read_text())
    assert payload["model"] == "claude-3-5-haiku-latest"
    assert payload["attempt"] == 1
    assert payload["elapsed_ms"] == 812.5
    assert payload["metadata"]["input_tokens"] == 100
    assert payload["metadata"]["api_key"] == "[REDACTED_SECRET]"


def test_json_sink_keeps_back_to_back_events_apart(tmp_path):
    sink = JsonFileTraceSink(tmp_path)
    event = TraceEvent(kind="error", model="m", attempt=0, name="summarize")

    sink.on_event(event)
    sink.on_event(event)
    sink.on_event(TraceEvent(kind="error", model="m", attempt=1, name="summarize"))

    assert len(list(tmp_path.glob("*_summarize_a0_error.json"))) == 2
    assert len(list(tmp_path.glob("*_summarize_a1_error.json"))) == 1


def test_json_sink_writes_off_the_event_loop(tmp_path):
    sink = JsonFileTraceSink(tmp_path)

    async def go():
        sink.on_event(TraceEvent(kind="start", model="m", attempt=0, name="research"))
        await sink.drain()

    asyncio.run(go())

    [log_file] = list(tmp_path.glob("*_research_a0_start.json"))
    assert json.loads(log_file.read_text())["kind"] == "start"


def test_emit_without_sink_is_noop():
    emit(None, TraceEvent(kind="start", model="m", attempt=0))


def test_emit_swallows_sink_failures(caplog):
    class BrokenSink:
        def on_event(self, event):
            raise OSError("read-only file system")

    with caplog.at_level("WARNING"):
        emit(BrokenSink(), TraceEvent(kind="error", model="m", attempt=2, error="boom"))

    assert "read-only file system" in caplog.text
