import pytest

from observability.backend import ObservabilityBackend
from observability.recorder import ResponseTiming, TraceRecorder, compute_latency_stats
from tests.helpers import span_calls


def _run_response(recorder, handle, clock, number, latency_ms):
    recorder.open_generation(handle, f"assistant_response_{number}", message_number=number, model="chatkit")
    clock.advance(latency_ms)
    return recorder.close_generation(handle, output={"status": "completed"})


def test_open_trace_registers_handle_with_required_metadata(recorder):
    handle = recorder.open_trace("user-1", "sess-1", {"action": "session_created"}, trace_key="inst-1")

    assert handle.trace_id == "trace-1"
    assert recorder.get_trace("inst-1") is handle
    assert recorder.active_trace_count == 1
    assert handle.metadata["action"] == "session_created"
    for key in ("appVersion", "applicationVersion", "workflowId", "agentVersion", "displayType"):
        assert handle.metadata[key]


def test_open_trace_disabled_returns_none(settings, clock):
    recorder = TraceRecorder(ObservabilityBackend(lambda: None), settings, clock=clock)

    handle = recorder.open_trace("user-1", "sess-1")
    assert handle is None
    recorder.append_span(handle, "noop")
    assert recorder.open_generation(handle, "g", message_number=1) is None
    assert recorder.close_generation(handle) is None
    assert recorder.close_trace(handle) is None


def test_open_trace_backend_failure_is_absorbed(recorder, langfuse_client):
    langfuse_client.create_trace_id.side_effect = RuntimeError("langfuse down")

    assert recorder.open_trace("user-1", "sess-1") is None
    assert recorder.active_trace_count == 0


def test_append_span_failure_is_absorbed(recorder, langfuse_client):
    handle = recorder.open_trace("user-1", "sess-1")
    langfuse_client.start_span.side_effect = RuntimeError("langfuse down")

    recorder.append_span(handle, "response_started", input={"a": 1})


def test_latency_statistics_on_close(recorder, langfuse_client, clock):
    handle = recorder.open_trace("user-1", "sess-1")
    for number, latency in enumerate((100, 200, 300), start=1):
        assert _run_response(recorder, handle, clock, number, latency) == latency

    stats = recorder.close_trace(handle, {"threadChangeCount": 0})

    assert stats.total == 3
    assert stats.completed == 3
    assert stats.average_ms == 200
    assert stats.min_ms == 100
    assert stats.max_ms == 300

    (summary,) = span_calls(langfuse_client, "chat_reset")
    output = summary.kwargs["output"]
    assert output["messageCount"] == 3
    assert output["completedResponses"] == 3
    assert output["averageResponseLatencyMs"] == 200
    assert output["minResponseLatencyMs"] == 100
    assert output["maxResponseLatencyMs"] == 300
    assert output["threadChangeCount"] == 0
    assert "resetAt" in output
    assert summary.kwargs["input"]["action"] == "user_initiated"
    assert recorder.active_trace_count == 0


def test_second_start_replaces_open_generation(recorder, langfuse_client, clock):
    handle = recorder.open_trace("user-1", "sess-1")

    first = recorder.open_generation(handle, "assistant_response_1", message_number=1)
    clock.advance(50)
    second = recorder.open_generation(handle, "assistant_response_2", message_number=2)
    clock.advance(120)
    latency = recorder.close_generation(handle)

    assert latency == 120
    first.observation.end.assert_not_called()
    second.observation.end.assert_called_once()
    stats = recorder.latency_stats(handle)
    assert stats.total == 2
    assert stats.completed == 1

    assert recorder.close_generation(handle) is None
    second.observation.end.assert_called_once()


def test_close_generation_adds_latency_metadata(recorder, clock):
    handle = recorder.open_trace("user-1", "sess-1")
    generation = recorder.open_generation(handle, "assistant_response_1", message_number=1)
    clock.advance(250)
    recorder.close_generation(handle, output={"status": "completed"}, usage={"totalTokens": 10}, cost=0.01)

    kwargs = generation.observation.update.call_args.kwargs
    assert kwargs["output"] == {"status": "completed", "latencyMs": 250}
    assert kwargs["metadata"]["latency"] == "250ms"
    assert kwargs["metadata"]["averageLatency"] == "250ms"
    assert kwargs["metadata"]["responseNumber"] == 1
    assert kwargs["usage_details"] == {"total": 10}
    assert kwargs["cost_details"] == {"total": 0.01}


def test_generation_backend_failure_still_times_response(recorder, langfuse_client, clock):
    handle = recorder.open_trace("user-1", "sess-1")
    langfuse_client.start_observation.side_effect = RuntimeError("down")

    generation = recorder.open_generation(handle, "assistant_response_1", message_number=1)
    clock.advance(80)

    assert generation.observation is None
    assert recorder.close_generation(handle) == 80
    assert recorder.latency_stats(handle).completed == 1


def test_close_trace_drops_open_generation(recorder, clock):
    handle = recorder.open_trace("user-1", "sess-1")
    generation = recorder.open_generation(handle, "assistant_response_1", message_number=1)

    stats = recorder.close_trace(handle)

    assert handle.generation is None
    generation.observation.end.assert_not_called()
    assert stats.total == 1
    assert stats.completed == 0
    assert stats.average_ms is None
    assert stats.min_ms is None
    assert stats.max_ms is None


def test_close_trace_runs_once(recorder, langfuse_client):
    handle = recorder.open_trace("user-1", "sess-1")

    assert recorder.close_trace(handle) is not None
    assert recorder.close_trace(handle) is None
    assert len(span_calls(langfuse_client, "chat_reset")) == 1
    handle.ref.root_span.end.assert_called_once()


def test_reopen_same_key_supersedes_previous(recorder, langfuse_client):
    first = recorder.open_trace("user-1", "sess-1", trace_key="inst-1")
    second = recorder.open_trace("user-1", "sess-2", trace_key="inst-1")

    assert first.closed
    assert recorder.get_trace("inst-1") is second
    assert recorder.active_trace_count == 1
    (summary,) = span_calls(langfuse_client, "chat_reset")
    assert summary.kwargs["input"]["action"] == "superseded"


def test_detached_span_never_becomes_session_trace(recorder, langfuse_client):
    recorder.record_detached_span(
        "user-1",
        "user-1",
        "session_creation_error",
        input={"workflowId": "wf"},
        output={"error": "upstream unavailable", "status": 500},
        level="ERROR",
    )

    (call,) = span_calls(langfuse_client, "session_creation_error")
    assert call.kwargs["level"] == "ERROR"
    assert call.kwargs["output"]["error"] == "upstream unavailable"
    assert recorder.active_trace_count == 0


def test_detached_span_backend_down_is_absorbed(recorder, langfuse_client):
    langfuse_client.start_span.side_effect = RuntimeError("down")
    recorder.record_detached_span("user-1", "user-1", "session_creation_error", level="ERROR")


@pytest.mark.parametrize("latencies", [[], [5.0], [10.0, 30.0, 20.0], [0.0, 0.0]])
def test_average_between_min_and_max(latencies):
    entries = [ResponseTiming(i, 0.0, "t", latency=value) for i, value in enumerate(latencies)]
    entries.append(ResponseTiming(99, 0.0, "t"))
    stats = compute_latency_stats(entries)

    assert stats.total == len(latencies) + 1
    assert stats.completed == len(latencies)
    if not latencies:
        assert (stats.average_ms, stats.min_ms, stats.max_ms) == (None, None, None)
    else:
        assert stats.min_ms <= stats.average_ms <= stats.max_ms
