import inspect
import logging
import threading

import pytest
from langfuse import Langfuse
from unittest.mock import MagicMock

from app.core.config import Settings
from observability.backend import ObservabilityBackend, normalize_usage
from observability.client import LangfuseClientProvider
from observability.records import (
    GenerationCloseRecord,
    GenerationOpenRecord,
    SpanRecord,
    TraceOpenRecord,
)


def test_disabled_backend_is_noop():
    backend = ObservabilityBackend(lambda: None)
    assert not backend.enabled
    assert backend.start_trace(TraceOpenRecord(user_id="u", session_id="s")) is None
    assert backend.start_generation(None, GenerationOpenRecord(trace_id="t", name="g")) is None
    backend.flush()


def test_start_trace_opens_root_span_and_sets_trace_attributes(backend, langfuse_client):
    ref = backend.start_trace(TraceOpenRecord(user_id="user-1", session_id="sess-1", metadata={"k": "v"}))

    assert ref.trace_id == "trace-1"
    assert ref.root_span_id == "span-1"
    langfuse_client.start_span.assert_called_once_with(
        trace_context={"trace_id": "trace-1"},
        name="chatkit_session",
        metadata={"k": "v"},
    )
    ref.root_span.update_trace.assert_called_once_with(
        name="chatkit_session",
        user_id="user-1",
        session_id="sess-1",
        metadata={"k": "v"},
        tags=None,
    )


def test_add_span_is_child_of_root_and_omits_none(backend, langfuse_client):
    ref = backend.start_trace(TraceOpenRecord(user_id="u", session_id="s"))
    backend.add_span(ref, SpanRecord(name="thread_changed", output={"n": 1}))

    call = langfuse_client.start_span.call_args_list[-1]
    assert call.kwargs["trace_context"] == {"trace_id": "trace-1", "parent_span_id": "span-1"}
    assert call.kwargs["output"] == {"n": 1}
    assert "input" not in call.kwargs
    assert "level" not in call.kwargs


def test_add_span_ends_span(backend, langfuse_client):
    spans = []
    original = langfuse_client.start_span.side_effect

    def capture(**kwargs):
        span = original(**kwargs)
        spans.append(span)
        return span

    langfuse_client.start_span.side_effect = capture
    ref = backend.start_trace(TraceOpenRecord(user_id="u", session_id="s"))
    backend.add_span(ref, SpanRecord(name="error", level="ERROR"))

    spans[-1].end.assert_called_once()
    assert langfuse_client.start_span.call_args.kwargs["level"] == "ERROR"


def test_generation_lifecycle(backend, langfuse_client):
    ref = backend.start_trace(TraceOpenRecord(user_id="u", session_id="s"))
    generation = backend.start_generation(
        ref, GenerationOpenRecord(trace_id=ref.trace_id, name="assistant_response_1", model="chatkit")
    )

    call = langfuse_client.start_observation.call_args
    assert call.kwargs["as_type"] == "generation"
    assert call.kwargs["model"] == "chatkit"
    assert "input" not in call.kwargs

    backend.end_generation(
        generation,
        GenerationCloseRecord(output={"status": "completed"}, usage={"promptTokens": 10}, cost=0.5),
    )
    generation.update.assert_called_once_with(
        metadata={},
        output={"status": "completed"},
        usage_details={"input": 10},
        cost_details={"total": 0.5},
    )
    generation.end.assert_called_once()


def test_add_span_keeps_explicitly_empty_values(backend, langfuse_client):
    ref = backend.start_trace(TraceOpenRecord(user_id="u", session_id="s"))
    backend.add_span(ref, SpanRecord(name="tool_record_fact", input={}, output=""))

    call = langfuse_client.start_span.call_args
    assert call.kwargs["input"] == {}
    assert call.kwargs["output"] == ""


def test_end_generation_omits_absent_output_usage_and_cost(backend):
    generation = MagicMock()

    backend.end_generation(generation, GenerationCloseRecord(metadata={"latencyMs": 12}))

    generation.update.assert_called_once_with(metadata={"latencyMs": 12})
    generation.end.assert_called_once()


def test_end_generation_ends_even_when_update_fails(backend):
    generation = MagicMock()
    generation.update.side_effect = RuntimeError("network")

    with pytest.raises(RuntimeError):
        backend.end_generation(generation, GenerationCloseRecord())
    generation.end.assert_called_once()


def test_end_trace_updates_output_and_ends_root(backend):
    ref = backend.start_trace(TraceOpenRecord(user_id="u", session_id="s"))
    backend.end_trace(ref, output={"closedAt": "now"})

    ref.root_span.update.assert_called_once_with(output={"closedAt": "now"})
    ref.root_span.end.assert_called_once()


def test_flush_swallows_errors(backend, langfuse_client):
    langfuse_client.flush.side_effect = RuntimeError("down")
    backend.flush()
    langfuse_client.flush.assert_called_once()


def test_report_error_is_rate_limited(backend, caplog):
    with caplog.at_level(logging.DEBUG, logger="observability.backend"):
        backend.report_error("add_span", RuntimeError("a"))
        backend.report_error("add_span", RuntimeError("b"))

    levels = [r.levelno for r in caplog.records if r.name == "observability.backend"]
    assert levels == [logging.WARNING, logging.DEBUG]


def test_normalize_usage_spellings():
    assert normalize_usage({"promptTokens": 100, "completionTokens": 50, "totalTokens": 150}) == {
        "input": 100,
        "output": 50,
        "total": 150,
    }
    assert normalize_usage({"prompt_tokens": 1, "completion_tokens": 2}) == {"input": 1, "output": 2}
    assert normalize_usage({}) is None
    assert normalize_usage(None) is None


# --- client provider ---

def _enabled_settings(**overrides):
    values = dict(_env_file=None, langfuse_public_key="pk", langfuse_secret_key="sk", app_version="1.0.0")
    values.update(overrides)
    return Settings(**values)


def test_provider_disabled_without_keys():
    factory = MagicMock()
    provider = LangfuseClientProvider(Settings(_env_file=None, langfuse_public_key="", langfuse_secret_key=""), factory)

    assert provider.get() is None
    factory.assert_not_called()


def test_provider_builds_once():
    factory = MagicMock()
    provider = LangfuseClientProvider(_enabled_settings(langfuse_base_url="https://lf.example.com/"), factory)

    first = provider.get()
    second = provider.get()

    assert first is second is factory.return_value
    factory.assert_called_once_with(
        public_key="pk",
        secret_key="sk",
        base_url="https://lf.example.com",
        release="1.0.0",
        environment="development",
    )


def test_provider_construction_failure_is_final():
    factory = MagicMock(side_effect=RuntimeError("bad key"))
    provider = LangfuseClientProvider(_enabled_settings(), factory)

    assert provider.get() is None
    assert provider.get() is None
    factory.assert_called_once()


def test_provider_concurrent_construction_is_idempotent():
    factory = MagicMock()
    provider = LangfuseClientProvider(_enabled_settings(), factory)
    results = []

    threads = [threading.Thread(target=lambda: results.append(provider.get())) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    factory.assert_called_once()
    assert all(r is factory.return_value for r in results)


def test_installed_langfuse_supports_client_calls():
    assert "base_url" in inspect.signature(Langfuse.__init__).parameters
    assert hasattr(Langfuse, "start_observation")
    assert hasattr(Langfuse, "create_trace_id")
