"""
Observability Backend

Maps trace/span/generation records onto Langfuse calls.

Langfuse v3 models a trace as a tree of OTEL spans: the trace is opened
through a root span carrying the trace-level attributes, lifecycle events
become short child spans, and generations are child observations that
stay open until the response completes.

DESIGN RULES:
- Per-call state only; the shared client is never mutated here
- May raise: TraceRecorder is the guard that absorbs failures
- Error reporting is rate-limited so a dead backend cannot flood logs
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from observability.records import (
    GenerationCloseRecord,
    GenerationOpenRecord,
    SpanRecord,
    TraceOpenRecord,
)

logger = logging.getLogger(__name__)

ERROR_REPORT_INTERVAL_S = 10.0


def _format_span_id(span_id_int: int) -> str:
    return format(span_id_int, "016x")


def _span_id_hex(span_obj: Any) -> Optional[str]:
    span_id = getattr(span_obj, "id", None)
    if isinstance(span_id, str) and span_id:
        return span_id
    # LangfuseSpan/LangfuseGeneration wraps an OTEL span.
    otel_span = getattr(span_obj, "_otel_span", None)
    if otel_span is None:
        return None
    try:
        ctx = otel_span.get_span_context()
        return _format_span_id(ctx.span_id)
    except Exception:
        return None


def _optional_kwargs(**kwargs: Any) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


def normalize_usage(usage: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    """Map the various token-count spellings onto Langfuse usage_details."""
    if not isinstance(usage, dict):
        return None
    in_tok = usage.get("input") or usage.get("promptTokens") or usage.get("prompt_tokens")
    out_tok = usage.get("output") or usage.get("completionTokens") or usage.get("completion_tokens")
    total_tok = usage.get("total") or usage.get("totalTokens") or usage.get("total_tokens")

    details: Dict[str, int] = {}
    if isinstance(in_tok, int):
        details["input"] = in_tok
    if isinstance(out_tok, int):
        details["output"] = out_tok
    if isinstance(total_tok, int):
        details["total"] = total_tok
    return details or None


@dataclass
class TraceRef:
    """Backend-side reference to an open trace."""
    trace_id: str
    root_span: Any
    root_span_id: Optional[str]


class ObservabilityBackend:
    """
    Thin adapter over a Langfuse client.

    Usage:
        backend = ObservabilityBackend(get_langfuse_client)
        ref = backend.start_trace(TraceOpenRecord(...))
        backend.add_span(ref, SpanRecord(name="response_started", ...))
    """

    def __init__(self, client_getter: Callable[[], Optional[Any]]):
        """
        Args:
            client_getter: Returns the shared client, or None when disabled.
        """
        self._client_getter = client_getter
        self._error_lock = threading.Lock()
        self._last_error_ts = 0.0

    @property
    def client(self) -> Optional[Any]:
        return self._client_getter()

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def report_error(self, action: str, err: BaseException) -> None:
        """Log a client error, at WARNING at most once per interval."""
        now = time.time()
        with self._error_lock:
            loud = now - self._last_error_ts >= ERROR_REPORT_INTERVAL_S
            if loud:
                self._last_error_ts = now
        if loud:
            logger.warning(f"[Langfuse] {action} failed: {err!r}")
        else:
            logger.debug(f"[Langfuse] {action} failed: {err!r}")

    def start_trace(self, record: TraceOpenRecord) -> Optional[TraceRef]:
        client = self.client
        if client is None:
            return None

        trace_id = client.create_trace_id()
        root = client.start_span(
            trace_context={"trace_id": trace_id},
            name=record.name,
            metadata=record.metadata,
        )
        try:
            root.update_trace(
                name=record.name,
                user_id=record.user_id,
                session_id=record.session_id,
                metadata=record.metadata,
                tags=record.tags,
            )
        except Exception as err:
            self.report_error("update_trace", err)
        return TraceRef(trace_id=trace_id, root_span=root, root_span_id=_span_id_hex(root))

    def _trace_context(self, ref: TraceRef) -> Dict[str, str]:
        ctx = {"trace_id": ref.trace_id}
        if ref.root_span_id:
            ctx["parent_span_id"] = ref.root_span_id
        return ctx

    def add_span(self, ref: TraceRef, record: SpanRecord) -> None:
        client = self.client
        if client is None:
            return
        span = client.start_span(
            trace_context=self._trace_context(ref),
            name=record.name,
            metadata=record.metadata,
            **_optional_kwargs(input=record.input, output=record.output, level=record.level),
        )
        span.end()

    def start_generation(self, ref: TraceRef, record: GenerationOpenRecord) -> Any:
        client = self.client
        if client is None:
            return None
        return client.start_observation(
            trace_context=self._trace_context(ref),
            name=record.name,
            as_type="generation",
            metadata=record.metadata,
            **_optional_kwargs(input=record.input, model=record.model),
        )

    def end_generation(self, generation: Any, record: GenerationCloseRecord) -> None:
        if generation is None:
            return
        cost_details = {"total": float(record.cost)} if record.cost is not None else None
        try:
            generation.update(
                metadata=record.metadata,
                **_optional_kwargs(
                    output=record.output,
                    usage_details=normalize_usage(record.usage),
                    cost_details=cost_details,
                ),
            )
        finally:
            generation.end()

    def end_trace(self, ref: TraceRef, output: Optional[Dict[str, Any]] = None) -> None:
        root = ref.root_span
        if root is None:
            return
        try:
            if output is not None:
                root.update(output=output)
        finally:
            root.end()

    def flush(self) -> None:
        client = self.client
        if client is None:
            return
        try:
            client.flush()
        except Exception as err:
            self.report_error("flush", err)
