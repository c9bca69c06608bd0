"""
Trace Recorder

Owns the active trace handle of each widget session and its running
response-latency statistics.

Operations:
- open_trace: one trace per session, metadata merged from all producers
- append_span: immutable lifecycle event
- open_generation / close_generation: one assistant-response cycle
- close_trace: closing summary span, then the handle is discarded

DESIGN RULES:
- Strictly best-effort: never raises, backend failures become "tracing
  disabled for this call"
- None handles are accepted everywhere and turn calls into no-ops
- At most one open trace per trace key, at most one open generation per trace
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from app.core.config import Settings, get_settings
from observability.backend import ObservabilityBackend, TraceRef
from observability.metadata import (
    collect_client_metadata,
    collect_environment_metadata,
    collect_request_metadata,
    merge_trace_metadata,
    required_defaults,
)
from observability.records import (
    GenerationCloseRecord,
    GenerationOpenRecord,
    SpanRecord,
    TraceOpenRecord,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


def _iso_from_ms(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


def _ms_label(value: Optional[float]) -> Optional[str]:
    return f"{round(value)}ms" if value is not None else None


@dataclass
class ResponseTiming:
    """Latency accumulator entry for one response, keyed by message_number."""
    message_number: int
    start_time: float
    timestamp: str
    end_time: Optional[float] = None
    latency: Optional[float] = None


@dataclass(frozen=True)
class LatencyStats:
    """Aggregate response statistics; latency fields are None when nothing completed."""
    total: int
    completed: int
    average_ms: Optional[float]
    min_ms: Optional[float]
    max_ms: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "averageLatencyMs": self.average_ms,
            "minLatencyMs": self.min_ms,
            "maxLatencyMs": self.max_ms,
        }


def compute_latency_stats(responses: Iterable[ResponseTiming]) -> LatencyStats:
    entries = list(responses)
    latencies = [r.latency for r in entries if r.latency is not None]
    if not latencies:
        return LatencyStats(total=len(entries), completed=0, average_ms=None, min_ms=None, max_ms=None)
    return LatencyStats(
        total=len(entries),
        completed=len(latencies),
        average_ms=sum(latencies) / len(latencies),
        min_ms=min(latencies),
        max_ms=max(latencies),
    )


@dataclass
class GenerationHandle:
    """An open generation; `observation` is None when the backend call failed."""
    message_number: int
    name: str
    start_time: float
    observation: Any = None


@dataclass
class TraceHandle:
    """The active trace of one session."""
    trace_key: str
    user_id: str
    session_id: str
    ref: TraceRef
    metadata: Dict[str, Any] = field(default_factory=dict)
    responses: List[ResponseTiming] = field(default_factory=list)
    generation: Optional[GenerationHandle] = None
    closed: bool = False

    @property
    def trace_id(self) -> str:
        return self.ref.trace_id


class TraceRecorder:
    """
    Best-effort trace recording on top of an ObservabilityBackend.

    Usage:
        recorder = TraceRecorder(backend)
        handle = recorder.open_trace(identity, session_id, {"action": "session_created"})
        recorder.open_generation(handle, "assistant_response_1", message_number=1)
        recorder.close_generation(handle, output={"status": "completed"})
        recorder.close_trace(handle)
    """

    def __init__(
        self,
        backend: ObservabilityBackend,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            backend: Adapter over the observability client
            settings: Source of required-field defaults
            clock: Wall clock in milliseconds
        """
        self._backend = backend
        self._settings = settings
        self._clock = clock or _wall_clock_ms
        self._lock = threading.Lock()
        self._open: Dict[str, TraceHandle] = {}

    @property
    def active_trace_count(self) -> int:
        with self._lock:
            return len(self._open)

    def now_ms(self) -> float:
        return self._clock()

    def _build_metadata(
        self,
        attributes: Optional[Mapping[str, Any]],
        client_context: Optional[Mapping[str, Any]],
        request_headers: Optional[Mapping[str, str]],
        request_url: Optional[str],
    ) -> Dict[str, Any]:
        settings = self._settings or get_settings()
        return merge_trace_metadata(
            event=attributes,
            environment=collect_environment_metadata(settings),
            client=collect_client_metadata(client_context),
            request=collect_request_metadata(request_headers, request_url),
            defaults=required_defaults(settings),
        )

    # ============================================================
    # TRACE
    # ============================================================

    def open_trace(
        self,
        identity: str,
        session_id: str,
        attributes: Optional[Mapping[str, Any]] = None,
        *,
        trace_key: Optional[str] = None,
        client_context: Optional[Mapping[str, Any]] = None,
        request_headers: Optional[Mapping[str, str]] = None,
        request_url: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Optional[TraceHandle]:
        """
        Open the trace for a new session.

        Returns None when tracing is disabled or the backend fails.
        An already open trace under the same key is closed first.
        """
        key = trace_key or session_id
        with self._lock:
            previous = self._open.get(key)
        if previous is not None:
            self.close_trace(previous, reason="superseded")

        try:
            metadata = self._build_metadata(attributes, client_context, request_headers, request_url)
            ref = self._backend.start_trace(
                TraceOpenRecord(user_id=identity, session_id=session_id, metadata=metadata, tags=tags)
            )
        except Exception as err:
            self._backend.report_error("open_trace", err)
            return None
        if ref is None:
            return None

        handle = TraceHandle(
            trace_key=key,
            user_id=identity,
            session_id=session_id,
            ref=ref,
            metadata=metadata,
        )
        with self._lock:
            self._open[key] = handle
        return handle

    def get_trace(self, trace_key: str) -> Optional[TraceHandle]:
        with self._lock:
            return self._open.get(trace_key)

    def close_trace(
        self,
        handle: Optional[TraceHandle],
        final_stats: Optional[Mapping[str, Any]] = None,
        *,
        reason: str = "user_initiated",
        name: str = "chat_reset",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[LatencyStats]:
        """
        Append the closing summary span and discard the handle.

        Exactly once per handle; an open generation is dropped, not awaited.
        `final_stats` are extra caller counters merged into the summary output.
        """
        if handle is None:
            return None
        with self._lock:
            if handle.closed:
                return None
            handle.closed = True
            if self._open.get(handle.trace_key) is handle:
                del self._open[handle.trace_key]

        stats = compute_latency_stats(handle.responses)
        closed_at = _iso_from_ms(self._clock())
        handle.generation = None

        summary: Dict[str, Any] = dict(final_stats or {})
        summary.update({
            "messageCount": stats.total,
            "completedResponses": stats.completed,
            "averageResponseLatencyMs": stats.average_ms,
            "minResponseLatencyMs": stats.min_ms,
            "maxResponseLatencyMs": stats.max_ms,
            "resetAt": closed_at,
        })

        self.append_span(
            handle,
            name,
            input={
                "event": name,
                "action": reason,
                "workflowId": handle.metadata.get("workflowId"),
                "totalResponses": stats.total,
            },
            output=summary,
            metadata={**(metadata or {}), "timestamp": closed_at},
        )
        try:
            self._backend.end_trace(handle.ref, output={"responseStatistics": stats.to_dict(), "closedAt": closed_at})
        except Exception as err:
            self._backend.report_error("close_trace", err)
        return stats

    def record_detached_span(
        self,
        identity: str,
        session_id: str,
        name: str,
        input: Any = None,
        output: Any = None,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        attributes: Optional[Mapping[str, Any]] = None,
        request_headers: Optional[Mapping[str, str]] = None,
        request_url: Optional[str] = None,
        level: Optional[str] = None,
    ) -> None:
        """
        Record a single span in a throwaway trace.

        Used when no session trace exists (e.g. credential failures); the
        trace is ended immediately and never becomes a session trace.
        """
        try:
            trace_metadata = self._build_metadata(attributes, None, request_headers, request_url)
            ref = self._backend.start_trace(
                TraceOpenRecord(user_id=identity, session_id=session_id, metadata=trace_metadata)
            )
            if ref is None:
                return
            try:
                self._backend.add_span(
                    ref,
                    SpanRecord(name=name, input=input, output=output, metadata=dict(metadata or {}), level=level),
                )
            finally:
                self._backend.end_trace(ref)
        except Exception as err:
            self._backend.report_error(f"record_detached_span({name})", err)

    # ============================================================
    # SPANS
    # ============================================================

    def append_span(
        self,
        handle: Optional[TraceHandle],
        name: str,
        input: Any = None,
        output: Any = None,
        metadata: Optional[Mapping[str, Any]] = None,
        level: Optional[str] = None,
    ) -> None:
        if handle is None:
            return
        try:
            self._backend.add_span(
                handle.ref,
                SpanRecord(name=name, input=input, output=output, metadata=dict(metadata or {}), level=level),
            )
        except Exception as err:
            self._backend.report_error(f"append_span({name})", err)

    # ============================================================
    # GENERATIONS
    # ============================================================

    def open_generation(
        self,
        handle: Optional[TraceHandle],
        name: str,
        input: Any = None,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        message_number: int,
        model: Optional[str] = None,
    ) -> Optional[GenerationHandle]:
        """
        Start timing a response and open its generation.

        A generation that is still open is replaced (last write wins).
        """
        if handle is None or handle.closed:
            return None

        start = self._clock()
        handle.responses.append(
            ResponseTiming(message_number=message_number, start_time=start, timestamp=_iso_from_ms(start))
        )
        generation = GenerationHandle(message_number=message_number, name=name, start_time=start)
        handle.generation = generation

        try:
            generation.observation = self._backend.start_generation(
                handle.ref,
                GenerationOpenRecord(
                    trace_id=handle.trace_id,
                    name=name,
                    input=input,
                    metadata=dict(metadata or {}),
                    model=model,
                ),
            )
        except Exception as err:
            self._backend.report_error(f"open_generation({name})", err)
        return generation

    def close_generation(
        self,
        handle: Optional[TraceHandle],
        output: Any = None,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        usage: Optional[Dict[str, Any]] = None,
        cost: Optional[float] = None,
    ) -> Optional[float]:
        """
        Close the open generation and return its latency in ms.

        No-op (returns None) when no generation is open.
        """
        if handle is None or handle.generation is None:
            return None

        generation = handle.generation
        handle.generation = None
        end = self._clock()
        latency = end - generation.start_time

        for entry in reversed(handle.responses):
            if entry.message_number == generation.message_number:
                entry.end_time = end
                entry.latency = latency
                break

        stats = compute_latency_stats(handle.responses)
        close_metadata: Dict[str, Any] = dict(metadata or {})
        close_metadata.update({
            "latency": _ms_label(latency),
            "latencyMs": latency,
            "completedAt": _iso_from_ms(end),
            "responseNumber": generation.message_number,
            "averageLatency": _ms_label(stats.average_ms),
            "minLatency": _ms_label(stats.min_ms),
            "maxLatency": _ms_label(stats.max_ms),
        })
        if isinstance(output, Mapping):
            output = {**output, "latencyMs": latency}

        if generation.observation is not None:
            try:
                self._backend.end_generation(
                    generation.observation,
                    GenerationCloseRecord(output=output, metadata=close_metadata, usage=usage, cost=cost),
                )
            except Exception as err:
                self._backend.report_error(f"close_generation({generation.name})", err)
        return latency

    def latency_stats(self, handle: Optional[TraceHandle]) -> LatencyStats:
        if handle is None:
            return compute_latency_stats([])
        return compute_latency_stats(handle.responses)
