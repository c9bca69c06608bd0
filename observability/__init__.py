# Observability Package
from observability.backend import ObservabilityBackend, TraceRef
from observability.client import LangfuseClientProvider, get_langfuse_client
from observability.recorder import (
    GenerationHandle,
    LatencyStats,
    TraceHandle,
    TraceRecorder,
    compute_latency_stats,
)
from observability.records import (
    GenerationCloseRecord,
    GenerationOpenRecord,
    SpanRecord,
    TraceOpenRecord,
)

__all__ = [
    "ObservabilityBackend",
    "TraceRef",
    "LangfuseClientProvider",
    "get_langfuse_client",
    "GenerationHandle",
    "LatencyStats",
    "TraceHandle",
    "TraceRecorder",
    "compute_latency_stats",
    "GenerationCloseRecord",
    "GenerationOpenRecord",
    "SpanRecord",
    "TraceOpenRecord",
]
