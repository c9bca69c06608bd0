"""
Observability Records

The four record shapes sent to the observability backend.

DESIGN RULES:
- Pure data containers, immutable after creation
- None means "not applicable": the backend omits such fields from its
  calls rather than sending null
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class TraceOpenRecord:
    """Top-level trace for one widget session."""
    user_id: str
    session_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    name: str = "chatkit_session"
    tags: Optional[List[str]] = None


@dataclass(frozen=True)
class SpanRecord:
    """Point-in-time lifecycle event attached to a trace."""
    name: str
    input: Any = None
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    level: Optional[str] = None


@dataclass(frozen=True)
class GenerationOpenRecord:
    """Start of one assistant-response cycle."""
    trace_id: str
    name: str
    input: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None


@dataclass(frozen=True)
class GenerationCloseRecord:
    """Completion of an open generation."""
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    usage: Optional[Dict[str, Any]] = None
    cost: Optional[float] = None
