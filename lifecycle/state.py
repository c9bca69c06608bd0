"""
Lifecycle state types for one widget instance.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set


class SessionState(str, Enum):
    """
    Widget session states.

    SCRIPT_UNAVAILABLE and CREDENTIAL_ERROR are absorbing: only an
    explicit reset leaves them.
    """
    UNINITIALIZED = "uninitialized"
    AWAITING_CREDENTIAL = "awaiting_credential"
    ACTIVE = "active"
    RESETTING = "resetting"
    SCRIPT_UNAVAILABLE = "script_unavailable"
    CREDENTIAL_ERROR = "credential_error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.SCRIPT_UNAVAILABLE, SessionState.CREDENTIAL_ERROR)


@dataclass(frozen=True)
class ErrorOverlay:
    """Blocking error shown to the user; restart is offered only when retryable."""
    message: str
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "retryable": self.retryable}


_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class FactAction:
    """Side effect emitted for a newly recorded fact."""
    fact_id: str
    fact_text: str
    type: str = "save"

    @classmethod
    def save(cls, fact_id: str, raw_text: str) -> "FactAction":
        return cls(fact_id=fact_id, fact_text=_WHITESPACE.sub(" ", raw_text).strip())


@dataclass
class MintOutcome:
    """
    Result of a mint request.

    Exactly one of `credential` / `error` is set.
    """
    state: SessionState
    identity: Optional[str] = None
    set_cookie: Optional[str] = None
    credential: Any = None
    error: Optional[str] = None
    status: int = 200
    details: Any = None
    trace_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.credential is not None and self.error is None


@dataclass
class SessionCounters:
    """Per-session counters, cleared on reset."""
    message_count: int = 0
    thread_change_count: int = 0
    processed_facts: Set[str] = field(default_factory=set)

    def clear(self) -> None:
        self.message_count = 0
        self.thread_change_count = 0
        self.processed_facts.clear()
