# Lifecycle Package
from lifecycle.controller import FactSink, SessionLifecycleController, log_fact_action
from lifecycle.registry import ControllerRegistry
from lifecycle.state import ErrorOverlay, FactAction, MintOutcome, SessionState

__all__ = [
    "FactSink",
    "SessionLifecycleController",
    "log_fact_action",
    "ControllerRegistry",
    "ErrorOverlay",
    "FactAction",
    "MintOutcome",
    "SessionState",
]
