"""
Session Lifecycle Controller

State machine for one embedded chat widget instance. Turns widget
runtime signals into identity, credential and trace operations.

States:
    UNINITIALIZED -> AWAITING_CREDENTIAL -> ACTIVE -> (RESETTING -> AWAITING_CREDENTIAL)
    SCRIPT_UNAVAILABLE / CREDENTIAL_ERROR are absorbing until reset()

DESIGN RULES:
- Every signal handler is a no-op when its precondition is not met
- Tracing never blocks or fails the chat flow
- No automatic credential retry; reset() is the only way out of an error
- Identity survives reset, Session and Trace do not
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from app.core.config import Settings, get_settings
from identity.resolver import IdentityResolver
from lifecycle.state import ErrorOverlay, FactAction, MintOutcome, SessionCounters, SessionState
from observability.recorder import LatencyStats, TraceHandle, TraceRecorder
from upstream.client import SessionCredential, UpstreamSessionClient
from upstream.errors import UpstreamSessionError

logger = logging.getLogger(__name__)

FactSink = Callable[[FactAction], None]

RECORD_FACT_TOOL = "record_fact"
GENERATION_MODEL = "chatkit"
UNCONFIGURED_WORKFLOW_MESSAGE = "Set CHATKIT_WORKFLOW_ID in your environment."
MISSING_WORKFLOW_MESSAGE = "Missing workflow id"
RUNTIME_TIMEOUT_DETAIL = "ChatKit web component is unavailable. Verify that the script URL is reachable."


def log_fact_action(action: FactAction) -> None:
    """Default fact sink."""
    logger.info(f"[widget] fact saved id={action.fact_id} text={action.fact_text!r}")


def _iso(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


class SessionLifecycleController:
    """
    Lifecycle of one widget instance.

    Usage:
        controller = SessionLifecycleController("inst-1", resolver=..., upstream=..., recorder=...)
        outcome = await controller.mint(cookie_token)
        controller.response_start()
        controller.response_end()
        controller.reset()
    """

    def __init__(
        self,
        instance_id: str,
        *,
        resolver: IdentityResolver,
        upstream: UpstreamSessionClient,
        recorder: TraceRecorder,
        settings: Optional[Settings] = None,
        fact_sink: Optional[FactSink] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.instance_id = instance_id
        self._resolver = resolver
        self._upstream = upstream
        self._recorder = recorder
        self._settings = settings or get_settings()
        self._fact_sink = fact_sink or log_fact_action
        self._monotonic = monotonic

        self._state = SessionState.UNINITIALIZED
        self._identity: Optional[str] = None
        self._workflow_id = self._settings.chatkit_workflow_id.strip()
        self._trace: Optional[TraceHandle] = None
        self._counters = SessionCounters()

        self._session_error: Optional[str] = None
        self._error_status = 200
        self._error_details: Any = None
        self._script_error: Optional[str] = None
        self._runtime_ready = False
        self._mounted_at = self._monotonic()

    # ============================================================
    # PROPERTIES
    # ============================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def trace(self) -> Optional[TraceHandle]:
        return self._trace

    @property
    def message_count(self) -> int:
        return self._counters.message_count

    @property
    def thread_change_count(self) -> int:
        return self._counters.thread_change_count

    def _now_iso(self) -> str:
        return _iso(self._recorder.now_ms())

    # ============================================================
    # MINT
    # ============================================================

    async def mint(
        self,
        inbound_token: Optional[str] = None,
        *,
        workflow_id: Optional[str] = None,
        attachments_enabled: bool = False,
        client_context: Optional[Mapping[str, Any]] = None,
        request_headers: Optional[Mapping[str, str]] = None,
        request_url: Optional[str] = None,
    ) -> MintOutcome:
        """
        Resolve identity, mint a credential and open the session trace.

        From ACTIVE this is a credential refresh: the current trace is
        closed and a new Session/Trace opened. From an error state the
        stored error is returned without contacting the upstream backend.
        """
        if self._state.is_terminal:
            return self._error_outcome()

        if self._state == SessionState.ACTIVE:
            self._end_session(reason="credential_refresh", name="session_refreshed")

        resolution = self._resolver.resolve(inbound_token or self._identity)
        self._identity = resolution.identity
        if workflow_id is not None:
            self._workflow_id = workflow_id.strip()
        self._state = SessionState.AWAITING_CREDENTIAL

        if not self._workflow_id:
            self._enter_credential_error(MISSING_WORKFLOW_MESSAGE, 400)
            return self._error_outcome(resolution.set_token)
        if self._workflow_id.startswith("wf_replace"):
            self._enter_credential_error(UNCONFIGURED_WORKFLOW_MESSAGE, 400)
            return self._error_outcome(resolution.set_token)

        try:
            credential = await self._upstream.create_session(
                self._workflow_id, self._identity, attachments_enabled=attachments_enabled
            )
        except UpstreamSessionError as err:
            self._enter_credential_error(err.message, err.status, err.details)
            self._record_credential_failure(
                err, attachments_enabled, request_headers=request_headers, request_url=request_url
            )
            return self._error_outcome(resolution.set_token)
        except Exception:
            self._enter_credential_error("Unexpected error", 500)
            raise

        self._trace = self._recorder.open_trace(
            self._identity,
            credential.session_id,
            self._session_attributes(credential, attachments_enabled),
            trace_key=self.instance_id,
            client_context=client_context,
            request_headers=request_headers,
            request_url=request_url,
        )
        self._recorder.append_span(
            self._trace,
            "session_created",
            input={"workflowId": self._workflow_id, "attachmentsEnabled": attachments_enabled},
            output={
                "expiresAfter": credential.expiry,
                "chatkitSessionId": credential.chatkit_session_id,
            },
            metadata={"instanceId": self.instance_id, "timestamp": self._now_iso()},
        )
        if self._trace is not None and not self._settings.is_production:
            logger.info(f"[create-session] trace opened: {self._trace.trace_id}")

        self._state = SessionState.ACTIVE
        return MintOutcome(
            state=self._state,
            identity=self._identity,
            set_cookie=resolution.set_token,
            credential=credential,
            trace_id=self._trace.trace_id if self._trace else None,
        )

    def _session_attributes(self, credential: SessionCredential, attachments_enabled: bool) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            "workflowId": self._workflow_id,
            "agentVersion": self._settings.agent_version_for(self._workflow_id),
            "action": "session_created",
            "instanceId": self.instance_id,
            "expiresAfter": credential.expiry,
            "success": True,
            "fileUploadEnabled": attachments_enabled,
            "chatkitConfiguration": {"fileUpload": {"enabled": attachments_enabled}},
        }
        optional = {
            "chatkitTraceId": credential.chatkit_trace_id,
            "chatkitRunId": credential.chatkit_run_id,
            "chatkitSessionId": credential.chatkit_session_id,
            "chatkitAgentVersion": credential.agent_version,
            "chatkitMetadata": credential.upstream_metadata,
        }
        attributes.update({k: v for k, v in optional.items() if v})
        if not self._settings.is_production:
            attributes["chatkitResponseKeys"] = list(credential.response_keys)
        return attributes

    def _enter_credential_error(self, message: str, status: int, details: Any = None) -> None:
        logger.warning(f"[widget {self.instance_id}] credential error ({status}): {message}")
        self._state = SessionState.CREDENTIAL_ERROR
        self._session_error = message
        self._error_status = status
        self._error_details = details

    def _record_credential_failure(
        self,
        err: UpstreamSessionError,
        attachments_enabled: bool,
        *,
        request_headers: Optional[Mapping[str, str]],
        request_url: Optional[str],
    ) -> None:
        if not self._identity:
            return
        self._recorder.record_detached_span(
            self._identity,
            self._identity,
            "session_creation_error",
            input={"workflowId": self._workflow_id, "attachmentsEnabled": attachments_enabled},
            output={"error": err.message, "status": err.status, "details": err.details},
            metadata={"statusCode": err.status, "timestamp": self._now_iso()},
            attributes={
                "workflowId": self._workflow_id,
                "agentVersion": self._settings.agent_version_for(self._workflow_id),
                "action": "session_creation_failed",
                "errorType": "upstream_error",
            },
            request_headers=request_headers,
            request_url=request_url,
            level="ERROR",
        )

    def _error_outcome(self, set_cookie: Optional[str] = None) -> MintOutcome:
        message = self._script_error if self._state == SessionState.SCRIPT_UNAVAILABLE else self._session_error
        return MintOutcome(
            state=self._state,
            identity=self._identity,
            set_cookie=set_cookie,
            error=message,
            status=self._error_status if self._state == SessionState.CREDENTIAL_ERROR else 503,
            details=self._error_details,
        )

    # ============================================================
    # RESPONSES
    # ============================================================

    def response_start(self) -> None:
        if self._state != SessionState.ACTIVE:
            return

        self._counters.message_count += 1
        number = self._counters.message_count
        started_at = self._now_iso()

        self._recorder.open_generation(
            self._trace,
            f"assistant_response_{number}",
            input={
                "event": "assistant_response_start",
                "messageNumber": number,
                "workflowId": self._workflow_id,
                "timestamp": started_at,
                "totalResponses": number,
                "previousResponses": number - 1,
            },
            metadata={"model": GENERATION_MODEL, "startedAt": started_at, "responseNumber": number},
            message_number=number,
            model=GENERATION_MODEL,
        )
        self._recorder.append_span(
            self._trace,
            "response_started",
            input={
                "event": "response_start",
                "workflowId": self._workflow_id,
                "messageNumber": number,
                "totalResponses": number,
                "sessionResponses": len(self._trace.responses) if self._trace else number,
            },
            output={"status": "started", "startedAt": started_at, "responseIndex": number},
            metadata={"timestamp": started_at, "responseNumber": number},
        )

    def response_end(self) -> Optional[float]:
        """Close the open generation; returns its latency in ms."""
        if self._state != SessionState.ACTIVE or self._trace is None or self._trace.generation is None:
            return None

        generation = self._trace.generation
        number = self._counters.message_count
        completed_at = self._now_iso()

        latency = self._recorder.close_generation(
            self._trace,
            output={
                "status": "completed",
                "completedAt": completed_at,
                "messageNumber": generation.message_number,
                "totalResponses": number,
            },
        )
        stats = self._recorder.latency_stats(self._trace)
        self._recorder.append_span(
            self._trace,
            "response_completed",
            input={
                "event": "response_end",
                "workflowId": self._workflow_id,
                "messageNumber": generation.message_number,
                "startedAt": _iso(generation.start_time),
                "totalResponses": number,
                "completedResponses": stats.completed,
            },
            output={
                "status": "completed",
                "latencyMs": latency,
                "completedAt": completed_at,
                "responseStatistics": stats.to_dict(),
            },
            metadata={
                "latency": f"{round(latency)}ms" if latency is not None else None,
                "timestamp": completed_at,
                "responseNumber": generation.message_number,
            },
        )
        return latency

    # ============================================================
    # TOOLS / THREADS / ERRORS
    # ============================================================

    def tool_invoked(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, bool]:
        if self._state != SessionState.ACTIVE:
            return {"success": False}

        params = dict(params or {})
        if name == RECORD_FACT_TOOL:
            result = self._record_fact(params)
        else:
            logger.debug(f"[widget {self.instance_id}] unhandled client tool {name!r}")
            result = {"success": False}

        self._recorder.append_span(
            self._trace,
            f"tool_{name}",
            input={"tool": name, "params": params, "workflowId": self._workflow_id},
            output=result,
            metadata={"toolName": name, "timestamp": self._now_iso()},
        )
        return result

    def _record_fact(self, params: Dict[str, Any]) -> Dict[str, bool]:
        raw_id = params.get("fact_id")
        raw_text = params.get("fact_text")
        fact_id = "" if raw_id is None else str(raw_id)
        if not fact_id or fact_id in self._counters.processed_facts:
            return {"success": True}

        self._counters.processed_facts.add(fact_id)
        action = FactAction.save(fact_id, "" if raw_text is None else str(raw_text))
        try:
            self._fact_sink(action)
        except Exception:
            logger.exception(f"[widget {self.instance_id}] fact sink failed for {fact_id}")
        return {"success": True}

    def thread_changed(self) -> None:
        if self._state != SessionState.ACTIVE:
            return

        self._counters.processed_facts.clear()
        self._counters.thread_change_count += 1
        count = self._counters.thread_change_count
        now = self._now_iso()
        self._recorder.append_span(
            self._trace,
            "thread_changed",
            input={"event": "thread_change", "workflowId": self._workflow_id, "previousCount": count - 1},
            output={"threadChangeCount": count, "changedAt": now},
            metadata={"timestamp": now},
        )

    def error(self, detail: Any, error_type: Optional[str] = None) -> None:
        """Record a widget runtime error on the session trace."""
        if self._state != SessionState.ACTIVE:
            return

        message, kind = str(detail), error_type or type(detail).__name__
        now = self._now_iso()
        self._recorder.append_span(
            self._trace,
            "error",
            input={"event": "error_occurred", "workflowId": self._workflow_id},
            output={"error": message, "errorType": kind, "occurredAt": now},
            metadata={"timestamp": now},
            level="ERROR",
        )

    # ============================================================
    # WIDGET RUNTIME
    # ============================================================

    def runtime_ready(self) -> None:
        if self._state == SessionState.SCRIPT_UNAVAILABLE:
            return
        self._runtime_ready = True

    def runtime_failed(self, detail: str) -> None:
        """Widget script failed to load; ignored once ACTIVE."""
        if self._state == SessionState.ACTIVE or self._script_error is not None:
            return
        self._script_error = f"Error: {detail}"
        if self._state != SessionState.CREDENTIAL_ERROR:
            self._state = SessionState.SCRIPT_UNAVAILABLE
        logger.warning(f"[widget {self.instance_id}] widget runtime unavailable: {detail}")

    def check_runtime_timeout(self) -> bool:
        """Enter SCRIPT_UNAVAILABLE if the runtime missed its ready deadline."""
        if self._runtime_ready:
            return False
        elapsed = self._monotonic() - self._mounted_at
        if elapsed < self._settings.widget_ready_timeout_seconds:
            return False
        self.runtime_failed(RUNTIME_TIMEOUT_DETAIL)
        return self._state == SessionState.SCRIPT_UNAVAILABLE

    # ============================================================
    # RESET / CLOSE
    # ============================================================

    def reset(self) -> Optional[LatencyStats]:
        """
        User-initiated restart.

        Closes the current trace with final stats, clears per-session
        counters and errors, and waits for a fresh mint. Identity is kept.
        """
        if self._state == SessionState.UNINITIALIZED:
            return None

        self._state = SessionState.RESETTING
        stats = self._end_session(reason="user_initiated", name="chat_reset")

        if self._script_error is not None:
            self._script_error = None
            self._runtime_ready = False
            self._mounted_at = self._monotonic()
        self._session_error = None
        self._error_status = 200
        self._error_details = None

        self._state = SessionState.AWAITING_CREDENTIAL
        return stats

    def close(self, reason: str = "expired") -> Optional[LatencyStats]:
        """Close the trace without expecting another mint."""
        return self._end_session(reason=reason, name="session_closed")

    def _end_session(self, *, reason: str, name: str) -> Optional[LatencyStats]:
        stats = self._recorder.close_trace(
            self._trace,
            {"threadChangeCount": self._counters.thread_change_count},
            reason=reason,
            name=name,
            metadata={"instanceId": self.instance_id},
        )
        self._trace = None
        self._counters.clear()
        return stats

    # ============================================================
    # VIEW
    # ============================================================

    def overlay(self) -> Optional[ErrorOverlay]:
        """Blocking error to show, script errors first."""
        message = self._script_error or self._session_error
        if not message:
            return None
        return ErrorOverlay(message=message, retryable=False)

    def snapshot(self) -> Dict[str, Any]:
        overlay = self.overlay()
        return {
            "instance_id": self.instance_id,
            "state": self._state.value,
            "overlay": overlay.to_dict() if overlay else None,
            "identity": self._identity,
            "trace_id": self._trace.trace_id if self._trace else None,
            "message_count": self._counters.message_count,
            "thread_change_count": self._counters.thread_change_count,
            "response_statistics": self._recorder.latency_stats(self._trace).to_dict(),
        }
