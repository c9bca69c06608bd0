"""
Upstream Session Client

Mints ephemeral chat-session credentials from the hosted ChatKit backend.

DESIGN RULES:
- One POST per mint, no retries (retry only via explicit user reset)
- Every failure becomes UpstreamSessionError(message, status)
- Agent-version detection is best-effort enrichment only
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import Settings, extract_version_from_workflow_id, get_settings
from upstream.errors import UpstreamSessionError, extract_upstream_error

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/v1/chatkit/sessions"


@dataclass(frozen=True)
class SessionCredential:
    """Successful mint result."""
    credential: str
    expiry: Any
    session_id: str
    user_id: str
    chatkit_trace_id: Optional[str] = None
    chatkit_run_id: Optional[str] = None
    chatkit_session_id: Optional[str] = None
    agent_version: Optional[str] = None
    upstream_metadata: Optional[Dict[str, Any]] = None
    response_keys: List[str] = field(default_factory=list)


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def detect_agent_version(payload: Dict[str, Any], workflow_id: str) -> Optional[str]:
    """
    Best-effort agent/workflow version from a mint response.

    Explicit response fields win; otherwise a numeric pattern in the
    workflow id is used, which may match coincidentally.
    """
    workflow = payload.get("workflow") if isinstance(payload.get("workflow"), dict) else {}
    agent = payload.get("agent") if isinstance(payload.get("agent"), dict) else {}

    version = (
        _str_or_none(payload.get("agent_version"))
        or _str_or_none(payload.get("workflow_version"))
        or _str_or_none(payload.get("version"))
        or _str_or_none(workflow.get("version"))
        or _str_or_none(agent.get("version"))
    )
    if version:
        return version

    return (
        extract_version_from_workflow_id(workflow_id)
        or _str_or_none(workflow.get("agent_version"))
        or _str_or_none(workflow.get("revision"))
    )


class UpstreamSessionClient:
    """
    Async client for the session-mint endpoint.

    Usage:
        client = UpstreamSessionClient(settings)
        credential = await client.create_session(workflow_id, identity, attachments_enabled=True)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            settings: API key, base URL and timeout
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self._settings = settings or get_settings()
        self._transport = transport

    async def create_session(
        self,
        workflow_id: str,
        user_identity: str,
        attachments_enabled: bool = False,
    ) -> SessionCredential:
        api_key = self._settings.openai_api_key.strip()
        if not api_key:
            raise UpstreamSessionError("Missing OPENAI_API_KEY environment variable", status=500)

        url = f"{self._settings.chatkit_api_base.rstrip('/')}{SESSIONS_PATH}"
        body = {
            "workflow": {"id": workflow_id},
            "user": user_identity,
            "chatkit_configuration": {"file_upload": {"enabled": attachments_enabled}},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "chatkit_beta=v1",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._settings.chatkit_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"ChatKit session request failed: {e!r}")
            raise UpstreamSessionError(f"Failed to reach session backend: {e}", status=502) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if not self._settings.is_production:
            logger.info(
                f"[create-session] upstream response status={response.status_code} "
                f"keys={sorted(payload.keys())}"
            )

        if response.is_error:
            message = extract_upstream_error(payload) or f"Failed to create session: {response.reason_phrase}"
            logger.error(
                f"OpenAI ChatKit session creation failed: status={response.status_code} message={message!r}"
            )
            raise UpstreamSessionError(message, status=response.status_code, details=payload)

        client_secret = _str_or_none(payload.get("client_secret"))
        if not client_secret:
            raise UpstreamSessionError("Missing client secret in response", status=502, details=payload)

        chatkit_session_id = _str_or_none(payload.get("session_id"))
        user_id = _str_or_none(payload.get("user")) or _str_or_none(payload.get("user_id")) or user_identity
        metadata = payload.get("metadata")

        return SessionCredential(
            credential=client_secret,
            expiry=payload.get("expires_after"),
            session_id=chatkit_session_id or user_identity,
            user_id=user_id,
            chatkit_trace_id=_str_or_none(payload.get("trace_id")),
            chatkit_run_id=_str_or_none(payload.get("run_id")),
            chatkit_session_id=chatkit_session_id,
            agent_version=detect_agent_version(payload, workflow_id),
            upstream_metadata=metadata if isinstance(metadata, dict) else None,
            response_keys=sorted(payload.keys()),
        )
