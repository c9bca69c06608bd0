"""
Create-Session API Route

Thin delegation layer: cookie in, controller mint, credential and cookie out.
Contains no tracing or upstream logic of its own.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.core.config import get_settings
from app.dependencies import get_controller_registry, get_identity_resolver, get_trace_recorder
from identity.cookies import get_cookie_value, serialize_identity_cookie
from identity.resolver import IdentityResolver
from lifecycle.registry import ControllerRegistry
from observability.recorder import TraceRecorder
from schemas.session import CreateSessionRequest, CreateSessionResponse

logger = logging.getLogger(__name__)

router = APIRouter()


async def _parse_body(request: Request) -> CreateSessionRequest:
    """Missing or malformed bodies behave like {}."""
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    if not isinstance(raw, dict):
        return CreateSessionRequest()
    try:
        return CreateSessionRequest.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"[create-session] ignoring invalid body: {e.error_count()} error(s)")
        return CreateSessionRequest()


def _json(payload: Dict[str, Any], status_code: int, set_cookie: Optional[str]) -> JSONResponse:
    response = JSONResponse(payload, status_code=status_code)
    if set_cookie:
        response.headers.append("set-cookie", set_cookie)
    return response


@router.post("/create-session")
async def create_session(
    request: Request,
    registry: ControllerRegistry = Depends(get_controller_registry),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    recorder: TraceRecorder = Depends(get_trace_recorder),
):
    """
    Mint a ChatKit session for the calling widget instance.

    Flow:
    1. Identity cookie read (minted and set when absent)
    2. Controller for the widget instance mints the credential
    3. Session trace opened by the controller, best-effort
    """
    settings = get_settings()
    inbound_token = get_cookie_value(request.headers.get("cookie"), resolver.cookie_name)
    headers = dict(request.headers)
    url = str(request.url)
    controller = None

    try:
        body = await _parse_body(request)
        instance_id = body.instance_id or uuid.uuid4().hex
        controller = registry.get_or_create(instance_id)

        outcome = await controller.mint(
            inbound_token,
            workflow_id=body.resolved_workflow_id(settings.chatkit_workflow_id),
            attachments_enabled=body.attachments_enabled,
            client_context=body.client.model_dump(exclude_none=True) if body.client else None,
            request_headers=headers,
            request_url=url,
        )

        if not outcome.ok:
            payload: Dict[str, Any] = {"error": outcome.error, "instance_id": instance_id}
            if outcome.details is not None:
                payload["details"] = outcome.details
            return _json(payload, outcome.status, outcome.set_cookie)

        credential = outcome.credential
        result = CreateSessionResponse(
            client_secret=credential.credential,
            expires_after=credential.expiry,
            user_id=outcome.identity,
            session_id=credential.session_id,
            instance_id=instance_id,
            chatkit_trace_id=credential.chatkit_trace_id,
            chatkit_run_id=credential.chatkit_run_id,
            chatkit_session_id=credential.chatkit_session_id,
        )
        return _json(result.model_dump(), 200, outcome.set_cookie)

    except Exception as error:
        logger.exception("Create session error")
        identity = controller.identity if controller is not None else inbound_token
        set_cookie = None
        if identity:
            recorder.record_detached_span(
                identity,
                identity,
                "unexpected_error",
                input={"workflowId": settings.chatkit_workflow_id},
                output={"error": str(error), "errorType": type(error).__name__},
                metadata={"exception": True},
                attributes={
                    "workflowId": settings.chatkit_workflow_id,
                    "action": "session_creation_exception",
                    "errorType": "unexpected_exception",
                },
                request_headers=headers,
                request_url=url,
                level="ERROR",
            )
            if not inbound_token:
                set_cookie = serialize_identity_cookie(
                    resolver.cookie_name, identity, secure=settings.is_production
                )
        return _json({"error": "Unexpected error"}, 500, set_cookie)


@router.get("/create-session")
async def create_session_method_not_allowed():
    return JSONResponse({"error": "Method Not Allowed"}, status_code=405)
