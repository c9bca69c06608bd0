"""
FastAPI Dependencies

All object creation happens here, not per request.

RULE: routes talk to widget sessions only through the ControllerRegistry
and the controllers it hands out.
"""

from functools import lru_cache

from app.core.config import get_settings
from identity.resolver import IdentityResolver
from lifecycle.controller import SessionLifecycleController
from lifecycle.registry import ControllerRegistry
from observability.backend import ObservabilityBackend
from observability.client import get_langfuse_client
from observability.recorder import TraceRecorder
from upstream.client import UpstreamSessionClient


@lru_cache(maxsize=1)
def get_identity_resolver() -> IdentityResolver:
    settings = get_settings()
    return IdentityResolver(cookie_name=settings.session_cookie_name, secure=settings.is_production)


@lru_cache(maxsize=1)
def get_upstream_client() -> UpstreamSessionClient:
    return UpstreamSessionClient(get_settings())


@lru_cache(maxsize=1)
def get_observability_backend() -> ObservabilityBackend:
    return ObservabilityBackend(get_langfuse_client)


@lru_cache(maxsize=1)
def get_trace_recorder() -> TraceRecorder:
    return TraceRecorder(get_observability_backend(), get_settings())


@lru_cache(maxsize=1)
def get_controller_registry() -> ControllerRegistry:
    """
    Create and cache the ControllerRegistry singleton.

    Every controller shares the process-wide resolver, upstream client
    and trace recorder.

    Returns:
        ControllerRegistry: The single owner of live widget controllers.
    """
    settings = get_settings()

    def build(instance_id: str) -> SessionLifecycleController:
        return SessionLifecycleController(
            instance_id,
            resolver=get_identity_resolver(),
            upstream=get_upstream_client(),
            recorder=get_trace_recorder(),
            settings=settings,
        )

    return ControllerRegistry(build, idle_minutes=settings.controller_idle_minutes)
