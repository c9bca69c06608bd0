# Upstream Package
from upstream.client import SessionCredential, UpstreamSessionClient, detect_agent_version
from upstream.errors import UpstreamSessionError, extract_upstream_error

__all__ = [
    "SessionCredential",
    "UpstreamSessionClient",
    "detect_agent_version",
    "UpstreamSessionError",
    "extract_upstream_error",
]
