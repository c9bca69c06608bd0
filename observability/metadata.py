"""
Metadata Collector

Three independent producers of trace metadata plus the merge rule that
combines them when a trace is opened.

- Environment: deployment platform, build id, app version, timestamp
- Client: what the widget runtime reported about the browser
- Request: proxy-resolved client IP, locale/referrer/origin, edge geography

DESIGN RULES:
- Producers never throw; any failure yields an empty mapping
- Producers are side-effect free
- Required fields are re-asserted after merge so no bundle can blank them
"""

import logging
import os
import re
from datetime import datetime, timezone
from importlib import metadata as importlib_metadata
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from app.core.config import DEFAULT_APP_VERSION, Settings, get_settings
from observability.user_agent import classify_user_agent

logger = logging.getLogger(__name__)

DISTRIBUTION_NAME = "chatkit-session-tracing"
DISPLAY_TYPE = "chatkit"
UNCONFIGURED_WORKFLOW = "unconfigured"

REQUIRED_FIELDS: Tuple[str, ...] = (
    "appVersion",
    "applicationVersion",
    "workflowId",
    "agentVersion",
    "displayType",
)

_LOOPBACK = {"::1", "127.0.0.1", "localhost"}

# Ordered by reliability; first usable value wins.
IP_HEADER_PRECEDENCE: Tuple[str, ...] = (
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "true-client-ip",
    "x-forwarded",
)

_X_FORWARDED_FOR_RE = re.compile(r"for=([^;,\s]+)")


def resolve_app_version(settings: Optional[Settings] = None) -> str:
    """Configured version, else the installed distribution version, else the default."""
    settings = settings or get_settings()
    if settings.app_version.strip():
        return settings.app_version.strip()
    try:
        return importlib_metadata.version(DISTRIBUTION_NAME)
    except importlib_metadata.PackageNotFoundError:
        return DEFAULT_APP_VERSION


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# ENVIRONMENT
# ============================================================

def _deployment_tags(env: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    if env.get("VERCEL"):
        return {
            "platform": "vercel",
            "env": env.get("VERCEL_ENV"),
            "url": env.get("VERCEL_URL"),
            "deploymentUrl": env.get("VERCEL_DEPLOYMENT_URL"),
        }
    if env.get("RENDER"):
        return {
            "platform": "render",
            "service": env.get("RENDER_SERVICE_NAME"),
            "url": env.get("RENDER_EXTERNAL_URL"),
        }
    if env.get("FLY_APP_NAME"):
        return {
            "platform": "fly",
            "app": env.get("FLY_APP_NAME"),
            "region": env.get("FLY_REGION"),
        }
    if env.get("K_SERVICE"):
        return {
            "platform": "cloud-run",
            "service": env.get("K_SERVICE"),
            "revision": env.get("K_REVISION"),
        }
    return None


def collect_environment_metadata(
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    try:
        settings = settings or get_settings()
        env = environ if environ is not None else os.environ
        app_version = resolve_app_version(settings)

        metadata: Dict[str, Any] = {
            "environment": settings.environment or "development",
            "timestamp": _now_iso(),
            "appVersion": app_version,
            "applicationVersion": app_version,
        }

        deployment = _deployment_tags(env)
        if deployment:
            metadata["deployment"] = deployment
        if settings.build_id:
            metadata["buildId"] = settings.build_id
        if settings.environment_tag:
            metadata["environmentTag"] = settings.environment_tag
        return metadata
    except Exception as e:
        logger.warning(f"[metadata] Failed to collect environment metadata: {e}")
        return {}


# ============================================================
# CLIENT (reported by the widget runtime)
# ============================================================

def _subset(source: Any, keys: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    if not isinstance(source, Mapping):
        return None
    out = {camel: source[snake] for snake, camel in keys.items() if source.get(snake) is not None}
    return out or None


def _performance_metadata(perf: Any) -> Dict[str, Any]:
    if not isinstance(perf, Mapping):
        return {}
    nav_start = perf.get("navigation_start")
    load_end = perf.get("load_event_end")
    if not isinstance(nav_start, (int, float)) or not isinstance(load_end, (int, float)):
        return {}
    page_load = load_end - nav_start
    if page_load <= 0:
        return {}

    def since_start(key: str) -> Optional[float]:
        value = perf.get(key)
        return value - nav_start if isinstance(value, (int, float)) else None

    return {
        "pageLoadTime": page_load,
        "performance": {
            "pageLoadTime": page_load,
            "domContentLoaded": since_start("dom_content_loaded_event_end"),
            "domInteractive": since_start("dom_interactive"),
            "firstPaint": perf.get("first_paint"),
            "firstContentfulPaint": perf.get("first_contentful_paint"),
        },
    }


def collect_client_metadata(client: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Build client metadata from the context the widget runtime reported.

    `client` uses the snake_case field names of `schemas.session.ClientContext`.
    Returns {} when no client context is available.
    """
    if not client:
        return {}

    try:
        metadata: Dict[str, Any] = {}
        user_agent = client.get("user_agent")
        if user_agent:
            metadata["userAgent"] = user_agent

        language = client.get("language")
        if language:
            metadata["language"] = language
            metadata["languages"] = client.get("languages") or [language]

        for snake, camel in (
            ("platform", "platform"),
            ("timezone", "timezone"),
            ("timezone_offset", "timezoneOffset"),
            ("online", "online"),
            ("cookie_enabled", "cookieEnabled"),
            ("do_not_track", "doNotTrack"),
            ("local_storage_available", "localStorageAvailable"),
            ("session_storage_available", "sessionStorageAvailable"),
            ("resource_count", "resourceCount"),
            ("total_resource_size", "totalResourceSize"),
        ):
            if client.get(snake) is not None:
                metadata[camel] = client[snake]

        screen = _subset(client.get("screen"), {
            "width": "width",
            "height": "height",
            "avail_width": "availWidth",
            "avail_height": "availHeight",
            "color_depth": "colorDepth",
            "pixel_depth": "pixelDepth",
        })
        if screen:
            metadata["screen"] = screen

        viewport = _subset(client.get("viewport"), {"width": "width", "height": "height"})
        if viewport and viewport.get("width") and viewport.get("height"):
            metadata["viewport"] = viewport

        url = _subset(client.get("url"), {
            "href": "href",
            "pathname": "pathname",
            "search": "search",
            "hash": "hash",
            "host": "host",
            "hostname": "hostname",
            "protocol": "protocol",
        })
        if url:
            metadata["url"] = url

        connection = _subset(client.get("connection"), {
            "effective_type": "effectiveType",
            "downlink": "downlink",
            "rtt": "rtt",
        })
        if connection:
            metadata["connection"] = connection

        cores = client.get("hardware_concurrency")
        if cores:
            metadata["hardwareConcurrency"] = cores
            metadata["cpuCores"] = cores

        if user_agent:
            device = classify_user_agent(user_agent)
            metadata["device"] = device
            metadata["deviceType"] = device["type"]

        caps = client.get("capabilities")
        if isinstance(caps, Mapping):
            metadata["capabilities"] = {
                "touch": bool(caps.get("touch")),
                "geolocation": bool(caps.get("geolocation")),
                "notifications": bool(caps.get("notifications")),
                "serviceWorker": bool(caps.get("service_worker")),
                "webGL": bool(caps.get("webgl")),
                "webAssembly": bool(caps.get("webassembly")),
            }

        metadata.update(_performance_metadata(client.get("performance")))
        return metadata
    except Exception as e:
        logger.warning(f"[metadata] Failed to collect client metadata: {e}")
        return {}


# ============================================================
# REQUEST
# ============================================================

def _usable_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().strip('"')
    if not value or value in _LOOPBACK:
        return None
    return value


def resolve_client_ip(headers: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Resolve the originating client IP from proxy headers.

    Returns (ip, header_name); loopback addresses are skipped.
    """
    for name in IP_HEADER_PRECEDENCE:
        raw = headers.get(name)
        if not raw:
            continue
        if name == "x-forwarded-for":
            # First entry is the original client, later ones are proxies.
            for candidate in raw.split(","):
                ip = _usable_ip(candidate)
                if ip:
                    return ip, name
            continue
        if name == "x-forwarded":
            match = _X_FORWARDED_FOR_RE.search(raw)
            ip = _usable_ip(match.group(1)) if match else None
        else:
            ip = _usable_ip(raw)
        if ip:
            return ip, name
    return None, None


def collect_request_metadata(
    headers: Optional[Mapping[str, str]],
    url: Optional[str] = None,
) -> Dict[str, Any]:
    """Build metadata from an inbound request's headers and URL."""
    if headers is None:
        return {}

    try:
        h = {str(k).lower(): v for k, v in headers.items()}
        metadata: Dict[str, Any] = {}

        for header, key in (
            ("user-agent", "userAgent"),
            ("referer", "referer"),
            ("origin", "origin"),
            ("accept-language", "acceptLanguage"),
            ("accept", "accept"),
        ):
            if h.get(header):
                metadata[key] = h[header]

        ip, source = resolve_client_ip(h)
        if ip:
            metadata["ip"] = ip
            metadata["ipType"] = "ipv6" if ":" in ip else "ipv4"
            metadata["ipSource"] = source
        else:
            host = h.get("host", "")
            if "localhost" in host or "127.0.0.1" in host:
                metadata["ip"] = "localhost"
                metadata["ipType"] = "localhost"
                metadata["ipSource"] = "local-development"

        if url:
            parts = urlsplit(url)
            metadata["requestUrl"] = {
                "pathname": parts.path,
                "search": f"?{parts.query}" if parts.query else "",
                "hostname": parts.hostname,
                "protocol": f"{parts.scheme}:" if parts.scheme else "",
            }

        if h.get("cf-ipcountry"):
            metadata["cloudflare"] = {"country": h["cf-ipcountry"], "ray": h.get("cf-ray")}
        if h.get("x-vercel-ip-country"):
            metadata["vercel"] = {
                "country": h["x-vercel-ip-country"],
                "region": h.get("x-vercel-ip-country-region"),
            }
        return metadata
    except Exception as e:
        logger.warning(f"[metadata] Failed to collect request metadata: {e}")
        return {}


# ============================================================
# MERGE
# ============================================================

def required_defaults(settings: Optional[Settings] = None) -> Dict[str, str]:
    """Fallback values for the required fields, from configuration."""
    settings = settings or get_settings()
    app_version = resolve_app_version(settings)
    return {
        "appVersion": app_version,
        "applicationVersion": app_version,
        "workflowId": settings.chatkit_workflow_id.strip() or UNCONFIGURED_WORKFLOW,
        "agentVersion": settings.resolved_agent_version,
        "displayType": DISPLAY_TYPE,
    }


def _first_non_empty(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def merge_trace_metadata(
    event: Optional[Mapping[str, Any]],
    environment: Optional[Mapping[str, Any]],
    client: Optional[Mapping[str, Any]],
    request: Optional[Mapping[str, Any]],
    defaults: Mapping[str, Any],
) -> Dict[str, Any]:
    """
    Shallow-merge [event, environment, client, request] (last writer wins),
    then re-assert REQUIRED_FIELDS from event, else environment, else defaults.
    """
    event = event or {}
    environment = environment or {}

    merged: Dict[str, Any] = {}
    for bundle in (event, environment, client or {}, request or {}):
        merged.update(bundle)

    for key in REQUIRED_FIELDS:
        merged[key] = _first_non_empty(event.get(key), environment.get(key), defaults.get(key))
    # applicationVersion always mirrors appVersion
    merged["applicationVersion"] = merged["appVersion"]
    return merged
