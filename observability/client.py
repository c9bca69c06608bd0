"""
Langfuse Client Provider

Process-wide, lazily constructed Langfuse connection handle.

DESIGN RULES:
- Constructed at most once per process (idempotent under concurrency)
- Read-shared after construction, no teardown
- Never raises: missing keys or construction failure yield None
"""

import logging
import threading
from typing import Any, Callable, Optional

from langfuse import Langfuse

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LangfuseClientProvider:
    """
    Lazily builds and caches one Langfuse client.

    The first successful or failed construction attempt is final; later
    calls return the cached result without touching the lock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        factory: Optional[Callable[..., Any]] = None,
    ):
        self._settings = settings
        self._factory = factory
        self._lock = threading.Lock()
        self._initialized = False
        self._client: Optional[Any] = None

    def get(self) -> Optional[Any]:
        if self._initialized:
            return self._client

        with self._lock:
            if not self._initialized:
                self._client = self._build()
                self._initialized = True
        return self._client

    def _build(self) -> Optional[Any]:
        settings = self._settings or get_settings()
        if not settings.langfuse_enabled:
            logger.info(
                "Langfuse disabled "
                f"(public_key_set={bool(settings.langfuse_public_key)} "
                f"secret_key_set={bool(settings.langfuse_secret_key)})"
            )
            return None

        factory = self._factory or Langfuse
        try:
            client = factory(
                public_key=settings.langfuse_public_key.strip(),
                secret_key=settings.langfuse_secret_key.strip(),
                base_url=settings.langfuse_base_url.strip().rstrip("/"),
                release=settings.app_version or None,
                environment=settings.environment.strip().lower() or None,
            )
        except Exception as e:
            logger.error(f"[Langfuse] Failed to initialize client: {e!r}")
            return None

        logger.info(f"Langfuse enabled (base_url={settings.langfuse_base_url})")
        return client


_provider = LangfuseClientProvider()


def get_langfuse_client() -> Optional[Any]:
    """Get the process-wide Langfuse client (None when tracing is disabled)."""
    return _provider.get()
