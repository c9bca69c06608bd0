"""
Controller Registry

In-memory map of widget instance id -> SessionLifecycleController.

DESIGN RULES:
- No persistence, data lives only in process memory
- Idle controllers expire and their traces are closed
- Thread-safe for concurrent access
"""

import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, List, Optional

from lifecycle.controller import SessionLifecycleController

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str], SessionLifecycleController]


class ControllerRegistry:
    """
    Registry of live widget controllers.

    Usage:
        registry = ControllerRegistry(factory)
        controller = registry.get_or_create(instance_id)
    """

    # Idle timeout (auto-close after inactivity)
    IDLE_TIMEOUT_MINUTES = 30

    def __init__(
        self,
        factory: ControllerFactory,
        idle_minutes: int = IDLE_TIMEOUT_MINUTES,
        now: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            factory: Builds a controller for a new instance id
            idle_minutes: Minutes of inactivity before a controller is closed
            now: Clock, injectable for tests
        """
        self._factory = factory
        self._idle = timedelta(minutes=idle_minutes)
        self._now = now
        self._controllers: Dict[str, SessionLifecycleController] = {}
        self._last_access: Dict[str, datetime] = {}
        self._lock = Lock()

    def get_or_create(self, instance_id: str) -> SessionLifecycleController:
        with self._lock:
            expired = self._collect_expired()
            controller = self._controllers.get(instance_id)
            if controller is None:
                controller = self._factory(instance_id)
                self._controllers[instance_id] = controller
            self._last_access[instance_id] = self._now()
        self._close_all(expired)
        return controller

    def get(self, instance_id: str) -> Optional[SessionLifecycleController]:
        """Existing controller or None; touching it refreshes its idle timer."""
        with self._lock:
            expired = self._collect_expired()
            controller = self._controllers.get(instance_id)
            if controller is not None:
                self._last_access[instance_id] = self._now()
        self._close_all(expired)
        return controller

    def remove(self, instance_id: str) -> None:
        with self._lock:
            controller = self._controllers.pop(instance_id, None)
            self._last_access.pop(instance_id, None)
        if controller is not None:
            controller.close(reason="removed")

    def _collect_expired(self) -> List[SessionLifecycleController]:
        """Detach idle controllers (internal, caller holds the lock)."""
        cutoff = self._now() - self._idle
        expired_ids = [iid for iid, last in self._last_access.items() if last < cutoff]
        expired = []
        for iid in expired_ids:
            expired.append(self._controllers.pop(iid))
            del self._last_access[iid]
        return expired

    def _close_all(self, controllers: List[SessionLifecycleController]) -> None:
        for controller in controllers:
            logger.info(f"Closing idle widget controller {controller.instance_id}")
            controller.close(reason="expired")

    def close_all(self) -> None:
        with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()
            self._last_access.clear()
        for controller in controllers:
            controller.close(reason="shutdown")

    def controller_count(self) -> int:
        with self._lock:
            expired = self._collect_expired()
            count = len(self._controllers)
        self._close_all(expired)
        return count
