"""
Widget API Routes

Relays widget runtime lifecycle signals to the instance's controller.
Contains no state-machine logic of its own.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_controller_registry
from lifecycle.controller import SessionLifecycleController
from lifecycle.registry import ControllerRegistry
from schemas.session import WidgetSignal, WidgetStateResponse

router = APIRouter(prefix="/widget")


def _controller_or_404(registry: ControllerRegistry, instance_id: str) -> SessionLifecycleController:
    controller = registry.get(instance_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"Unknown widget instance: {instance_id}")
    return controller


def _state(controller: SessionLifecycleController, result: Optional[Dict[str, Any]] = None) -> WidgetStateResponse:
    return WidgetStateResponse(**controller.snapshot(), result=result)


def _dispatch(controller: SessionLifecycleController, signal: WidgetSignal) -> Optional[Dict[str, Any]]:
    if signal.type == "response_start":
        controller.response_start()
    elif signal.type == "response_end":
        latency = controller.response_end()
        return {"latencyMs": latency}
    elif signal.type == "tool_invoked":
        return controller.tool_invoked(signal.name or "", signal.params)
    elif signal.type == "thread_changed":
        controller.thread_changed()
    elif signal.type == "error":
        controller.error(signal.detail or "Unknown error", error_type="WidgetError")
    elif signal.type == "runtime_ready":
        controller.runtime_ready()
    elif signal.type == "runtime_failed":
        controller.runtime_failed(signal.detail or "Unknown error")
    return None


@router.post("/{instance_id}/events", response_model=WidgetStateResponse)
def post_event(
    instance_id: str,
    signal: WidgetSignal,
    registry: ControllerRegistry = Depends(get_controller_registry),
) -> WidgetStateResponse:
    controller = _controller_or_404(registry, instance_id)
    controller.check_runtime_timeout()
    result = _dispatch(controller, signal)
    return _state(controller, result)


@router.post("/{instance_id}/reset", response_model=WidgetStateResponse)
def reset_widget(
    instance_id: str,
    registry: ControllerRegistry = Depends(get_controller_registry),
) -> WidgetStateResponse:
    """Close the session trace; the widget then calls create-session again."""
    controller = _controller_or_404(registry, instance_id)
    stats = controller.reset()
    return _state(controller, stats.to_dict() if stats else None)


@router.get("/{instance_id}", response_model=WidgetStateResponse)
def get_widget(
    instance_id: str,
    registry: ControllerRegistry = Depends(get_controller_registry),
) -> WidgetStateResponse:
    controller = _controller_or_404(registry, instance_id)
    controller.check_runtime_timeout()
    return _state(controller)
