from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


# --- Client context reported by the widget runtime ---

class ScreenInfo(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    avail_width: Optional[int] = None
    avail_height: Optional[int] = None
    color_depth: Optional[int] = None
    pixel_depth: Optional[int] = None


class ViewportInfo(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None


class PageUrl(BaseModel):
    href: Optional[str] = None
    pathname: Optional[str] = None
    search: Optional[str] = None
    hash: Optional[str] = None
    host: Optional[str] = None
    hostname: Optional[str] = None
    protocol: Optional[str] = None


class ConnectionInfo(BaseModel):
    effective_type: Optional[str] = None
    downlink: Optional[float] = None
    rtt: Optional[float] = None


class Capabilities(BaseModel):
    touch: bool = False
    geolocation: bool = False
    notifications: bool = False
    service_worker: bool = False
    webgl: bool = False
    webassembly: bool = False


class PerformanceTiming(BaseModel):
    """Navigation timing, epoch milliseconds except paint entries (relative)."""
    navigation_start: Optional[float] = None
    load_event_end: Optional[float] = None
    dom_content_loaded_event_end: Optional[float] = None
    dom_interactive: Optional[float] = None
    first_paint: Optional[float] = None
    first_contentful_paint: Optional[float] = None


class ClientContext(BaseModel):
    """
    What the widget runtime knows about the browser it runs in.

    Every field is optional; absent fields are simply not recorded.
    """
    model_config = ConfigDict(extra="ignore")

    user_agent: Optional[str] = None
    language: Optional[str] = None
    languages: Optional[List[str]] = None
    platform: Optional[str] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    online: Optional[bool] = None
    cookie_enabled: Optional[bool] = None
    do_not_track: Optional[str] = None
    screen: Optional[ScreenInfo] = None
    viewport: Optional[ViewportInfo] = None
    url: Optional[PageUrl] = None
    connection: Optional[ConnectionInfo] = None
    hardware_concurrency: Optional[int] = None
    capabilities: Optional[Capabilities] = None
    local_storage_available: Optional[bool] = None
    session_storage_available: Optional[bool] = None
    performance: Optional[PerformanceTiming] = None
    resource_count: Optional[int] = None
    total_resource_size: Optional[int] = None


# --- create-session ---

class WorkflowRef(BaseModel):
    id: Optional[str] = None


class FileUploadConfig(BaseModel):
    enabled: Optional[bool] = None


class ChatKitConfiguration(BaseModel):
    file_upload: Optional[FileUploadConfig] = None


class CreateSessionRequest(BaseModel):
    """
    Body of POST /api/create-session.

    Every field is optional; a missing or unparseable body behaves like {}.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    workflow: Optional[WorkflowRef] = None
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    chatkit_configuration: Optional[ChatKitConfiguration] = None
    instance_id: Optional[str] = Field(default=None, description="Widget instance to (re)mint for")
    client: Optional[ClientContext] = None

    def resolved_workflow_id(self, default: str) -> str:
        return (self.workflow.id if self.workflow and self.workflow.id else None) or self.workflow_id or default

    @property
    def attachments_enabled(self) -> bool:
        config = self.chatkit_configuration
        if config and config.file_upload and config.file_upload.enabled is not None:
            return config.file_upload.enabled
        return False


class CreateSessionResponse(BaseModel):
    client_secret: str
    expires_after: Any = None
    user_id: str
    session_id: str
    instance_id: str
    chatkit_trace_id: Optional[str] = None
    chatkit_run_id: Optional[str] = None
    chatkit_session_id: Optional[str] = None


# --- widget lifecycle ---

SignalType = Literal[
    "response_start",
    "response_end",
    "tool_invoked",
    "thread_changed",
    "error",
    "runtime_ready",
    "runtime_failed",
]


class WidgetSignal(BaseModel):
    """One lifecycle signal from the widget runtime."""
    type: SignalType
    name: Optional[str] = Field(default=None, description="Tool name for tool_invoked")
    params: Dict[str, Any] = Field(default_factory=dict)
    detail: Optional[str] = Field(default=None, description="Error detail for error/runtime_failed")


class OverlayModel(BaseModel):
    message: str
    retryable: bool = False


class WidgetStateResponse(BaseModel):
    instance_id: str
    state: str
    overlay: Optional[OverlayModel] = None
    trace_id: Optional[str] = None
    message_count: int = 0
    thread_change_count: int = 0
    response_statistics: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = Field(default=None, description="Return value of the signal, if any")
