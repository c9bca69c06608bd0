import re
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_VERSION = "wf-unversioned"
DEFAULT_APP_VERSION = "1.0.0-alpha"

# Matches wf_xxx_v27, wf_xxx-27.0.0, wf_xxx_v1.0.0-alpha, wf_xxx_27
_WORKFLOW_VERSION_RE = re.compile(r"[_-]v?(\d+(?:\.\d+)*(?:-[a-z0-9]+)?)", re.IGNORECASE)


def extract_version_from_workflow_id(workflow_id: Optional[str]) -> Optional[str]:
    """
    Best-effort guess of a human-readable version embedded in a workflow id.

    Workflow ids are usually opaque hashes, so a match may be coincidental.
    Only use the result as an enrichment label.
    """
    if not workflow_id:
        return None
    match = _WORKFLOW_VERSION_RE.search(workflow_id)
    return match.group(1) if match else None


class Settings(BaseSettings):
    """
    Application configuration settings.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Service Info
    service_name: str = "chatkit-session-tracing"
    environment: str = "development"
    log_level: str = "INFO"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Upstream (hosted ChatKit backend)
    openai_api_key: str = ""
    chatkit_workflow_id: str = ""
    chatkit_api_base: str = "https://api.openai.com"
    chatkit_timeout_seconds: float = 15.0

    # Versioning / deployment tags
    agent_version: str = ""
    app_version: str = ""
    build_id: str = ""
    environment_tag: str = ""

    # Langfuse
    langfuse_public_key: str = ""
    langfuse_secret_key: str = ""
    langfuse_base_url: str = "https://cloud.langfuse.com"

    # Identity cookie
    session_cookie_name: str = "chatkit_session_id"

    # Widget runtime
    widget_ready_timeout_seconds: float = 5.0
    controller_idle_minutes: int = 30

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def langfuse_enabled(self) -> bool:
        return bool(self.langfuse_public_key.strip() and self.langfuse_secret_key.strip())

    @property
    def resolved_agent_version(self) -> str:
        return self.agent_version_for(self.chatkit_workflow_id)

    def agent_version_for(self, workflow_id: str) -> str:
        """Explicit setting, else a version guessed from the workflow id, else the default."""
        explicit = self.agent_version.strip()
        if explicit:
            return explicit
        guessed = extract_version_from_workflow_id((workflow_id or "").strip())
        if guessed:
            return f"wf-{guessed}"
        return DEFAULT_AGENT_VERSION


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
