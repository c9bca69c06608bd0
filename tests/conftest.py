import pytest

from app.core.config import Settings
from identity.resolver import IdentityResolver
from lifecycle.controller import SessionLifecycleController
from observability.backend import ObservabilityBackend
from observability.recorder import TraceRecorder
from tests.helpers import FakeClock, FakeUpstream, make_langfuse_client


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment="development",
        openai_api_key="sk-test",
        chatkit_workflow_id="wf_test_v2",
        agent_version="",
        app_version="9.9.9",
        langfuse_public_key="pk-lf-test",
        langfuse_secret_key="sk-lf-test",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def langfuse_client():
    return make_langfuse_client()


@pytest.fixture
def backend(langfuse_client):
    return ObservabilityBackend(lambda: langfuse_client)


@pytest.fixture
def recorder(backend, settings, clock):
    return TraceRecorder(backend, settings, clock=clock)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def facts():
    return []


@pytest.fixture
def monotonic():
    return FakeClock(start=0.0)


@pytest.fixture
def make_controller(recorder, settings, upstream, facts, monotonic):
    def build(instance_id: str = "inst-1") -> SessionLifecycleController:
        return SessionLifecycleController(
            instance_id,
            resolver=IdentityResolver(),
            upstream=upstream,
            recorder=recorder,
            settings=settings,
            fact_sink=facts.append,
            monotonic=monotonic,
        )
    return build


@pytest.fixture
def controller(make_controller):
    return make_controller()
