"""Fakes shared by the test modules."""

import itertools

from unittest.mock import MagicMock

from upstream.client import SessionCredential


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, amount: float) -> None:
        self.now += amount


class FakeUpstream:
    """Stands in for UpstreamSessionClient."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.calls = []

    async def create_session(self, workflow_id, user_identity, attachments_enabled=False):
        self.calls.append((workflow_id, user_identity, attachments_enabled))
        if self.error is not None:
            raise self.error
        return SessionCredential(
            credential="cs_test_secret",
            expiry=600,
            session_id=f"cksess_{len(self.calls)}",
            user_id=user_identity,
            chatkit_session_id=f"cksess_{len(self.calls)}",
        )


def make_langfuse_client() -> MagicMock:
    client = MagicMock()
    trace_ids = itertools.count(1)
    span_ids = itertools.count(1)

    def start_span(**kwargs):
        span = MagicMock()
        span.id = f"span-{next(span_ids)}"
        return span

    def start_observation(**kwargs):
        generation = MagicMock()
        generation.id = f"gen-{next(span_ids)}"
        return generation

    client.create_trace_id.side_effect = lambda: f"trace-{next(trace_ids)}"
    client.start_span.side_effect = start_span
    client.start_observation.side_effect = start_observation
    return client


def span_calls(client: MagicMock, name: str):
    """start_span calls that created a span called `name`."""
    return [c for c in client.start_span.call_args_list if c.kwargs.get("name") == name]
