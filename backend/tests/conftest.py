import json

import pytest
from fastapi.testclient import TestClient

from chatrelay.config import Settings
from chatrelay.main import create_app
from chatrelay.services.rate_limiter import InMemoryRateLimiter

from fakes import FakeUpstream


@pytest.fixture
def test_settings():
    """Settings isolated from the developer's .env, with a dummy API key."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        openai_base_url="https://llm.example.test/v1",
        rate_limit_backend="memory",
        rate_limit_capacity=100,
        rate_limit_window_seconds=900,
        trust_forwarded_for=False,
    )


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def make_client(test_settings):
    """Factory for TestClients over apps with injected components."""
    opened = []

    def _make(upstream=None, settings=None, rate_limiter=None):
        settings = settings or test_settings
        app = create_app(
            settings,
            upstream=upstream or FakeUpstream(),
            rate_limiter=rate_limiter or InMemoryRateLimiter(
                capacity=settings.rate_limit_capacity,
                window_seconds=settings.rate_limit_window_seconds,
            ),
        )
        client = TestClient(app)
        client.__enter__()
        opened.append(client)
        return client

    yield _make

    for client in opened:
        client.__exit__(None, None, None)


@pytest.fixture
def test_client(make_client, fake_upstream):
    """FastAPI test client backed by the shared fake upstream."""
    return make_client(upstream=fake_upstream)


@pytest.fixture
def parse_sse():
    """Split an event-stream body into (event, data) pairs; JSON data is decoded."""
    def _parse(body: str):
        events = []
        for block in body.strip().split("\n\n"):
            if not block.strip():
                continue
            event, data = None, None
            for line in block.splitlines():
                if line.startswith("event: "):
                    event = line[len("event: "):]
                elif line.startswith("data: "):
                    data = line[len("data: "):]
            if data is not None and data.startswith("{"):
                data = json.loads(data)
            events.append((event, data))
        return events

    return _parse
