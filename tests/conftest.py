import json
import math

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

from services.config_store import ConfigStore
from services.metrics import TelemetryStore

TEST_CONFIG = {
    "models": {
        "claude-haiku-4-5": {"url": "https://api.anthropic.com", "api_key": "sk-haiku", "context_window": 200000},
        "claude-sonnet-4-6": {"url": "https://api.anthropic.com", "api_key": "", "context_window": 200000},
        "claude-opus-4-6": {"url": "https://api.anthropic.com/", "api_key": "sk-opus", "context_window": 200000},
        "glm-4.7-flash": {"url": "https://openrouter.ai/api", "api_key": "sk-or", "context_window": 128000},
    },
    "agent_model_map": {
        "explore": "claude-haiku-4-5",
        "planner": "claude-opus-4-6",
        "executor": "glm-4.7-flash",
    },
    "orchestrator_model_map": {
        "haiku": "claude-haiku-4-5",
        "sonnet": "claude-sonnet-4-6",
        "opus": "claude-opus-4-6",
    },
}


def fake_estimate_tokens(text: str) -> int:
    """Deterministic stand-in for the tiktoken estimator (no BPE download)."""
    return math.ceil(len(text) / 4)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """
    Ensure every test runs with a clean/known environment.
    The config search never falls through to the real home directory.
    """
    monkeypatch.delenv("ROUTER_CONFIG", raising=False)
    monkeypatch.delenv("UPSTREAM_TIMEOUT_SEC", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    yield


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "router_config.yaml"
    path.write_text(yaml.safe_dump(TEST_CONFIG, sort_keys=False))
    return path


@pytest.fixture
def config_store(config_path):
    return ConfigStore(config_path)


@pytest.fixture
def telemetry():
    return TelemetryStore()


class UpstreamRecorder:
    """Fake model backend: records forwarded requests and replays a canned reply."""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.body = {"id": "msg_1", "type": "message", "content": [{"type": "text", "text": "hi"}],
                     "usage": {"input_tokens": 12, "output_tokens": 42}}
        self.headers = {"content-type": "application/json"}
        self.error = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        content = self.body if isinstance(self.body, bytes) else json.dumps(self.body).encode()
        return httpx.Response(self.status_code, headers=self.headers, content=content)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    @property
    def last_json(self):
        return json.loads(self.last.content)


@pytest.fixture
def upstream():
    return UpstreamRecorder()


@pytest.fixture
def app(config_store, telemetry, upstream):
    from app.main import create_app
    return create_app(
        config_store=config_store,
        telemetry=telemetry,
        estimate_tokens=fake_estimate_tokens,
        upstream_transport=httpx.MockTransport(upstream),
    )


@pytest.fixture
def client(app):
    """
    TestClient with the lifespan running.
    Uses context manager pattern for proper cleanup.
    """
    with TestClient(app) as test_client:
        yield test_client
