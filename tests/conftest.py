import json

import httpx
import pytest
from fastapi.testclient import TestClient

from audit_proxy.config import SiteConfig
from audit_proxy.notify import Notifier
from audit_proxy.server import create_app

UPSTREAM = "https://api.example.com"
CLASSIFIER = "https://classifier.test"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def stream_response(status: int, body: bytes, content_type: str = "application/json", headers=None) -> httpx.Response:
    """An upstream reply whose body is still unread, like one off the network."""
    all_headers = {"content-type": content_type, "content-length": str(len(body)), **(headers or {})}
    return httpx.Response(status, headers=all_headers, stream=httpx.ByteStream(body))


def json_response(status: int, payload, headers=None) -> httpx.Response:
    return stream_response(status, json.dumps(payload).encode(), headers=headers)


class FakeServices:
    """
    One MockTransport handler standing in for the upstream API, the
    classifier and the notification channel. Records every request it sees.
    """

    def __init__(self):
        self.upstream_calls = []
        self.classifier_calls = []
        self.notify_calls = []
        self.verdict = {"status": "done", "verdict": "security", "data": {}}
        self.classifier_status = 200
        self.classifier_down = False
        self.upstream_response = None
        self.upstream_down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "classifier.test":
            self.classifier_calls.append(request)
            if self.classifier_down:
                raise httpx.ConnectError("classifier unreachable", request=request)
            return httpx.Response(self.classifier_status, json=self.verdict)
        if host == "wxpusher.zjiecode.com":
            self.notify_calls.append(request)
            return httpx.Response(200, json={"code": 1000, "msg": "ok"})

        self.upstream_calls.append(request)
        if self.upstream_down:
            raise httpx.ConnectError("upstream unreachable", request=request)
        if self.upstream_response is not None:
            return self.upstream_response
        return json_response(200, {"ok": True, "path": request.url.path})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
def http_client(services):
    return httpx.AsyncClient(transport=httpx.MockTransport(services.handler))


def _make_site(**overrides) -> SiteConfig:
    data = {"path": "openai", "baseurl": UPSTREAM, "ratelimit": 0}
    data.update(overrides)
    return SiteConfig.model_validate(data)


@pytest.fixture
def make_client(http_client, clock, tmp_path):
    def _make(sites=None, notifier=None, **kwargs):
        app = create_app(
            sites=sites if sites is not None else [_make_site()],
            http_client=http_client,
            classifier_base=CLASSIFIER,
            notifier=notifier,
            events_path=tmp_path / "events.jsonl",
            clock=clock,
            **kwargs,
        )
        return TestClient(app, raise_server_exceptions=False)

    return _make


@pytest.fixture
def notifier(http_client):
    return Notifier(
        http_client,
        app_token="AT_test",
        uid="UID_test",
        password="secret",
        salt="salt",
        deploy_domain="https://proxy.test",
    )


def _chat_body(content="tell me a story", stream=False, **extra):
    body = {"model": "gpt-test", "messages": [{"role": "user", "content": content}], **extra}
    if stream:
        body["stream"] = True
    return json.dumps(body)


@pytest.fixture
def make_site():
    return _make_site


@pytest.fixture
def chat_body():
    return _chat_body


@pytest.fixture
def upstream_reply():
    """Factory for unread upstream responses: ``upstream_reply(status, payload_or_bytes, ...)``."""

    def _reply(status, payload, content_type="application/json", headers=None):
        if isinstance(payload, bytes):
            return stream_response(status, payload, content_type, headers)
        return json_response(status, payload, headers)

    return _reply
