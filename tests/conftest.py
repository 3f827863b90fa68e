"""
Shared fixtures.

FakeSession stands in for aiohttp.ClientSession with canned responses per
URL, so the real HttpClient (manual redirects, retries, size caps) runs
without network access.
"""

import json
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest

import services.logger as log
from services.http import HttpClient
from services.message import MessageBody, MessageEvent, Sender


class FakeContent:
    def __init__(self, body: bytes):
        self._body = body

    async def iter_chunked(self, size: int):
        for i in range(0, len(self._body), size):
            yield self._body[i:i + size]


class FakeResponse:
    def __init__(self, status=200, body=b"", headers=None, content_type="text/html"):
        if isinstance(body, (dict, list)):
            body = json.dumps(body, ensure_ascii=False)
            content_type = "application/json"
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.status = status
        self.headers = dict(headers or {})
        self.content = FakeContent(body)
        self.content_type = content_type

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def redirect(location: str, status: int = 302) -> FakeResponse:
    return FakeResponse(status=status, headers={"Location": location})


class FakeSession:
    """Routes ``get(url)`` to queued responses; the last one repeats."""

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.requests: list[tuple[str, dict]] = []
        self.closed = False

    def add(self, url: str, *responses) -> None:
        self.routes.setdefault(url, []).extend(responses)

    def get(self, url, headers=None, allow_redirects=True, timeout=None):
        self.requests.append((url, dict(headers or {})))
        queue = self.routes.get(url)
        if not queue:
            raise aiohttp.ClientConnectionError(f"no route for {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def urls(self) -> list[str]:
        return [url for url, _ in self.requests]

    async def close(self):
        self.closed = True


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def http(session):
    return HttpClient(session, backoff=0)


@pytest.fixture
def ctx():
    """Host double with the surface the plugin uses."""
    host = Mock()
    host.logger = log.get_logger()
    host.message.send = AsyncMock()
    return host


def make_event(
    text="",
    *,
    message_id="1001",
    segments=None,
    raw=None,
    sender_id="10001",
    channel_id="123456",
    channel_type="group",
    platform="qq",
) -> MessageEvent:
    return MessageEvent(
        instance_id="napcat",
        platform=platform,
        channel_id=channel_id,
        channel_type=channel_type,
        sender=Sender(user_id=sender_id, user_name="tester"),
        message=MessageBody(id=message_id, text=text, segments=segments or []),
        raw=raw,
    )
