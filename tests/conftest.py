"""Shared fixtures for gateway_shim tests."""

from __future__ import annotations

import json

import httpx
import logfire
import pytest
import pytest_asyncio

from gateway_shim.config import ShimSettings
from gateway_shim.dispatcher import HttpxFetch

logfire.configure(send_to_logfire=False, console=False)


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, responses: list[httpx.Response] | None = None):
        self.requests: list[httpx.Request] = []
        self.responses = list(responses or [])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={"ok": True})

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict:
        return json.loads(self.last.content)


@pytest.fixture
def settings() -> ShimSettings:
    return ShimSettings(auth_file=None)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest_asyncio.fixture
async def http_client(recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    yield client
    await client.aclose()


@pytest.fixture
def base_fetch(http_client) -> HttpxFetch:
    return HttpxFetch(http_client)
