import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from deployops.config import ClientConfig


SERVER_URL = "http://deployops.test"


def chunked_body(chunks, fail_with=None, gate=None, state=None):
    """Async byte stream delivering ``chunks`` one by one."""

    async def gen():
        try:
            for chunk in chunks:
                yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk
            if fail_with is not None:
                raise fail_with
            if gate is not None:
                await gate.wait()
        finally:
            if state is not None:
                state["closed"] = True

    return gen()


class RunServer:
    """MockTransport handler standing in for the run endpoint."""

    def __init__(self, *responders):
        self.responders = list(responders)
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "DELETE":
            return httpx.Response(200, json={"ok": True, "stopped": True})
        responder = self.responders.pop(0)
        return responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), base_url=SERVER_URL)


def stream_response(chunks, run_id="run-1", **kwargs):
    return lambda _request: httpx.Response(
        200,
        content=chunked_body(chunks, **kwargs),
        headers={"content-type": "text/event-stream", "x-run-id": run_id},
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def client_config():
    return ClientConfig(server_url=SERVER_URL)


class FakeRuntimeCache:
    """In-memory stand-in for the Vercel runtime cache."""

    def __init__(self):
        self.data = {}

    async def set(self, key, value, options=None):
        self.data[key] = value

    async def get(self, key):
        return self.data.get(key)


@pytest.fixture
def fake_cache(monkeypatch):
    from deployops import run_store

    cache = FakeRuntimeCache()
    monkeypatch.setattr(run_store, "cache", cache)
    return cache


class FakeProc:
    """Minimal asyncio.subprocess.Process double with scripted output."""

    def __init__(self, chunks=(), returncode=0, eof=True):
        self.stdout = asyncio.StreamReader()
        for chunk in chunks:
            self.stdout.feed_data(chunk.encode("utf-8"))
        if eof:
            self.stdout.feed_eof()
        self._code = returncode
        self.returncode = None
        self.killed = False

    async def wait(self):
        self.returncode = self._code
        return self._code

    def kill(self):
        self.killed = True
        self.returncode = -9
