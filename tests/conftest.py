"""Shared fixtures: an in-memory ingestion API built on httpx.MockTransport."""

from __future__ import annotations

import json
import socketserver
import threading
import time
from typing import Any, Dict, Iterator, List, Optional

import httpx
import pytest

from initialstate_streamer.async_streamer import AsyncStreamer
from initialstate_streamer.streamer import Streamer

BASE_URL = "https://ingest.test/api/"
ACCESS_KEY = "ak_test"
BUCKET_KEY = "bk_test"

RATE_LIMIT_HEADERS = {
    "X-RateLimit-Limit": "500",
    "X-RateLimit-Remaining": "499",
    "X-RateLimit-Reset": "1700000000",
}


class FakeIngestApi:
    """Records requests and answers with configurable status codes."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.events_status: int = 204
        self.bucket_status: int = 201
        self.headers: Dict[str, str] = dict(RATE_LIMIT_HEADERS)
        self.error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if request.url.path.endswith("/buckets"):
            return httpx.Response(self.bucket_status)
        return httpx.Response(self.events_status, headers=self.headers)

    def body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)

    @property
    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def api() -> FakeIngestApi:
    return FakeIngestApi()


@pytest.fixture
def transport(api: FakeIngestApi) -> httpx.MockTransport:
    return httpx.MockTransport(api)


@pytest.fixture
def streamer(transport: httpx.MockTransport) -> Iterator[Streamer]:
    s = Streamer(api_base_url=BASE_URL, transport=transport)
    yield s
    s.shutdown()


@pytest.fixture
def connected(streamer: Streamer) -> Streamer:
    streamer.connect(ACCESS_KEY, BUCKET_KEY)
    return streamer


@pytest.fixture
def async_streamer(transport: httpx.MockTransport) -> AsyncStreamer:
    return AsyncStreamer(api_base_url=BASE_URL, transport=transport)


TRICKLE_RESPONSE = (
    b"HTTP/1.1 204 No Content\r\n"
    b"X-RateLimit-Limit: 500\r\n"
    b"X-RateLimit-Remaining: 499\r\n"
    b"X-RateLimit-Reset: 1700000000\r\n"
    b"Content-Length: 0\r\n\r\n"
)


class _TrickleHandler(socketserver.BaseRequestHandler):
    """Answers 204, one byte at a time, slowly enough to outlast any deadline."""

    byte_interval = 0.05

    def handle(self) -> None:
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = self.request.recv(4096)
            if not chunk:
                return
            data += chunk
        self.server.hits += 1
        try:
            for i in range(len(TRICKLE_RESPONSE)):
                self.request.sendall(TRICKLE_RESPONSE[i : i + 1])
                time.sleep(self.byte_interval)
        except OSError:
            # client gave up
            return


class TrickleServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self) -> None:
        super().__init__(("127.0.0.1", 0), _TrickleHandler)
        self.hits = 0

    @property
    def base_url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}/api/"


@pytest.fixture
def slow_server() -> Iterator[TrickleServer]:
    server = TrickleServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
