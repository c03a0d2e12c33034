"""
Shared fixtures for keypool tests.

Provides key record factories and a scripted fake transport so probes never
touch the network.
"""

import asyncio
from typing import Any, List, Optional

import pytest

from keypool import failure_logger
from keypool.models import KeyRecord, KeyStatus, KeyUsage
from keypool.transports import ProbeRequest, ProbeTransport

NOW = 1_700_000_000_000
MINUTE_MS = 60 * 1000


@pytest.fixture(autouse=True)
def isolated_failure_log(tmp_path, monkeypatch):
    """Point the probe failure log at a temp dir and reset its cached handler."""
    monkeypatch.setenv(failure_logger.LOG_DIR_ENV, str(tmp_path / "logs"))
    monkeypatch.setattr(failure_logger, "_file_handler", None)
    monkeypatch.setattr(failure_logger, "_fallback_mode", False)
    yield


def make_key(
    key_id: str,
    status: KeyStatus = KeyStatus.ACTIVE,
    priority: int = 5,
    enabled: bool = True,
    total_requests: int = 0,
    consecutive_failures: int = 0,
    updated_at: int = NOW,
    secret: Optional[str] = None,
) -> KeyRecord:
    return KeyRecord(
        id=key_id,
        secret=secret or f"sk-test-{key_id}-0123456789",
        enabled=enabled,
        priority=priority,
        usage=KeyUsage(
            total_requests=total_requests,
            consecutive_failures=consecutive_failures,
        ),
        status=status,
        created_at=NOW - 10 * MINUTE_MS,
        updated_at=updated_at,
    )


class FakeStream:
    """An async iterator that records how far it was consumed and whether it was closed."""

    def __init__(self, chunks: List[Any], error: Optional[Exception] = None):
        self.chunks = list(chunks)
        self.error = error
        self.pulled = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        if self.pulled < len(self.chunks):
            chunk = self.chunks[self.pulled]
            self.pulled += 1
            return chunk
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class FakeTransport(ProbeTransport):
    """
    Scripted transport. `errors` maps a secret to the exception its probe
    should raise; `chunks` is what every stream yields.
    """

    def __init__(self, errors=None, chunks=None, stream_error=None, latency: float = 0.0):
        self.errors = errors or {}
        self.chunks = ["chunk-1", "chunk-2", "chunk-3"] if chunks is None else chunks
        self.stream_error = stream_error
        self.latency = latency
        self.requests: List[ProbeRequest] = []
        self.streams: List[FakeStream] = []

    async def complete(self, request: ProbeRequest) -> Any:
        self.requests.append(request)
        if self.latency:
            await asyncio.sleep(self.latency)
        error = self.errors.get(request.api_key)
        if error is not None:
            raise error
        return {"choices": [{"message": {"content": "hi"}}]}

    def stream(self, request: ProbeRequest):
        self.requests.append(request)
        error = self.errors.get(request.api_key)
        if error is not None:
            stream = FakeStream([], error=error)
        else:
            stream = FakeStream(self.chunks, error=self.stream_error)
        self.streams.append(stream)
        return stream


@pytest.fixture
def fake_transport():
    return FakeTransport()
