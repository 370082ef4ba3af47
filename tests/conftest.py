"""Fixtures wiring the stub servers into tests."""

from __future__ import annotations

import socket
from typing import Any, AsyncIterator

import pytest

from stubs import PostgresStub, Socks5Stub, StubDatabase


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def socks_proxy(anyio_backend: str) -> AsyncIterator[Socks5Stub]:
    proxy = Socks5Stub()
    await proxy.start()
    yield proxy
    await proxy.stop()


@pytest.fixture
async def stub_database(anyio_backend: str) -> AsyncIterator[StubDatabase]:
    database = StubDatabase()
    await database.start()
    yield database
    await database.stop()


@pytest.fixture
async def postgres(anyio_backend: str) -> AsyncIterator[PostgresStub]:
    server = PostgresStub()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def make_socks_proxy(anyio_backend: str):  # type: ignore[no-untyped-def]
    """Factory for proxies with non-default behaviour; stopped by the test."""

    def _make(**options: Any) -> Socks5Stub:
        return Socks5Stub(**options)

    return _make


@pytest.fixture
def unused_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port: int = sock.getsockname()[1]
    sock.close()
    return port
