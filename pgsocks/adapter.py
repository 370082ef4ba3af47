"""Adapter presenting an open tunnel to a client that opens its own connection.

asyncpg never accepts a socket. It asks the event loop it is given to
``create_connection(protocol_factory, host, port)`` and then waits for the
protocol's one-time ``connection_made`` notification. :class:`StreamAdapter`
is handed to asyncpg in place of that loop: the connect step becomes a hand-off
of the already connected tunnel socket, and the notification is delivered on
the next loop turn by asyncio itself. Every other loop service asyncpg needs is
forwarded, one explicit method each, to the running loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .tunnel import TunnelStream

LOG = logging.getLogger(__name__)


class StreamAdapter:
    """Wraps a connected :class:`TunnelStream` for a self-connecting client."""

    def __init__(self, stream: TunnelStream, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._stream = stream
        self._loop = loop or asyncio.get_running_loop()
        self._transport: asyncio.BaseTransport | None = None
        self.already_connected = True

    @property
    def stream(self) -> TunnelStream:
        return self._stream

    @property
    def transport(self) -> asyncio.BaseTransport | None:
        return self._transport

    @property
    def closed(self) -> bool:
        if self._transport is not None:
            return self._transport.is_closing()
        return self._stream.closed

    async def connect(self) -> None:
        """The tunnel is connected already; nothing to do."""

    def on_connected(self, listener: Callable[[], Any]) -> asyncio.Handle:
        """Schedule ``listener`` for the next loop turn, once."""

        return self._loop.call_soon(listener)

    async def create_connection(
        self,
        protocol_factory: Callable[[], asyncio.BaseProtocol],
        host: str | None = None,
        port: int | None = None,
        *,
        ssl: Any = None,
        server_hostname: str | None = None,
        **kwargs: Any,
    ) -> tuple[asyncio.Transport, asyncio.BaseProtocol]:
        """Bind ``protocol_factory`` to the tunnel socket instead of dialing ``host``."""

        if self._transport is not None or self._stream.detached or self._stream.closed:
            raise ConnectionError(f"Tunnel to {self._stream.target} is already in use; it cannot be reopened.")
        sock = self._stream.detach()
        options: dict[str, Any] = {}
        if ssl:
            options["ssl"] = ssl
            options["server_hostname"] = server_hostname or host or self._stream.target.host
        try:
            transport, protocol = await self._loop.create_connection(protocol_factory, sock=sock, **options)
        except (Exception, asyncio.CancelledError):
            sock.close()
            raise
        self._transport = transport
        LOG.debug("Tunnel handed to protocol", extra={"target": str(self._stream.target)})
        return transport, protocol

    async def create_unix_connection(self, protocol_factory: Callable[[], asyncio.BaseProtocol], path: str, **kwargs: Any):
        raise ConnectionError("Unix socket connections cannot be routed through a SOCKS tunnel.")

    async def read(self, max_bytes: int = 65536) -> bytes:
        return await self._stream.read(max_bytes)

    async def write(self, data: bytes) -> None:
        if self._transport is not None:
            self._transport.write(data)  # type: ignore[attr-defined]
            return
        await self._stream.write(data)

    def close(self) -> None:
        """Destroy the tunnel, whoever currently owns the socket."""

        if self._transport is not None:
            if not self._transport.is_closing():
                self._transport.abort()  # type: ignore[attr-defined]
            return
        self._stream.close()

    # Loop services used by the protocol client.

    def create_future(self) -> asyncio.Future[Any]:
        return self._loop.create_future()

    def create_task(self, coro, *, name: str | None = None) -> asyncio.Task[Any]:  # type: ignore[no-untyped-def]
        return self._loop.create_task(coro, name=name)

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> asyncio.Handle:
        return self._loop.call_soon(callback, *args)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return self._loop.call_later(delay, callback, *args)

    def call_at(self, when: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return self._loop.call_at(when, callback, *args)

    def time(self) -> float:
        return self._loop.time()

    def get_debug(self) -> bool:
        return self._loop.get_debug()

    def is_closed(self) -> bool:
        return self._loop.is_closed()

    def call_exception_handler(self, context: dict[str, Any]) -> None:
        self._loop.call_exception_handler(context)

    def run_in_executor(self, executor: Any, func: Callable[..., Any], *args: Any) -> asyncio.Future[Any]:
        return self._loop.run_in_executor(executor, func, *args)

    async def start_tls(self, transport: asyncio.BaseTransport, protocol: asyncio.BaseProtocol, sslcontext, **kwargs: Any):  # type: ignore[no-untyped-def]
        new_transport = await self._loop.start_tls(transport, protocol, sslcontext, **kwargs)
        if new_transport is not None:
            self._transport = new_transport
        return new_transport

    def __repr__(self) -> str:
        return f"<StreamAdapter {self._stream!r}>"


__all__ = ["StreamAdapter"]
