"""SOCKS5 tunnel establishment over the running asyncio loop."""

from __future__ import annotations

import asyncio
import enum
import ipaddress
import logging
import socket
import struct

from .models import ProxyCredentials, TargetEndpoint

LOG = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01
METHOD_USERPASS = 0x02
METHOD_NO_ACCEPTABLE = 0xFF
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

# CONNECT reply codes that mean the proxy could not reach the target.
_UNREACHABLE_REPLIES = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
}
_UNSUPPORTED_REPLIES = {
    0x07: "command not supported",
    0x08: "address type not supported",
}


class TunnelErrorKind(str, enum.Enum):
    AUTH_REJECTED = "authRejected"
    HOST_UNREACHABLE = "hostUnreachable"
    PROTOCOL_VIOLATION = "protocolViolation"
    TIMEOUT = "timeout"


class TunnelError(RuntimeError):
    """Raised when the proxy tunnel cannot be established."""

    classification = "TunnelError"

    def __init__(self, kind: TunnelErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class TunnelStream:
    """Connected, non-blocking socket joining us to the target through the proxy."""

    def __init__(self, sock: socket.socket, proxy: ProxyCredentials, target: TargetEndpoint) -> None:
        self._socket: socket.socket | None = sock
        self._detached = False
        self.proxy = proxy
        self.target = target

    @property
    def closed(self) -> bool:
        return self._socket is None and not self._detached

    @property
    def detached(self) -> bool:
        return self._detached

    def fileno(self) -> int:
        return self._socket.fileno() if self._socket is not None else -1

    async def write(self, data: bytes) -> None:
        await asyncio.get_running_loop().sock_sendall(self._require_socket(), data)

    async def read(self, max_bytes: int = 65536) -> bytes:
        return await asyncio.get_running_loop().sock_recv(self._require_socket(), max_bytes)

    async def read_exactly(self, n: int) -> bytes:
        loop = asyncio.get_running_loop()
        sock = self._require_socket()
        data = bytearray()
        while len(data) < n:
            packet = await loop.sock_recv(sock, n - len(data))
            if not packet:
                raise TunnelError(
                    TunnelErrorKind.PROTOCOL_VIOLATION,
                    "Proxy closed the connection during the handshake.",
                )
            data.extend(packet)
        return bytes(data)

    def detach(self) -> socket.socket:
        """Hand the socket to a new owner; this stream no longer closes it."""

        sock = self._require_socket()
        self._socket = None
        self._detached = True
        return sock

    def close(self) -> None:
        if self._socket is None:
            return
        sock, self._socket = self._socket, None
        try:
            sock.close()
        except OSError:  # pragma: no cover - best effort
            LOG.warning("Failed to close tunnel socket", extra={"target": str(self.target)})

    def _require_socket(self) -> socket.socket:
        if self._socket is None:
            raise ConnectionError("Tunnel stream is closed or handed off.")
        return self._socket

    def __repr__(self) -> str:
        state = "detached" if self._detached else ("closed" if self._socket is None else "open")
        return f"<TunnelStream {self.proxy.host}:{self.proxy.port} -> {self.target} {state}>"


async def open_tunnel(
    credentials: ProxyCredentials,
    target: TargetEndpoint,
    *,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> TunnelStream:
    """Connect to ``target`` through the SOCKS5 proxy described by ``credentials``."""

    try:
        return await asyncio.wait_for(_establish(credentials, target), timeout)
    except asyncio.TimeoutError as exc:
        raise TunnelError(
            TunnelErrorKind.TIMEOUT,
            f"Proxy {credentials.host}:{credentials.port} did not complete the handshake within {timeout}s.",
        ) from exc


async def _establish(credentials: ProxyCredentials, target: TargetEndpoint) -> TunnelStream:
    user = credentials.user.encode()
    password = credentials.password.encode()
    if len(user) > 255 or len(password) > 255:
        raise TunnelError(TunnelErrorKind.AUTH_REJECTED, "Proxy username and password must be at most 255 bytes.")
    address = _encode_address(target.host) + struct.pack(">H", target.port)

    sock = await _connect_proxy(credentials)
    stream = TunnelStream(sock, credentials, target)
    try:
        await _negotiate(stream, user, password)
        await _request_connect(stream, target, address)
    except OSError as exc:
        stream.close()
        raise TunnelError(
            TunnelErrorKind.PROTOCOL_VIOLATION,
            f"Proxy connection failed during the handshake: {exc}",
        ) from exc
    except (Exception, asyncio.CancelledError):
        stream.close()
        raise
    LOG.debug("Tunnel established", extra={"proxy": credentials.host, "target": str(target)})
    return stream


async def _connect_proxy(credentials: ProxyCredentials) -> socket.socket:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(credentials.host, credentials.port, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise TunnelError(
            TunnelErrorKind.HOST_UNREACHABLE,
            f"Could not resolve proxy {credentials.host}: {exc}",
        ) from exc
    family, type_, proto, _, address = infos[0]
    sock = socket.socket(family, type_, proto)
    sock.setblocking(False)
    try:
        await loop.sock_connect(sock, address)
    except OSError as exc:
        sock.close()
        raise TunnelError(
            TunnelErrorKind.HOST_UNREACHABLE,
            f"Couldn't connect to proxy {credentials.host}:{credentials.port}: {exc}",
        ) from exc
    except asyncio.CancelledError:
        sock.close()
        raise
    LOG.debug("Connected to proxy", extra={"proxy": credentials.host, "port": credentials.port})
    return sock


async def _negotiate(stream: TunnelStream, user: bytes, password: bytes) -> None:
    await stream.write(bytes([SOCKS_VERSION, 1, METHOD_USERPASS]))
    version, method = await stream.read_exactly(2)
    if version != SOCKS_VERSION:
        raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Unexpected SOCKS version {version:#04x} in greeting.")
    if method == METHOD_NO_ACCEPTABLE:
        raise TunnelError(TunnelErrorKind.AUTH_REJECTED, "Proxy accepts none of the offered auth methods.")
    if method != METHOD_USERPASS:
        raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Proxy selected unoffered auth method {method:#04x}.")

    await stream.write(bytes([AUTH_VERSION, len(user)]) + user + bytes([len(password)]) + password)
    _, status = await stream.read_exactly(2)
    if status != 0x00:
        raise TunnelError(TunnelErrorKind.AUTH_REJECTED, f"Proxy rejected credentials (status {status:#04x}).")
    LOG.debug("Proxy accepted credentials", extra={"proxy": stream.proxy.host})


async def _request_connect(stream: TunnelStream, target: TargetEndpoint, address: bytes) -> None:
    await stream.write(bytes([SOCKS_VERSION, CMD_CONNECT, 0x00]) + address)
    version, reply, _, atyp = await stream.read_exactly(4)
    if version != SOCKS_VERSION:
        raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Unexpected SOCKS version {version:#04x} in reply.")
    if reply in _UNREACHABLE_REPLIES:
        raise TunnelError(
            TunnelErrorKind.HOST_UNREACHABLE,
            f"Proxy could not reach {target}: {_UNREACHABLE_REPLIES[reply]}.",
        )
    if reply != 0x00:
        reason = _UNSUPPORTED_REPLIES.get(reply, f"unknown reply code {reply:#04x}")
        raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Proxy refused CONNECT: {reason}.")

    # Consume the bound address so nothing of the handshake is left unread.
    if atyp == ATYP_IPV4:
        await stream.read_exactly(4 + 2)
    elif atyp == ATYP_IPV6:
        await stream.read_exactly(16 + 2)
    elif atyp == ATYP_DOMAIN:
        (length,) = await stream.read_exactly(1)
        await stream.read_exactly(length + 2)
    else:
        raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Unknown bound address type {atyp:#04x}.")


def _encode_address(host: str) -> bytes:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        try:
            encoded = host.encode("idna")
        except UnicodeError as exc:
            raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Target host name is not valid: {host!r}.") from exc
        if len(encoded) > 255:
            raise TunnelError(TunnelErrorKind.PROTOCOL_VIOLATION, f"Target host name too long: {host!r}.")
        return bytes([ATYP_DOMAIN, len(encoded)]) + encoded
    if address.version == 4:
        return bytes([ATYP_IPV4]) + address.packed
    return bytes([ATYP_IPV6]) + address.packed


__all__ = [
    "DEFAULT_CONNECT_TIMEOUT",
    "TunnelError",
    "TunnelErrorKind",
    "TunnelStream",
    "open_tunnel",
]
