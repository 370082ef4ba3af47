"""Database session bound to a single proxy tunnel."""

from __future__ import annotations

import asyncio
import enum
import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping

import asyncpg

from .adapter import StreamAdapter
from .models import DatabaseCredentials, TargetEndpoint, TlsOptions
from .tunnel import TunnelStream

LOG = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 30.0
DEFAULT_CLOSE_TIMEOUT = 5.0

Connector = Callable[..., Awaitable[Any]]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    QUERYING = "querying"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionError(RuntimeError):
    """Raised when the database handshake fails or the session is misused."""

    classification = "SessionError"

    def __init__(self, message: str, *, reason: str = "handshake") -> None:
        super().__init__(message)
        self.reason = reason


class QueryError(RuntimeError):
    """Raised when a statement fails to execute."""

    classification = "QueryError"

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Rows returned by the server, in server order."""

    columns: tuple[str, ...]
    rows: tuple[dict[str, object], ...]
    elapsed_ms: int

    @property
    def row_count(self) -> int:
        return len(self.rows)


class DatabaseSession:
    """Owns one wire-protocol connection running over one tunnel stream.

    The session walks ``idle -> connecting -> connected`` in :meth:`open`, flips
    between ``connected`` and ``querying`` for each :meth:`query`, and ends in
    ``closed`` after :meth:`close`, which may be called from any state and any
    number of times. The tunnel stream is destroyed on every path that leaves
    the session closed.
    """

    def __init__(
        self,
        stream: TunnelStream,
        target: TargetEndpoint,
        credentials: DatabaseCredentials,
        *,
        connect: Connector | None = None,
    ) -> None:
        self._stream = stream
        self._target = target
        self._credentials = credentials
        self._connect = connect
        self._adapter: StreamAdapter | None = None
        self._connection: Any = None
        self._state = SessionState.IDLE
        self._usable = True

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def usable(self) -> bool:
        """False once a protocol-fatal error has poisoned the connection."""

        return self._usable and self._state is SessionState.CONNECTED

    async def open(self, tls: TlsOptions | None = None, *, timeout: float = DEFAULT_OPEN_TIMEOUT) -> None:
        """Run the client's startup handshake over the tunnel."""

        if self._state is not SessionState.IDLE:
            raise SessionError(f"Cannot open a session that is {self._state.value}.", reason="state")
        self._state = SessionState.CONNECTING
        tls = tls or TlsOptions()
        try:
            ssl_option = _ssl_option(tls, self._target)
        except (OSError, ssl.SSLError) as exc:
            self._release_stream()
            raise SessionError(f"Could not prepare TLS settings: {exc}", reason="tls") from exc

        self._adapter = StreamAdapter(self._stream)
        connect = self._connect or asyncpg.connect
        try:
            self._connection = await connect(
                host=self._target.host,
                port=self._target.port,
                user=self._credentials.user,
                password=self._credentials.password,
                database=self._credentials.database,
                ssl=ssl_option,
                loop=self._adapter,
                timeout=timeout,
            )
        except asyncio.CancelledError:
            self._release_stream()
            raise
        except Exception as exc:
            self._release_stream()
            reason = _open_failure_reason(exc)
            LOG.debug("Database handshake failed", extra={"target": str(self._target), "reason": reason})
            raise SessionError(f"Database handshake with {self._target} failed: {exc}", reason=reason) from exc
        self._state = SessionState.CONNECTED
        LOG.debug("Database session open", extra={"target": str(self._target), "tls": tls.enabled})

    async def query(self, sql: str, *, timeout: float | None = None) -> QueryResult:
        """Execute ``sql`` and return its rows."""

        if not self._usable:
            raise SessionError("Session is unusable after a fatal protocol error.", reason="unusable")
        if self._state is not SessionState.CONNECTED:
            raise SessionError(f"Cannot query a session that is {self._state.value}.", reason="state")
        statement = sql.strip()
        if not statement:
            raise QueryError("Provide SQL to execute.")

        self._state = SessionState.QUERYING
        started = time.perf_counter()
        try:
            if timeout:
                records = await asyncio.wait_for(self._connection.fetch(statement), timeout)
            else:
                records = await self._connection.fetch(statement)
        except asyncpg.PostgresError as exc:
            if self._connection.is_closed():
                self._poison()
                raise QueryError(str(exc), fatal=True) from exc
            self._state = SessionState.CONNECTED
            raise QueryError(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            self._poison()
            raise QueryError(f"Query did not complete within {timeout}s.", fatal=True) from exc
        except asyncio.CancelledError:
            self._poison()
            raise
        except Exception as exc:
            self._poison()
            raise QueryError(f"Connection failed during query: {exc}", fatal=True) from exc
        self._state = SessionState.CONNECTED
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return _records_to_result(records, elapsed_ms)

    async def close(self, *, timeout: float = DEFAULT_CLOSE_TIMEOUT) -> None:
        """Release the client and destroy the stream; later calls do nothing."""

        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        graceful = self._usable and self._state is SessionState.CONNECTED
        self._state = SessionState.CLOSING
        connection, self._connection = self._connection, None
        try:
            if connection is not None:
                await _close_connection(connection, graceful=graceful, timeout=timeout)
        finally:
            self._release_stream()
            LOG.debug("Database session closed", extra={"target": str(self._target)})

    async def __aenter__(self) -> DatabaseSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _poison(self) -> None:
        self._usable = False
        self._state = SessionState.CONNECTED

    def _release_stream(self) -> None:
        self._state = SessionState.CLOSED
        if self._adapter is not None:
            self._adapter.close()
        else:
            self._stream.close()


async def _close_connection(connection: Any, *, graceful: bool, timeout: float) -> None:
    if graceful:
        try:
            await connection.close(timeout=timeout)
            return
        except Exception:
            LOG.warning("Graceful database close failed; terminating", exc_info=True)
    try:
        connection.terminate()
    except Exception:  # pragma: no cover - best effort cleanup
        LOG.exception("Failed to terminate database connection")


def _ssl_option(tls: TlsOptions, target: TargetEndpoint) -> ssl.SSLContext | bool:
    if not tls.enabled:
        return False
    context = ssl.create_default_context(cafile=tls.ca_file)
    if not tls.verify:
        LOG.warning(
            "TLS certificate validation is disabled for this database session",
            extra={"target": str(target)},
        )
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _open_failure_reason(exc: BaseException) -> str:
    if isinstance(exc, (asyncpg.InvalidPasswordError, asyncpg.InvalidAuthorizationSpecificationError)):
        return "auth"
    if isinstance(exc, ssl.SSLError) or "SSL" in str(exc):
        return "tls"
    return "handshake"


def _records_to_result(records: Iterable[Mapping[str, object]], elapsed_ms: int) -> QueryResult:
    rows: list[dict[str, object]] = []
    columns: tuple[str, ...] = ()
    for record in records:
        if not columns:
            columns = tuple(str(key) for key in record.keys())
        rows.append({key: record[key] for key in columns})
    return QueryResult(columns=columns, rows=tuple(rows), elapsed_ms=elapsed_ms)


__all__ = [
    "DatabaseSession",
    "QueryError",
    "QueryResult",
    "SessionError",
    "SessionState",
]
