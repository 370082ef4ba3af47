"""Per-request orchestration: tunnel, session, one query, guaranteed teardown."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .config import AppSettings
from .models import DatabaseCredentials, ProxyCredentials, TargetEndpoint
from .session import DatabaseSession, QueryResult
from .tunnel import TunnelError, TunnelStream, open_tunnel

LOG = logging.getLogger(__name__)

DEFAULT_QUERY = "SELECT NOW() AS current_time, inet_client_addr() AS client_ip"
SUCCESS_MESSAGE = "Database query executed successfully via SOCKS proxy."
FAILURE_MESSAGE = "Failed to execute database query."

TunnelOpener = Callable[..., Awaitable[TunnelStream]]
SessionFactory = Callable[[TunnelStream, TargetEndpoint, DatabaseCredentials], DatabaseSession]


@dataclass(frozen=True, slots=True)
class QueryOutcome:
    """Caller-facing result of one request."""

    ok: bool
    message: str
    rows: tuple[dict[str, object], ...] = ()
    error_type: str | None = None
    details: str | None = None
    kind: str | None = None

    @classmethod
    def success(cls, result: QueryResult) -> QueryOutcome:
        return cls(ok=True, message=SUCCESS_MESSAGE, rows=result.rows)

    @classmethod
    def failure(cls, exc: BaseException) -> QueryOutcome:
        kind = exc.kind.value if isinstance(exc, TunnelError) else None
        return cls(
            ok=False,
            message=FAILURE_MESSAGE,
            error_type=getattr(exc, "classification", "InternalError"),
            details=str(exc) or type(exc).__name__,
            kind=kind,
        )

    @property
    def status_code(self) -> int:
        return 200 if self.ok else 500

    def to_body(self) -> dict[str, Any]:
        if self.ok:
            return {"status": "success", "message": self.message, "data": list(self.rows)}
        body: dict[str, Any] = {
            "status": "error",
            "message": self.message,
            "details": self.details,
            "error_type": self.error_type,
        }
        if self.kind:
            body["kind"] = self.kind
        return body


class RequestHandler:
    """Runs one proxied query per call; nothing outlives the call."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        tunnel_opener: TunnelOpener = open_tunnel,
        session_factory: SessionFactory = DatabaseSession,
    ) -> None:
        self._settings = settings
        self._open_tunnel = tunnel_opener
        self._session_factory = session_factory

    @property
    def settings(self) -> AppSettings:
        return self._settings

    async def run(self, sql: str = DEFAULT_QUERY) -> QueryOutcome:
        stream: TunnelStream | None = None
        session: DatabaseSession | None = None
        try:
            proxy: ProxyCredentials = self._settings.proxy_credentials()
            target = self._settings.target()
            credentials = self._settings.database_credentials()
            stream = await self._open_tunnel(proxy, target, timeout=self._settings.PROXY_CONNECT_TIMEOUT)
            session = self._session_factory(stream, target, credentials)
            await session.open(self._settings.tls_options())
            result = await session.query(sql, timeout=self._settings.query_timeout())
        except asyncio.CancelledError:
            LOG.warning("Request cancelled; releasing tunnel")
            raise
        except Exception as exc:
            LOG.error("Error during database operation: %s", exc, extra={"error_type": type(exc).__name__})
            return QueryOutcome.failure(exc)
        finally:
            await asyncio.shield(self._release(stream, session))
        LOG.info("Query successful", extra={"rows": result.row_count, "elapsed_ms": result.elapsed_ms})
        return QueryOutcome.success(result)

    async def _release(self, stream: TunnelStream | None, session: DatabaseSession | None) -> None:
        try:
            if session is not None:
                await session.close()
            elif stream is not None:
                stream.close()
        except Exception:
            LOG.exception("Error closing client connection")
        else:
            if session is not None or stream is not None:
                LOG.debug("Client connection closed.")


__all__ = [
    "DEFAULT_QUERY",
    "QueryOutcome",
    "RequestHandler",
]
