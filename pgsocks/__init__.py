"""Run PostgreSQL queries through an authenticated SOCKS5 tunnel."""

from .adapter import StreamAdapter
from .config import AppSettings, ConfigError, load_settings, parse_proxy_descriptor
from .handler import DEFAULT_QUERY, QueryOutcome, RequestHandler
from .models import DatabaseCredentials, ProxyCredentials, TargetEndpoint, TlsOptions
from .session import DatabaseSession, QueryError, QueryResult, SessionError, SessionState
from .tunnel import TunnelError, TunnelErrorKind, TunnelStream, open_tunnel

__all__ = [
    "AppSettings",
    "ConfigError",
    "DEFAULT_QUERY",
    "DatabaseCredentials",
    "DatabaseSession",
    "ProxyCredentials",
    "QueryError",
    "QueryOutcome",
    "QueryResult",
    "RequestHandler",
    "SessionError",
    "SessionState",
    "StreamAdapter",
    "TargetEndpoint",
    "TlsOptions",
    "TunnelError",
    "TunnelErrorKind",
    "TunnelStream",
    "load_settings",
    "open_tunnel",
    "parse_proxy_descriptor",
]
