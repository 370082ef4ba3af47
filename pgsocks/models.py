"""Shared dataclasses used across tunnel/session modules."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ProxyCredentials:
    """SOCKS5 proxy endpoint plus the username/password it expects."""

    user: str
    password: str
    host: str
    port: int

    def __repr__(self) -> str:
        return f"ProxyCredentials(user={self.user!r}, password='***', host={self.host!r}, port={self.port})"


@dataclass(frozen=True, slots=True)
class TargetEndpoint:
    """Database server reached through the proxy."""

    host: str
    port: int = 5432

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class DatabaseCredentials:
    """Credentials sent in the database startup message."""

    user: str
    password: str
    database: str

    def __repr__(self) -> str:
        return f"DatabaseCredentials(user={self.user!r}, password='***', database={self.database!r})"


@dataclass(frozen=True, slots=True)
class TlsOptions:
    """Transport-encryption options for a database session.

    ``verify=False`` disables certificate and hostname validation and is logged
    every time a session uses it. Prefer ``ca_file`` for databases signed by a
    private CA.
    """

    enabled: bool = True
    verify: bool = True
    ca_file: str | None = None


__all__ = ["DatabaseCredentials", "ProxyCredentials", "TargetEndpoint", "TlsOptions"]
