"""Глобальные константы и настройки MCP engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger("mcp_engine.core.config")


def _get_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("Некорректное значение %s=%r, используем %d", name, raw, default)
        return default


def _get_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        logger.warning("Некорректное значение %s=%r, используем %s", name, raw, default)
        return default


PROTOCOL_VERSION = os.getenv("MCP_PROTOCOL_VERSION", "2024-11-05")
SERVER_INFO: Dict[str, str] = {
    "name": os.getenv("MCP_SERVER_NAME", "mcp-engine"),
    "version": os.getenv("APP_VERSION", "0.1.0"),
}

BASE_DIR = Path(os.getenv("MCP_BASE_DIR", ".")).resolve()

CLIENT_LOG_LEVEL = os.getenv("MCP_CLIENT_LOG_LEVEL", "info").strip().lower()
SERVER_LOG_LEVEL = os.getenv("MCP_SERVER_LOG_LEVEL", "INFO").strip().upper()

TRANSPORT = os.getenv("MCP_TRANSPORT", "stdio").strip().lower()
HTTP_HOST = os.getenv("MCP_HTTP_HOST", "127.0.0.1")
HTTP_PORT = _get_int("MCP_HTTP_PORT", 8000, minimum=1)
SSE_PING_SECONDS = _get_int("MCP_SSE_PING_SECONDS", 15, minimum=1)
SESSION_IDLE_SECONDS = _get_int("MCP_SESSION_IDLE_SECONDS", 1800, minimum=1)
SESSION_SWEEP_SECONDS = _get_int("MCP_SESSION_SWEEP_SECONDS", 60, minimum=1)
CORS_ORIGINS: List[str] = [
    item for item in os.getenv("MCP_CORS_ORIGINS", "*").replace(",", " ").split() if item
]


@dataclass(slots=True)
class OAuthSettings:
    """Настройки проверки bearer-токенов, получаемые из окружения.

    Без `issuer` OAuth считается выключенным: HTTP-эндпоинты не требуют
    токена, а well-known метаданные отдают 404.
    """

    issuer: Optional[str] = None
    audience: Optional[str] = None
    authorized_party: Optional[str] = None
    clock_skew: float = 60.0
    jwks_ttl: float = 3600.0
    jwks_timeout: float = 10.0
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    introspection_endpoint: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.issuer)

    @classmethod
    def from_env(cls) -> "OAuthSettings":
        scopes_raw = os.getenv("MCP_OAUTH_SCOPES", "")
        return cls(
            issuer=os.getenv("MCP_OAUTH_ISSUER") or None,
            audience=os.getenv("MCP_OAUTH_AUDIENCE") or None,
            authorized_party=os.getenv("MCP_OAUTH_AUTHORIZED_PARTY") or None,
            clock_skew=_get_float("MCP_OAUTH_CLOCK_SKEW", 60.0),
            jwks_ttl=_get_float("MCP_OAUTH_JWKS_TTL", 3600.0),
            jwks_timeout=_get_float("MCP_OAUTH_JWKS_TIMEOUT", 10.0),
            authorization_endpoint=os.getenv("MCP_OAUTH_AUTHORIZATION_ENDPOINT") or None,
            token_endpoint=os.getenv("MCP_OAUTH_TOKEN_ENDPOINT") or None,
            scopes=[item for item in scopes_raw.replace(",", " ").split() if item],
            introspection_endpoint=os.getenv("MCP_OAUTH_INTROSPECTION_ENDPOINT") or None,
            client_id=os.getenv("MCP_OAUTH_CLIENT_ID") or None,
            client_secret=os.getenv("MCP_OAUTH_CLIENT_SECRET") or None,
        )


OAUTH_SETTINGS = OAuthSettings.from_env()

__all__ = [
    "BASE_DIR",
    "CLIENT_LOG_LEVEL",
    "CORS_ORIGINS",
    "HTTP_HOST",
    "HTTP_PORT",
    "OAUTH_SETTINGS",
    "OAuthSettings",
    "PROTOCOL_VERSION",
    "SERVER_INFO",
    "SERVER_LOG_LEVEL",
    "SESSION_IDLE_SECONDS",
    "SESSION_SWEEP_SECONDS",
    "SSE_PING_SECONDS",
    "TRANSPORT",
]
