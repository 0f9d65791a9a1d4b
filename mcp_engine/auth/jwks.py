"""Кэш JSON Web Key Set по issuer.

Ключи issuer запрашиваются с `<issuer>/.well-known/jwks.json` и хранятся
`ttl` секунд. Весь кэш защищён одним `asyncio.Lock`, который удерживается и
на время сетевого запроса: параллельные промахи по одному issuer не порождают
дублирующих запросов. Неудачный запрос не трогает прежнюю запись.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_engine.auth.errors import JWTError, JWTErrorCode

logger = logging.getLogger("mcp_engine.auth.jwks")

DEFAULT_TTL = 3600.0
DEFAULT_TIMEOUT = 10.0


class JWK(BaseModel):
    """Публичный ключ RSA: либо модуль/экспонента (`n`/`e`), либо цепочка `x5c`."""

    model_config = ConfigDict(extra="allow")

    kty: str
    kid: Optional[str] = None
    use: Optional[str] = None
    alg: Optional[str] = None
    n: Optional[str] = None
    e: Optional[str] = None
    x5c: Optional[List[str]] = None


class JWKS(BaseModel):
    keys: List[JWK] = Field(default_factory=list)

    def find(self, kid: str) -> Optional[JWK]:
        return next((key for key in self.keys if key.kid == kid), None)


def jwks_url(issuer: str) -> str:
    return issuer.rstrip("/") + "/.well-known/jwks.json"


@dataclass(slots=True)
class _CacheEntry:
    jwks: JWKS
    fetched_at: float


class JWKSCache:
    def __init__(
        self,
        *,
        ttl: float = DEFAULT_TTL,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.timeout = timeout
        self._client = client
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get_jwks(self, issuer: str) -> JWKS:
        key = issuer.rstrip("/")
        async with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is not None and now - entry.fetched_at < self.ttl:
                return entry.jwks
            jwks = await self._fetch(issuer)
            self._entries[key] = _CacheEntry(jwks=jwks, fetched_at=now)
            logger.info("Fetched JWKS for %s (%d key(s))", key, len(jwks.keys))
            return jwks

    async def _fetch(self, issuer: str) -> JWKS:
        url = jwks_url(issuer)
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("JWKS request to %s failed: %s", url, exc)
            raise JWTError(JWTErrorCode.JWKS_FETCH_FAILED, actual=str(exc)) from exc

        if response.status_code != 200:
            logger.warning("JWKS request to %s returned HTTP %d", url, response.status_code)
            raise JWTError(JWTErrorCode.JWKS_FETCH_FAILED, expected=200, actual=response.status_code)
        try:
            return JWKS.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            logger.warning("JWKS response from %s is not a key set: %s", url, exc)
            raise JWTError(JWTErrorCode.JWKS_FETCH_FAILED, actual="invalid key set") from exc

    async def clear_cache(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def remove(self, issuer: str) -> bool:
        async with self._lock:
            return self._entries.pop(issuer.rstrip("/"), None) is not None


__all__ = ["DEFAULT_TIMEOUT", "DEFAULT_TTL", "JWK", "JWKS", "JWKSCache", "jwks_url"]
