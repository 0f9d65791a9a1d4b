"""Разбор и проверка JWT (RS256) для bearer-аутентификации HTTP-транспорта.

Base64url-сегменты и RSA-ключи из JWK разбирает `python-jose`; сами правила
(число сегментов, claims с допуском на рассинхронизацию часов, только RS256,
обязательный `kid`) проверяются здесь. Если настроен introspection endpoint
(RFC 7662), решение о токене принимает он.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from jose import jwk as jose_jwk
from jose.constants import ALGORITHMS
from jose.exceptions import JWKError
from jose.utils import base64url_decode
from pydantic import BaseModel, ConfigDict, ValidationError

from mcp_engine.auth.errors import JWTError, JWTErrorCode
from mcp_engine.auth.jwks import DEFAULT_TIMEOUT, JWK, JWKS, JWKSCache
from mcp_engine.core.config import OAuthSettings

logger = logging.getLogger("mcp_engine.auth.tokens")

SUPPORTED_ALGORITHM = ALGORITHMS.RS256
DEFAULT_CLOCK_SKEW = 60.0

_BASE64URL = re.compile(r"^[A-Za-z0-9_-]*={0,2}$")


def _b64url_decode(segment: str) -> bytes:
    if not _BASE64URL.match(segment):
        raise JWTError(JWTErrorCode.INVALID_BASE64, actual=segment[:32])
    try:
        return base64url_decode(segment.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise JWTError(JWTErrorCode.INVALID_BASE64, actual=segment[:32]) from exc


class JWTHeader(BaseModel):
    model_config = ConfigDict(extra="allow")

    alg: str
    typ: Optional[str] = None
    kid: Optional[str] = None


class JWTPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    iss: Optional[str] = None
    sub: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    exp: Optional[float] = None
    nbf: Optional[float] = None
    iat: Optional[float] = None
    scope: Optional[str] = None
    azp: Optional[str] = None

    @property
    def audiences(self) -> List[str]:
        if self.aud is None:
            return []
        if isinstance(self.aud, str):
            return [self.aud]
        return list(self.aud)


@dataclass(slots=True)
class JWTValidationOptions:
    """Ожидаемые значения claims; `None` означает, что проверка не выполняется."""

    issuer: Optional[str] = None
    audience: Optional[str] = None
    authorized_party: Optional[str] = None
    clock_skew: float = DEFAULT_CLOCK_SKEW


def _decode_json_segment(segment: str, model: Any) -> Any:
    raw = _b64url_decode(segment)
    try:
        return model.model_validate(json.loads(raw.decode("utf-8")))
    except (UnicodeDecodeError, ValueError, ValidationError) as exc:
        raise JWTError(JWTErrorCode.INVALID_JSON) from exc


def _verification_key(jwk: JWK) -> Any:
    """Ключ проверки подписи: сертификат из `x5c[0]` или модуль/экспонента `n`/`e`."""
    if jwk.x5c:
        certificate = x509.load_der_x509_certificate(base64.b64decode(jwk.x5c[0]))
        return jose_jwk.construct(certificate.public_key(), SUPPORTED_ALGORITHM)
    if not (jwk.n and jwk.e):
        raise ValueError("JWK has neither x5c nor n/e")
    return jose_jwk.construct(jwk.model_dump(exclude_none=True), SUPPORTED_ALGORITHM)


class JSONWebToken:
    def __init__(self, header: JWTHeader, payload: JWTPayload, signature: bytes, raw: str) -> None:
        self.header = header
        self.payload = payload
        self.signature = signature
        self.raw = raw

    @property
    def signing_input(self) -> bytes:
        head, body, _ = self.raw.split(".")
        return f"{head}.{body}".encode("ascii")

    @classmethod
    def decode(cls, token: str) -> "JSONWebToken":
        segments = token.split(".")
        if len(segments) == 5:
            # JWE (зашифрованный токен) не поддерживается
            raise JWTError(JWTErrorCode.UNSUPPORTED_TOKEN, actual="encrypted (5 segments)")
        if len(segments) != 3:
            raise JWTError(JWTErrorCode.MALFORMED, expected=3, actual=len(segments))
        header = _decode_json_segment(segments[0], JWTHeader)
        payload = _decode_json_segment(segments[1], JWTPayload)
        signature = _b64url_decode(segments[2])
        return cls(header, payload, signature, token)

    def validate_claims(self, at: Optional[float] = None, options: Optional[JWTValidationOptions] = None) -> None:
        options = options or JWTValidationOptions()
        now = time.time() if at is None else at
        skew = options.clock_skew
        claims = self.payload

        if claims.exp is not None and now - claims.exp > skew:
            raise JWTError(JWTErrorCode.EXPIRED, expected=f">= {now - skew}", actual=claims.exp)
        if claims.nbf is not None and claims.nbf - now > skew:
            raise JWTError(JWTErrorCode.NOT_YET_VALID, expected=f"<= {now + skew}", actual=claims.nbf)
        if options.issuer is not None and claims.iss != options.issuer:
            raise JWTError(JWTErrorCode.INVALID_ISSUER, expected=options.issuer, actual=claims.iss)
        if options.audience is not None and options.audience not in claims.audiences:
            raise JWTError(JWTErrorCode.INVALID_AUDIENCE, expected=options.audience, actual=claims.aud)
        if options.authorized_party is not None and claims.azp != options.authorized_party:
            raise JWTError(
                JWTErrorCode.INVALID_AUTHORIZED_PARTY,
                expected=options.authorized_party,
                actual=claims.azp,
            )

    def verify_signature(self, jwks: JWKS) -> None:
        if self.header.alg != SUPPORTED_ALGORITHM:
            raise JWTError(JWTErrorCode.UNSUPPORTED_ALGORITHM, expected=SUPPORTED_ALGORITHM, actual=self.header.alg)
        kid = self.header.kid
        if not kid:
            raise JWTError(JWTErrorCode.KEY_NOT_FOUND, expected="kid", actual=None)
        jwk = jwks.find(kid)
        if jwk is None:
            raise JWTError(JWTErrorCode.KEY_NOT_FOUND, actual=kid)

        try:
            verified = _verification_key(jwk).verify(self.signing_input, self.signature)
        except (JWKError, UnsupportedAlgorithm, ValueError, TypeError) as exc:
            raise JWTError(JWTErrorCode.SIGNATURE_VERIFICATION_FAILED, actual=kid) from exc
        if not verified:
            raise JWTError(JWTErrorCode.SIGNATURE_VERIFICATION_FAILED, actual=kid)

    async def verify(
        self,
        source: Union[JWKS, str],
        *,
        at: Optional[float] = None,
        options: Optional[JWTValidationOptions] = None,
        cache: Optional[JWKSCache] = None,
    ) -> None:
        """Проверяет claims, затем подпись; `source` это готовый JWKS или issuer для кэша."""
        self.validate_claims(at, options)
        if isinstance(source, JWKS):
            jwks = source
        else:
            jwks = await (cache or JWKSCache()).get_jwks(source)
        self.verify_signature(jwks)

    def user_info(self) -> Dict[str, Any]:
        claims = self.payload
        info = {
            "sub": claims.sub,
            "iss": claims.iss,
            "aud": claims.aud,
            "scope": claims.scope,
            "azp": claims.azp,
            "exp": claims.exp,
            "iat": claims.iat,
        }
        return {key: value for key, value in info.items() if value is not None}


@dataclass
class AccessToken:
    """Принятый bearer-токен и сведения о владельце для сессии."""

    raw: str
    user: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> Optional[str]:
        return self.user.get("sub")


_INTROSPECTION_FIELDS = ("sub", "iss", "aud", "scope", "client_id", "username", "exp", "iat")


class TokenIntrospector:
    """Клиент introspection endpoint (RFC 7662).

    Токен уходит формой `token=...`; при заданных `client_id` и
    `client_secret` запрос подписывается Basic-аутентификацией. Ответ
    считается положительным, если `active` истинно, а при отсутствии
    `active` достаточно непустого `sub`.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._client = client

    async def introspect(self, token: str) -> Optional[Dict[str, Any]]:
        auth = None
        if self.client_id and self.client_secret:
            auth = (self.client_id, self.client_secret)
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.endpoint, data={"token": token}, auth=auth, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.endpoint, data={"token": token}, auth=auth)
        except httpx.HTTPError as exc:
            logger.warning("Introspection request to %s failed: %s", self.endpoint, exc)
            return None

        if response.status_code != 200:
            logger.warning("Introspection request to %s returned HTTP %d", self.endpoint, response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            logger.warning("Introspection response from %s is not JSON", self.endpoint)
            return None
        if not isinstance(body, dict):
            return None

        active = body.get("active")
        if isinstance(active, bool):
            return body if active else None
        return body if body.get("sub") else None


class TokenValidator:
    """Хук транспорта: bearer-токен -> да/нет, причины отказа пишутся в лог."""

    def __init__(
        self,
        options: JWTValidationOptions,
        *,
        cache: Optional[JWKSCache] = None,
        introspector: Optional[TokenIntrospector] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.options = options
        self.cache = cache or JWKSCache()
        self.introspector = introspector
        self._clock = clock

    async def authenticate(self, token: str) -> Optional[AccessToken]:
        if self.introspector is not None:
            # introspection endpoint решает за локальную проверку
            claims = await self.introspector.introspect(token)
            if claims is None:
                logger.info("Bearer token rejected by introspection endpoint")
                return None
            user = {key: claims[key] for key in _INTROSPECTION_FIELDS if claims.get(key) is not None}
            return AccessToken(raw=token, user=user)

        try:
            jwt = JSONWebToken.decode(token)
            if self.options.issuer:
                await jwt.verify(self.options.issuer, at=self._clock(), options=self.options, cache=self.cache)
            else:
                jwt.validate_claims(self._clock(), self.options)
        except JWTError as exc:
            logger.info("Bearer token rejected: %s", exc)
            return None
        return AccessToken(raw=token, user=jwt.user_info())

    async def validate(self, token: str) -> bool:
        return await self.authenticate(token) is not None


def create_token_validator(settings: OAuthSettings) -> Optional[TokenValidator]:
    """Создать валидатор с учётом конфигурации; вернуть None, если OAuth не настроен."""
    if not settings.enabled:
        logger.info("OAuth не настроен: HTTP-транспорт работает без аутентификации.")
        return None
    options = JWTValidationOptions(
        issuer=settings.issuer,
        audience=settings.audience,
        authorized_party=settings.authorized_party,
        clock_skew=settings.clock_skew,
    )
    introspector = None
    if settings.introspection_endpoint:
        introspector = TokenIntrospector(
            settings.introspection_endpoint,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            timeout=settings.jwks_timeout,
        )
    return TokenValidator(
        options,
        cache=JWKSCache(ttl=settings.jwks_ttl, timeout=settings.jwks_timeout),
        introspector=introspector,
    )


__all__ = [
    "DEFAULT_CLOCK_SKEW",
    "AccessToken",
    "JSONWebToken",
    "JWTHeader",
    "JWTPayload",
    "JWTValidationOptions",
    "SUPPORTED_ALGORITHM",
    "TokenIntrospector",
    "TokenValidator",
    "create_token_validator",
]
