"""Ошибки проверки bearer-токенов."""

from __future__ import annotations

from enum import Enum
from typing import Any


class JWTErrorCode(str, Enum):
    MALFORMED = "malformed"
    UNSUPPORTED_TOKEN = "unsupported_token"
    INVALID_BASE64 = "invalid_base64"
    INVALID_JSON = "invalid_json"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_AUDIENCE = "invalid_audience"
    INVALID_AUTHORIZED_PARTY = "invalid_authorized_party"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    KEY_NOT_FOUND = "key_not_found"
    SIGNATURE_VERIFICATION_FAILED = "signature_verification_failed"
    JWKS_FETCH_FAILED = "jwks_fetch_failed"


class JWTError(Exception):
    """Причина отказа в токене; наружу транспорта не выходит, только в логи."""

    def __init__(self, code: JWTErrorCode, *, expected: Any = None, actual: Any = None) -> None:
        details = []
        if expected is not None:
            details.append(f"expected={expected!r}")
        if actual is not None:
            details.append(f"actual={actual!r}")
        message = code.value if not details else f"{code.value} ({', '.join(details)})"
        super().__init__(message)
        self.code = code
        self.expected = expected
        self.actual = actual


__all__ = ["JWTError", "JWTErrorCode"]
