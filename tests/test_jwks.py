from __future__ import annotations

import asyncio
from typing import Callable, List

import httpx
import pytest

from conftest import rsa_jwk
from mcp_engine.auth.errors import JWTError, JWTErrorCode
from mcp_engine.auth.jwks import JWKSCache, jwks_url

ISSUER = "https://issuer.example"


class FakeIssuer:
    """Считает обращения к JWKS и позволяет менять ответ на лету."""

    def __init__(self, jwk: dict) -> None:
        self.calls: List[str] = []
        self.respond: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"keys": [jwk]}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(str(request.url))
        return self.respond(request)


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def issuer(private_key) -> FakeIssuer:
    return FakeIssuer(rsa_jwk(private_key))


def test_jwks_url_tolerates_trailing_slash() -> None:
    assert jwks_url(ISSUER) == f"{ISSUER}/.well-known/jwks.json"
    assert jwks_url(ISSUER + "/") == f"{ISSUER}/.well-known/jwks.json"


def test_fetch_counts_follow_ttl(issuer: FakeIssuer) -> None:
    clock = Clock()

    async def scenario() -> List[int]:
        counts = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(issuer.handler)) as client:
            cache = JWKSCache(ttl=3600, client=client, clock=clock)

            jwks = await cache.get_jwks(ISSUER + "/")
            assert jwks.find("k1") is not None
            counts.append(len(issuer.calls))

            clock.now += 3599
            await cache.get_jwks(ISSUER)
            counts.append(len(issuer.calls) - counts[-1])

            clock.now += 2
            await cache.get_jwks(ISSUER)
            counts.append(len(issuer.calls) - sum(counts))
        return counts

    assert asyncio.run(scenario()) == [1, 0, 1]
    assert issuer.calls[0] == f"{ISSUER}/.well-known/jwks.json"


def test_concurrent_misses_fetch_once(issuer: FakeIssuer) -> None:
    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(issuer.handler)) as client:
            cache = JWKSCache(client=client)
            await asyncio.gather(*(cache.get_jwks(ISSUER) for _ in range(5)))

    asyncio.run(scenario())
    assert len(issuer.calls) == 1


@pytest.mark.parametrize(
    "respond",
    [
        lambda request: httpx.Response(500, text="boom"),
        lambda request: httpx.Response(200, content=b"not json"),
        lambda request: httpx.Response(200, json={"keys": "nope"}),
    ],
)
def test_bad_responses_raise_fetch_failed(issuer: FakeIssuer, respond) -> None:
    issuer.respond = respond

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(issuer.handler)) as client:
            await JWKSCache(client=client).get_jwks(ISSUER)

    with pytest.raises(JWTError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code is JWTErrorCode.JWKS_FETCH_FAILED


def test_network_error_raises_fetch_failed(issuer: FakeIssuer) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    issuer.respond = refuse

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(issuer.handler)) as client:
            await JWKSCache(client=client).get_jwks(ISSUER)

    with pytest.raises(JWTError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.code is JWTErrorCode.JWKS_FETCH_FAILED


def test_failed_refresh_keeps_previous_entry(issuer: FakeIssuer) -> None:
    clock = Clock()

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(issuer.handler)) as client:
            cache = JWKSCache(ttl=60, client=client, clock=clock)
            original = await cache.get_jwks(ISSUER)

            clock.now += 120
            issuer.respond = lambda request: httpx.Response(503)
            with pytest.raises(JWTError):
                await cache.get_jwks(ISSUER)

            # запись не тронута: в пределах исходного TTL она всё ещё отдаётся без запроса
            clock.now -= 100
            calls_before = len(issuer.calls)
            assert await cache.get_jwks(ISSUER) is original
            assert len(issuer.calls) == calls_before

    asyncio.run(scenario())


def test_remove_and_clear_force_refetch(issuer: FakeIssuer) -> None:
    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(issuer.handler)) as client:
            cache = JWKSCache(client=client)
            await cache.get_jwks(ISSUER)
            assert await cache.remove(ISSUER + "/") is True
            assert await cache.remove(ISSUER) is False
            await cache.get_jwks(ISSUER)
            await cache.clear_cache()
            await cache.get_jwks(ISSUER)

    asyncio.run(scenario())
    assert len(issuer.calls) == 3
