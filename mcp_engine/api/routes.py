"""FastAPI-маршруты HTTP+SSE транспорта MCP.

Два варианта подключения:

* streamable HTTP: `POST /mcp` (сессию открывает `initialize`, её id
  приходит в заголовке `Mcp-Session-Id`), необязательный `GET /mcp` для
  SSE-потока этой сессии и `DELETE /mcp` для её закрытия;
* классический HTTP+SSE: `GET /sse` открывает поток, первым событием
  `endpoint` сообщает адрес `/messages/<session id>`, куда клиент POST-ит
  запросы, а ответы приходят в поток.

Если у сессии есть живой SSE-канал, ответы на POST уходят в него, а сам POST
получает 202. Иначе ответ возвращается в теле HTTP-ответа.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse, ServerSentEvent
from starlette.background import BackgroundTask

from mcp_engine.api.dispatcher import McpDispatcher
from mcp_engine.auth.tokens import AccessToken, TokenValidator
from mcp_engine.core.channels import ChannelRegistry, SSEChannel
from mcp_engine.core.config import OAUTH_SETTINGS, SSE_PING_SECONDS, OAuthSettings
from mcp_engine.core.session import ACTIVE_SESSIONS, Session, close_session, create_session
from mcp_engine.models.json_rpc import (
    INVALID_REQUEST,
    UNAUTHORIZED,
    JsonRpcDecodeError,
    JsonRpcMessage,
    JsonRpcRequest,
    decode_payload,
    make_error,
)

logger = logging.getLogger("mcp_engine.api.routes")

router = APIRouter()

SESSION_HEADER = "Mcp-Session-Id"

_DISPATCHER: Optional[McpDispatcher] = None
_CHANNELS: ChannelRegistry = ChannelRegistry()
_VALIDATOR: Optional[TokenValidator] = None
_OAUTH: OAuthSettings = OAUTH_SETTINGS
_PING_SECONDS: int = SSE_PING_SECONDS

DecodedItems = List[Union[JsonRpcMessage, JsonRpcDecodeError]]


def configure_routes(
    *,
    dispatcher: McpDispatcher,
    channels: ChannelRegistry,
    validator: Optional[TokenValidator] = None,
    oauth: Optional[OAuthSettings] = None,
    ping_seconds: int = SSE_PING_SECONDS,
) -> None:
    """Инициализируем ссылки на диспетчер и реестр каналов, чтобы избежать циклов импорта."""
    global _DISPATCHER, _CHANNELS, _VALIDATOR, _OAUTH, _PING_SECONDS
    _DISPATCHER = dispatcher
    _CHANNELS = channels
    _VALIDATOR = validator
    _OAUTH = oauth or OAUTH_SETTINGS
    _PING_SECONDS = ping_seconds


def _dispatcher() -> McpDispatcher:
    if _DISPATCHER is None:
        raise RuntimeError("configure_routes() was not called")
    return _DISPATCHER


def _json_rpc_error_response(status_code: int, code: int, message: str, *, data: Any = None) -> JSONResponse:
    return JSONResponse(make_error(code, message, data=data).as_wire(), status_code=status_code)


# ----------------------------------------------------------------------
# Аутентификация
# ----------------------------------------------------------------------


class UnauthorizedError(Exception):
    """Bearer-токен отсутствует или не прошёл проверку."""


async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
    response = _json_rpc_error_response(401, UNAUTHORIZED, "Unauthorized")
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


async def require_bearer(request: Request) -> Optional[AccessToken]:
    if _VALIDATOR is None:
        return None
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        logger.info("Request to %s without bearer token", request.url.path)
        raise UnauthorizedError()
    access = await _VALIDATOR.authenticate(token)
    if access is None:
        raise UnauthorizedError()
    return access


def _attach_token(session: Session, token: Optional[AccessToken]) -> None:
    if token is None:
        return
    if session.access_token is not None and session.user.get("sub") != token.subject:
        # сессия принадлежит другому субъекту
        logger.warning("Session %s rejected: token subject %r does not own it", session.id, token.subject)
        raise UnauthorizedError()
    session.access_token = token.raw
    session.user = dict(token.user)


# ----------------------------------------------------------------------
# Доставка ответов
# ----------------------------------------------------------------------


def _decode_body(body: bytes) -> Union[Tuple[DecodedItems, bool], JSONResponse]:
    try:
        return decode_payload(body)
    except JsonRpcDecodeError as exc:
        logger.info("Rejecting undecodable request body: %s", exc)
        return JSONResponse(exc.to_response().as_wire(), status_code=400)


async def _dispatch_to_channel(items: DecodedItems, is_batch: bool, session: Session) -> None:
    try:
        reply = await _dispatcher().handle_items(items, is_batch, session)
    except Exception:
        logger.exception("Dispatch for session %s failed", session.id)
        return
    if reply is None:
        return
    if not await _CHANNELS.send(session.id, reply):
        logger.info("Reply for session %s dropped: no active channel", session.id)


async def _event_stream(channel: SSEChannel) -> AsyncIterator[ServerSentEvent]:
    try:
        async for event in channel.events():
            yield event
    finally:
        channel.close()


async def _release_stream(session: Session, channel: SSEChannel) -> None:
    """Снимает закрытый поток с сессии, не закрывая саму сессию."""
    if await _CHANNELS.get(session.id) is channel:
        await _CHANNELS.remove(session.id)
    session.touch()


def _stream_response(session: Session, channel: SSEChannel, on_close: BackgroundTask) -> EventSourceResponse:
    return EventSourceResponse(
        _event_stream(channel),
        headers={"Cache-Control": "no-cache", SESSION_HEADER: session.id},
        ping=_PING_SECONDS,
        background=on_close,
    )


def _unknown_session(session_id: str) -> JSONResponse:
    return _json_rpc_error_response(404, INVALID_REQUEST, f"Unknown session '{session_id}'")


def _starts_session(items: DecodedItems) -> bool:
    return any(isinstance(item, JsonRpcRequest) and item.method == "initialize" for item in items)


# ----------------------------------------------------------------------
# Маршруты
# ----------------------------------------------------------------------


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/mcp")
async def mcp_post(
    request: Request,
    background_tasks: BackgroundTasks,
    token: Optional[AccessToken] = Depends(require_bearer),
) -> Response:
    """Streamable HTTP: один запрос, уведомление или batch.

    Сессия создаётся только запросом `initialize` без `Mcp-Session-Id`;
    прочие запросы без заголовка обслуживаются временной сессией, которая
    не попадает в `ACTIVE_SESSIONS`.
    """
    session_id = request.headers.get(SESSION_HEADER)
    decoded = _decode_body(await request.body())
    if isinstance(decoded, JSONResponse):
        if session_id:
            decoded.headers[SESSION_HEADER] = session_id
        return decoded
    items, is_batch = decoded

    if session_id:
        session = ACTIVE_SESSIONS.get(session_id)
        if session is None:
            return _unknown_session(session_id)
    elif _starts_session(items):
        session = create_session(_CHANNELS)
    else:
        session = Session(id=str(uuid4()))
        _attach_token(session, token)
        reply = await _dispatcher().handle_items(items, is_batch, session)
        if reply is None:
            return Response(status_code=202)
        return Response(content=reply, media_type="application/json")

    _attach_token(session, token)
    headers = {SESSION_HEADER: session.id}

    if await _CHANNELS.has_active(session.id):
        background_tasks.add_task(_dispatch_to_channel, items, is_batch, session)
        return Response(status_code=202, headers=headers)

    reply = await _dispatcher().handle_items(items, is_batch, session)
    if reply is None:
        return Response(status_code=202, headers=headers)
    return Response(content=reply, media_type="application/json", headers=headers)


@router.get("/mcp")
async def mcp_stream(request: Request, token: Optional[AccessToken] = Depends(require_bearer)) -> Response:
    session_id = request.headers.get(SESSION_HEADER)
    if session_id:
        session = ACTIVE_SESSIONS.get(session_id)
        if session is None:
            return _unknown_session(session_id)
    else:
        session = create_session(_CHANNELS)
    _attach_token(session, token)
    if await _CHANNELS.has_active(session.id):
        return _json_rpc_error_response(409, INVALID_REQUEST, "Session already has an active stream")
    channel = SSEChannel(session.id)
    await _CHANNELS.register(session.id, channel)
    session.touch()
    return _stream_response(session, channel, BackgroundTask(_release_stream, session, channel))


@router.delete("/mcp")
async def mcp_delete(request: Request, token: Optional[AccessToken] = Depends(require_bearer)) -> Response:
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return _json_rpc_error_response(400, INVALID_REQUEST, f"Missing {SESSION_HEADER} header")
    session = ACTIVE_SESSIONS.get(session_id)
    if session is None:
        return _unknown_session(session_id)
    _attach_token(session, token)
    await close_session(session)
    logger.info("Session %s terminated by client", session.id)
    return Response(status_code=204)


@router.get("/sse")
async def sse_connect(token: Optional[AccessToken] = Depends(require_bearer)) -> Response:
    session = create_session(_CHANNELS)
    _attach_token(session, token)
    channel = SSEChannel(session.id)
    await _CHANNELS.register(session.id, channel)
    channel.send_event(f"/messages/{session.id}", event="endpoint")
    logger.info("SSE connection opened for session %s", session.id)
    return _stream_response(session, channel, BackgroundTask(close_session, session))


@router.post("/messages/{session_id}")
async def sse_message(
    session_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    token: Optional[AccessToken] = Depends(require_bearer),
) -> Response:
    session = ACTIVE_SESSIONS.get(session_id)
    if session is None:
        return _unknown_session(session_id)
    _attach_token(session, token)

    decoded = _decode_body(await request.body())
    if isinstance(decoded, JSONResponse):
        return decoded
    items, is_batch = decoded
    background_tasks.add_task(_dispatch_to_channel, items, is_batch, session)
    return Response(status_code=202)


# ----------------------------------------------------------------------
# OAuth метаданные
# ----------------------------------------------------------------------


def _base_url(request: Request) -> str:
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
    return f"{scheme}://{host}"


@router.get("/.well-known/oauth-authorization-server")
def oauth_authorization_server() -> Response:
    if not _OAUTH.enabled:
        return JSONResponse({"error": "OAuth is not configured"}, status_code=404)
    issuer = (_OAUTH.issuer or "").rstrip("/")
    metadata: Dict[str, Any] = {
        "issuer": issuer,
        "authorization_endpoint": _OAUTH.authorization_endpoint or f"{issuer}/authorize",
        "token_endpoint": _OAUTH.token_endpoint or f"{issuer}/oauth/token",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "scopes_supported": _OAUTH.scopes,
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": ["S256"],
    }
    if _OAUTH.introspection_endpoint:
        metadata["introspection_endpoint"] = _OAUTH.introspection_endpoint
    return JSONResponse(metadata)


@router.get("/.well-known/oauth-protected-resource")
def oauth_protected_resource(request: Request) -> Response:
    if not _OAUTH.enabled:
        return JSONResponse({"error": "OAuth is not configured"}, status_code=404)
    return JSONResponse(
        {
            "resource": _base_url(request),
            "authorization_servers": [(_OAUTH.issuer or "").rstrip("/")],
            "scopes_supported": _OAUTH.scopes,
            "bearer_methods_supported": ["header"],
        }
    )


__all__ = [
    "SESSION_HEADER",
    "UnauthorizedError",
    "configure_routes",
    "require_bearer",
    "router",
    "unauthorized_handler",
]
