"""Диспетчер протокола MCP: JSON-RPC метод -> обработчик.

Диспетчер не хранит состояния между сообщениями, всё состояние живёт в
`Session`. Ни одно исключение обработчика не выходит наружу: ошибки протокола
превращаются в JSON-RPC ошибки, ошибки инструментов в результат с
`isError: true`, всё остальное в -32603.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from mcp_engine.core.config import PROTOCOL_VERSION, SERVER_INFO
from mcp_engine.core.context import RequestContext, extract_progress_token
from mcp_engine.core.session import ClientCapabilities, Session
from mcp_engine.models.json_rpc import (
    EXECUTION_ERROR,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    RESOURCE_NOT_FOUND,
    InitializeParams,
    JsonRpcDecodeError,
    JsonRpcError,
    JsonRpcMessage,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    decode_payload,
    encode_message,
    encode_messages,
    make_error,
)
from mcp_engine.models.notifications import LogLevel
from mcp_engine.prompts.registry import PromptRegistry
from mcp_engine.resources.registry import ResourceRegistry
from mcp_engine.tools.handlers import _tool_error, tool_result
from mcp_engine.tools.registry import ToolError, ToolRegistry

logger = logging.getLogger("mcp_engine.api.dispatcher")

Handler = Callable[[Dict[str, Any], JsonRpcRequest, Session], Awaitable[Any]]


class McpError(Exception):
    """Ошибка уровня протокола, отдаётся клиенту как JSON-RPC error."""

    def __init__(self, message: str, *, code: int = EXECUTION_ERROR, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


def _complete(values: List[str], prefix: str) -> List[str]:
    lowered = prefix.lower()
    matches = [value for value in values if value.lower().startswith(lowered)]
    rest = [value for value in values if not value.lower().startswith(lowered)]
    return matches + rest


class McpDispatcher:
    def __init__(
        self,
        *,
        tools: Optional[ToolRegistry] = None,
        resources: Optional[ResourceRegistry] = None,
        prompts: Optional[PromptRegistry] = None,
        server_info: Optional[Dict[str, str]] = None,
        protocol_version: str = PROTOCOL_VERSION,
    ) -> None:
        self.tools = tools
        self.resources = resources
        self.prompts = prompts
        self.server_info = server_info or SERVER_INFO
        self.protocol_version = protocol_version
        self._handlers: Dict[str, Handler] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "logging/setLevel": self._handle_set_level,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/templates/list": self._handle_resource_templates_list,
            "resources/read": self._handle_resources_read,
            "prompts/list": self._handle_prompts_list,
            "prompts/get": self._handle_prompts_get,
            "completion/complete": self._handle_complete,
        }

    def capabilities(self) -> Dict[str, Any]:
        caps: Dict[str, Any] = {"logging": {}}
        if self.tools is not None and len(self.tools):
            caps["tools"] = {"listChanged": False}
        if self.resources is not None and len(self.resources):
            caps["resources"] = {"subscribe": False, "listChanged": False}
        if self.prompts is not None and len(self.prompts):
            caps["prompts"] = {"listChanged": False}
        return caps

    # ------------------------------------------------------------------
    # Точки входа
    # ------------------------------------------------------------------

    async def handle_payload(self, raw: Union[str, bytes], session: Session) -> Optional[str]:
        """Декодирует тело (одиночное сообщение или пакет), обрабатывает и кодирует ответ.

        Сообщения одной сессии обрабатываются строго последовательно под
        `session.lock`. Возвращает `None`, если отвечать нечего.
        """
        try:
            items, is_batch = decode_payload(raw)
        except JsonRpcDecodeError as exc:
            logger.info("Rejecting undecodable payload: %s", exc)
            return encode_message(exc.to_response())
        return await self.handle_items(items, is_batch, session)

    async def handle_items(
        self,
        items: List[Union[JsonRpcMessage, JsonRpcDecodeError]],
        is_batch: bool,
        session: Session,
    ) -> Optional[str]:
        replies: List[JsonRpcMessage] = []
        async with session.lock:
            session.touch()
            for item in items:
                if isinstance(item, JsonRpcDecodeError):
                    replies.append(item.to_response())
                    continue
                reply = await self.handle_message(item, session)
                if reply is not None:
                    replies.append(reply)

        if not replies:
            return None
        if is_batch:
            return encode_messages(replies)
        return encode_message(replies[0])

    async def handle_message(
        self, message: JsonRpcMessage, session: Session
    ) -> Optional[Union[JsonRpcResponse, JsonRpcError]]:
        if isinstance(message, (JsonRpcResponse, JsonRpcError)):
            logger.debug("Ignoring inbound response for id %r", message.id)
            return None
        if isinstance(message, JsonRpcNotification):
            self._handle_notification(message, session)
            return None
        return await self._handle_request(message, session)

    # ------------------------------------------------------------------
    # Внутренняя диспетчеризация
    # ------------------------------------------------------------------

    def _handle_notification(self, notification: JsonRpcNotification, session: Session) -> None:
        method = notification.method
        if method == "notifications/initialized":
            session.initialized = True
            logger.info("Session %s initialized", session.id)
        elif method == "notifications/cancelled":
            params = notification.params if isinstance(notification.params, dict) else {}
            # прерывание уже запущенных обработчиков не поддерживается
            logger.info("Cancellation requested for request %r in session %s", params.get("requestId"), session.id)
        else:
            logger.debug("Ignoring notification %s", method)

    async def _handle_request(self, request: JsonRpcRequest, session: Session) -> Union[JsonRpcResponse, JsonRpcError]:
        method = request.method
        handler = self._handlers.get(method)
        try:
            if handler is None:
                raise McpError("Method not found", code=METHOD_NOT_FOUND, data={"method": method})
            params = request.params if request.params is not None else {}
            if not isinstance(params, dict):
                raise McpError("Invalid params: expected an object", code=INVALID_PARAMS)
            result = await handler(params, request, session)
            return JsonRpcResponse(id=request.id, result=result)
        except McpError as exc:
            return make_error(exc.code, str(exc), data=exc.data, request_id=request.id)
        except Exception as exc:
            logger.exception("Unhandled MCP error in %s", method)
            return make_error(INTERNAL_ERROR, "Internal error", data=str(exc), request_id=request.id)

    # ------------------------------------------------------------------
    # Обработчики методов
    # ------------------------------------------------------------------

    async def _handle_initialize(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        try:
            parsed = InitializeParams.model_validate(params)
        except ValidationError as exc:
            raise McpError(
                "Invalid initialize params",
                code=INVALID_PARAMS,
                data=exc.errors(include_url=False, include_context=False),
            ) from exc

        session.client_info = parsed.clientInfo
        session.capabilities = ClientCapabilities.from_dict(parsed.capabilities)
        session.protocol_version = parsed.protocolVersion or self.protocol_version
        logger.info(
            "Initialize from %s (protocol %s) in session %s",
            parsed.clientInfo.get("name", "unknown"),
            parsed.protocolVersion,
            session.id,
        )
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities(),
            "serverInfo": self.server_info,
        }

    async def _handle_ping(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        return {}

    async def _handle_set_level(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        level = LogLevel.parse(params.get("level"))
        if level is None:
            raise McpError(
                "Invalid params: unknown log level",
                code=INVALID_PARAMS,
                data={"level": params.get("level"), "allowed": [item.value for item in LogLevel]},
            )
        session.min_log_level = level
        return {}

    async def _handle_tools_list(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        if self.tools is None:
            return _tool_error("Server does not provide any tools")
        return {"tools": [spec.as_mcp_dict() for spec in self.tools.list()]}

    async def _handle_tools_call(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise McpError("Invalid Request: missing tool name", code=INVALID_REQUEST)
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise McpError("Invalid params: 'arguments' must be an object", code=INVALID_PARAMS)
        if self.tools is None:
            return _tool_error("Server does not provide any tools")

        context = RequestContext(
            session,
            request_id=request.id,
            method=request.method,
            progress_token=extract_progress_token(params),
        )
        try:
            value = await self.tools.invoke(name, arguments, context)
        except ToolError as exc:
            logger.info("Tool '%s' failed: %s", name, exc)
            return _tool_error(str(exc))
        except Exception as exc:
            logger.warning("Tool '%s' raised %s", name, type(exc).__name__, exc_info=True)
            return _tool_error(str(exc) or type(exc).__name__)
        return tool_result(value)

    async def _handle_resources_list(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        if self.resources is None:
            return _tool_error("Server does not provide any resources")
        return {"resources": [item.as_mcp_dict() for item in self.resources.list()]}

    async def _handle_resource_templates_list(
        self, params: Dict[str, Any], request: JsonRpcRequest, session: Session
    ) -> Any:
        if self.resources is None:
            return _tool_error("Server does not provide any resources")
        return {"resourceTemplates": [item.as_mcp_dict() for item in self.resources.list_templates()]}

    async def _handle_resources_read(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise McpError("Invalid params: missing 'uri'", code=INVALID_PARAMS)
        if self.resources is None:
            return _tool_error("Server does not provide any resources")
        try:
            contents = await self.resources.read(uri)
        except Exception as exc:
            logger.warning("Reading resource %s failed", uri, exc_info=True)
            raise McpError(f"Error getting resource: {exc}", code=EXECUTION_ERROR) from exc
        if not contents:
            raise McpError("Resource not found", code=RESOURCE_NOT_FOUND, data={"uri": uri})
        return {"contents": [content.as_mcp_dict() for content in contents]}

    async def _handle_prompts_list(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        if self.prompts is None:
            return _tool_error("Server does not provide any prompts")
        return {"prompts": [item.as_mcp_dict() for item in self.prompts.list()]}

    async def _handle_prompts_get(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise McpError("Invalid params: missing 'name'", code=INVALID_PARAMS)
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise McpError("Invalid params: 'arguments' must be an object", code=INVALID_PARAMS)
        if self.prompts is None:
            return _tool_error("Server does not provide any prompts")
        try:
            messages = await self.prompts.get(name, {key: str(value) for key, value in arguments.items()})
        except Exception as exc:
            logger.warning("Prompt '%s' failed", name, exc_info=True)
            raise McpError(f"Error getting prompt: {exc}", code=EXECUTION_ERROR) from exc
        result: Dict[str, Any] = {"messages": [message.as_mcp_dict() for message in messages]}
        metadata = self.prompts.metadata(name)
        if metadata is not None and metadata.description:
            result["description"] = metadata.description
        return result

    async def _handle_complete(self, params: Dict[str, Any], request: JsonRpcRequest, session: Session) -> Any:
        ref = params.get("ref") if isinstance(params.get("ref"), dict) else {}
        argument = params.get("argument") if isinstance(params.get("argument"), dict) else {}
        arg_name = argument.get("name")
        prefix = argument.get("value") if isinstance(argument.get("value"), str) else ""

        candidates: List[str] = []
        if isinstance(arg_name, str):
            candidates = self._completion_candidates(ref, arg_name)
        values = _complete(candidates, prefix)
        return {"completion": {"values": values, "total": len(values), "hasMore": False}}

    def _completion_candidates(self, ref: Dict[str, Any], arg_name: str) -> List[str]:
        ref_type = ref.get("type")
        if ref_type == "ref/resource" and self.resources is not None:
            template = self.resources.template(str(ref.get("uri", "")))
            if template is not None:
                return list(template.values.get(arg_name, []))
        if ref_type == "ref/prompt" and self.prompts is not None:
            metadata = self.prompts.metadata(str(ref.get("name", "")))
            if metadata is not None:
                prompt_arg = metadata.argument(arg_name)
                if prompt_arg is not None:
                    return list(prompt_arg.values)
        return []


__all__ = ["McpDispatcher", "McpError"]
