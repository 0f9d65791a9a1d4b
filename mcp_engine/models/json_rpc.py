"""Pydantic-модели JSON-RPC 2.0 и кодек сообщений MCP.

Декодирование определяет вариант сообщения по набору ключей:
`id`+`method` означает запрос, только `method` уведомление, `id`+`result` ответ,
`id`+`error` ответ с ошибкой. Ошибки разбора не выбрасываются наружу как
произвольные исключения: вызывающий код получает `JsonRpcDecodeError` с кодом
JSON-RPC и, по возможности, восстановленным `id`.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, StrictInt, StrictStr, ValidationError

RequestId = Union[StrictInt, StrictStr]

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
EXECUTION_ERROR = -32000
RESOURCE_NOT_FOUND = -32001
UNAUTHORIZED = -32010


class JsonRpcRequest(BaseModel):
    """Стандартный JSON-RPC 2.0 запрос."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: RequestId
    method: str
    params: Any = None

    def as_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


class JsonRpcNotification(BaseModel):
    """Уведомление: запрос без `id`, ответ на него не отправляется."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Any = None

    def as_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


class JsonRpcResponse(BaseModel):
    """Успешный JSON-RPC 2.0 ответ."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: RequestId
    result: Any = None

    def as_wire(self) -> Dict[str, Any]:
        return {"jsonrpc": self.jsonrpc, "id": self.id, "result": self.result}


class JsonRpcErrorObj(BaseModel):
    """Структура ошибки JSON-RPC 2.0."""

    code: StrictInt
    message: str
    data: Optional[Any] = None

    def as_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


class JsonRpcError(BaseModel):
    """JSON-RPC 2.0 ответ с ошибкой. `id` может быть null, если его не удалось восстановить."""

    jsonrpc: Literal["2.0"] = "2.0"
    error: JsonRpcErrorObj
    id: Optional[RequestId] = None

    def as_wire(self) -> Dict[str, Any]:
        return {"jsonrpc": self.jsonrpc, "id": self.id, "error": self.error.as_wire()}


JsonRpcMessage = Union[JsonRpcRequest, JsonRpcNotification, JsonRpcResponse, JsonRpcError]


class InitializeParams(BaseModel):
    """Параметры метода `initialize` MCP."""

    protocolVersion: Optional[str] = None
    clientInfo: Dict[str, Any] = Field(default_factory=dict)
    capabilities: Dict[str, Any] = Field(default_factory=dict)


class JsonRpcDecodeError(Exception):
    """Сообщение не удалось разобрать; содержит код ошибки и восстановленный id."""

    def __init__(self, message: str, *, code: int = PARSE_ERROR, request_id: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.request_id = request_id

    def to_response(self) -> JsonRpcError:
        return make_error(self.code, str(self), request_id=self.request_id)


def make_error(code: int, message: str, *, data: Any = None, request_id: Any = None) -> JsonRpcError:
    return JsonRpcError(
        error=JsonRpcErrorObj(code=code, message=message, data=data),
        id=request_id,
    )


def _recover_id(obj: Any) -> Optional[Union[int, str]]:
    if not isinstance(obj, dict):
        return None
    candidate = obj.get("id")
    if isinstance(candidate, bool):
        return None
    if isinstance(candidate, (int, str)):
        return candidate
    return None


def message_from_obj(obj: Any) -> JsonRpcMessage:
    """Превращает уже распарсенный JSON в один из вариантов сообщения."""
    if not isinstance(obj, dict):
        raise JsonRpcDecodeError("Invalid Request: message must be an object", code=INVALID_REQUEST)

    has_id = "id" in obj
    try:
        if "method" in obj:
            if has_id:
                return JsonRpcRequest.model_validate(obj)
            return JsonRpcNotification.model_validate(obj)
        if has_id and "result" in obj:
            return JsonRpcResponse.model_validate(obj)
        if has_id and "error" in obj:
            return JsonRpcError.model_validate(obj)
    except ValidationError as exc:
        raise JsonRpcDecodeError(
            f"Invalid Request: {exc.errors()[0].get('msg', 'validation failed')}",
            code=INVALID_REQUEST,
            request_id=_recover_id(obj),
        ) from exc

    raise JsonRpcDecodeError(
        "Invalid Request: unrecognised message shape",
        code=INVALID_REQUEST,
        request_id=_recover_id(obj),
    )


def _load_json(raw: Union[str, bytes, bytearray]) -> Any:
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise JsonRpcDecodeError(f"Parse error: {exc}", code=PARSE_ERROR) from exc


def decode_message(raw: Union[str, bytes, bytearray]) -> JsonRpcMessage:
    """Декодирует одиночное сообщение из байтов/строки."""
    return message_from_obj(_load_json(raw))


def decode_payload(
    raw: Union[str, bytes, bytearray],
) -> Tuple[List[Union[JsonRpcMessage, JsonRpcDecodeError]], bool]:
    """Декодирует одиночное сообщение или пакет (JSON-массив).

    Возвращает список, где каждый элемент либо сообщение, либо ошибка
    разбора этого элемента, и признак пакетного режима. Ошибка разбора JSON
    целиком выбрасывается как `JsonRpcDecodeError`.
    """
    obj = _load_json(raw)
    if isinstance(obj, list):
        if not obj:
            raise JsonRpcDecodeError("Invalid Request: empty batch", code=INVALID_REQUEST)
        items: List[Union[JsonRpcMessage, JsonRpcDecodeError]] = []
        for entry in obj:
            try:
                items.append(message_from_obj(entry))
            except JsonRpcDecodeError as exc:
                items.append(exc)
        return items, True
    return [message_from_obj(obj)], False


def encode_message(message: JsonRpcMessage) -> str:
    return json.dumps(message.as_wire(), ensure_ascii=False, separators=(",", ":"))


def encode_messages(messages: List[JsonRpcMessage]) -> str:
    return json.dumps([m.as_wire() for m in messages], ensure_ascii=False, separators=(",", ":"))


__all__ = [
    "EXECUTION_ERROR",
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "InitializeParams",
    "JsonRpcDecodeError",
    "JsonRpcError",
    "JsonRpcErrorObj",
    "JsonRpcMessage",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "RESOURCE_NOT_FOUND",
    "RequestId",
    "UNAUTHORIZED",
    "decode_message",
    "decode_payload",
    "encode_message",
    "encode_messages",
    "make_error",
    "message_from_obj",
]
