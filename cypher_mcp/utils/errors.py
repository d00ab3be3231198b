from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    PARSE = "parse"
    INVALID_REQUEST = "invalid_request"
    METHOD_NOT_FOUND = "method_not_found"
    INVALID_PARAMS = "invalid_params"
    INTERNAL = "internal"
    CONNECTION = "connection"
    QUERY = "query"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"


_JSONRPC_CODES: Dict[ErrorKind, int] = {
    ErrorKind.PARSE: -32700,
    ErrorKind.INVALID_REQUEST: -32600,
    ErrorKind.METHOD_NOT_FOUND: -32601,
    ErrorKind.INVALID_PARAMS: -32602,
    ErrorKind.INTERNAL: -32603,
    ErrorKind.CONNECTION: -32001,
    ErrorKind.QUERY: -32002,
    ErrorKind.AUTH: -32003,
    ErrorKind.RATE_LIMIT: -32004,
    ErrorKind.VALIDATION: -32005,
}


class GatewayError(Exception):
    """
    Single error type for the request pipeline.

    `kind` decides the wire code; `data` carries structured diagnostics
    (vendor error codes, retry hints) and is emitted as the JSON-RPC
    `error.data` member when present.
    """

    def __init__(self, kind: ErrorKind, message: str, data: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.data = data

    @property
    def code(self) -> int:
        return to_jsonrpc_code(self.kind)

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r})"

    @classmethod
    def rate_limited(cls, retry_after: int) -> "GatewayError":
        return cls(
            ErrorKind.RATE_LIMIT,
            f"Rate limit exceeded. Retry after {retry_after} seconds",
            data={"retryAfter": retry_after},
        )

    @classmethod
    def method_not_found(cls, method: str) -> "GatewayError":
        return cls(ErrorKind.METHOD_NOT_FOUND, f"Method not found: {method}")


def to_jsonrpc_code(kind: ErrorKind) -> int:
    return _JSONRPC_CODES[kind]


def to_gateway_error(exc: BaseException) -> GatewayError:
    if isinstance(exc, GatewayError):
        return exc
    return GatewayError(ErrorKind.INTERNAL, str(exc) or "Internal error")


def to_jsonrpc_error(exc: BaseException) -> Dict[str, Any]:
    err = to_gateway_error(exc)
    return {
        "code": err.code,
        "message": err.message,
        **({"data": err.data} if err.data is not None else {}),
    }
