from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from cypher_mcp.schemas.graph import ConnectionConfig

JSONRPC_VERSION = "2.0"


class McpMethod(str, Enum):
    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    PING = "ping"

    @classmethod
    def parse(cls, method: str) -> Optional["McpMethod"]:
        if method == "initialized":
            return cls.INITIALIZED
        try:
            return cls(method)
        except ValueError:
            return None


@dataclass
class RequestContext:
    """
    Everything one request needs downstream of authentication. Built per
    request and dropped afterwards; holds plaintext credentials.
    """

    request_id: str
    user_id: Optional[str] = None
    connection_id: Optional[str] = None
    connection: Optional[ConnectionConfig] = None
    # set when credentials exist but could not be decrypted
    connection_error: Optional[str] = None
    read_only: bool = False
    timeout: float = 30.0
    token_limit: int = 10000
    schema_sample_size: int = 1000
    client_ip: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def tool_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    content: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    result: Dict[str, Any] = {"content": content}
    if is_error:
        result["isError"] = True
    return result


def success_envelope(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_envelope(request_id: Any, error: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}
