import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from cypher_mcp.config import MCP_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION, Settings
from cypher_mcp.schemas.jsonrpc import (
    JSONRPC_VERSION,
    McpMethod,
    RequestContext,
    error_envelope,
    success_envelope,
)
from cypher_mcp.security import audit
from cypher_mcp.services.auth_manager import AuthManager, AuthResult
from cypher_mcp.services.rate_limiter import RateLimiter, RateLimitResult, rate_limit_headers, rate_limit_identity
from cypher_mcp.services.tool_executor import ToolExecutor
from cypher_mcp.services.tool_registry import ToolRegistry
from cypher_mcp.utils.errors import ErrorKind, GatewayError, to_jsonrpc_error

# Marks an envelope with no "id" member at all (a notification), as
# opposed to an explicit "id": null.
_NO_ID = object()


@dataclass
class McpResponse:
    # None means "no body" (notifications)
    body: Optional[Dict[str, Any]]
    headers: Dict[str, str] = field(default_factory=dict)


def _valid_id(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    return isinstance(value, (str, int, float))


class ProtocolHandler:
    """
    Parses MCP JSON-RPC messages and routes them.

    Order per request: parse -> envelope checks -> optional auth ->
    rate limit -> dispatch. Faults are always returned as envelopes.
    """

    def __init__(
        self,
        auth_manager: AuthManager,
        rate_limiter: RateLimiter,
        tool_executor: ToolExecutor,
        registry: ToolRegistry,
        settings: Settings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.auth_manager = auth_manager
        self.rate_limiter = rate_limiter
        self.tool_executor = tool_executor
        self.registry = registry
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)

    async def handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
        client_ip: Optional[str] = None,
    ) -> McpResponse:
        request_id = str(uuid.uuid4())
        response_headers: Dict[str, str] = {"X-Request-Id": request_id}
        rpc_id: Any = None
        is_notification = False

        try:
            body = self._parse(raw_body)
            raw_id = body.get("id", _NO_ID)
            if raw_id is not _NO_ID and _valid_id(raw_id):
                rpc_id = raw_id
            method = self._validate_envelope(body)
            is_notification = raw_id is _NO_ID

            self.logger.info("MCP request method=%s request=%s", method, request_id)

            ctx = await self._build_context(request_id, headers, query_params, client_ip)

            limit = await self._check_rate_limit(ctx, headers)
            response_headers.update(rate_limit_headers(limit))
            if not limit.allowed:
                response_headers["Retry-After"] = str(limit.reset_in)
                audit.log_rate_limit_exceeded(
                    rate_limit_identity(headers, ctx.user_id), limit.current, limit.limit, request_id
                )
                raise GatewayError.rate_limited(limit.reset_in)

            result = await self._dispatch(method, body.get("params"), ctx)

            if is_notification:
                return McpResponse(body=None, headers=response_headers)
            return McpResponse(body=success_envelope(rpc_id, result), headers=response_headers)

        except GatewayError as e:
            self.logger.warning("MCP fault kind=%s message=%s request=%s", e.kind.value, e.message, request_id)
            if is_notification:
                return McpResponse(body=None, headers=response_headers)
            return McpResponse(body=error_envelope(rpc_id, to_jsonrpc_error(e)), headers=response_headers)
        except Exception:
            self.logger.exception("Unhandled error request=%s", request_id)
            if is_notification:
                return McpResponse(body=None, headers=response_headers)
            fault = GatewayError(ErrorKind.INTERNAL, "Internal error", data={"requestId": request_id})
            return McpResponse(body=error_envelope(rpc_id, to_jsonrpc_error(fault)), headers=response_headers)

    # --- pipeline steps ---

    @staticmethod
    def _parse(raw_body: bytes) -> Dict[str, Any]:
        try:
            body = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise GatewayError(ErrorKind.PARSE, "Parse error: invalid JSON") from e
        if not isinstance(body, dict):
            raise GatewayError(ErrorKind.PARSE, "Request body must be a JSON object")
        return body

    @staticmethod
    def _validate_envelope(body: Dict[str, Any]) -> str:
        if body.get("jsonrpc") != JSONRPC_VERSION:
            raise GatewayError(ErrorKind.INVALID_REQUEST, "Invalid JSON-RPC version. Must be '2.0'")
        method = body.get("method")
        if not isinstance(method, str) or not method:
            raise GatewayError(ErrorKind.INVALID_REQUEST, "Missing or invalid 'method' in request")
        if "id" in body and not _valid_id(body["id"]):
            raise GatewayError(ErrorKind.INVALID_REQUEST, "Invalid 'id': must be a string, number or null")
        params = body.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            raise GatewayError(ErrorKind.INVALID_PARAMS, "'params' must be an object or array")
        return method

    async def _build_context(
        self,
        request_id: str,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
        client_ip: Optional[str],
    ) -> RequestContext:
        ctx = RequestContext(
            request_id=request_id,
            read_only=self.settings.read_only,
            timeout=self.settings.read_timeout,
            token_limit=self.settings.token_limit,
            schema_sample_size=self.settings.schema_sample_size,
            client_ip=client_ip,
        )

        try:
            auth: AuthResult = await self.auth_manager.authenticate(headers, query_params)
        except GatewayError as e:
            self.logger.warning("Authentication error request=%s: %s", request_id, e.message)
            return ctx

        if not auth.authenticated:
            if auth.token:
                audit.log_auth_failure(auth.error or "invalid session", request_id, client_ip)
            return ctx

        ctx.user_id = auth.user_id
        ctx.connection_id = auth.connection_id
        ctx.connection_error = auth.connection_error
        if auth.connection is not None:
            ctx.connection = auth.connection.connection
            ctx.read_only = self.settings.read_only or auth.connection.read_only
        return ctx

    async def _check_rate_limit(self, ctx: RequestContext, headers: Mapping[str, str]) -> RateLimitResult:
        identity = rate_limit_identity(headers, ctx.user_id)
        return await self.rate_limiter.check_and_increment(
            identity,
            self.settings.rate_limit_requests,
            self.settings.rate_limit_window,
        )

    async def _dispatch(self, method: str, params: Any, ctx: RequestContext) -> Any:
        resolved = McpMethod.parse(method)

        if resolved is McpMethod.INITIALIZE:
            return self._handle_initialize(ctx)
        if resolved is McpMethod.INITIALIZED:
            self.logger.info("MCP initialized notification request=%s", ctx.request_id)
            return {}
        if resolved is McpMethod.TOOLS_LIST:
            return self._handle_tools_list(ctx)
        if resolved is McpMethod.TOOLS_CALL:
            return await self._handle_tools_call(params, ctx)
        if resolved is McpMethod.PING:
            return {}
        raise GatewayError.method_not_found(method)

    def _handle_initialize(self, ctx: RequestContext) -> Dict[str, Any]:
        self.logger.info("MCP initialize protocol=%s request=%s", MCP_PROTOCOL_VERSION, ctx.request_id)
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": {"tools": {}},
        }

    def _handle_tools_list(self, ctx: RequestContext) -> Dict[str, Any]:
        tools = self.registry.all_tools(include_write=not ctx.read_only)
        self.logger.info("MCP tools/list count=%s read_only=%s request=%s", len(tools), ctx.read_only, ctx.request_id)
        return {"tools": [t.to_wire() for t in tools]}

    async def _handle_tools_call(self, params: Any, ctx: RequestContext) -> Dict[str, Any]:
        if not isinstance(params, dict):
            raise GatewayError(ErrorKind.INVALID_PARAMS, "tools/call requires an object 'params'")
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise GatewayError(ErrorKind.INVALID_PARAMS, "Missing tool 'name' in params")
        arguments = params.get("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            raise GatewayError(ErrorKind.INVALID_PARAMS, "Tool 'arguments' must be an object")
        return await self.tool_executor.call(name, arguments, ctx)
