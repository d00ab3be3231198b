import json
import logging
import time
from typing import Any, Dict, Optional

from cypher_mcp.schemas.jsonrpc import RequestContext, tool_result
from cypher_mcp.security import audit
from cypher_mcp.security.query_validator import (
    is_write_query,
    sanitize_parameters,
    validate_cypher_syntax,
    validate_query,
)
from cypher_mcp.services.connection_manager import ConnectionManager, execute_read_query, execute_write_query
from cypher_mcp.services.schema_extractor import SchemaExtractor, format_schema_for_llm
from cypher_mcp.services.tool_registry import ToolKind, ToolRegistry
from cypher_mcp.storage.cache import SchemaCache
from cypher_mcp.utils.errors import ErrorKind, GatewayError
from cypher_mcp.utils.sanitize import SanitizeOptions, sanitize, sanitize_neo4j_results
from cypher_mcp.utils.tokens import truncate_data_to_tokens, truncate_to_tokens

NOT_CONNECTED_MESSAGE = "Please configure your Neo4j connection via the setup endpoint first."


def _preview(query: str) -> str:
    return query[:100] + ("..." if len(query) > 100 else "")


def _dump(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


class ToolExecutor:
    """
    Runs the three Neo4j tools for one request context.

    Malformed calls and blocked queries raise GatewayError (they become
    protocol faults). Everything that happens after validation, including
    remote failures, comes back as a tool result with isError set.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        connection_manager: ConnectionManager,
        schema_cache: SchemaCache,
        sanitize_options: SanitizeOptions | None = None,
        chars_per_token: int = 4,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.connection_manager = connection_manager
        self.schema_cache = schema_cache
        self.sanitize_options = sanitize_options or SanitizeOptions()
        self.chars_per_token = chars_per_token
        self.logger = logger or logging.getLogger(__name__)

    async def call(self, name: str, arguments: Optional[Dict[str, Any]], ctx: RequestContext) -> Dict[str, Any]:
        if not self.registry.exists(name):
            raise GatewayError(ErrorKind.INVALID_PARAMS, f"Unknown tool: {name}")

        kind = self.registry.get(name).kind
        self.logger.info("Tool call tool=%s request=%s", name, ctx.request_id)

        if kind is ToolKind.SCHEMA:
            return await self.get_schema(arguments, ctx)
        if kind is ToolKind.READ:
            return await self.read_cypher(arguments, ctx)
        if kind is ToolKind.WRITE:
            return await self.write_cypher(arguments, ctx)
        raise GatewayError(ErrorKind.INVALID_PARAMS, f"Unknown tool: {name}")

    # --- helpers ---

    def _not_connected(self, ctx: RequestContext, query: Optional[str] = None) -> Dict[str, Any]:
        if ctx.connection_error:
            payload: Dict[str, Any] = {"error": "Connection error", "message": ctx.connection_error}
        else:
            payload = {"error": "No Neo4j connection configured", "message": NOT_CONNECTED_MESSAGE}
        if query is not None:
            payload["query"] = _preview(query)
        else:
            payload["setupUrl"] = "/api/setup"
        return tool_result(_dump(payload), is_error=True)

    @staticmethod
    def _query_args(arguments: Optional[Dict[str, Any]]) -> tuple:
        if not isinstance(arguments, dict) or not isinstance(arguments.get("query"), str):
            raise GatewayError(ErrorKind.INVALID_PARAMS, "Missing required parameter: query")
        params = arguments.get("params")
        if params is not None and not isinstance(params, dict):
            raise GatewayError(ErrorKind.INVALID_PARAMS, "Parameter 'params' must be an object")
        return arguments["query"], params

    def _validate(self, query: str, ctx: RequestContext) -> None:
        verdict = validate_query(query)
        if not verdict.valid:
            self.logger.warning("Query blocked by validation: %s request=%s", verdict.error, ctx.request_id)
            audit.log_query_blocked(verdict.error or "blocked", query, ctx.user_id, ctx.request_id)
            raise GatewayError(ErrorKind.VALIDATION, verdict.error or "Query blocked for security reasons")
        if verdict.warnings:
            self.logger.info("Query warnings %s request=%s", verdict.warnings, ctx.request_id)

    def _check_syntax(self, query: str) -> None:
        syntax = validate_cypher_syntax(query)
        if not syntax.valid:
            raise GatewayError(ErrorKind.VALIDATION, syntax.error or "Invalid query syntax")

    @staticmethod
    def _execution_failed(query: str, error: GatewayError) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": "Query execution failed", "message": error.message}
        if error.data and error.data.get("neo4jCode"):
            payload["code"] = error.data["neo4jCode"]
        payload["query"] = _preview(query)
        return tool_result(_dump(payload), is_error=True)

    # --- tools ---

    async def get_schema(self, arguments: Optional[Dict[str, Any]], ctx: RequestContext) -> Dict[str, Any]:
        sample_size = ctx.schema_sample_size
        if isinstance(arguments, dict) and arguments.get("sample_size") is not None:
            raw = arguments["sample_size"]
            if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
                raise GatewayError(ErrorKind.INVALID_PARAMS, "Parameter 'sample_size' must be a positive number")
            sample_size = int(raw)

        if ctx.connection is None:
            return self._not_connected(ctx)

        client = self.connection_manager.client_for(ctx.connection, ctx.timeout)

        async def fetch() -> Dict[str, Any]:
            schema = await SchemaExtractor(client, self.logger).extract(sample_size)
            return schema.model_dump()

        try:
            # the cache only ever holds schemas sampled at the configured size
            if ctx.connection_id and sample_size == ctx.schema_sample_size:
                schema = await self.schema_cache.get_or_fetch(ctx.connection_id, fetch)
            else:
                schema = await fetch()
        except GatewayError as e:
            self.logger.error("Schema extraction failed: %s request=%s", e.message, ctx.request_id)
            return tool_result(_dump({"error": "Schema extraction failed", "message": e.message}), is_error=True)

        text = format_schema_for_llm(sanitize(schema, self.sanitize_options))
        truncated = truncate_to_tokens(text, ctx.token_limit, self.chars_per_token)
        if truncated.truncated:
            self.logger.info(
                "Schema response truncated original=%s final=%s limit=%s",
                truncated.original_tokens,
                truncated.final_tokens,
                ctx.token_limit,
            )
        return tool_result(truncated.text)

    async def read_cypher(self, arguments: Optional[Dict[str, Any]], ctx: RequestContext) -> Dict[str, Any]:
        query, raw_params = self._query_args(arguments)
        self.logger.info("read_neo4j_cypher length=%s has_params=%s request=%s", len(query), bool(raw_params), ctx.request_id)

        self._validate(query, ctx)
        params = sanitize_parameters(raw_params)
        self._check_syntax(query)
        if is_write_query(query):
            audit.log_query_blocked("write operation in read tool", query, ctx.user_id, ctx.request_id)
            raise GatewayError(
                ErrorKind.VALIDATION,
                "This query contains write operations. Use write_neo4j_cypher for "
                "CREATE, MERGE, DELETE, SET, or REMOVE operations.",
            )

        if ctx.connection is None:
            return self._not_connected(ctx, query)

        client = self.connection_manager.client_for(ctx.connection, ctx.timeout)
        started = time.perf_counter()
        try:
            result = await execute_read_query(client, query, params, ctx.timeout)
        except GatewayError as e:
            self.logger.error("Read query failed: %s request=%s", e.message, ctx.request_id)
            return self._execution_failed(query, e)
        audit.log_query_executed("read", query, (time.perf_counter() - started) * 1000, ctx.user_id, ctx.request_id)

        rows = sanitize_neo4j_results(result.rows, self.sanitize_options)
        shrunk = truncate_data_to_tokens(rows, ctx.token_limit, self.chars_per_token)
        output: Dict[str, Any] = {"columns": result.columns, "rowCount": result.row_count, "rows": shrunk.data}
        if shrunk.truncated:
            output["truncated"] = True

        truncated = truncate_to_tokens(_dump(output), ctx.token_limit, self.chars_per_token)
        if truncated.truncated or shrunk.truncated:
            self.logger.info(
                "Response truncated original=%s final=%s limit=%s request=%s",
                shrunk.original_tokens,
                truncated.final_tokens,
                ctx.token_limit,
                ctx.request_id,
            )
        return tool_result(truncated.text)

    async def write_cypher(self, arguments: Optional[Dict[str, Any]], ctx: RequestContext) -> Dict[str, Any]:
        if ctx.read_only:
            return tool_result(
                _dump(
                    {
                        "error": "Write operations disabled",
                        "message": "This connection is configured as read-only. Write operations are not permitted.",
                    }
                ),
                is_error=True,
            )

        query, raw_params = self._query_args(arguments)
        self.logger.info("write_neo4j_cypher length=%s has_params=%s request=%s", len(query), bool(raw_params), ctx.request_id)

        self._validate(query, ctx)
        params = sanitize_parameters(raw_params)
        self._check_syntax(query)

        if ctx.connection is None:
            return self._not_connected(ctx, query)

        client = self.connection_manager.client_for(ctx.connection, ctx.timeout)
        started = time.perf_counter()
        try:
            result = await execute_write_query(client, query, params, ctx.timeout)
        except GatewayError as e:
            self.logger.error("Write query failed: %s request=%s", e.message, ctx.request_id)
            return self._execution_failed(query, e)
        audit.log_query_executed("write", query, (time.perf_counter() - started) * 1000, ctx.user_id, ctx.request_id)

        if ctx.connection_id:
            await self.schema_cache.invalidate(ctx.connection_id)

        return tool_result(_dump({"success": True, "summary": result.summary, "counters": result.counters}))
