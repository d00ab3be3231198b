import json

import pytest

from cypher_mcp.config import MCP_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
from cypher_mcp.services.auth_manager import AuthManager, extract_token
from cypher_mcp.services.connection_manager import ConnectionManager
from cypher_mcp.services.protocol_handler import ProtocolHandler
from cypher_mcp.services.rate_limiter import RateLimiter
from cypher_mcp.services.session_manager import SessionManager
from cypher_mcp.services.tool_executor import ToolExecutor
from cypher_mcp.services.tool_registry import ToolRegistry
from cypher_mcp.storage.cache import SchemaCache


@pytest.fixture
def sessions(kv, clock, settings) -> SessionManager:
    return SessionManager(kv, settings.session_ttl, clock)


@pytest.fixture
def handler(settings, kv, clock, repository, neo4j, sessions) -> ProtocolHandler:
    registry = ToolRegistry(settings.tools_path)
    executor = ToolExecutor(registry, ConnectionManager(transport=neo4j.transport), SchemaCache(kv, 300, clock))
    return ProtocolHandler(
        AuthManager(sessions, repository),
        RateLimiter(kv, clock),
        executor,
        registry,
        settings,
    )


async def _token(repository, sessions, read_only=False) -> str:
    user = repository.create_user()
    connection_id = repository.create_connection(
        user_id=user.id,
        uri="neo4j+s://abc123.databases.neo4j.io",
        username="neo4j",
        password="pw",
        read_only=read_only,
    )
    return await sessions.create_session(user.id, connection_id)


def _rpc(method, params=None, id=1):
    body = {"jsonrpc": "2.0", "method": method}
    if id is not None:
        body["id"] = id
    if params is not None:
        body["params"] = params
    return json.dumps(body).encode()


async def _call(handler, raw, headers=None):
    return await handler.handle(raw, headers or {}, {})


@pytest.mark.asyncio
async def test_initialize_needs_no_auth(handler):
    resp = await _call(handler, _rpc("initialize", {"protocolVersion": "2024-11-05"}))
    assert resp.body == {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": {"tools": {}},
        },
    }
    assert resp.headers["X-Request-Id"]
    assert resp.headers["X-RateLimit-Limit"] == "100"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, code",
    [
        (b"{not json", -32700),
        (b"[1, 2]", -32700),
        (json.dumps({"jsonrpc": "1.0", "id": 1, "method": "ping"}).encode(), -32600),
        (json.dumps({"jsonrpc": "2.0", "id": 1}).encode(), -32600),
        (json.dumps({"jsonrpc": "2.0", "id": {"x": 1}, "method": "ping"}).encode(), -32600),
        (json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping", "params": "x"}).encode(), -32602),
        (_rpc("resources/list"), -32601),
    ],
)
async def test_envelope_faults(handler, raw, code):
    resp = await _call(handler, raw)
    assert resp.body["error"]["code"] == code
    assert resp.body["jsonrpc"] == "2.0"


@pytest.mark.asyncio
async def test_fault_echoes_valid_id(handler):
    resp = await _call(handler, _rpc("nope", id="abc"))
    assert resp.body["id"] == "abc"
    assert resp.body["error"]["message"] == "Method not found: nope"


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["notifications/initialized", "initialized", "ping", "no/such/method"])
async def test_notifications_get_no_body(handler, method):
    resp = await _call(handler, _rpc(method, id=None))
    assert resp.body is None
    assert "X-Request-Id" in resp.headers


@pytest.mark.asyncio
async def test_notification_gets_no_body_on_unexpected_error(handler, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(handler.auth_manager, "authenticate", boom)
    resp = await _call(handler, _rpc("ping", id=None), {"authorization": "Bearer x"})
    assert resp.body is None
    assert "X-Request-Id" in resp.headers

    resp = await _call(handler, _rpc("ping", id=3), {"authorization": "Bearer x"})
    assert resp.body["error"]["code"] == -32603


@pytest.mark.asyncio
async def test_ping(handler):
    assert (await _call(handler, _rpc("ping", id=7))).body == {"jsonrpc": "2.0", "id": 7, "result": {}}


@pytest.mark.asyncio
async def test_tools_list_hides_write_for_read_only(handler, repository, sessions):
    resp = await _call(handler, _rpc("tools/list"))
    names = [t["name"] for t in resp.body["result"]["tools"]]
    assert names == ["get_neo4j_schema", "read_neo4j_cypher", "write_neo4j_cypher"]

    token = await _token(repository, sessions, read_only=True)
    resp = await _call(handler, _rpc("tools/list"), {"authorization": f"Bearer {token}"})
    names = [t["name"] for t in resp.body["result"]["tools"]]
    assert "write_neo4j_cypher" not in names


@pytest.mark.asyncio
async def test_global_read_only_hides_write(handler):
    handler.settings = handler.settings.model_copy(update={"read_only": True})
    resp = await _call(handler, _rpc("tools/list"))
    assert "write_neo4j_cypher" not in [t["name"] for t in resp.body["result"]["tools"]]


@pytest.mark.asyncio
async def test_unauthenticated_tool_call_is_domain_result(handler):
    resp = await _call(handler, _rpc("tools/call", {"name": "get_neo4j_schema", "arguments": {}}))
    result = resp.body["result"]
    assert result["isError"] is True
    assert "No Neo4j connection configured" in result["content"][0]["text"]


@pytest.mark.asyncio
async def test_write_tool_in_read_only_context(handler, repository, sessions, neo4j):
    token = await _token(repository, sessions, read_only=True)
    resp = await _call(
        handler,
        _rpc("tools/call", {"name": "write_neo4j_cypher", "arguments": {"query": "CREATE (n)"}}),
        {"authorization": f"Bearer {token}"},
    )
    result = resp.body["result"]
    assert result["isError"] is True
    assert "Write operations disabled" in result["content"][0]["text"]
    assert not any("CREATE" in s for s in neo4j.statements())


@pytest.mark.asyncio
async def test_read_tool_rejects_write_query(handler, repository, sessions, neo4j):
    token = await _token(repository, sessions)
    resp = await _call(
        handler,
        _rpc("tools/call", {"name": "read_neo4j_cypher", "arguments": {"query": "CREATE (n) RETURN n"}}),
        {"x-session-token": token},
    )
    assert resp.body["error"]["code"] == -32005
    assert neo4j.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [None, {"arguments": {}}, {"name": 5}, {"name": "read_neo4j_cypher", "arguments": [1]}, {"name": "nope"}],
)
async def test_tools_call_param_faults(handler, params):
    resp = await _call(handler, _rpc("tools/call", params))
    assert resp.body["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_rate_limit_fault(handler, settings):
    handler.settings = settings.model_copy(update={"rate_limit_requests": 2})
    headers = {"x-forwarded-for": "203.0.113.9"}
    for _ in range(2):
        assert "result" in (await _call(handler, _rpc("ping"), headers)).body

    resp = await _call(handler, _rpc("ping"), headers)
    assert resp.body["error"]["code"] == -32004
    assert resp.headers["Retry-After"] == str(resp.body["error"]["data"]["retryAfter"])
    assert resp.headers["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_invalid_token_still_dispatches(handler):
    resp = await _call(handler, _rpc("initialize"), {"authorization": "Bearer not-a-session"})
    assert resp.body["result"]["protocolVersion"] == MCP_PROTOCOL_VERSION


@pytest.mark.asyncio
async def test_unexpected_error_is_internal_fault(handler, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(handler.tool_executor, "call", boom)
    resp = await _call(handler, _rpc("tools/call", {"name": "read_neo4j_cypher", "arguments": {}}))
    assert resp.body["error"]["code"] == -32603
    assert resp.body["error"]["message"] == "Internal error"
    assert resp.body["error"]["data"]["requestId"] == resp.headers["X-Request-Id"]


def test_extract_token_precedence():
    assert extract_token({"authorization": "Bearer abc"}, {"token": "q"}) == "abc"
    assert extract_token({"authorization": "raw-token"}, {}) == "raw-token"
    assert extract_token({"x-session-token": "hdr"}, {"token": "q"}) == "hdr"
    assert extract_token({}, {"token": "q"}) == "q"
    assert extract_token({"authorization": "Bearer "}, {}) is None
