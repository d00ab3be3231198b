import pytest

from cypher_mcp.utils.errors import ErrorKind, GatewayError, to_jsonrpc_code, to_jsonrpc_error


@pytest.mark.parametrize(
    "kind, code",
    [
        (ErrorKind.PARSE, -32700),
        (ErrorKind.INVALID_REQUEST, -32600),
        (ErrorKind.METHOD_NOT_FOUND, -32601),
        (ErrorKind.INVALID_PARAMS, -32602),
        (ErrorKind.INTERNAL, -32603),
        (ErrorKind.CONNECTION, -32001),
        (ErrorKind.QUERY, -32002),
        (ErrorKind.AUTH, -32003),
        (ErrorKind.RATE_LIMIT, -32004),
        (ErrorKind.VALIDATION, -32005),
    ],
)
def test_codes(kind, code):
    assert to_jsonrpc_code(kind) == code
    assert GatewayError(kind, "x").code == code


def test_unknown_exception_becomes_internal():
    err = to_jsonrpc_error(RuntimeError("boom"))
    assert err == {"code": -32603, "message": "boom"}


def test_rate_limited_carries_retry_after():
    err = to_jsonrpc_error(GatewayError.rate_limited(42))
    assert err["code"] == -32004
    assert err["data"] == {"retryAfter": 42}
    assert "42 seconds" in err["message"]


def test_data_omitted_when_absent():
    assert "data" not in to_jsonrpc_error(GatewayError.method_not_found("foo/bar"))
