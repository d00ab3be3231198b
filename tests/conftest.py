"""
Pytest configuration and shared fixtures for the gateway tests.
"""
import json
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

# Must be set before cypher_mcp.config is imported anywhere.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("KV_URL", "memory://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")

import httpx
import pytest

from cypher_mcp.config import Settings, load_settings
from cypher_mcp.db.database import build_engine, init_db
from cypher_mcp.db.repository import ConnectionRepository
from cypher_mcp.schemas.graph import ConnectionConfig
from cypher_mcp.storage.kv import MemoryKeyValueStore

TEST_KEY = "test-encryption-key"


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNeo4j:
    """
    Stand-in for the Neo4j Query API behind an httpx.MockTransport.

    Rules are (substring, responder) pairs checked in order against the
    posted statement; a responder returns an httpx.Response. Unmatched
    statements get an empty result.
    """

    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.rules: List[Tuple[str, Callable[[Dict[str, Any]], httpx.Response]]] = []

    def on(self, fragment: str, payload: Optional[Dict[str, Any]] = None, status: int = 200) -> None:
        body = payload if payload is not None else {"data": {"fields": [], "values": []}}
        self.rules.append((fragment, lambda _req: httpx.Response(status, json=body)))

    def on_call(self, fragment: str, responder: Callable[[Dict[str, Any]], httpx.Response]) -> None:
        self.rules.append((fragment, responder))

    def statements(self) -> List[str]:
        return [r["body"]["statement"] for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append({"url": str(request.url), "headers": dict(request.headers), "body": body})
        for fragment, responder in self.rules:
            if fragment in body["statement"]:
                return responder(body)
        return httpx.Response(200, json={"data": {"fields": [], "values": []}})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def rows(fields: List[str], values: List[List[Any]]) -> Dict[str, Any]:
    return {"data": {"fields": fields, "values": values}}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock)


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def repository(engine) -> ConnectionRepository:
    return ConnectionRepository(engine, TEST_KEY)


@pytest.fixture
def settings() -> Settings:
    return load_settings().model_copy(
        update={"database_url": "sqlite://", "kv_url": "memory://", "encryption_key": TEST_KEY, "read_only": False}
    )


@pytest.fixture
def neo4j() -> FakeNeo4j:
    neo = FakeNeo4j()
    neo.on("RETURN 1 AS test", rows(["test"], [[1]]))
    return neo


@pytest.fixture
def connection_config() -> ConnectionConfig:
    return ConnectionConfig(
        uri="neo4j+s://abc123.databases.neo4j.io",
        username="neo4j",
        password="s3cret",
        database="neo4j",
    )
