import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cypher_mcp.config import SERVER_NAME, SERVER_VERSION, Settings, settings as default_settings
from cypher_mcp.controllers.gateway_controller import get_router
from cypher_mcp.db.database import build_engine, init_db
from cypher_mcp.db.repository import ConnectionRepository
from cypher_mcp.services.auth_manager import AuthManager
from cypher_mcp.services.connection_manager import ConnectionManager
from cypher_mcp.services.protocol_handler import ProtocolHandler
from cypher_mcp.services.rate_limiter import RateLimiter
from cypher_mcp.services.session_manager import SessionManager
from cypher_mcp.services.tool_executor import ToolExecutor
from cypher_mcp.services.tool_registry import ToolRegistry
from cypher_mcp.storage.cache import SchemaCache
from cypher_mcp.storage.kv import KeyValueStore, create_kv_store
from cypher_mcp.utils.sanitize import SanitizeOptions

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    kv: Optional[KeyValueStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    # Core components (created once per process)
    engine = build_engine(settings.database_url)
    if kv is None:
        kv = create_kv_store(settings.kv_url, clock)
    repository = ConnectionRepository(engine, settings.encryption_key)
    registry = ToolRegistry(settings.tools_path)
    connection_manager = ConnectionManager(settings.read_timeout, transport=transport)
    session_manager = SessionManager(kv, settings.session_ttl, clock)
    auth_manager = AuthManager(session_manager, repository)
    rate_limiter = RateLimiter(kv, clock)
    schema_cache = SchemaCache(kv, settings.schema_cache_ttl, clock)
    tool_executor = ToolExecutor(
        registry,
        connection_manager,
        schema_cache,
        SanitizeOptions(max_list_size=settings.max_list_size),
        settings.chars_per_token,
    )
    protocol_handler = ProtocolHandler(auth_manager, rate_limiter, tool_executor, registry, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- startup ---
        logger.info("Initializing database...")
        init_db(engine)
        logger.info(
            "Startup complete. environment=%s tools=%s read_only=%s",
            settings.environment,
            len(registry.all_tools()),
            settings.read_only,
        )
        try:
            yield
        finally:
            # --- shutdown ---
            logger.info("Shutting down connection manager...")
            await connection_manager.aclose()
            await kv.aclose()
            engine.dispose()

    app = FastAPI(
        title="Neo4j Cypher MCP Gateway",
        description=f"{SERVER_NAME}: MCP tools for querying Neo4j over its HTTP Query API.",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Session-Token"],
        expose_headers=[
            "X-Request-Id",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=86400,
    )

    # Routes
    app.include_router(
        get_router(protocol_handler, auth_manager, session_manager, repository, connection_manager, settings)
    )

    return app


app = create_app()
