import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from cypher_mcp.config import SERVER_NAME, SERVER_VERSION, Settings
from cypher_mcp.db.repository import ConnectionRepository
from cypher_mcp.schemas.api import (
    RevokeRequest,
    SetupRequest,
    SetupResponse,
    StatusResponse,
    TokenInfo,
    TokenListResponse,
    first_error_message,
)
from cypher_mcp.schemas.graph import ConnectionConfig
from cypher_mcp.security import audit
from cypher_mcp.services.auth_manager import AuthManager, AuthResult, extract_token
from cypher_mcp.services.connection_manager import ConnectionManager
from cypher_mcp.services.protocol_handler import ProtocolHandler
from cypher_mcp.services.session_manager import SessionManager
from cypher_mcp.utils.crypto import secure_compare

logger = logging.getLogger(__name__)

# Connection tests at setup time use a shorter timeout than queries.
SETUP_TEST_TIMEOUT = 15.0


def mask_token(token: str) -> str:
    if len(token) <= 12:
        return token[:4] + "***"
    return token[:8] + "..." + token[-4:]


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON in request body")


def get_router(
    protocol_handler: ProtocolHandler,
    auth_manager: AuthManager,
    session_manager: SessionManager,
    repository: ConnectionRepository,
    connection_manager: ConnectionManager,
    settings: Settings,
) -> APIRouter:
    router = APIRouter()

    async def _require_user(request: Request) -> AuthResult:
        result = await auth_manager.authenticate(request.headers, request.query_params)
        if not result.authenticated:
            audit.log_auth_failure(result.error or "authentication required", client_ip=client_ip(request))
            raise HTTPException(status_code=401, detail=result.error or "Authentication required")
        return result

    async def _mcp(request: Request) -> Response:
        raw = await request.body()
        resp = await protocol_handler.handle(raw, request.headers, request.query_params, client_ip(request))
        if resp.body is None:
            return Response(status_code=204, headers=resp.headers)
        return JSONResponse(content=resp.body, headers=resp.headers)

    @router.post("/mcp")
    async def mcp_endpoint(request: Request) -> Response:
        """
        MCP HTTP endpoint (JSON-RPC 2.0). Faults are envelopes with HTTP 200.
        """
        return await _mcp(request)

    @router.post("/sse")
    async def sse_endpoint(request: Request) -> Response:
        # Same protocol, kept for clients that post to the legacy path.
        return await _mcp(request)

    @router.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.post("/api/setup")
    async def setup(request: Request) -> JSONResponse:
        """
        Test the supplied Neo4j credentials, store them encrypted and issue
        a session token for the new user.
        """
        ip = client_ip(request)
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error(400, "Invalid request body")

        try:
            payload = SetupRequest.model_validate(body)
        except ValidationError as e:
            message = first_error_message(e)
            audit.log_setup_failure(message, client_ip=ip)
            return _error(400, message)

        audit.log_setup_attempt(payload.uri, client_ip=ip)
        logger.info(
            "Setup request uri=%s... user=%s database=%s read_only=%s",
            payload.uri[:30],
            payload.username,
            payload.database,
            payload.read_only,
        )

        config = ConnectionConfig(
            uri=payload.uri,
            username=payload.username,
            password=payload.password,
            database=payload.database,
        )
        client = connection_manager.client_for(config, SETUP_TEST_TIMEOUT)
        if not await client.test_connection():
            logger.warning("Neo4j connection test failed uri=%s...", payload.uri[:30])
            audit.log_setup_failure("connection test failed", client_ip=ip)
            return _error(400, "Could not connect to Neo4j. Please check your credentials.")

        try:
            user = await run_in_threadpool(repository.get_or_create_user, payload.email)
            connection_id = await run_in_threadpool(
                repository.create_connection,
                user_id=user.id,
                uri=payload.uri,
                username=payload.username,
                password=payload.password,
                database=payload.database,
                read_only=payload.read_only,
            )
            token = await session_manager.create_session(user.id, connection_id, settings.session_ttl)
        except Exception:
            logger.exception("Failed to persist setup")
            audit.log_setup_failure("storage error", client_ip=ip)
            return _error(500, "Failed to save connection")

        audit.log_setup_success(user.id, payload.uri, client_ip=ip)
        audit.log_token_created(user.id, token, connection_id)

        response = SetupResponse(
            success=True,
            token=token,
            connection_id=connection_id,
            message="Connection configured successfully",
        )
        return JSONResponse(content=response.model_dump(by_alias=True, exclude_none=True))

    @router.get("/api/status")
    async def status(request: Request) -> Dict[str, Any]:
        token = extract_token(request.headers, request.query_params)
        if not token:
            resp = StatusResponse(connected=False, message="No authentication token provided")
            return resp.model_dump(by_alias=True, exclude_none=True)

        validation = await session_manager.validate_session(token)
        if not validation.valid or validation.session is None:
            resp = StatusResponse(connected=False, message="Invalid or expired session")
            return resp.model_dump(by_alias=True, exclude_none=True)

        resp = StatusResponse(
            connected=True,
            user_id=validation.session.user_id,
            connection_id=validation.session.connection_id,
        )
        return resp.model_dump(by_alias=True, exclude_none=True)

    @router.get("/api/tokens")
    async def list_tokens(request: Request) -> Dict[str, Any]:
        auth = await _require_user(request)
        records = await session_manager.list_user_sessions(auth.user_id)

        tokens = []
        for record in records:
            current = secure_compare(record.token, auth.token or "")
            tokens.append(
                TokenInfo(
                    token=mask_token(record.token),
                    full_token=record.token if current else None,
                    connection_id=record.session.connection_id,
                    created_at=_iso(record.session.created_at),
                    expires_at=_iso(record.session.expires_at),
                    current=current,
                )
            )

        logger.info("Listed tokens user=%s count=%s", auth.user_id, len(tokens))
        audit.log_token_list_accessed(auth.user_id, len(tokens))
        return TokenListResponse(tokens=tokens, total=len(tokens)).model_dump(by_alias=True, exclude_none=True)

    @router.post("/api/tokens/revoke")
    async def revoke_token(request: Request) -> JSONResponse:
        auth = await _require_user(request)
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error(400, "Invalid request body")

        try:
            target = RevokeRequest.model_validate(body).token
        except ValidationError:
            target = None
        if not target:
            return _error(400, "Token is required")
        if secure_compare(target, auth.token or ""):
            return _error(400, "Cannot revoke the current token. Use a different token to revoke this one.")

        session = await session_manager.get_session(target)
        if session is None:
            return _error(404, "Token not found or already revoked")

        if session.user_id != auth.user_id:
            logger.warning("Attempt to revoke another user's token user=%s", auth.user_id)
            audit.log_token_revoke_attempt_failed(
                auth.user_id, target, "Attempted to revoke token belonging to another user"
            )
            return _error(403, "Unauthorized to revoke this token")

        await session_manager.delete_session(target)
        logger.info("Token revoked user=%s token=%s", auth.user_id, mask_token(target))
        audit.log_token_revoked(auth.user_id, target)
        return JSONResponse(content={"success": True, "message": "Token revoked successfully"})

    return router
