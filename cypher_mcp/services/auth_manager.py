import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi.concurrency import run_in_threadpool

from cypher_mcp.db.repository import ConnectionRepository
from cypher_mcp.schemas.graph import DecryptedConnection
from cypher_mcp.services.session_manager import SessionManager
from cypher_mcp.utils.errors import ErrorKind, GatewayError


@dataclass
class AuthResult:
    authenticated: bool
    token: Optional[str] = None
    user_id: Optional[str] = None
    connection_id: Optional[str] = None
    connection: Optional[DecryptedConnection] = None
    # credentials exist but failed to decrypt
    connection_error: Optional[str] = None
    error: Optional[str] = None


def extract_token(headers: Mapping[str, str], query_params: Mapping[str, str]) -> Optional[str]:
    """
    Token sources, first match wins:
    - Authorization: Bearer <token> (or the raw token)
    - X-Session-Token
    - ?token=
    """
    auth_header = headers.get("authorization")
    if auth_header:
        scheme, _, rest = auth_header.strip().partition(" ")
        value = rest.strip() if scheme.lower() == "bearer" else auth_header.strip()
        if value:
            return value

    session_header = headers.get("x-session-token")
    if session_header and session_header.strip():
        return session_header.strip()

    token = query_params.get("token")
    if token and token.strip():
        return token.strip()
    return None


class AuthManager:
    """
    Resolves a bearer token to a user and their decrypted connection.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        repository: ConnectionRepository,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session_manager = session_manager
        self.repository = repository
        self.logger = logger or logging.getLogger(__name__)

    async def authenticate(self, headers: Mapping[str, str], query_params: Mapping[str, str]) -> AuthResult:
        token = extract_token(headers, query_params)
        if not token:
            return AuthResult(authenticated=False, error="No authentication token provided")

        validation = await self.session_manager.validate_session(token)
        if not validation.valid or validation.session is None:
            return AuthResult(authenticated=False, token=token, error=validation.error or "Invalid session")

        session = validation.session
        try:
            connection = await run_in_threadpool(self.repository.get_connection, session.connection_id)
        except GatewayError as e:
            if e.kind is not ErrorKind.CONNECTION:
                raise
            self.logger.error(
                "Connection credentials unreadable user=%s connection=%s", session.user_id, session.connection_id
            )
            return AuthResult(
                authenticated=True,
                token=token,
                user_id=session.user_id,
                connection_id=session.connection_id,
                connection_error=e.message,
            )

        if connection is None:
            self.logger.warning(
                "Connection not found for authenticated user=%s connection=%s",
                session.user_id,
                session.connection_id,
            )
            return AuthResult(authenticated=False, token=token, error="Connection configuration not found")

        self.logger.debug("Request authenticated user=%s connection=%s", session.user_id, session.connection_id)
        return AuthResult(
            authenticated=True,
            token=token,
            user_id=session.user_id,
            connection_id=session.connection_id,
            connection=connection,
        )

    async def require_auth(self, headers: Mapping[str, str], query_params: Mapping[str, str]) -> AuthResult:
        result = await self.authenticate(headers, query_params)
        if not result.authenticated:
            raise GatewayError(ErrorKind.AUTH, result.error or "Authentication required")
        if result.connection_error:
            raise GatewayError(ErrorKind.CONNECTION, result.connection_error)
        return result

    async def optional_auth(self, headers: Mapping[str, str], query_params: Mapping[str, str]) -> Optional[AuthResult]:
        result = await self.authenticate(headers, query_params)
        return result if result.authenticated else None
