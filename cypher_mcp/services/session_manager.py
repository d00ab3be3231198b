import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from cypher_mcp.config import SESSION_PREFIX
from cypher_mcp.storage.kv import KeyValueStore
from cypher_mcp.utils.crypto import generate_url_safe_token

logger = logging.getLogger(__name__)


@dataclass
class SessionData:
    user_id: str
    connection_id: str
    # epoch milliseconds
    created_at: int
    expires_at: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "userId": self.user_id,
                "connectionId": self.connection_id,
                "createdAt": self.created_at,
                "expiresAt": self.expires_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionData":
        data = json.loads(raw)
        return cls(
            user_id=str(data["userId"]),
            connection_id=str(data["connectionId"]),
            created_at=int(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
        )


@dataclass
class SessionValidationResult:
    valid: bool
    session: Optional[SessionData] = None
    error: Optional[str] = None


@dataclass
class SessionRecord:
    token: str
    session: SessionData

    def as_dict(self) -> dict:
        return {"token": self.token, **asdict(self.session)}


class SessionManager:
    """
    Token-keyed sessions in the key-value store.

    Nothing is cached in-process: every lookup goes to the store, and an
    entry is only trusted if the store still returns it *and* its own
    expires_at lies in the future.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        default_ttl: int,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kv = kv
        self.default_ttl = default_ttl
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _key(token: str) -> str:
        return f"{SESSION_PREFIX}{token}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def create_session(self, user_id: str, connection_id: str, ttl: int | None = None) -> str:
        ttl = ttl or self.default_ttl
        token = generate_url_safe_token(32)
        now = self._now_ms()
        session = SessionData(
            user_id=user_id,
            connection_id=connection_id,
            created_at=now,
            expires_at=now + ttl * 1000,
        )
        await self.kv.put(self._key(token), session.to_json(), ttl)
        self.logger.info("Session created user=%s connection=%s ttl=%s", user_id, connection_id, ttl)
        return token

    async def get_session(self, token: str) -> Optional[SessionData]:
        if not token:
            return None

        key = self._key(token)
        raw = await self.kv.get(key)
        if not raw:
            return None

        try:
            session = SessionData.from_json(raw)
        except (ValueError, KeyError, TypeError):
            self.logger.warning("Dropping unparsable session entry")
            await self.kv.delete(key)
            return None

        # The store's TTL is eventually consistent; check our own timestamp too.
        if session.expires_at < self._now_ms():
            await self.kv.delete(key)
            self.logger.debug("Session expired user=%s", session.user_id)
            return None

        return session

    async def validate_session(self, token: str) -> SessionValidationResult:
        if not token:
            return SessionValidationResult(valid=False, error="No session token provided")
        session = await self.get_session(token)
        if session is None:
            return SessionValidationResult(valid=False, error="Invalid or expired session")
        return SessionValidationResult(valid=True, session=session)

    async def refresh_session(self, token: str, ttl: int | None = None) -> bool:
        ttl = ttl or self.default_ttl
        session = await self.get_session(token)
        if session is None:
            return False
        session.expires_at = self._now_ms() + ttl * 1000
        await self.kv.put(self._key(token), session.to_json(), ttl)
        self.logger.debug("Session refreshed user=%s", session.user_id)
        return True

    async def update_session_connection(self, token: str, connection_id: str) -> bool:
        session = await self.get_session(token)
        if session is None:
            return False
        session.connection_id = connection_id
        remaining = max(1, (session.expires_at - self._now_ms()) // 1000)
        await self.kv.put(self._key(token), session.to_json(), remaining)
        self.logger.debug("Session connection updated user=%s connection=%s", session.user_id, connection_id)
        return True

    async def delete_session(self, token: str) -> None:
        await self.kv.delete(self._key(token))
        self.logger.info("Session deleted")

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        """
        Walk every session key and return the live ones owned by user_id,
        newest first. Expensive on large stores.
        """
        records: List[SessionRecord] = []
        cursor: Optional[str] = None
        while True:
            page = await self.kv.list(SESSION_PREFIX, cursor)
            for key in page.keys:
                token = key[len(SESSION_PREFIX):]
                session = await self.get_session(token)
                if session is not None and session.user_id == user_id:
                    records.append(SessionRecord(token=token, session=session))
            cursor = page.cursor
            if cursor is None:
                break
        records.sort(key=lambda r: r.session.created_at, reverse=True)
        return records

    async def delete_user_sessions(self, user_id: str) -> int:
        records = await self.list_user_sessions(user_id)
        for record in records:
            await self.kv.delete(self._key(record.token))
        self.logger.info("User sessions deleted user=%s count=%s", user_id, len(records))
        return len(records)
