import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import select

from cypher_mcp.db.database import get_db_session
from cypher_mcp.db.models import Connection, User
from cypher_mcp.schemas.graph import ConnectionConfig, ConnectionMetadata, DecryptedConnection
from cypher_mcp.utils.crypto import DecryptionError, decrypt_from_string, encrypt_to_string, generate_url_safe_token
from cypher_mcp.utils.errors import ErrorKind, GatewayError

logger = logging.getLogger(__name__)


class ConnectionRepository:
    """
    Users and their encrypted Neo4j connections.

    Credentials are encrypted field by field on the way in and decrypted on
    the way out; a record that no longer decrypts raises a connection
    fault rather than yielding partial data.
    """

    def __init__(self, engine: Engine, encryption_key: str) -> None:
        self.engine = engine
        self._key = encryption_key

    # --- users ---

    def create_user(self, email: Optional[str] = None) -> User:
        user = User(id=f"usr_{generate_url_safe_token(16)}", email=email)
        with get_db_session(self.engine) as session:
            session.add(user)
            session.commit()
            session.refresh(user)
        logger.info("User created id=%s", user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with get_db_session(self.engine) as session:
            return session.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with get_db_session(self.engine) as session:
            return session.exec(select(User).where(User.email == email)).first()

    def get_or_create_user(self, email: Optional[str] = None) -> User:
        if email:
            existing = self.get_user_by_email(email)
            if existing is not None:
                return existing
        return self.create_user(email)

    # --- connections ---

    def create_connection(
        self,
        user_id: str,
        uri: str,
        username: str,
        password: str,
        database: str = "neo4j",
        read_only: bool = False,
        name: str = "default",
    ) -> str:
        record = Connection(
            id=f"conn_{generate_url_safe_token(16)}",
            user_id=user_id,
            name=name,
            neo4j_uri_encrypted=encrypt_to_string(uri, self._key),
            neo4j_user_encrypted=encrypt_to_string(username, self._key),
            neo4j_password_encrypted=encrypt_to_string(password, self._key),
            neo4j_database=database,
            read_only=read_only,
        )
        connection_id = record.id
        with get_db_session(self.engine) as session:
            session.add(record)
            session.commit()
        logger.info("Connection created id=%s user=%s", connection_id, user_id)
        return connection_id

    def _decrypt(self, record: Connection) -> DecryptedConnection:
        try:
            config = ConnectionConfig(
                uri=decrypt_from_string(record.neo4j_uri_encrypted, self._key),
                username=decrypt_from_string(record.neo4j_user_encrypted, self._key),
                password=decrypt_from_string(record.neo4j_password_encrypted, self._key),
                database=record.neo4j_database,
            )
        except (DecryptionError, ValueError) as e:
            logger.error("Failed to decrypt connection id=%s: %s", record.id, e)
            raise GatewayError(ErrorKind.CONNECTION, "Failed to decrypt connection credentials") from e
        return DecryptedConnection(
            connection=config,
            read_only=record.read_only,
            name=record.name,
            is_active=record.is_active,
        )

    def get_connection(self, connection_id: str) -> Optional[DecryptedConnection]:
        with get_db_session(self.engine) as session:
            record = session.get(Connection, connection_id)
        if record is None:
            return None
        return self._decrypt(record)

    def get_active_connection_for_user(self, user_id: str) -> Optional[Tuple[str, DecryptedConnection]]:
        with get_db_session(self.engine) as session:
            record = session.exec(
                select(Connection).where(Connection.user_id == user_id, Connection.is_active == True)  # noqa: E712
            ).first()
        if record is None:
            return None
        return record.id, self._decrypt(record)

    def list_connections(self, user_id: str) -> List[ConnectionMetadata]:
        with get_db_session(self.engine) as session:
            records = session.exec(
                select(Connection).where(Connection.user_id == user_id).order_by(Connection.created_at.desc())
            ).all()
        return [connection_metadata(r) for r in records]

    def update_connection(self, connection_id: str, **changes) -> bool:
        encrypted = {"uri": "neo4j_uri_encrypted", "username": "neo4j_user_encrypted", "password": "neo4j_password_encrypted"}
        plain = {"name": "name", "database": "neo4j_database", "read_only": "read_only", "is_active": "is_active"}

        with get_db_session(self.engine) as session:
            record = session.get(Connection, connection_id)
            if record is None:
                return False
            for field, value in changes.items():
                if value is None:
                    continue
                if field in encrypted:
                    setattr(record, encrypted[field], encrypt_to_string(value, self._key))
                elif field in plain:
                    setattr(record, plain[field], value)
                else:
                    raise ValueError(f"Unknown connection field '{field}'")
            record.updated_at = datetime.now(timezone.utc)
            session.add(record)
            session.commit()
        logger.info("Connection updated id=%s", connection_id)
        return True

    def set_active_connection(self, connection_id: str, user_id: str) -> bool:
        with get_db_session(self.engine) as session:
            records = session.exec(select(Connection).where(Connection.user_id == user_id)).all()
            if not any(r.id == connection_id for r in records):
                return False
            for r in records:
                r.is_active = r.id == connection_id
                session.add(r)
            session.commit()
        logger.info("Active connection changed id=%s user=%s", connection_id, user_id)
        return True

    def delete_connection(self, connection_id: str) -> bool:
        with get_db_session(self.engine) as session:
            record = session.get(Connection, connection_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
        logger.info("Connection deleted id=%s", connection_id)
        return True

    def connection_belongs_to_user(self, connection_id: str, user_id: str) -> bool:
        with get_db_session(self.engine) as session:
            record = session.get(Connection, connection_id)
        return record is not None and record.user_id == user_id


def connection_metadata(record: Connection) -> ConnectionMetadata:
    return ConnectionMetadata(
        id=record.id,
        name=record.name,
        database=record.neo4j_database,
        read_only=record.read_only,
        is_active=record.is_active,
        created_at=record.created_at.isoformat(),
        updated_at=record.updated_at.isoformat(),
    )
