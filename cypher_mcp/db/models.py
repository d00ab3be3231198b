from datetime import datetime, timezone
from typing import Optional

from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """
    A registered caller. Ids look like usr_<token>.
    """

    __tablename__ = "users"

    id: str = Field(primary_key=True, index=True)
    email: Optional[str] = Field(default=None, unique=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Connection(SQLModel, table=True):
    """
    Neo4j connection settings for one user.

    uri, user and password are stored as AES-GCM `iv:ciphertext` strings
    and are only ever decrypted for the duration of a request.
    """

    __tablename__ = "connections"

    id: str = Field(primary_key=True, index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    name: str = Field(default="default")

    neo4j_uri_encrypted: str
    neo4j_user_encrypted: str
    neo4j_password_encrypted: str
    neo4j_database: str = Field(default="neo4j")

    read_only: bool = Field(default=False)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
