from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

VALID_URI_PREFIXES = (
    "neo4j+s://",
    "neo4j+ssc://",
    "neo4j://",
    "bolt+s://",
    "bolt://",
    "https://",
    "http://",
)


class SetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uri: str = Field(..., description="Neo4j URI, e.g. neo4j+s://xxx.databases.neo4j.io")
    username: str
    password: str = Field(..., repr=False)
    database: str = "neo4j"
    read_only: bool = Field(False, alias="readOnly")
    email: Optional[str] = None

    @field_validator("uri")
    @classmethod
    def _check_uri(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Neo4j URI is required")
        if not value.startswith(VALID_URI_PREFIXES):
            raise ValueError("Invalid Neo4j URI format. Expected: neo4j+s://xxx.databases.neo4j.io")
        return value

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Username is required")
        return value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value

    @field_validator("database", mode="before")
    @classmethod
    def _default_database(cls, value: Optional[str]) -> str:
        if not isinstance(value, str) or not value.strip():
            return "neo4j"
        return value.strip()

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class SetupResponse(BaseModel):
    success: bool
    token: Optional[str] = None
    connection_id: Optional[str] = Field(None, serialization_alias="connectionId")
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    message: str


class StatusResponse(BaseModel):
    connected: bool
    user_id: Optional[str] = Field(None, serialization_alias="userId")
    connection_id: Optional[str] = Field(None, serialization_alias="connectionId")
    message: Optional[str] = None


class TokenInfo(BaseModel):
    token: str
    # only present for the token that made the request
    full_token: Optional[str] = Field(None, serialization_alias="fullToken")
    connection_id: str = Field(..., serialization_alias="connectionId")
    created_at: str = Field(..., serialization_alias="createdAt")
    expires_at: str = Field(..., serialization_alias="expiresAt")
    current: bool


class TokenListResponse(BaseModel):
    success: bool = True
    tokens: List[TokenInfo]
    total: int


class RevokeRequest(BaseModel):
    token: Optional[str] = None


_FIELD_LABELS = {"uri": "Neo4j URI", "username": "Username", "password": "Password"}


def first_error_message(exc: ValidationError) -> str:
    """Readable message for the first failing field of a request model."""
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    if first.get("type") == "missing":
        field = first["loc"][-1] if first.get("loc") else "field"
        return f"{_FIELD_LABELS.get(field, field)} is required"
    message = str(first.get("msg", "Invalid request body"))
    return message.removeprefix("Value error, ")
