import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env if present
load_dotenv()

MCP_PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "mcp-neo4j-cypher"
SERVER_VERSION = "1.0.0"

SESSION_PREFIX = "session:"
SCHEMA_CACHE_PREFIX = "schema:"
RATE_LIMIT_PREFIX = "rate:"

# Used only when ENCRYPTION_KEY is unset outside production.
_DEV_ENCRYPTION_KEY = "dev-only-encryption-key-change-me"


class Settings(BaseModel):
    database_url: str
    kv_url: str = "memory://"
    encryption_key: str
    tools_path: str
    environment: str = "production"
    log_level: str = "INFO"

    read_timeout: float = 30.0
    token_limit: int = 10000
    schema_sample_size: int = 1000
    session_ttl: int = 315360000  # 10 years, effectively permanent
    schema_cache_ttl: int = 300
    rate_limit_requests: int = 100
    rate_limit_window: int = 60
    max_list_size: int = 128
    chars_per_token: int = 4
    read_only: bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    class Config:
        arbitrary_types_allowed = True


def _default_tools_path() -> str:
    here = Path(__file__).resolve().parent
    return str(here / "tools.yaml")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_origins(value: str) -> List[str]:
    return [o.strip() for o in value.split(",") if o.strip()]


def load_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "production")
    encryption_key = os.getenv("ENCRYPTION_KEY")
    if not encryption_key:
        if environment == "production":
            raise RuntimeError("ENCRYPTION_KEY must be set in production")
        encryption_key = _DEV_ENCRYPTION_KEY

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./gateway.db"),
        kv_url=os.getenv("KV_URL", "memory://"),
        encryption_key=encryption_key,
        tools_path=os.getenv("TOOLS_PATH", _default_tools_path()),
        environment=environment,
        log_level=os.getenv("LOG_LEVEL", "DEBUG" if environment == "development" else "INFO"),
        read_timeout=float(os.getenv("DEFAULT_READ_TIMEOUT", "30")),
        token_limit=int(os.getenv("DEFAULT_TOKEN_LIMIT", "10000")),
        schema_sample_size=int(os.getenv("DEFAULT_SCHEMA_SAMPLE", "1000")),
        session_ttl=int(os.getenv("SESSION_TTL", "315360000")),
        schema_cache_ttl=int(os.getenv("SCHEMA_CACHE_TTL", "300")),
        rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "100")),
        rate_limit_window=int(os.getenv("RATE_LIMIT_WINDOW", "60")),
        max_list_size=int(os.getenv("MAX_LIST_SIZE", "128")),
        chars_per_token=int(os.getenv("CHARS_PER_TOKEN", "4")),
        read_only=_parse_bool(os.getenv("READ_ONLY", "false")),
        allowed_origins=_parse_origins(os.getenv("ALLOWED_ORIGINS", "*")),
    )


settings = load_settings()
