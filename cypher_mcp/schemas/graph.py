from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ConnectionConfig(BaseModel):
    """Plaintext Neo4j credentials. Lives for one request only."""

    uri: str
    username: str
    password: str = Field(repr=False)
    database: str = "neo4j"


class DecryptedConnection(BaseModel):
    connection: ConnectionConfig
    read_only: bool = False
    name: str = "default"
    is_active: bool = True


class ConnectionMetadata(BaseModel):
    id: str
    name: str
    database: str
    read_only: bool
    is_active: bool
    created_at: str
    updated_at: str


class QueryResult(BaseModel):
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0


class WriteResult(BaseModel):
    counters: Dict[str, Any] = Field(default_factory=dict)
    summary: str = "No changes made"


class DatabaseInfo(BaseModel):
    name: str
    version: str
    edition: str


# --- schema ---------------------------------------------------------------


class PropertyInfo(BaseModel):
    name: str
    type: str
    indexed: Optional[bool] = None
    unique: Optional[bool] = None


class RelationshipSummary(BaseModel):
    type: str
    target_label: str
    count: Optional[int] = None


class LabelInfo(BaseModel):
    name: str
    count: Optional[int] = None
    properties: List[PropertyInfo] = Field(default_factory=list)
    outgoing_relationships: List[RelationshipSummary] = Field(default_factory=list)
    incoming_relationships: List[RelationshipSummary] = Field(default_factory=list)


class RelationshipTypeInfo(BaseModel):
    name: str
    count: Optional[int] = None
    properties: List[PropertyInfo] = Field(default_factory=list)
    start_labels: List[str] = Field(default_factory=list)
    end_labels: List[str] = Field(default_factory=list)


class ProcessedSchema(BaseModel):
    labels: List[LabelInfo] = Field(default_factory=list)
    relationship_types: List[RelationshipTypeInfo] = Field(default_factory=list)
    summary: str = ""
