from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from cypher_mcp.schemas.graph import ConnectionConfig, DatabaseInfo, QueryResult, WriteResult
from cypher_mcp.security.query_validator import is_write_query
from cypher_mcp.utils.errors import ErrorKind, GatewayError

logger = logging.getLogger(__name__)

_SCHEME_MAP = (
    ("neo4j+s://", "https://"),
    ("neo4j+ssc://", "https://"),
    ("neo4j://", "http://"),
    ("bolt+s://", "https://"),
    ("bolt://", "http://"),
)

_COUNTER_LABELS = (
    ("nodesCreated", "node(s) created"),
    ("nodesDeleted", "node(s) deleted"),
    ("relationshipsCreated", "relationship(s) created"),
    ("relationshipsDeleted", "relationship(s) deleted"),
    ("propertiesSet", "property(ies) set"),
    ("labelsAdded", "label(s) added"),
    ("labelsRemoved", "label(s) removed"),
    ("indexesAdded", "index(es) added"),
    ("indexesRemoved", "index(es) removed"),
    ("constraintsAdded", "constraint(s) added"),
    ("constraintsRemoved", "constraint(s) removed"),
)


def to_http_url(uri: str) -> str:
    """
    Map a driver-style Neo4j URI to the HTTP base URL of the Query API.

    neo4j+s://xxx.databases.neo4j.io -> https://xxx.databases.neo4j.io
    bolt://localhost:7687            -> http://localhost:7474
    """
    url = uri.strip()
    for prefix, replacement in _SCHEME_MAP:
        if url.startswith(prefix):
            url = replacement + url[len(prefix):]
            break
    else:
        if not url.startswith(("http://", "https://")):
            url = "https://" + url

    url = url.rstrip("/")
    return url.replace(":7687", ":7474")


class GraphClient:
    """
    One logical Neo4j connection on top of the shared AsyncClient.
    Cheap to construct; build one per request.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: ConnectionConfig,
        default_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._http = http
        self.base_url = to_http_url(config.uri)
        self.database = config.database
        self.default_timeout = default_timeout
        self._auth = httpx.BasicAuth(config.username, config.password)
        self.logger = logger or logging.getLogger(__name__)

    @property
    def query_url(self) -> str:
        return f"{self.base_url}/db/{self.database}/query/v2"

    async def query(
        self,
        statement: str,
        parameters: Optional[Dict[str, Any]] = None,
        *,
        timeout: float | None = None,
        include_counters: bool = False,
    ) -> Dict[str, Any]:
        timeout = timeout or self.default_timeout
        body = {
            "statement": statement,
            "parameters": parameters or {},
            "includeCounters": include_counters,
        }
        self.logger.debug("Neo4j query db=%s statement=%r has_params=%s", self.database, statement[:100], bool(parameters))

        try:
            resp = await self._http.post(
                self.query_url,
                json=body,
                auth=self._auth,
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            self.logger.warning("Neo4j query timed out after %ss", timeout)
            raise GatewayError(ErrorKind.QUERY, f"Query timed out after {timeout:g} seconds") from e
        except httpx.RequestError as e:
            self.logger.warning("Neo4j request failed: %s", type(e).__name__)
            raise GatewayError(
                ErrorKind.CONNECTION,
                "Failed to connect to Neo4j. Check your connection settings.",
            ) from e

        if resp.status_code >= 400:
            self.logger.error("Neo4j HTTP error status=%s body=%s", resp.status_code, resp.text[:500])
            if resp.status_code == 401:
                raise GatewayError(ErrorKind.CONNECTION, "Authentication failed. Check your Neo4j credentials.")
            if resp.status_code == 403:
                raise GatewayError(ErrorKind.CONNECTION, "Access denied. Check your database permissions.")
            if resp.status_code == 404:
                raise GatewayError(
                    ErrorKind.CONNECTION,
                    f'Database "{self.database}" not found or HTTP API not available.',
                )
            raise GatewayError(ErrorKind.CONNECTION, f"Neo4j HTTP error: {resp.status_code} {resp.reason_phrase}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise GatewayError(ErrorKind.CONNECTION, "Neo4j returned invalid JSON") from e

        errors = payload.get("errors") or []
        if errors:
            first = errors[0] or {}
            self.logger.error("Neo4j query error code=%s message=%s", first.get("code"), first.get("message"))
            raise GatewayError(
                ErrorKind.QUERY,
                first.get("message") or "Query failed",
                data={"neo4jCode": first.get("code")},
            )

        return payload

    async def test_connection(self) -> bool:
        try:
            await self.query("RETURN 1 AS test", timeout=10)
            return True
        except GatewayError as e:
            self.logger.error("Connection test failed: %s", e.message)
            return False

    async def get_database_info(self) -> Optional[DatabaseInfo]:
        try:
            payload = await self.query(
                "CALL dbms.components() YIELD name, versions, edition "
                "RETURN name, versions[0] AS version, edition",
                timeout=10,
            )
        except GatewayError:
            return None

        values = (payload.get("data") or {}).get("values") or []
        if not values:
            return None
        row = values[0] + [None] * 3
        return DatabaseInfo(
            name=str(row[0] or "Neo4j"),
            version=str(row[1] or "unknown"),
            edition=str(row[2] or "unknown"),
        )


class ConnectionManager:
    """
    Owns the process-wide httpx.AsyncClient and hands out GraphClients.
    """

    def __init__(self, default_timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.default_timeout = default_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.default_timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    def client_for(self, config: ConnectionConfig, timeout: float | None = None) -> GraphClient:
        return GraphClient(self._http(), config, default_timeout=timeout or self.default_timeout)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


# --- result shaping ---------------------------------------------------------


def _is_node(value: Dict[str, Any]) -> bool:
    return ("_element_id" in value and "_labels" in value) or (
        "elementId" in value and "labels" in value and "properties" in value
    )


def _is_relationship(value: Dict[str, Any]) -> bool:
    return ("_element_id" in value and "_type" in value and "_start_node_element_id" in value) or (
        "elementId" in value and "type" in value and "startNodeElementId" in value
    )


def transform_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, list):
        return [transform_value(v) for v in value]
    if isinstance(value, dict):
        if _is_node(value):
            if "properties" in value and "labels" in value:
                out = {"_labels": value["labels"]}
                out.update({k: transform_value(v) for k, v in (value.get("properties") or {}).items()})
                return out
            out = {"_labels": value["_labels"]}
            out.update({k: transform_value(v) for k, v in value.items() if not k.startswith("_")})
            return out
        if _is_relationship(value):
            if "properties" in value and "type" in value:
                out = {"_type": value["type"]}
                out.update({k: transform_value(v) for k, v in (value.get("properties") or {}).items()})
                return out
            out = {"_type": value["_type"]}
            out.update({k: transform_value(v) for k, v in value.items() if not k.startswith("_")})
            return out
        return {k: transform_value(v) for k, v in value.items()}
    return value


def transform_query_result(data: Optional[Dict[str, Any]]) -> QueryResult:
    if not data:
        return QueryResult()

    columns: List[str] = list(data.get("fields") or [])
    rows: List[Dict[str, Any]] = []
    for values in data.get("values") or []:
        row: Dict[str, Any] = {}
        for i, column in enumerate(columns):
            row[column] = transform_value(values[i]) if i < len(values) else None
        rows.append(row)
    return QueryResult(columns=columns, rows=rows, row_count=len(rows))


def write_summary(counters: Dict[str, Any]) -> str:
    parts = [f"{counters[key]} {label}" for key, label in _COUNTER_LABELS if (counters.get(key) or 0) > 0]
    return ", ".join(parts) if parts else "No changes made"


async def execute_read_query(
    client: GraphClient,
    statement: str,
    parameters: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
) -> QueryResult:
    if is_write_query(statement):
        raise GatewayError(
            ErrorKind.VALIDATION,
            "This query contains write operations. Use write_neo4j_cypher for "
            "CREATE, MERGE, DELETE, SET, or REMOVE operations.",
        )
    logger.info("Executing read query length=%s has_params=%s", len(statement), bool(parameters))
    payload = await client.query(statement, parameters, timeout=timeout, include_counters=False)
    return transform_query_result(payload.get("data"))


async def execute_write_query(
    client: GraphClient,
    statement: str,
    parameters: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
) -> WriteResult:
    logger.info("Executing write query length=%s has_params=%s", len(statement), bool(parameters))
    payload = await client.query(statement, parameters, timeout=timeout, include_counters=True)
    counters = payload.get("counters") or {}
    return WriteResult(counters=counters, summary=write_summary(counters))
