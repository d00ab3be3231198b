import logging
from typing import Any, Dict, List, Optional

from cypher_mcp.schemas.graph import (
    LabelInfo,
    ProcessedSchema,
    PropertyInfo,
    RelationshipSummary,
    RelationshipTypeInfo,
)
from cypher_mcp.services.connection_manager import GraphClient
from cypher_mcp.utils.errors import GatewayError

logger = logging.getLogger(__name__)

APOC_TIMEOUT = 60
MANUAL_TIMEOUT = 30

APOC_SCHEMA_QUERY = "CALL apoc.meta.schema({sample: $sample})"

LABEL_PROPERTIES_QUERY = """
MATCH (n:`{label}`)
WITH n LIMIT $limit
UNWIND keys(n) AS key
WITH key, n[key] AS value
RETURN DISTINCT key,
       CASE
         WHEN value IS NULL THEN 'NULL'
         WHEN value IS :: BOOLEAN THEN 'Boolean'
         WHEN value IS :: INTEGER THEN 'Integer'
         WHEN value IS :: FLOAT THEN 'Float'
         WHEN value IS :: STRING THEN 'String'
         WHEN value IS :: DATE THEN 'Date'
         WHEN value IS :: DATETIME THEN 'DateTime'
         WHEN value IS :: LIST<ANY> THEN 'List'
         ELSE 'Unknown'
       END AS type
"""

LABEL_RELATIONSHIPS_QUERY = """
MATCH (n:`{label}`)-[r]->(m)
WITH type(r) AS relType, labels(m) AS targetLabels
LIMIT $limit
UNWIND targetLabels AS target
RETURN DISTINCT relType, target
"""


class SchemaExtractionError(Exception):
    pass


def _escape_label(name: str) -> str:
    return name.replace("`", "``")


def _values(payload: Dict[str, Any]) -> List[List[Any]]:
    return (payload.get("data") or {}).get("values") or []


def _property(name: str, info: Dict[str, Any]) -> PropertyInfo:
    raw_type = info.get("type", "Unknown")
    prop_type = " | ".join(str(t) for t in raw_type) if isinstance(raw_type, list) else str(raw_type)
    return PropertyInfo(name=name, type=prop_type, indexed=info.get("indexed"), unique=info.get("unique"))


def process_apoc_schema(raw: Dict[str, Any]) -> ProcessedSchema:
    labels: List[LabelInfo] = []
    rel_types: List[RelationshipTypeInfo] = []

    for name, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        properties = [_property(p, info or {}) for p, info in (entry.get("properties") or {}).items()]

        if entry.get("type") == "node":
            label = LabelInfo(name=name, count=entry.get("count"), properties=properties)
            for rel_type, rel in (entry.get("relationships") or {}).items():
                direction = rel.get("direction") or "out"
                for target in rel.get("labels") or []:
                    summary = RelationshipSummary(type=rel_type, target_label=target, count=rel.get("count"))
                    if direction in ("out", "both"):
                        label.outgoing_relationships.append(summary)
                    if direction in ("in", "both"):
                        label.incoming_relationships.append(summary.model_copy())
            labels.append(label)
        elif entry.get("type") == "relationship":
            rel_types.append(RelationshipTypeInfo(name=name, count=entry.get("count"), properties=properties))

    return finalize_schema(labels, rel_types)


def finalize_schema(labels: List[LabelInfo], rel_types: List[RelationshipTypeInfo]) -> ProcessedSchema:
    """
    Derive endpoint label sets and incoming summaries from the outgoing
    relationships, then attach the summary text.
    """
    by_label = {label.name: label for label in labels}
    by_type = {rt.name: rt for rt in rel_types}

    for label in labels:
        for rel in label.outgoing_relationships:
            rt = by_type.get(rel.type)
            if rt is None:
                rt = RelationshipTypeInfo(name=rel.type)
                by_type[rel.type] = rt
                rel_types.append(rt)
            if label.name not in rt.start_labels:
                rt.start_labels.append(label.name)
            if rel.target_label not in rt.end_labels:
                rt.end_labels.append(rel.target_label)

            target = by_label.get(rel.target_label)
            if target is None:
                continue
            if not any(
                r.type == rel.type and r.target_label == label.name for r in target.incoming_relationships
            ):
                target.incoming_relationships.append(
                    RelationshipSummary(type=rel.type, target_label=label.name, count=rel.count)
                )

    return ProcessedSchema(labels=labels, relationship_types=rel_types, summary=schema_summary(labels, rel_types))


def schema_summary(labels: List[LabelInfo], rel_types: List[RelationshipTypeInfo]) -> str:
    lines = [
        "Database Schema Summary:",
        f"- {len(labels)} node label(s)",
        f"- {len(rel_types)} relationship type(s)",
        "",
    ]
    if labels:
        lines.append("Node Labels:")
        for label in labels:
            rel_count = len(label.outgoing_relationships) + len(label.incoming_relationships)
            lines.append(f"  - {label.name}: {len(label.properties)} properties, {rel_count} relationships")
        lines.append("")
    if rel_types:
        lines.append("Relationship Types:")
        for rt in rel_types:
            lines.append(f"  - {rt.name}")
    return "\n".join(lines)


class SchemaExtractor:
    """
    Builds a ProcessedSchema for one connection: APOC's meta.schema when
    it is installed, otherwise a handful of sampling queries.
    """

    def __init__(self, client: GraphClient, logger: logging.Logger | None = None) -> None:
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    async def extract(self, sample_size: int = 1000) -> ProcessedSchema:
        self.logger.info("Extracting Neo4j schema sample=%s", sample_size)
        try:
            return await self.extract_with_apoc(sample_size)
        except (GatewayError, SchemaExtractionError) as e:
            self.logger.warning("APOC schema extraction failed, using fallback: %s", e)
        return await self.extract_manually(sample_size)

    async def extract_with_apoc(self, sample_size: int) -> ProcessedSchema:
        payload = await self.client.query(APOC_SCHEMA_QUERY, {"sample": sample_size}, timeout=APOC_TIMEOUT)
        values = _values(payload)
        if not values or not values[0]:
            raise SchemaExtractionError("Empty schema result from APOC")
        raw = values[0][0]
        if not isinstance(raw, dict) or not raw:
            raise SchemaExtractionError("Invalid schema format from APOC")
        return process_apoc_schema(raw)

    async def _optional_query(self, statement: str, params: Dict[str, Any]) -> List[List[Any]]:
        try:
            return _values(await self.client.query(statement, params, timeout=MANUAL_TIMEOUT))
        except GatewayError as e:
            self.logger.debug("Schema sampling query failed: %s", e.message)
            return []

    async def extract_manually(self, sample_size: int) -> ProcessedSchema:
        payload = await self.client.query("CALL db.labels()", timeout=MANUAL_TIMEOUT)
        label_names = [row[0] for row in _values(payload) if row and isinstance(row[0], str) and row[0]]

        labels: List[LabelInfo] = []
        for name in label_names:
            label = LabelInfo(name=name)
            escaped = _escape_label(name)

            rows = await self._optional_query(
                LABEL_PROPERTIES_QUERY.replace("{label}", escaped), {"limit": sample_size}
            )
            for row in rows:
                if row and isinstance(row[0], str) and row[0]:
                    prop_type = row[1] if len(row) > 1 and row[1] is not None else "Unknown"
                    label.properties.append(PropertyInfo(name=row[0], type=str(prop_type)))

            rows = await self._optional_query(
                LABEL_RELATIONSHIPS_QUERY.replace("{label}", escaped), {"limit": sample_size}
            )
            for row in rows:
                if len(row) > 1 and isinstance(row[0], str) and row[0] and isinstance(row[1], str) and row[1]:
                    label.outgoing_relationships.append(RelationshipSummary(type=row[0], target_label=row[1]))

            labels.append(label)

        payload = await self.client.query("CALL db.relationshipTypes()", timeout=MANUAL_TIMEOUT)
        rel_types = [
            RelationshipTypeInfo(name=row[0])
            for row in _values(payload)
            if row and isinstance(row[0], str) and row[0]
        ]
        return finalize_schema(labels, rel_types)


# --- rendering --------------------------------------------------------------


def _named(items: Any) -> List[Dict[str, Any]]:
    # Sanitized lists may end with a "...[N more items truncated]" string.
    return [item for item in items or [] if isinstance(item, dict)]


def _trailer(items: Any) -> Optional[str]:
    if isinstance(items, list) and items and isinstance(items[-1], str):
        return items[-1]
    return None


def format_schema_for_llm(schema: Dict[str, Any]) -> str:
    """
    Render a (possibly sanitized) schema dict as markdown-ish text.
    """
    sections: List[str] = [str(schema.get("summary") or ""), "\n---\n", "Detailed Schema:\n"]

    labels = _named(schema.get("labels"))
    if labels:
        sections.append("## Node Labels\n")
        for label in labels:
            name = label.get("name", "?")
            sections.append(f"### {name}")
            if label.get("count") is not None:
                sections.append(f"Count: ~{label['count']} nodes")

            props = _named(label.get("properties"))
            if props:
                sections.append("Properties:")
                for prop in props:
                    line = f"  - {prop.get('name')}: {prop.get('type')}"
                    if prop.get("indexed"):
                        line += " [indexed]"
                    if prop.get("unique"):
                        line += " [unique]"
                    sections.append(line)
                if _trailer(label.get("properties")):
                    sections.append(f"  {_trailer(label.get('properties'))}")

            outgoing = _named(label.get("outgoing_relationships"))
            if outgoing:
                sections.append("Outgoing Relationships:")
                for rel in outgoing:
                    sections.append(f"  - ({name})-[:{rel.get('type')}]->({rel.get('target_label')})")

            incoming = _named(label.get("incoming_relationships"))
            if incoming:
                sections.append("Incoming Relationships:")
                for rel in incoming:
                    sections.append(f"  - ({rel.get('target_label')})-[:{rel.get('type')}]->({name})")

            sections.append("")
        if _trailer(schema.get("labels")):
            sections.append(_trailer(schema.get("labels")))

    rel_types = _named(schema.get("relationship_types"))
    if rel_types:
        sections.append("## Relationship Types\n")
        for rt in rel_types:
            sections.append(f"### {rt.get('name')}")
            if rt.get("count") is not None:
                sections.append(f"Count: ~{rt['count']} relationships")
            start, end = rt.get("start_labels"), rt.get("end_labels")
            if isinstance(start, list) and isinstance(end, list) and start and end:
                sections.append(f"Pattern: ({'|'.join(map(str, start))})-[:{rt.get('name')}]->({'|'.join(map(str, end))})")
            props = _named(rt.get("properties"))
            if props:
                sections.append("Properties:")
                for prop in props:
                    sections.append(f"  - {prop.get('name')}: {prop.get('type')}")
            sections.append("")

    return "\n".join(sections)
