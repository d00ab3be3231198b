import pytest

from conftest import FakeNeo4j, rows
from cypher_mcp.services.connection_manager import ConnectionManager
from cypher_mcp.services.schema_extractor import (
    SchemaExtractor,
    format_schema_for_llm,
    process_apoc_schema,
)
from cypher_mcp.utils.sanitize import sanitize

APOC_RAW = {
    "Person": {
        "type": "node",
        "count": 10,
        "properties": {
            "name": {"type": "STRING", "indexed": True, "unique": True},
            "age": {"type": "INTEGER"},
        },
        "relationships": {
            "ACTED_IN": {"direction": "out", "labels": ["Movie"], "count": 5},
        },
    },
    "Movie": {
        "type": "node",
        "count": 3,
        "properties": {"title": {"type": "STRING"}},
        "relationships": {
            "ACTED_IN": {"direction": "in", "labels": ["Person"], "count": 5},
        },
    },
    "ACTED_IN": {"type": "relationship", "count": 5, "properties": {"role": {"type": "STRING"}}},
}


def test_process_apoc_schema():
    schema = process_apoc_schema(APOC_RAW)
    by_name = {label.name: label for label in schema.labels}

    person = by_name["Person"]
    assert person.count == 10
    assert {p.name for p in person.properties} == {"name", "age"}
    assert [(r.type, r.target_label) for r in person.outgoing_relationships] == [("ACTED_IN", "Movie")]

    movie = by_name["Movie"]
    assert [(r.type, r.target_label) for r in movie.incoming_relationships] == [("ACTED_IN", "Person")]

    (acted_in,) = schema.relationship_types
    assert acted_in.start_labels == ["Person"]
    assert acted_in.end_labels == ["Movie"]
    assert acted_in.properties[0].name == "role"
    assert "2 node label(s)" in schema.summary
    assert "1 relationship type(s)" in schema.summary


@pytest.mark.asyncio
async def test_extract_uses_apoc(connection_config):
    neo = FakeNeo4j()
    neo.on("apoc.meta.schema", rows(["value"], [[APOC_RAW]]))
    client = ConnectionManager(transport=neo.transport).client_for(connection_config)

    schema = await SchemaExtractor(client).extract(sample_size=50)

    assert {label.name for label in schema.labels} == {"Person", "Movie"}
    assert neo.requests[0]["body"]["parameters"] == {"sample": 50}
    assert len(neo.requests) == 1


@pytest.mark.asyncio
async def test_extract_falls_back_without_apoc(connection_config):
    neo = FakeNeo4j()
    neo.on(
        "apoc.meta.schema",
        {"errors": [{"code": "Neo.ClientError.Procedure.ProcedureNotFound", "message": "no apoc"}]},
    )
    neo.on("CALL db.labels()", rows(["label"], [["Person"], ["Movie"]]))
    neo.on("MATCH (n:`Person`)-[r]->(m)", rows(["relType", "target"], [["ACTED_IN", "Movie"]]))
    neo.on("MATCH (n:`Person`)", rows(["key", "type"], [["name", "String"], ["age", "Integer"]]))
    neo.on("MATCH (n:`Movie`)-[r]->(m)", {"errors": [{"code": "Neo.X", "message": "sampling failed"}]})
    neo.on("MATCH (n:`Movie`)", rows(["key", "type"], [["title", "String"]]))
    neo.on("CALL db.relationshipTypes()", rows(["relationshipType"], [["ACTED_IN"], ["DIRECTED"]]))
    client = ConnectionManager(transport=neo.transport).client_for(connection_config)

    schema = await SchemaExtractor(client).extract(sample_size=100)

    by_name = {label.name: label for label in schema.labels}
    assert [p.name for p in by_name["Person"].properties] == ["name", "age"]
    assert [p.type for p in by_name["Movie"].properties] == ["String"]
    assert by_name["Movie"].outgoing_relationships == []
    assert [(r.type, r.target_label) for r in by_name["Movie"].incoming_relationships] == [("ACTED_IN", "Person")]

    rel_types = {rt.name: rt for rt in schema.relationship_types}
    assert set(rel_types) == {"ACTED_IN", "DIRECTED"}
    assert rel_types["ACTED_IN"].start_labels == ["Person"]


@pytest.mark.asyncio
async def test_labels_are_backtick_escaped(connection_config):
    neo = FakeNeo4j()
    neo.on("apoc.meta.schema", rows(["value"], []))
    neo.on("CALL db.labels()", rows(["label"], [["Odd`Label"]]))
    client = ConnectionManager(transport=neo.transport).client_for(connection_config)

    await SchemaExtractor(client).extract()

    assert any("MATCH (n:`Odd``Label`)" in s for s in neo.statements())


def test_format_schema_for_llm():
    text = format_schema_for_llm(process_apoc_schema(APOC_RAW).model_dump())
    assert "### Person" in text
    assert "  - name: STRING [indexed] [unique]" in text
    assert "  - (Person)-[:ACTED_IN]->(Movie)" in text
    assert "Pattern: (Person)-[:ACTED_IN]->(Movie)" in text


def test_format_tolerates_sanitized_lists():
    schema = process_apoc_schema(APOC_RAW).model_dump()
    schema["labels"][0]["properties"] = [{"name": f"p{i}", "type": "STRING"} for i in range(5)]
    text = format_schema_for_llm(sanitize(schema, max_list_size=2))
    assert "...[3 more items truncated]" in text
