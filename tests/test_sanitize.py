import math

import pytest

from cypher_mcp.utils.sanitize import (
    EMBEDDING_PROPERTY_PLACEHOLDER,
    MAX_DEPTH_PLACEHOLDER,
    SanitizeOptions,
    estimate_size,
    is_embedding_array,
    needs_sanitization,
    sanitize,
    sanitize_neo4j_results,
)


@pytest.mark.parametrize("length", [129, 200, 1000])
def test_long_list_is_cut_with_marker(length):
    data = [f"item-{i}" for i in range(length)]
    result = sanitize(data)
    assert len(result) == 129
    assert result[:128] == data[:128]
    assert result[-1] == f"...[{length - 128} more items truncated]"
    assert str(length - 128) in result[-1]


def test_list_at_limit_is_untouched():
    data = [f"item-{i}" for i in range(128)]
    assert sanitize(data) == data


@pytest.mark.parametrize("length", [64, 128, 1536])
def test_numeric_arrays_become_placeholder(length):
    result = sanitize([0.1 * i for i in range(length)])
    assert result == f"[Embedding array with {length} dimensions - filtered]"


@pytest.mark.parametrize("length", [1, 10, 63])
def test_short_numeric_arrays_pass_through(length):
    data = [float(i) for i in range(length)]
    assert sanitize(data) == data


def test_embedding_detection_ignores_bools_and_nan():
    assert not is_embedding_array([True] * 100)
    assert not is_embedding_array([math.nan] * 100)
    assert is_embedding_array([1] * 8 + ["x", "y"] + [1] * 100)
    assert not is_embedding_array([1] * 7 + ["x", "y", "z"] + [1] * 100)


def test_embedding_named_properties_are_filtered():
    row = {"name": "Alice", "embedding": [0.1, 0.2], "textVector": "abc", "encodings": None}
    assert sanitize(row) == {
        "name": "Alice",
        "embedding": EMBEDDING_PROPERTY_PLACEHOLDER,
        "textVector": EMBEDDING_PROPERTY_PLACEHOLDER,
        "encodings": EMBEDDING_PROPERTY_PLACEHOLDER,
    }


def test_embedding_removal_can_be_disabled():
    data = {"embedding": [1.0] * 64}
    result = sanitize(data, remove_embeddings=False, max_list_size=1000)
    assert result == data


def test_nulls_are_dropped_by_default():
    assert sanitize({"a": None, "b": [1, None, 2]}) == {"b": [1, 2]}
    assert sanitize({"a": None}, remove_nulls=False) == {"a": None}
    assert sanitize(None) is None


def test_string_truncation_is_opt_in():
    text = "x" * 500
    assert sanitize(text) == text
    assert sanitize(text, max_string_length=10) == "x" * 10 + "...[truncated]"


def test_max_depth():
    deep = {"a": {"b": {"c": {"d": 1}}}}
    assert sanitize(deep, max_depth=2) == {"a": {"b": {"c": MAX_DEPTH_PLACEHOLDER}}}


def test_custom_list_size():
    assert sanitize(list("abcdef"), SanitizeOptions(max_list_size=2)) == ["a", "b", "...[4 more items truncated]"]


def test_neo4j_rows():
    rows = [
        {"n": {"_labels": ["Doc"], "title": "A", "embedding": [0.5] * 768}},
        {"n": {"_labels": ["Doc"], "title": "B", "scores": list(range(100))}},
    ]
    result = sanitize_neo4j_results(rows)
    assert result[0]["n"] == {"_labels": ["Doc"], "title": "A", "embedding": EMBEDDING_PROPERTY_PLACEHOLDER}
    assert result[1]["n"]["scores"] == "[Embedding array with 100 dimensions - filtered]"


def test_needs_sanitization():
    assert not needs_sanitization({"a": 1, "b": ["x"]})
    assert needs_sanitization({"a": None})
    assert needs_sanitization({"vector": 1})
    assert needs_sanitization(list(range(200)))


def test_estimate_size():
    assert estimate_size(None) == 4
    assert estimate_size("abc") == 5
    assert estimate_size([1, 2]) == 2 + 2 + 2
    assert estimate_size({"a": 1}) == 2 + 1 + 1 + 4
