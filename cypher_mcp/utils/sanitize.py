"""
Result cleanup before anything is handed back to a language model.

Long numeric vectors and embedding-named properties are replaced by short
placeholders, oversized lists are cut, nulls are dropped and recursion is
bounded. The output is always plain JSON-compatible data.
"""
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List

DEFAULT_MAX_LIST_SIZE = 128
EMBEDDING_MIN_LENGTH = 64
EMBEDDING_SAMPLE_SIZE = 10
EMBEDDING_NUMERIC_RATIO = 0.8

EMBEDDING_KEY_PATTERNS = (
    "embedding",
    "embeddings",
    "vector",
    "vectors",
    "embed",
    "encoding",
    "encodings",
    "feature_vector",
    "featurevector",
)

MAX_DEPTH_PLACEHOLDER = "[Max depth exceeded]"
EMBEDDING_PROPERTY_PLACEHOLDER = "[Embedding property - filtered]"

# Marks a value that should disappear from its parent container.
_DROP = object()


@dataclass(frozen=True)
class SanitizeOptions:
    max_list_size: int = DEFAULT_MAX_LIST_SIZE
    remove_embeddings: bool = True
    remove_nulls: bool = True
    # 0 disables string truncation
    max_string_length: int = 0
    max_depth: int = 20


DEFAULT_OPTIONS = SanitizeOptions()


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, float):
        return not math.isnan(value)
    return isinstance(value, int)


def is_embedding_array(values: List[Any]) -> bool:
    if len(values) < EMBEDDING_MIN_LENGTH:
        return False
    sample = values[:EMBEDDING_SAMPLE_SIZE]
    numeric = sum(1 for v in sample if _is_number(v))
    return numeric >= len(sample) * EMBEDDING_NUMERIC_RATIO


def is_embedding_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in EMBEDDING_KEY_PATTERNS)


def sanitize_value(value: Any, options: SanitizeOptions = DEFAULT_OPTIONS, depth: int = 0) -> Any:
    """
    Sanitize one value. Returns the module-private drop marker for values
    the caller should omit; use `sanitize` unless you handle that marker.
    """
    if depth > options.max_depth:
        return MAX_DEPTH_PLACEHOLDER

    if value is None:
        return _DROP if options.remove_nulls else None

    if isinstance(value, str):
        if options.max_string_length > 0 and len(value) > options.max_string_length:
            return value[: options.max_string_length] + "...[truncated]"
        return value

    if isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, (list, tuple)):
        if options.remove_embeddings and is_embedding_array(list(value)):
            return f"[Embedding array with {len(value)} dimensions - filtered]"

        overflow = len(value) - options.max_list_size
        items = value[: options.max_list_size] if overflow > 0 else value
        cleaned = [s for s in (sanitize_value(v, options, depth + 1) for v in items) if s is not _DROP]
        if overflow > 0:
            cleaned.append(f"...[{overflow} more items truncated]")
        return cleaned

    if isinstance(value, dict):
        result: Dict[str, Any] = {}
        for key, item in value.items():
            if options.remove_embeddings and is_embedding_key(str(key)):
                result[key] = EMBEDDING_PROPERTY_PLACEHOLDER
                continue
            cleaned_item = sanitize_value(item, options, depth + 1)
            if cleaned_item is not _DROP:
                result[key] = cleaned_item
        return result

    return value


def sanitize(data: Any, options: SanitizeOptions | None = None, **overrides: Any) -> Any:
    opts = replace(options or DEFAULT_OPTIONS, **overrides) if overrides else (options or DEFAULT_OPTIONS)
    result = sanitize_value(data, opts, 0)
    return None if result is _DROP else result


def sanitize_neo4j_results(rows: List[Any], options: SanitizeOptions | None = None) -> List[Any]:
    opts = options or DEFAULT_OPTIONS
    cleaned = (sanitize_value(row, opts, 0) for row in rows)
    return [row for row in cleaned if row is not _DROP]


def estimate_size(data: Any) -> int:
    """Rough serialized length in characters."""
    if data is None:
        return 4
    if isinstance(data, str):
        return len(data) + 2
    if isinstance(data, bool):
        return 4 if data else 5
    if isinstance(data, (int, float)):
        return len(str(data))
    if isinstance(data, (list, tuple)):
        return 2 + sum(estimate_size(item) + 1 for item in data)
    if isinstance(data, dict):
        return 2 + sum(len(str(k)) + estimate_size(v) + 4 for k, v in data.items())
    return 10


def needs_sanitization(data: Any, options: SanitizeOptions | None = None) -> bool:
    opts = options or DEFAULT_OPTIONS

    def check(value: Any, depth: int) -> bool:
        if depth > 10:
            return False
        if value is None:
            return opts.remove_nulls
        if isinstance(value, str):
            return 0 < opts.max_string_length < len(value)
        if isinstance(value, (list, tuple)):
            if len(value) > opts.max_list_size:
                return True
            if opts.remove_embeddings and is_embedding_array(list(value)):
                return True
            return any(check(item, depth + 1) for item in value)
        if isinstance(value, dict):
            for key, item in value.items():
                if opts.remove_embeddings and is_embedding_key(str(key)):
                    return True
                if check(item, depth + 1):
                    return True
        return False

    return check(data, 0)
