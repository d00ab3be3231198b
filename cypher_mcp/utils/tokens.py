"""
Token-budget estimation and truncation.

Counts are approximations from character length (CHARS_PER_TOKEN chars per
token), not tokenizer-exact. Every function here is pure.
"""
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, List

DEFAULT_CHARS_PER_TOKEN = 4
DEFAULT_TOKEN_LIMIT = 10000
TRUNCATION_SUFFIX = "\n\n...[Response truncated due to token limit]"

NEWLINE_LOOKBACK = 100
SPACE_LOOKBACK = 50
ARRAY_BUDGET_RATIO = 0.9
PREVIEW_CHARS = 1000

ARRAY_KEYS = ("rows", "items", "results", "data", "records", "values")


@dataclass
class TruncationResult:
    text: str
    truncated: bool
    original_tokens: int
    final_tokens: int


@dataclass
class DataTruncationResult:
    data: Any
    truncated: bool
    original_tokens: int
    final_tokens: int


def _to_json(data: Any, indent: int | None = None) -> str:
    separators = None if indent else (",", ":")
    return json.dumps(data, ensure_ascii=False, default=str, indent=indent, separators=separators)


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def estimate_data_tokens(data: Any, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    if data is None:
        return 1
    if isinstance(data, str):
        return estimate_tokens(data, chars_per_token)
    return estimate_tokens(_to_json(data), chars_per_token)


def truncate_to_tokens(
    text: str,
    max_tokens: int = DEFAULT_TOKEN_LIMIT,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    suffix: str = TRUNCATION_SUFFIX,
) -> TruncationResult:
    """
    Cut text to fit max_tokens, preferring a newline or space boundary
    close to the limit, and append the suffix.

    The output of a truncating call never exceeds max_tokens when the
    budget can hold the suffix, so running it again is a no-op. With a
    smaller budget the output is the bare suffix, which is also stable.
    """
    original_tokens = estimate_tokens(text, chars_per_token)
    if original_tokens <= max_tokens:
        return TruncationResult(text, False, original_tokens, original_tokens)

    suffix_tokens = estimate_tokens(suffix, chars_per_token)
    max_chars = max(0, (max_tokens - suffix_tokens) * chars_per_token)

    cut = max_chars
    last_newline = text.rfind("\n", 0, max_chars + 1)
    if last_newline > 0 and last_newline > max_chars - NEWLINE_LOOKBACK:
        cut = last_newline
    else:
        last_space = text.rfind(" ", 0, max_chars + 1)
        if last_space > 0 and last_space > max_chars - SPACE_LOOKBACK:
            cut = last_space

    result = text[:cut] + suffix
    return TruncationResult(result, True, original_tokens, estimate_tokens(result, chars_per_token))


def _truncate_array(items: List[Any], max_tokens: int, chars_per_token: int) -> List[Any]:
    total = len(items)
    if not items:
        return []
    if estimate_data_tokens(items[:1], chars_per_token) > max_tokens:
        first = items[0]
        return [
            {
                "_truncated": True,
                "_message": f"Array too large ({total} items). First item preview available.",
                "_firstItem": "[object]" if isinstance(first, (dict, list)) else str(first)[:100],
            }
        ]

    # Largest prefix whose estimate fits 90% of the budget; the rest is
    # headroom for the marker object.
    target = max_tokens * ARRAY_BUDGET_RATIO
    low, high, best = 0, total, 0
    while low <= high:
        mid = (low + high) // 2
        if estimate_data_tokens(items[:mid], chars_per_token) <= target:
            best = mid
            low = mid + 1
        else:
            high = mid - 1

    kept = list(items[:best])
    if best < total:
        kept.append(
            {
                "_truncated": True,
                "_message": f"{total - best} more items truncated",
                "_totalItems": total,
                "_shownItems": best,
            }
        )
    return kept


def truncate_data_to_tokens(
    data: Any,
    max_tokens: int = DEFAULT_TOKEN_LIMIT,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> DataTruncationResult:
    original_tokens = estimate_data_tokens(data, chars_per_token)
    if original_tokens <= max_tokens:
        return DataTruncationResult(data, False, original_tokens, original_tokens)

    if isinstance(data, str):
        res = truncate_to_tokens(data, max_tokens, chars_per_token)
        return DataTruncationResult(res.text, res.truncated, res.original_tokens, res.final_tokens)

    if isinstance(data, list):
        shrunk = _truncate_array(data, max_tokens, chars_per_token)
        return DataTruncationResult(shrunk, True, original_tokens, estimate_data_tokens(shrunk, chars_per_token))

    if isinstance(data, dict):
        for key in ARRAY_KEYS:
            if isinstance(data.get(key), list):
                candidate: Dict[str, Any] = dict(data)
                candidate[key] = _truncate_array(data[key], max_tokens, chars_per_token)
                final_tokens = estimate_data_tokens(candidate, chars_per_token)
                if final_tokens <= max_tokens:
                    return DataTruncationResult(candidate, True, original_tokens, final_tokens)

    pretty = _to_json(data, indent=2)
    wrapper = {
        "_truncated": True,
        "_originalTokens": original_tokens,
        "_preview": pretty[:PREVIEW_CHARS] + "...",
        "_message": "Response truncated due to token limit",
    }
    return DataTruncationResult(wrapper, True, original_tokens, estimate_data_tokens(wrapper, chars_per_token))


def exceeds_token_limit(
    data: Any,
    max_tokens: int = DEFAULT_TOKEN_LIMIT,
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
) -> bool:
    return estimate_data_tokens(data, chars_per_token) > max_tokens


def format_token_count(tokens: int) -> str:
    if tokens < 1000:
        return str(tokens)
    if tokens < 10000:
        return f"{tokens / 1000:.1f}k"
    return f"{round(tokens / 1000)}k"


def token_usage_summary(original_tokens: int, final_tokens: int, max_tokens: int = DEFAULT_TOKEN_LIMIT) -> Dict[str, Any]:
    return {
        "original": format_token_count(original_tokens),
        "final": format_token_count(final_tokens),
        "limit": format_token_count(max_tokens),
        "percentUsed": round(final_tokens / max_tokens * 100) if max_tokens else 0,
        "truncated": original_tokens > final_tokens,
    }
