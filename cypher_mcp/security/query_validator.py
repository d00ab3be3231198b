"""
Static safety checks for Cypher text.

Nothing here parses Cypher; the checks are regular expressions over the
query with comments removed. They classify and gate, the database does the
rest.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 50000
LARGE_LIMIT_THRESHOLD = 10000


class QueryType(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"
    UNKNOWN = "unknown"


@dataclass
class ValidationResult:
    valid: bool
    query_type: QueryType = QueryType.UNKNOWN
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class SyntaxCheckResult:
    valid: bool
    error: Optional[str] = None


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


DANGEROUS_OPERATIONS: List[Tuple[Pattern[str], str]] = [
    # database lifecycle
    (_rx(r"\bCREATE\s+(?:OR\s+REPLACE\s+)?DATABASE\b"), "CREATE DATABASE is not allowed"),
    (_rx(r"\bDROP\s+DATABASE\b"), "DROP DATABASE is not allowed"),
    (_rx(r"\bSTOP\s+DATABASE\b"), "STOP DATABASE is not allowed"),
    (_rx(r"\bSTART\s+DATABASE\b"), "START DATABASE is not allowed"),
    (_rx(r"\bALTER\s+DATABASE\b"), "ALTER DATABASE is not allowed"),
    # users, roles, privileges
    (_rx(r"\bCREATE\s+(?:OR\s+REPLACE\s+)?USER\b"), "CREATE USER is not allowed"),
    (_rx(r"\bDROP\s+USER\b"), "DROP USER is not allowed"),
    (_rx(r"\bALTER\s+USER\b"), "ALTER USER is not allowed"),
    (_rx(r"\bCREATE\s+(?:OR\s+REPLACE\s+)?ROLE\b"), "CREATE ROLE is not allowed"),
    (_rx(r"\bDROP\s+ROLE\b"), "DROP ROLE is not allowed"),
    (_rx(r"\bGRANT\b"), "GRANT is not allowed"),
    (_rx(r"\bREVOKE\b"), "REVOKE is not allowed"),
    (_rx(r"\bDENY\b"), "DENY is not allowed"),
    # system procedures
    (_rx(r"\bCALL\s+dbms\."), "System DBMS procedures are not allowed"),
    (
        _rx(r"\bCALL\s+db\.(?!labels\b|relationshipTypes\b|propertyKeys\b|schema)"),
        "Most db.* procedures are not allowed",
    ),
    # remote file loading
    (_rx(r"\bLOAD\s+CSV\s+(?:WITH\s+HEADERS\s+)?FROM\s+['\"](?:https?|ftp):"), "LOAD CSV from remote URLs is not allowed"),
]

ADMIN_OPERATIONS: List[Pattern[str]] = [
    _rx(r"\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:INDEX|CONSTRAINT|DATABASE|USER|ROLE|ALIAS)\b"),
    _rx(r"\bDROP\s+(?:INDEX|CONSTRAINT|DATABASE|USER|ROLE|ALIAS)\b"),
    _rx(r"\bALTER\b"),
    _rx(r"\bGRANT\b"),
    _rx(r"\bREVOKE\b"),
]

WRITE_OPERATIONS: List[Pattern[str]] = [
    _rx(r"\bCREATE\b"),
    _rx(r"\bMERGE\b"),
    _rx(r"\bDELETE\b"),
    _rx(r"\bSET\b"),
    _rx(r"\bREMOVE\b"),
    _rx(r"\bFOREACH\b"),
]

READ_OPERATIONS = _rx(r"\b(?:MATCH|RETURN|WITH|UNWIND|CALL)\b")

# Looser detector used by the read tool: also refuses DROP and writes hidden
# in a CALL { ... } body.
_TOOL_WRITE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\bcreate\b"),
    re.compile(r"\bmerge\b"),
    re.compile(r"\bdelete\b"),
    re.compile(r"\bdetach\s+delete\b"),
    re.compile(r"\bset\b"),
    re.compile(r"\bremove\b"),
    re.compile(r"\bdrop\b"),
    re.compile(r"\bcall\s*\{[^}]*\b(?:create|merge|delete|set|remove)\b"),
    re.compile(r"\bforeach\s*\("),
]

# Quoted text is matched first so "//" inside a literal is never a comment.
_LITERAL_OR_COMMENT = re.compile(
    r"'(?:[^'\\]|\\.)*'"
    r'|"(?:[^"\\]|\\.)*"'
    r"|`[^`]*`"
    r"|//[^\n]*"
    r"|/\*.*?\*/",
    re.DOTALL,
)
_MATCH = _rx(r"\bMATCH\b")
_LIMIT = _rx(r"\bLIMIT\s+(\d+)")
_DETACH_DELETE = _rx(r"\bDETACH\s+DELETE\b")
_CALL_SUBQUERY = _rx(r"\bCALL\s*\{")
_PARAM_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _drop_comment(match: "re.Match[str]") -> str:
    text = match.group(0)
    # a comment separates tokens like whitespace does
    return " " if text.startswith("/") else text


def remove_comments(query: str) -> str:
    return _LITERAL_OR_COMMENT.sub(_drop_comment, query)


def detect_query_type(normalized: str) -> QueryType:
    # Admin first: CREATE INDEX would otherwise read as a write.
    if any(p.search(normalized) for p in ADMIN_OPERATIONS):
        return QueryType.ADMIN
    if any(p.search(normalized) for p in WRITE_OPERATIONS):
        return QueryType.WRITE
    if READ_OPERATIONS.search(normalized):
        return QueryType.READ
    return QueryType.UNKNOWN


def _collect_warnings(normalized: str) -> List[str]:
    warnings: List[str] = []
    if _MATCH.search(normalized) and not _LIMIT.search(normalized):
        warnings.append("Unbounded MATCH may return large results")
    for match in _LIMIT.finditer(normalized):
        if int(match.group(1)) > LARGE_LIMIT_THRESHOLD:
            warnings.append("Large LIMIT value may cause performance issues")
            break
    if _DETACH_DELETE.search(normalized):
        warnings.append("DETACH DELETE removes nodes together with all their relationships")
    if _CALL_SUBQUERY.search(normalized):
        warnings.append("Subquery CALL blocks may be restricted")
    return warnings


def validate_query(query: str) -> ValidationResult:
    """
    Gate a query before it reaches the database.

    Returns valid=False for over-long, empty or deny-listed text. Warnings
    never affect validity.
    """
    if len(query) > MAX_QUERY_LENGTH:
        return ValidationResult(
            valid=False,
            error=f"Query too long ({len(query)} chars). Maximum allowed: {MAX_QUERY_LENGTH}",
        )

    if not query.strip():
        return ValidationResult(valid=False, error="Query cannot be empty")

    normalized = remove_comments(query)

    for pattern, message in DANGEROUS_OPERATIONS:
        if pattern.search(normalized):
            logger.warning("Dangerous query blocked: %s (preview=%r)", message, query[:100])
            return ValidationResult(valid=False, error=message, query_type=QueryType.ADMIN)

    return ValidationResult(
        valid=True,
        query_type=detect_query_type(normalized),
        warnings=_collect_warnings(normalized),
    )


def is_read_only_query(query: str) -> bool:
    return detect_query_type(remove_comments(query)) in (QueryType.READ, QueryType.UNKNOWN)


def contains_write_operations(query: str) -> bool:
    normalized = remove_comments(query)
    return any(p.search(normalized) for p in WRITE_OPERATIONS)


def is_write_query(query: str) -> bool:
    normalized = remove_comments(query).lower()
    normalized = re.sub(r"\s+", " ", normalized).strip() + " "
    return any(p.search(normalized) for p in _TOOL_WRITE_PATTERNS)


def validate_cypher_syntax(query: str) -> SyntaxCheckResult:
    trimmed = query.strip()
    if not trimmed:
        return SyntaxCheckResult(valid=False, error="Query cannot be empty")

    depth = {"(": 0, "[": 0, "{": 0}
    closing = {")": "(", "]": "[", "}": "{"}
    for char in trimmed:
        if char in depth:
            depth[char] += 1
        elif char in closing:
            depth[closing[char]] -= 1
            if depth[closing[char]] < 0:
                return SyntaxCheckResult(valid=False, error="Unbalanced brackets in query")

    if depth["("]:
        return SyntaxCheckResult(valid=False, error="Unbalanced parentheses in query")
    if depth["["]:
        return SyntaxCheckResult(valid=False, error="Unbalanced square brackets in query")
    if depth["{"]:
        return SyntaxCheckResult(valid=False, error="Unbalanced curly braces in query")
    return SyntaxCheckResult(valid=True)


def sanitize_parameters(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Keep only parameters whose names are valid Cypher identifiers.
    Offending keys are dropped and logged, never rejected.
    """
    if not params:
        return None

    sanitized: Dict[str, Any] = {}
    for key, value in params.items():
        if not isinstance(key, str) or not _PARAM_KEY.match(key):
            logger.warning("Invalid parameter key filtered: %r", key)
            continue
        sanitized[key] = value

    return sanitized or None
