"""
Security audit trail.

Audit events go to their own logger so operators can route them
separately from application logs. Secrets are masked before logging.
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlparse

audit_logger = logging.getLogger("cypher_mcp.audit")


class AuditEvent(str, Enum):
    AUTH_FAILURE = "auth_failure"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    QUERY_EXECUTED = "query_executed"
    QUERY_BLOCKED = "query_blocked"
    SETUP_ATTEMPT = "setup_attempt"
    SETUP_SUCCESS = "setup_success"
    SETUP_FAILURE = "setup_failure"
    TOKEN_CREATED = "token_created"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_LIST_ACCESSED = "token_list_accessed"
    TOKEN_REVOKE_ATTEMPT = "token_revoke_attempt"


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * min(len(value) - visible_chars, 10)


def extract_domain(uri: str) -> str:
    try:
        return urlparse(uri).hostname or "invalid-uri"
    except ValueError:
        return "invalid-uri"


def audit(
    event: AuditEvent,
    *,
    level: int = logging.INFO,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    **data: Any,
) -> None:
    entry: Dict[str, Any] = {
        "event": event.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if request_id:
        entry["requestId"] = request_id
    if user_id:
        entry["userId"] = user_id
    if client_ip:
        entry["clientIp"] = client_ip
    if data:
        entry["data"] = data
    audit_logger.log(level, "AUDIT: %s %s", event.value, json.dumps(entry, default=str))


def log_auth_failure(reason: str, request_id: Optional[str] = None, client_ip: Optional[str] = None) -> None:
    audit(AuditEvent.AUTH_FAILURE, level=logging.WARNING, request_id=request_id, client_ip=client_ip, reason=reason)


def log_rate_limit_exceeded(identity: str, current: int, limit: int, request_id: Optional[str] = None) -> None:
    audit(
        AuditEvent.RATE_LIMIT_EXCEEDED,
        level=logging.WARNING,
        request_id=request_id,
        identity=mask_sensitive(identity, 8),
        current=current,
        limit=limit,
    )


def log_query_executed(
    query_type: str,
    query: str,
    execution_time_ms: float,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    audit(
        AuditEvent.QUERY_EXECUTED,
        request_id=request_id,
        user_id=user_id,
        queryType=query_type,
        queryPreview=query[:100],
        executionTimeMs=round(execution_time_ms, 2),
    )


def log_query_blocked(
    reason: str,
    query: str,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> None:
    audit(
        AuditEvent.QUERY_BLOCKED,
        level=logging.WARNING,
        request_id=request_id,
        user_id=user_id,
        reason=reason,
        queryPreview=query[:100],
    )


def log_setup_attempt(neo4j_uri: str, client_ip: Optional[str] = None) -> None:
    audit(AuditEvent.SETUP_ATTEMPT, client_ip=client_ip, neo4jDomain=extract_domain(neo4j_uri))


def log_setup_success(user_id: str, neo4j_uri: str, client_ip: Optional[str] = None) -> None:
    audit(AuditEvent.SETUP_SUCCESS, user_id=user_id, client_ip=client_ip, neo4jDomain=extract_domain(neo4j_uri))


def log_setup_failure(reason: str, client_ip: Optional[str] = None) -> None:
    audit(AuditEvent.SETUP_FAILURE, level=logging.WARNING, client_ip=client_ip, reason=reason)


def log_token_created(user_id: str, token: str, connection_id: str) -> None:
    audit(
        AuditEvent.TOKEN_CREATED,
        user_id=user_id,
        tokenPrefix=mask_sensitive(token, 8),
        connectionId=connection_id,
    )


def log_token_revoked(user_id: str, token: str) -> None:
    audit(AuditEvent.TOKEN_REVOKED, user_id=user_id, tokenPrefix=mask_sensitive(token, 8))


def log_token_list_accessed(user_id: str, token_count: int) -> None:
    audit(AuditEvent.TOKEN_LIST_ACCESSED, user_id=user_id, tokenCount=token_count)


def log_token_revoke_attempt_failed(user_id: str, token: str, reason: str) -> None:
    audit(
        AuditEvent.TOKEN_REVOKE_ATTEMPT,
        level=logging.WARNING,
        user_id=user_id,
        tokenPrefix=mask_sensitive(token, 8),
        reason=reason,
    )
