"""
Audit logging for security and compliance.

Provides structured JSON logging for key events without exposing sensitive
content (no document text, no question text).
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Auth events
    AUTH_TOKEN_REJECTED = 'auth.token_rejected'

    # Document events
    DOCUMENT_UPLOADED = 'document.uploaded'
    DOCUMENT_DELETED = 'document.deleted'
    UPLOAD_BATCH = 'upload.batch'

    # RAG events
    RAG_QUERY = 'rag.query'


def get_client_ip(request) -> str:
    """Extract client IP from request, handling proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        # First IP in the chain is the client
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
    return request_id


def log_audit(
    event_type: str,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        user_id: Token subject (from JWT)
        request_id: Correlation ID for request tracing
        client_ip: Client IP address
        outcome: 'success', 'partial' or 'failure'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'user_id': user_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log an audit event with request context auto-populated.

    Args:
        request: Django HttpRequest
        event_type: One of AuditEvent constants
        outcome: 'success', 'partial' or 'failure'
        metadata: Event-specific data
    """
    user_id = None
    if getattr(request, 'user_claims', None):
        user_id = getattr(request.user_claims, 'sub', None)

    log_audit(
        event_type=event_type,
        user_id=user_id,
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_document_uploaded(request, storage_path: str, file_name: str, size_bytes: int):
    """Log a single stored file."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_UPLOADED,
        metadata={
            'storage_path': storage_path,
            'filename': file_name,
            'size_bytes': size_bytes,
        }
    )


def audit_upload_batch(request, total: int, success_count: int, fail_count: int):
    """Log the summary of an upload batch."""
    if fail_count == 0:
        outcome = 'success'
    elif success_count == 0:
        outcome = 'failure'
    else:
        outcome = 'partial'

    log_audit_from_request(
        request,
        AuditEvent.UPLOAD_BATCH,
        outcome=outcome,
        metadata={
            'total': total,
            'success_count': success_count,
            'fail_count': fail_count,
        }
    )


def audit_document_deleted(request, document_id: str, storage_removed: bool):
    """Log document deletion (storage_removed=False means an orphaned object)."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_DELETED,
        outcome='success' if storage_removed else 'partial',
        metadata={
            'document_id': document_id,
            'storage_removed': storage_removed,
        }
    )


def audit_rag_query(request, message_count: int, section_count: int):
    """Log RAG query (without the actual question text)."""
    log_audit_from_request(
        request,
        AuditEvent.RAG_QUERY,
        metadata={
            'message_count': message_count,
            'section_count': section_count,
        }
    )


def audit_auth_rejected(request, reason: str):
    """Log failed token validation."""
    log_audit_from_request(
        request,
        AuditEvent.AUTH_TOKEN_REJECTED,
        outcome='failure',
        metadata={
            'reason': reason,
        }
    )
