"""
Audit Logger Service

Records report actions in the audit_log table with payload sanitization
and safe error handling, so audit logging failures don't break the
reporting workflow.
"""
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


# Keys that are redacted from audit payloads
SENSITIVE_KEYS = {
    # Signing material
    "passphrase",
    "private_key",
    "certificate",
    "signature_value",
    "secret",
    "token",
    "api_key",
    # Document content (large blobs)
    "xml_content",
    "signed_content",
    "document_content",
    "file_content",
    "content",
}

# Keys whose values are masked instead of removed
MASK_KEYS = {
    "nip",
    "buyer_nip",
    "seller_nip",
}

MAX_STRING_LENGTH = 1000


def sanitize_value(value: Any) -> Any:
    """
    Sanitize a single value (recursive for nested structures).

    Args:
        value: The value to sanitize

    Returns:
        The sanitized value
    """
    if isinstance(value, dict):
        return sanitize_payload(value)
    elif isinstance(value, list):
        return [sanitize_value(item) for item in value]
    elif isinstance(value, UUID):
        return str(value)
    elif isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
        return f"{value[:100]}... [TRUNCATED {len(value)} chars]"
    else:
        return value


def sanitize_payload(payload: dict) -> dict:
    """
    Sanitize a payload dictionary by removing/masking sensitive fields.

    - Redacts signing material and document bodies
    - Masks taxpayer identifiers (first 3 and last 2 digits kept)
    - Truncates long strings
    - Works recursively for nested dictionaries

    Args:
        payload: The payload dictionary to sanitize

    Returns:
        A sanitized copy of the payload
    """
    if not isinstance(payload, dict):
        return payload

    sanitized = {}

    for key, value in payload.items():
        key_lower = key.lower()

        if key_lower in SENSITIVE_KEYS:
            sanitized[key] = "**REDACTED**"
            continue

        if key_lower in MASK_KEYS:
            if isinstance(value, str) and len(value) > 5:
                sanitized[key] = f"{value[:3]}**MASKED**{value[-2:]}"
            else:
                sanitized[key] = "**MASKED**"
            continue

        sanitized[key] = sanitize_value(value)

    return sanitized


async def log_audit_event(
    db: AsyncSession,
    *,
    client_id: UUID,
    entity_type: str,
    entity_id: UUID,
    action: str,
    user_id: Optional[UUID],
    old_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
) -> None:
    """
    Log an audit event to the audit_log table.

    Best-effort: payloads are sanitized, the row joins the caller's
    transaction (no commit here), and exceptions are logged, not raised.

    Args:
        db: Database session
        client_id: Client the resource belongs to (required)
        entity_type: Type of resource (e.g., 'jpk_report')
        entity_id: ID of the resource
        action: Action performed (create, generate, sign, submit, ...)
        user_id: Actor (None for system actions)
        old_value: Previous values of changed fields (will be sanitized)
        new_value: New values of changed fields (will be sanitized)
    """
    try:
        if entity_type == "audit_log":
            return

        if client_id is None:
            logger.warning(
                f"Skipping audit log for {entity_type}:{entity_id} - client_id is None"
            )
            return

        audit_entry = AuditLog(
            client_id=client_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            user_id=user_id,
            old_value=sanitize_payload(old_value) if old_value else None,
            new_value=sanitize_payload(new_value) if new_value else None,
        )

        db.add(audit_entry)

        logger.debug(
            f"Audit log entry created: {entity_type}:{entity_id} "
            f"action={action} user={user_id}"
        )

    except Exception as e:
        # Never let audit logging failures break the reporting workflow
        logger.error(
            f"Failed to create audit log entry for {entity_type}:{entity_id} "
            f"action={action}: {e}",
            exc_info=True
        )
