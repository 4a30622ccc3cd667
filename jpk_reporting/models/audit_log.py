"""
Audit Log Model

Append-only trail of report actions (create, generate, sign, submit,
correct, delete). Rows are written through jpk_reporting.audit.audit_logger.
"""
import uuid
from datetime import datetime
from uuid import UUID

from sqlalchemy import String, DateTime, func
from sqlalchemy.dialects.postgresql import UUID as PostgreSQLUUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from jpk_reporting.core.database import Base, utcnow


class AuditLog(Base):
    """
    Audit log entry.

    Payloads are sanitized before they get here: no signature values,
    certificates or document content.
    """
    __tablename__ = "audit_log"

    id: Mapped[UUID] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        nullable=False
    )

    # Tenant isolation - REQUIRED
    client_id: Mapped[UUID] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        nullable=False,
        index=True,
        comment="Client the resource belongs to"
    )

    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Type of resource (e.g., 'jpk_report')"
    )

    entity_id: Mapped[UUID] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        nullable=False,
        comment="ID of the resource"
    )

    action: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="Action performed (create, generate, sign, submit, ...)"
    )

    # Nullable for system actions
    user_id: Mapped[UUID | None] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        nullable=True,
        comment="Actor (null for system actions)"
    )

    old_value: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
        comment="Previous values of changed fields (sanitized)"
    )

    new_value: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
        comment="New values of changed fields (sanitized)"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, "
            f"entity_type={self.entity_type}, "
            f"entity_id={self.entity_id}, "
            f"action={self.action})>"
        )
