"""
Client and VAT Ledger Models

Backing tables for the default client registry and transaction ledger.
Both are owned by the surrounding accounting system; the reporting engine
only reads them.
"""
import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, Date, Numeric, Boolean, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from jpk_reporting.core.database import Base, utcnow


class Client(Base):
    """Taxpayer on whose behalf reports are filed."""
    __tablename__ = "jpk_clients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    nip: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tax_office_code: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class VatTransaction(Base):
    """
    One VAT-relevant ledger entry.

    direction is SALE or PURCHASE. vat_rate holds the rate bracket as text:
    "23", "8", "5", "0", "zw" (exempt), "wdt" (intra-EU supply), "exp" (export).
    """
    __tablename__ = "jpk_vat_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jpk_clients.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)

    document_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    document_number: Mapped[str] = mapped_column(String(255), nullable=False)
    document_date: Mapped[date] = mapped_column(Date, nullable=False)

    counterparty_nip: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    counterparty_name: Mapped[str] = mapped_column(String(255), nullable=False)
    counterparty_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    vat_rate: Mapped[str] = mapped_column(String(5), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    vat_deductible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    gtu_codes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    procedure_codes: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index('ix_jpk_vat_transactions_client_date', 'client_id', 'transaction_date'),
    )
