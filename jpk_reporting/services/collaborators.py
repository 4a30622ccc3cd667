"""
Collaborator interfaces consumed by the JPK reporting engine.

- ClientRegistry: taxpayer lookup (NIP, legal name, tax office)
- TransactionLedger: VAT ledger entries for bulk import

Database-backed defaults read the jpk_clients and jpk_vat_transactions
tables. Tests and other deployments can pass their own implementations.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jpk_reporting.models.client import Client, VatTransaction
from jpk_reporting.services.jpk.errors import NotFoundError


class TransactionDirection:
    SALE = "SALE"
    PURCHASE = "PURCHASE"


@dataclass
class ClientInfo:
    client_id: UUID
    taxpayer_id: str
    legal_name: str
    email: Optional[str] = None
    tax_office_code: Optional[str] = None


@dataclass
class LedgerTransaction:
    """
    One ledger entry as handed over by the ledger. Values are not validated
    here; the record store validates each entry when importing it.
    """
    transaction_id: str
    direction: str
    transaction_date: date
    document_number: str
    document_date: date
    counterparty_name: str
    net_amount: Decimal
    vat_amount: Decimal = Decimal("0")
    vat_rate: str = "23"
    vat_deductible: bool = True
    document_type: Optional[str] = None
    counterparty_id: Optional[str] = None
    counterparty_country: Optional[str] = None
    classification_codes: List[str] = field(default_factory=list)
    procedure_codes: List[str] = field(default_factory=list)


class ClientRegistry(ABC):

    @abstractmethod
    async def lookup(self, client_id: UUID) -> ClientInfo:
        """
        Raises:
            NotFoundError: unknown client
        """


class TransactionLedger(ABC):

    @abstractmethod
    async def list_transactions(
        self,
        client_id: UUID,
        period_from: date,
        period_to: date,
    ) -> List[LedgerTransaction]:
        """Entries with period_from <= transaction_date < period_to, oldest first."""


class DatabaseClientRegistry(ClientRegistry):
    """Client registry backed by the jpk_clients table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lookup(self, client_id: UUID) -> ClientInfo:
        result = await self.db.execute(select(Client).where(Client.id == client_id))
        client = result.scalar_one_or_none()
        if client is None or not client.is_active:
            raise NotFoundError(f"Client {client_id} not found")
        return ClientInfo(
            client_id=client.id,
            taxpayer_id=client.nip,
            legal_name=client.name,
            email=client.email,
            tax_office_code=client.tax_office_code,
        )


class DatabaseTransactionLedger(TransactionLedger):
    """Transaction ledger backed by the jpk_vat_transactions table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_transactions(
        self,
        client_id: UUID,
        period_from: date,
        period_to: date,
    ) -> List[LedgerTransaction]:
        result = await self.db.execute(
            select(VatTransaction)
            .where(
                VatTransaction.client_id == client_id,
                VatTransaction.transaction_date >= period_from,
                VatTransaction.transaction_date < period_to,
            )
            .order_by(VatTransaction.transaction_date, VatTransaction.created_at)
        )
        return [
            LedgerTransaction(
                transaction_id=str(tx.id),
                direction=tx.direction,
                transaction_date=tx.transaction_date,
                document_type=tx.document_type,
                document_number=tx.document_number,
                document_date=tx.document_date,
                counterparty_id=tx.counterparty_nip,
                counterparty_name=tx.counterparty_name,
                counterparty_country=tx.counterparty_country,
                vat_rate=tx.vat_rate,
                net_amount=tx.net_amount,
                vat_amount=tx.vat_amount,
                vat_deductible=tx.vat_deductible,
                classification_codes=list(tx.gtu_codes or []),
                procedure_codes=list(tx.procedure_codes or []),
            )
            for tx in result.scalars().all()
        ]
