"""Unique active first filing per client, kind and period

Revision ID: 002_first_filing_unique
Revises: 001_jpk_reporting
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_first_filing_unique'
down_revision: Union[str, None] = '001_jpk_reporting'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One active FIRST filing per (client, kind, period); rejected and failed
    # filings may be followed by a new one
    op.create_index(
        'uq_jpk_reports_first_filing',
        'jpk_reports',
        ['client_id', 'report_type', 'period_from', 'period_to'],
        unique=True,
        postgresql_where=sa.text("purpose = 'FIRST' AND status NOT IN ('REJECTED', 'ERROR')")
    )


def downgrade() -> None:
    op.drop_index('uq_jpk_reports_first_filing', table_name='jpk_reports')
