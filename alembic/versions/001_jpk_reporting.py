"""JPK reporting tables

Revision ID: 001_jpk_reporting
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_jpk_reporting'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _amount(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(15, 2), nullable=False, server_default='0')


def upgrade() -> None:
    op.create_table(
        'jpk_clients',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('nip', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('tax_office_code', sa.String(4), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'jpk_vat_transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('document_type', sa.String(10), nullable=True),
        sa.Column('document_number', sa.String(255), nullable=False),
        sa.Column('document_date', sa.Date(), nullable=False),
        sa.Column('counterparty_nip', sa.String(30), nullable=True),
        sa.Column('counterparty_name', sa.String(255), nullable=False),
        sa.Column('counterparty_country', sa.String(2), nullable=True),
        sa.Column('vat_rate', sa.String(5), nullable=False),
        sa.Column('net_amount', sa.Numeric(15, 2), nullable=False),
        _amount('vat_amount'),
        sa.Column('vat_deductible', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('gtu_codes', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('procedure_codes', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['client_id'], ['jpk_clients.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_jpk_vat_transactions_client_date', 'jpk_vat_transactions', ['client_id', 'transaction_date']
    )

    op.create_table(
        'jpk_reports',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('report_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT'),
        sa.Column('schema_version', sa.String(10), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=True),
        sa.Column('quarter', sa.Integer(), nullable=True),
        sa.Column('period_from', sa.Date(), nullable=False),
        sa.Column('period_to', sa.Date(), nullable=False),
        sa.Column('purpose', sa.String(20), nullable=False, server_default='FIRST'),
        sa.Column('correction_number', sa.Integer(), nullable=True),
        sa.Column('original_report_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('correction_reason', sa.Text(), nullable=True),
        sa.Column('record_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sale_record_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('purchase_record_count', sa.Integer(), nullable=False, server_default='0'),
        _amount('total_sale_net'),
        _amount('total_sale_vat'),
        _amount('total_purchase_net'),
        _amount('total_purchase_vat'),
        sa.Column('declaration', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('xml_file_path', sa.String(500), nullable=True),
        sa.Column('xml_file_size', sa.Integer(), nullable=True),
        sa.Column('xml_hash', sa.String(64), nullable=True),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signed_file_path', sa.String(500), nullable=True),
        sa.Column('signature_type', sa.String(20), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submission_reference', sa.String(100), nullable=True),
        sa.Column('test_mode', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('upo_number', sa.String(100), nullable=True),
        sa.Column('upo_received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('upo_file_path', sa.String(500), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['original_report_id'], ['jpk_reports.id']),
        sa.UniqueConstraint('original_report_id', 'correction_number', name='uq_jpk_reports_correction_number'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_jpk_reports_client', 'jpk_reports', ['client_id'])
    op.create_index('ix_jpk_reports_status', 'jpk_reports', ['status'])
    op.create_index(
        'ix_jpk_reports_client_period', 'jpk_reports', ['client_id', 'report_type', 'year', 'month', 'quarter']
    )

    op.create_table(
        'jpk_sale_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('report_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_number', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(10), nullable=True),
        sa.Column('document_number', sa.String(255), nullable=False),
        sa.Column('document_date', sa.Date(), nullable=False),
        sa.Column('sale_date', sa.Date(), nullable=True),
        sa.Column('buyer_nip', sa.String(30), nullable=True),
        sa.Column('buyer_name', sa.String(255), nullable=False),
        sa.Column('buyer_country_code', sa.String(2), nullable=True),
        _amount('net_amount_23'),
        _amount('vat_amount_23'),
        _amount('net_amount_8'),
        _amount('vat_amount_8'),
        _amount('net_amount_5'),
        _amount('vat_amount_5'),
        _amount('net_amount_0'),
        _amount('net_amount_exempt'),
        _amount('net_amount_wdt'),
        _amount('net_amount_export'),
        sa.Column('gtu_codes', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('procedure_codes', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('corrected_invoice_number', sa.String(255), nullable=True),
        sa.Column('corrected_invoice_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['report_id'], ['jpk_reports.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('report_id', 'record_number', name='uq_jpk_sale_records_number'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_jpk_sale_records_report', 'jpk_sale_records', ['report_id'])

    op.create_table(
        'jpk_purchase_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('report_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_number', sa.Integer(), nullable=False),
        sa.Column('document_number', sa.String(255), nullable=False),
        sa.Column('document_date', sa.Date(), nullable=False),
        sa.Column('receipt_date', sa.Date(), nullable=True),
        sa.Column('seller_nip', sa.String(30), nullable=True),
        sa.Column('seller_name', sa.String(255), nullable=False),
        sa.Column('seller_country_code', sa.String(2), nullable=True),
        _amount('net_amount_total'),
        _amount('vat_amount_deductible'),
        _amount('vat_amount_nondeductible'),
        sa.Column('is_wnt', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_import_services', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_mpp', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('procedure_codes', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['report_id'], ['jpk_reports.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('report_id', 'record_number', name='uq_jpk_purchase_records_number'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_jpk_purchase_records_report', 'jpk_purchase_records', ['report_id'])

    op.create_table(
        'audit_log',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(30), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('old_value', postgresql.JSONB(), nullable=True),
        sa.Column('new_value', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_log_client_id', 'audit_log', ['client_id'])
    op.create_index('ix_audit_log_entity', 'audit_log', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_index('ix_audit_log_entity', table_name='audit_log')
    op.drop_index('ix_audit_log_client_id', table_name='audit_log')
    op.drop_table('audit_log')
    op.drop_index('ix_jpk_purchase_records_report', table_name='jpk_purchase_records')
    op.drop_table('jpk_purchase_records')
    op.drop_index('ix_jpk_sale_records_report', table_name='jpk_sale_records')
    op.drop_table('jpk_sale_records')
    op.drop_index('ix_jpk_reports_client_period', table_name='jpk_reports')
    op.drop_index('ix_jpk_reports_status', table_name='jpk_reports')
    op.drop_index('ix_jpk_reports_client', table_name='jpk_reports')
    op.drop_table('jpk_reports')
    op.drop_index('ix_jpk_vat_transactions_client_date', table_name='jpk_vat_transactions')
    op.drop_table('jpk_vat_transactions')
    op.drop_table('jpk_clients')
