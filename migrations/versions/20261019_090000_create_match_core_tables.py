"""Create three-way match core tables

Revision ID: 20261019_090000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261019_090000'
down_revision = None
branch_labels = None
depends_on = None


GLOBAL_MATCH_STATUS = ('PENDING', 'OK', 'WARNING', 'BLOCKED', 'RESOLVED')
LINE_MATCH_STATUS = ('OK', 'WARNING', 'BLOCKED', 'MISSING_RECEIPT', 'MISSING_INVOICE')
EXCEPTION_TYPE = ('PRICE_VARIANCE', 'QUANTITY_VARIANCE', 'MISSING_RECEIPT', 'MISSING_INVOICE')
EXCEPTION_PRIORITY = ('URGENT', 'HIGH', 'NORMAL', 'LOW')
EXCEPTION_ACTION = (
    'APPROVE_DIFFERENCE', 'ADJUST_INVOICE', 'ADJUST_RECEIPT', 'REJECT_INVOICE', 'ESCALATE', 'CLOSE_NO_ACTION'
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade():
    """Create match core tables and indexes."""
    op.create_table('purchase_orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('po_no', sa.String(length=100), nullable=False),
        sa.Column('status', sa.Enum('DRAFT', 'SENT', 'PARTIAL', 'RECEIVED', 'CLOSED', 'CANCELLED', name='postatus'), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("po_no <> ''", name='check_po_no_not_empty'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_purchase_orders_company_id', 'purchase_orders', ['company_id'])
    op.create_index('ix_purchase_orders_po_no', 'purchase_orders', ['po_no'])
    op.create_index('ix_purchase_orders_status', 'purchase_orders', ['status'])

    op.create_table('invoices',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('invoice_number', sa.String(length=100), nullable=False),
        sa.Column('purchase_order_id', sa.Uuid(), nullable=True),
        sa.Column('validated', sa.Boolean(), nullable=False),
        sa.Column('match_status', sa.Enum(*GLOBAL_MATCH_STATUS, name='globalmatchstatus'), nullable=True),
        sa.Column('match_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('match_block_reason', sa.Text(), nullable=True),
        sa.Column('pay_approval_status', sa.Enum('APPROVED', 'REJECTED', 'BLOCKED_BY_MATCH', name='payapprovalstatus'), nullable=True),
        sa.Column('pay_rejected_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("invoice_number <> ''", name='check_invoice_number_not_empty'),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_invoices_company_id', 'invoices', ['company_id'])
    op.create_index('ix_invoices_match_status', 'invoices', ['match_status'])
    op.create_index('idx_invoice_company_match', 'invoices', ['company_id', 'match_status'])

    op.create_table('invoice_lines',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=False),
        sa.Column('line_no', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('item_key', sa.String(length=100), nullable=True),
        sa.Column('quantity', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('unit_price', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('discount_pct', sa.Numeric(precision=7, scale=4), nullable=True),
        sa.Column('discount_amount', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('discounted_price', sa.Numeric(precision=18, scale=4), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_invoice_lines_invoice_id', 'invoice_lines', ['invoice_id'])
    op.create_index('ix_invoice_lines_item_key', 'invoice_lines', ['item_key'])

    op.create_table('goods_receipts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('grn_no', sa.String(length=100), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=True),
        sa.Column('purchase_order_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.Enum('DRAFT', 'CONFIRMED', 'CANCELLED', name='receiptstatus'), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_by', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("grn_no <> ''", name='check_grn_no_not_empty'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_goods_receipts_company_id', 'goods_receipts', ['company_id'])
    op.create_index('ix_goods_receipts_grn_no', 'goods_receipts', ['grn_no'])
    op.create_index('ix_goods_receipts_invoice_id', 'goods_receipts', ['invoice_id'])
    op.create_index('idx_grn_invoice_status', 'goods_receipts', ['invoice_id', 'status'])

    op.create_table('goods_receipt_lines',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('goods_receipt_id', sa.Uuid(), nullable=False),
        sa.Column('item_key', sa.String(length=100), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('accepted_quantity', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('reference_price', sa.Numeric(precision=18, scale=4), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['goods_receipt_id'], ['goods_receipts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_goods_receipt_lines_goods_receipt_id', 'goods_receipt_lines', ['goods_receipt_id'])
    op.create_index('ix_goods_receipt_lines_item_key', 'goods_receipt_lines', ['item_key'])

    op.create_table('match_results',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=False),
        sa.Column('goods_receipt_id', sa.Uuid(), nullable=True),
        sa.Column('purchase_order_id', sa.Uuid(), nullable=True),
        sa.Column('receipt_ids', sa.JSON(), nullable=False),
        sa.Column('global_status', postgresql.ENUM(*GLOBAL_MATCH_STATUS, name='globalmatchstatus', create_type=False), nullable=False),
        sa.Column('discrepancies', sa.JSON(), nullable=False),
        sa.Column('summary', sa.JSON(), nullable=False),
        sa.Column('evaluated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.ForeignKeyConstraint(['goods_receipt_id'], ['goods_receipts.id'], ),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_id')
    )
    op.create_index('ix_match_results_company_id', 'match_results', ['company_id'])
    op.create_index('ix_match_results_global_status', 'match_results', ['global_status'])
    op.create_index('idx_match_result_company_status', 'match_results', ['company_id', 'global_status'])

    op.create_table('match_line_results',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('match_result_id', sa.Uuid(), nullable=False),
        sa.Column('line_no', sa.Integer(), nullable=False),
        sa.Column('line_key', sa.String(length=255), nullable=False),
        sa.Column('invoice_line_id', sa.Uuid(), nullable=True),
        sa.Column('receipt_line_id', sa.Uuid(), nullable=True),
        sa.Column('item_key', sa.String(length=100), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('invoiced_qty', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('received_qty', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('invoice_price', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('received_price', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('compared_price', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('discount_applied', sa.Boolean(), nullable=False),
        sa.Column('status', sa.Enum(*LINE_MATCH_STATUS, name='linematchstatus'), nullable=False),
        sa.Column('diff_qty', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('diff_pct', sa.Numeric(precision=9, scale=2), nullable=True),
        sa.Column('diff_price', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('price_variance_pct', sa.Numeric(precision=9, scale=2), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['match_result_id'], ['match_results.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['invoice_line_id'], ['invoice_lines.id'], ),
        sa.ForeignKeyConstraint(['receipt_line_id'], ['goods_receipt_lines.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_match_line_results_match_result_id', 'match_line_results', ['match_result_id'])

    op.create_table('match_exceptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('match_result_id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('exception_type', sa.Enum(*EXCEPTION_TYPE, name='matchexceptiontype'), nullable=False),
        sa.Column('line_key', sa.String(length=255), nullable=False),
        sa.Column('field', sa.Text(), nullable=False),
        sa.Column('expected_value', sa.String(length=100), nullable=True),
        sa.Column('received_value', sa.String(length=100), nullable=True),
        sa.Column('difference', sa.Numeric(precision=18, scale=4), nullable=True),
        sa.Column('difference_pct', sa.Numeric(precision=9, scale=2), nullable=True),
        sa.Column('within_tolerance', sa.Boolean(), nullable=False),
        sa.Column('impact_amount', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('priority', sa.Enum(*EXCEPTION_PRIORITY, name='exceptionpriority'), nullable=False),
        sa.Column('owner_user_id', sa.String(length=255), nullable=True),
        sa.Column('owner_role', sa.String(length=100), nullable=True),
        sa.Column('sla_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sla_breached', sa.Boolean(), nullable=False),
        sa.Column('escalated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('escalated_to', sa.String(length=255), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_action', sa.Enum(*EXCEPTION_ACTION, name='exceptionaction'), nullable=True),
        sa.Column('resolution_reason_code', sa.String(length=100), nullable=True),
        sa.Column('resolution_text', sa.Text(), nullable=True),
        sa.Column('adjusted_amount', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('linked_note_ref', sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['match_result_id'], ['match_results.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('match_result_id', 'exception_type', 'line_key', name='uq_match_exception_key')
    )
    op.create_index('ix_match_exceptions_match_result_id', 'match_exceptions', ['match_result_id'])
    op.create_index('ix_match_exceptions_company_id', 'match_exceptions', ['company_id'])
    op.create_index('ix_match_exceptions_exception_type', 'match_exceptions', ['exception_type'])
    op.create_index('ix_match_exceptions_priority', 'match_exceptions', ['priority'])
    op.create_index('ix_match_exceptions_owner_user_id', 'match_exceptions', ['owner_user_id'])
    op.create_index('ix_match_exceptions_owner_role', 'match_exceptions', ['owner_role'])
    op.create_index('ix_match_exceptions_resolved', 'match_exceptions', ['resolved'])
    op.create_index('idx_match_exception_sweep', 'match_exceptions', ['company_id', 'resolved', 'sla_breached', 'sla_deadline'])
    op.create_index('idx_match_exception_owner', 'match_exceptions', ['company_id', 'owner_user_id', 'resolved'])

    op.create_table('match_exception_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('exception_id', sa.Uuid(), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=True),
        sa.Column('to_status', sa.String(length=20), nullable=True),
        sa.Column('from_owner', sa.String(length=255), nullable=True),
        sa.Column('to_owner', sa.String(length=255), nullable=True),
        sa.Column('reason_code', sa.String(length=100), nullable=True),
        sa.Column('reason_text', sa.Text(), nullable=True),
        sa.Column('actor', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['exception_id'], ['match_exceptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_match_exception_history_exception_id', 'match_exception_history', ['exception_id'])

    op.create_table('purchase_configs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('qty_tolerance_pct', sa.Numeric(precision=7, scale=4), nullable=False),
        sa.Column('price_tolerance_pct', sa.Numeric(precision=7, scale=4), nullable=False),
        sa.Column('allow_excess_receipt', sa.Boolean(), nullable=False),
        sa.Column('allow_pay_without_match', sa.Boolean(), nullable=False),
        sa.Column('block_pay_on_warning', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('qty_tolerance_pct >= 0', name='check_qty_tolerance_positive'),
        sa.CheckConstraint('price_tolerance_pct >= 0', name='check_price_tolerance_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id')
    )

    op.create_table('exception_sla_configs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('exception_type', postgresql.ENUM(*EXCEPTION_TYPE, name='matchexceptiontype', create_type=False), nullable=False),
        sa.Column('sla_hours', sa.Numeric(precision=8, scale=2), nullable=False),
        sa.Column('owner_role', sa.String(length=100), nullable=False),
        sa.Column('escalate_after_hours', sa.Numeric(precision=8, scale=2), nullable=False),
        sa.Column('escalate_to_role', sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('sla_hours > 0', name='check_sla_hours_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', 'exception_type', name='uq_sla_company_type')
    )
    op.create_index('ix_exception_sla_configs_company_id', 'exception_sla_configs', ['company_id'])

    op.create_table('roles',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_roles_name', 'roles', ['name'], unique=True)
    op.create_index('idx_role_name_active', 'roles', ['name', 'is_active'])

    op.create_table('user_roles',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('role_id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('assigned_by', sa.String(length=255), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'role_id', 'company_id', name='uq_user_role_company')
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])
    op.create_index('ix_user_roles_company_id', 'user_roles', ['company_id'])
    op.create_index('idx_user_role_company_user', 'user_roles', ['company_id', 'user_id', 'is_active'])
    op.create_index('idx_user_role_company_role', 'user_roles', ['company_id', 'role_id', 'is_active'])

    op.create_table('audit_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=100), nullable=False),
        sa.Column('entity_id', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_company_id', 'audit_logs', ['company_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('idx_audit_entity', 'audit_logs', ['entity', 'entity_id'])


def downgrade():
    """Drop match core tables and enum types."""
    op.drop_table('audit_logs')
    op.drop_table('user_roles')
    op.drop_table('roles')
    op.drop_table('exception_sla_configs')
    op.drop_table('purchase_configs')
    op.drop_table('match_exception_history')
    op.drop_table('match_exceptions')
    op.drop_table('match_line_results')
    op.drop_table('match_results')
    op.drop_table('goods_receipt_lines')
    op.drop_table('goods_receipts')
    op.drop_table('invoice_lines')
    op.drop_table('invoices')
    op.drop_table('purchase_orders')

    for enum_name in (
        'exceptionaction', 'exceptionpriority', 'matchexceptiontype', 'linematchstatus',
        'payapprovalstatus', 'globalmatchstatus', 'receiptstatus', 'postatus',
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
