"""provisioning_pipeline_schema

Revision ID: 3f1c2a7d9b10
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c2a7d9b10'
down_revision = None
branch_labels = None
depends_on = None

TS = sa.TIMESTAMP(timezone=True)
BIGINT_PK = sa.BIGINT().with_variant(sa.INTEGER(), "sqlite")


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('slug', sa.TEXT(), nullable=False, unique=True),
        sa.Column('display_name', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', TS, nullable=False),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('email', sa.TEXT(), nullable=False),
        sa.Column('password_hash', sa.TEXT(), nullable=False),
        sa.Column('tenant_id', sa.TEXT(), nullable=False),
        sa.Column('is_active', sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', TS, nullable=False),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('idx_users_tenant', 'users', ['tenant_id'])

    op.create_table(
        'profiles',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('first_name', sa.TEXT(), nullable=False),
        sa.Column('last_name', sa.TEXT(), nullable=False),
        sa.Column('email', sa.TEXT(), nullable=False),
        sa.Column('about', sa.TEXT(), nullable=True),
        sa.Column('purposes', sa.JSON(), nullable=False),
        sa.Column('created_at', TS, nullable=False),
        sa.UniqueConstraint('user_id', name='uq_profiles_user'),
    )

    op.create_table(
        'applications',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('email', sa.TEXT(), nullable=False),
        sa.Column('first_name', sa.TEXT(), nullable=False),
        sa.Column('last_name', sa.TEXT(), nullable=False),
        sa.Column('about', sa.TEXT(), nullable=True),
        sa.Column('purposes', sa.JSON(), nullable=False),
        sa.Column('custom_design', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('payment_plan', sa.TEXT(), nullable=False),
        sa.Column('stripe_session_id', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='pending'),
        sa.Column('processed', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', TS, nullable=True),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.UniqueConstraint('stripe_session_id', name='uq_applications_stripe_session'),
    )
    op.create_index('idx_applications_status_created', 'applications', ['status', 'created_at'])
    op.create_index('idx_applications_email', 'applications', ['email'])

    op.create_table(
        'billing',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('application_id', sa.TEXT(), nullable=False),
        sa.Column('stripe_customer_id', sa.TEXT(), nullable=True),
        sa.Column('stripe_subscription_id', sa.TEXT(), nullable=True),
        sa.Column('billing_type', sa.TEXT(), nullable=False),
        sa.Column('billing_day', sa.INTEGER(), nullable=False),
        sa.Column('next_billing_date', TS, nullable=True),
        sa.Column('setup_fee', sa.INTEGER(), nullable=False),
        sa.Column('recurring_amount', sa.INTEGER(), nullable=False),
        sa.Column('custom_design_fee', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('initial_amount', sa.INTEGER(), nullable=False),
        sa.Column('amount_captured', sa.INTEGER(), nullable=True),
        sa.Column('currency', sa.TEXT(), nullable=False, server_default='gbp'),
        sa.Column('pricing_version', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='active'),
        sa.Column('cancelled_at', TS, nullable=True),
        sa.Column('version', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.UniqueConstraint('user_id', name='uq_billing_user'),
        sa.UniqueConstraint('application_id', name='uq_billing_application'),
        sa.UniqueConstraint('stripe_subscription_id', name='uq_billing_stripe_subscription'),
        sa.CheckConstraint(
            "status <> 'cancelled' OR cancelled_at IS NOT NULL",
            name='ck_billing_cancelled_at',
        ),
    )
    op.create_index('idx_billing_status', 'billing', ['status'])

    op.create_table(
        'compensations',
        sa.Column('id', BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column('stripe_session_id', sa.TEXT(), nullable=False),
        sa.Column('application_id', sa.TEXT(), nullable=True),
        sa.Column('payment_ref', sa.TEXT(), nullable=True),
        sa.Column('invoice_ref', sa.TEXT(), nullable=True),
        sa.Column('amount', sa.INTEGER(), nullable=True),
        sa.Column('currency', sa.TEXT(), nullable=True),
        sa.Column('customer_email', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='processing'),
        sa.Column('refund_id', sa.TEXT(), nullable=True),
        sa.Column('amount_refunded', sa.INTEGER(), nullable=True),
        sa.Column('attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('root_cause', sa.TEXT(), nullable=True),
        sa.Column('last_error', sa.TEXT(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=True),
        sa.UniqueConstraint('stripe_session_id', name='uq_compensations_session'),
    )
    op.create_index('idx_compensations_status', 'compensations', ['status'])

    op.create_table(
        'webhook_dedup_events',
        sa.Column('id', BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('dedup_key', sa.TEXT(), nullable=False),
        sa.Column('first_seen_at', TS, nullable=False),
        sa.Column('last_seen_at', TS, nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='processing'),
        sa.Column('request_hash', sa.TEXT(), nullable=True),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])

    op.create_table(
        'billing_audit_logs',
        sa.Column('id', BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('tenant_id', sa.TEXT(), nullable=True),
        sa.Column('related_entity_type', sa.TEXT(), nullable=True),
        sa.Column('related_entity_id', sa.TEXT(), nullable=True),
        sa.Column('actor', sa.TEXT(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_billing_audit_entity', 'billing_audit_logs', ['related_entity_type', 'related_entity_id'])
    op.create_index('idx_billing_audit_created', 'billing_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_index('idx_billing_audit_created', table_name='billing_audit_logs')
    op.drop_index('idx_billing_audit_entity', table_name='billing_audit_logs')
    op.drop_table('billing_audit_logs')
    op.drop_index('idx_webhook_dedup_status', table_name='webhook_dedup_events')
    op.drop_table('webhook_dedup_events')
    op.drop_index('idx_compensations_status', table_name='compensations')
    op.drop_table('compensations')
    op.drop_index('idx_billing_status', table_name='billing')
    op.drop_table('billing')
    op.drop_index('idx_applications_email', table_name='applications')
    op.drop_index('idx_applications_status_created', table_name='applications')
    op.drop_table('applications')
    op.drop_table('profiles')
    op.drop_index('idx_users_tenant', table_name='users')
    op.drop_table('users')
    op.drop_table('tenants')
