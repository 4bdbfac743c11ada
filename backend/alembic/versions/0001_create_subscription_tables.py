"""Create users and subscriptions tables

Revision ID: 0001_create_subscription_tables
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_create_subscription_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users and subscriptions (one row per plan period)."""

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(255)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),

        # Subscription details
        sa.Column('plan_id', sa.String(20), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
        sa.Column('is_current', sa.Boolean, nullable=False, server_default=sa.true()),

        # Stripe IDs
        sa.Column('external_subscription_ref', sa.String(255)),
        sa.Column('external_customer_ref', sa.String(255)),
        sa.Column('external_price_ref', sa.String(255)),

        # Plan period
        sa.Column('start_date', sa.Date, nullable=False),
        sa.Column('end_date', sa.Date),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_external_subscription_ref', 'subscriptions', ['external_subscription_ref'])
    op.create_index('ix_subscriptions_external_customer_ref', 'subscriptions', ['external_customer_ref'])

    # Expiry sweep lookups
    op.create_index(
        'ix_subscriptions_status_end_date',
        'subscriptions',
        ['status', 'end_date']
    )

    # At most one current subscription per user
    op.create_index(
        'uq_subscriptions_user_current',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('is_current'),
    )


def downgrade() -> None:
    """Drop subscriptions and users."""
    op.drop_index('uq_subscriptions_user_current', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status_end_date', table_name='subscriptions')
    op.drop_index('ix_subscriptions_external_customer_ref', table_name='subscriptions')
    op.drop_index('ix_subscriptions_external_subscription_ref', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
