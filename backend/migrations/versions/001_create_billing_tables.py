"""Create users, subscription_plans, subscriptions and webhook_events tables

Revision ID: 001
Revises:
Create Date: 2026-10-16 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_PREDICATE = "status IN ('active', 'past_due')"


def upgrade() -> None:
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=True),
            sa.Column('billing_customer_id', sa.String(length=255), nullable=True),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
        op.create_index('ix_users_billing_customer_id', 'users', ['billing_customer_id'])

    if 'subscription_plans' not in existing_tables:
        op.create_table(
            'subscription_plans',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('creator_id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('description', sa.String(length=500), nullable=False),
            sa.Column('price', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('features', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('external_price_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint('price > 0', name='ck_subscription_plans_price_positive'),
            sa.ForeignKeyConstraint(['creator_id'], ['users.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])
        op.create_index('ix_subscription_plans_creator_id', 'subscription_plans', ['creator_id'])
        op.create_index('ix_subscription_plans_is_active', 'subscription_plans', ['is_active'])

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscriber_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.Integer(), nullable=False),
            sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['subscriber_id'], ['users.id']),
            sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_subscriber_id', 'subscriptions', ['subscriber_id'])
        op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
        op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
        op.create_index(
            'ix_subscriptions_external_subscription_id', 'subscriptions',
            ['external_subscription_id'], unique=True
        )
        op.create_index(
            'uq_subscriptions_live_subscriber_plan', 'subscriptions',
            ['subscriber_id', 'plan_id'], unique=True,
            postgresql_where=sa.text(LIVE_PREDICATE),
            sqlite_where=sa.text(LIVE_PREDICATE)
        )

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('external_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('subscription_external_id', sa.String(length=255), nullable=True),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processing_outcome', sa.String(length=32), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
        op.create_index('ix_webhook_events_external_event_id', 'webhook_events', ['external_event_id'], unique=True)
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
        op.create_index('ix_webhook_events_subscription_external_id', 'webhook_events', ['subscription_external_id'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    for table in ('webhook_events', 'subscriptions', 'subscription_plans', 'users'):
        if table in existing_tables:
            op.drop_table(table)
