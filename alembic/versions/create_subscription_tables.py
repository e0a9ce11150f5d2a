"""Create subscriptions, subscription_history and assignments tables

Revision ID: subscription_001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'subscription_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # One row per Firebase user, created lazily on first access
    op.create_table('subscriptions',
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('plan_id', sa.String(), nullable=False, server_default='free'),
        sa.Column('status', sa.Enum('FREE', 'TRIAL', 'ACTIVE', 'CANCELLED', 'EXPIRED', name='subscriptionstatus'), nullable=False),
        sa.Column('assignments_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('assignment_limit', sa.Integer(), nullable=False),
        sa.Column('has_calendar_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_end_date', sa.DateTime(), nullable=True),
        sa.Column('provider_subscription_id', sa.String(), nullable=True),
        sa.Column('upgraded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('user_id')
    )
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_plan_id'), 'subscriptions', ['plan_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(op.f('ix_subscriptions_provider_subscription_id'), 'subscriptions', ['provider_subscription_id'], unique=True)

    op.create_table('subscription_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('from_plan', sa.String(), nullable=True),
        sa.Column('to_plan', sa.String(), nullable=True),
        sa.Column('provider_subscription_id', sa.String(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['subscriptions.user_id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_history_id'), 'subscription_history', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_history_user_id'), 'subscription_history', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscription_history_action'), 'subscription_history', ['action'], unique=False)
    op.create_index(op.f('ix_subscription_history_created_at'), 'subscription_history', ['created_at'], unique=False)

    op.create_table('assignments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('assignment_type', sa.String(), nullable=True),
        sa.Column('academic_level', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='completed'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('requirements', sa.Text(), nullable=True),
        sa.Column('word_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_assignments_id'), 'assignments', ['id'], unique=False)
    op.create_index(op.f('ix_assignments_user_id'), 'assignments', ['user_id'], unique=False)
    op.create_index(op.f('ix_assignments_created_at'), 'assignments', ['created_at'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_assignments_created_at'), table_name='assignments')
    op.drop_index(op.f('ix_assignments_user_id'), table_name='assignments')
    op.drop_index(op.f('ix_assignments_id'), table_name='assignments')
    op.drop_table('assignments')

    op.drop_index(op.f('ix_subscription_history_created_at'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_action'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_user_id'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_id'), table_name='subscription_history')
    op.drop_table('subscription_history')

    op.drop_index(op.f('ix_subscriptions_provider_subscription_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_status'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_plan_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_user_id'), table_name='subscriptions')
    op.drop_table('subscriptions')

    sa.Enum(name='subscriptionstatus').drop(op.get_bind(), checkfirst=True)
