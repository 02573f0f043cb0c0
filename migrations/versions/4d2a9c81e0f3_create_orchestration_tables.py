"""create orchestration tables

Revision ID: 4d2a9c81e0f3
Revises:
Create Date: 2026-10-18 00:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '4d2a9c81e0f3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'instances',
        sa.Column('user_id', sa.String(), primary_key=True),
        sa.Column('sanitized_username', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('license_type', sa.String(), nullable=False),
        sa.Column('license_owner_id', sa.String(), nullable=True),
        sa.Column('allow_license_sharing', sa.Boolean(), nullable=False),
        sa.Column('max_concurrent_users', sa.Integer(), nullable=False),
        sa.Column('linked_session_id', sa.String(), nullable=True),
        sa.Column('foundry_version', sa.String(), nullable=False),
        sa.Column('started_at', sa.Integer(), nullable=True),
        sa.Column('auto_shutdown_at', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('access_point_id', sa.String(), nullable=True),
        sa.Column('secret_arn', sa.String(), nullable=True),
        sa.Column('s3_bucket_name', sa.String(), nullable=True),
        sa.Column('s3_bucket_url', sa.String(), nullable=True),
        sa.Column('iam_user_name', sa.String(), nullable=True),
        sa.Column('s3_access_key_id', sa.String(), nullable=True),
        sa.Column('s3_secret_access_key', sa.String(), nullable=True),
        sa.Column('target_group_arn', sa.String(), nullable=True),
        sa.Column('alb_rule_priority', sa.Integer(), nullable=True),
        sa.Column('alb_rule_arn', sa.String(), nullable=True),
        sa.Column('task_definition_arn', sa.String(), nullable=True),
        sa.Column('task_arn', sa.String(), nullable=True),
        sa.Column('task_private_ip', sa.String(), nullable=True),
    )
    op.create_index('ix_instances_status', 'instances', ['status'])
    op.create_index('ix_instances_license_owner_id', 'instances', ['license_owner_id'])

    op.create_table(
        'license_pools',
        sa.Column('license_id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('owner_username', sa.String(), nullable=True),
        sa.Column('max_concurrent_users', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_license_pools_owner_id', 'license_pools', ['owner_id'], unique=True)

    op.create_table(
        'scheduled_sessions',
        sa.Column('session_id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('license_type', sa.String(), nullable=False),
        sa.Column('license_id', sa.String(), nullable=False),
        sa.Column('start_time', sa.Integer(), nullable=False),
        sa.Column('end_time', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('instance_id', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_scheduled_sessions_user_id', 'scheduled_sessions', ['user_id'])
    op.create_index('ix_scheduled_sessions_license_id', 'scheduled_sessions', ['license_id'])
    op.create_index('ix_scheduled_sessions_start_time', 'scheduled_sessions', ['start_time'])
    op.create_index('ix_scheduled_sessions_status', 'scheduled_sessions', ['status'])

    op.create_table(
        'license_reservations',
        sa.Column('reservation_id', sa.String(), primary_key=True),
        sa.Column('license_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('start_time', sa.Integer(), nullable=False),
        sa.Column('end_time', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_license_reservations_session_id', 'license_reservations', ['session_id'])
    op.create_index(
        'ix_license_reservations_license_window', 'license_reservations', ['license_id', 'start_time']
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('notification_type', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('instance_url', sa.String(), nullable=True),
        sa.Column('delivered', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('license_reservations')
    op.drop_table('scheduled_sessions')
    op.drop_table('license_pools')
    op.drop_table('instances')
