"""Initial CTMS sync schema (users, profiles, configurations, sessions, cached data, audit)

Revision ID: a1c4e7d2f9b3
Revises:
Create Date: 2026-10-16T09:12:44.118204
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1c4e7d2f9b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AUDIT_EVENTS = (
    'USER_REGISTER', 'USER_LOGIN', 'PROFILE_UPDATED',
    'CONFIG_CREATED', 'CONFIG_UPDATED', 'CONFIG_ACTIVATED', 'CONFIG_DEACTIVATED', 'CONFIG_DELETED',
    'CTMS_AUTHENTICATED', 'SYNC_COMPLETED',
)


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default='true'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    # --- profiles ---
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=True, server_default='user'),
        sa.Column('organization', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )

    # --- ctms_configurations ---
    op.create_table(
        'ctms_configurations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('configuration_name', sa.String(), nullable=False),
        sa.Column('environment_name', sa.String(), nullable=False),
        sa.Column('veeva_url', sa.String(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('last_sync', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ctms_configurations_user_id', 'ctms_configurations', ['user_id'])
    op.create_index('idx_config_user_active', 'ctms_configurations', ['user_id', 'is_active'])
    op.create_index('idx_config_user_credentials', 'ctms_configurations', ['user_id', 'veeva_url', 'username'])

    # --- ctms_sessions ---
    op.create_table(
        'ctms_sessions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('configuration_id', sa.String(), sa.ForeignKey('ctms_configurations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_id', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ctms_sessions_configuration_id', 'ctms_sessions', ['configuration_id'])
    op.create_index('idx_session_config_created', 'ctms_sessions', ['configuration_id', 'created_at'])

    # --- study_data ---
    op.create_table(
        'study_data',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('configuration_id', sa.String(), sa.ForeignKey('ctms_configurations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('study_id', sa.String(), nullable=False),
        sa.Column('study_name', sa.String(), nullable=False),
        sa.Column('phase', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('configuration_id', 'study_id', name='uq_study_config_study'),
    )
    op.create_index('ix_study_data_configuration_id', 'study_data', ['configuration_id'])

    # --- milestone_data ---
    op.create_table(
        'milestone_data',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('configuration_id', sa.String(), sa.ForeignKey('ctms_configurations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('study_id', sa.String(), nullable=False),
        sa.Column('site_id', sa.String(), nullable=True),
        sa.Column('site_key', sa.String(), nullable=False, server_default=''),
        sa.Column('milestone_type', sa.Enum('study', 'site', name='milestonekind'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='unknown'),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('planned_finish_date', sa.Date(), nullable=True),
        sa.Column('baseline_finish_date', sa.Date(), nullable=True),
        sa.Column('actual_finish_date', sa.Date(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('assigned_to', sa.String(), nullable=True),
        sa.Column('priority', sa.String(), nullable=False, server_default='medium'),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('configuration_id', 'study_id', 'site_key', 'title', name='uq_milestone_key'),
    )
    op.create_index('ix_milestone_data_configuration_id', 'milestone_data', ['configuration_id'])
    op.create_index('idx_milestone_config_type', 'milestone_data', ['configuration_id', 'milestone_type'])

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('event_type', sa.Enum(*AUDIT_EVENTS, name='auditeventtype'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('configuration_id', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_configuration_id', 'audit_logs', ['configuration_id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('idx_audit_user_timestamp', 'audit_logs', ['user_id', 'timestamp'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('milestone_data')
    op.drop_table('study_data')
    op.drop_table('ctms_sessions')
    op.drop_table('ctms_configurations')
    op.drop_table('profiles')
    op.drop_table('users')
    sa.Enum(name='auditeventtype').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='milestonekind').drop(op.get_bind(), checkfirst=True)
