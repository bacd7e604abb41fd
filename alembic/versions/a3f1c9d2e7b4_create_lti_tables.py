# © [2025] EDT&Partners. Licensed under CC BY 4.0.

"""Create users and LTI launch tables

Revision ID: a3f1c9d2e7b4
Revises:
Create Date: 2025-09-15 10:12:41.518203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a3f1c9d2e7b4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SERVER_DEFAULT_NOW = sa.text('now()')
USERS_ID = 'users.id'
LTI_PLATFORMS_ID = 'lti_platforms.id'
LTI_CONTEXTS_ID = 'lti_contexts.id'

user_role = sa.Enum('student', 'instructor', 'admin', name='userrole')
context_sync_status = sa.Enum('pending', 'completed', 'error', name='contextsyncstatus')
enrollment_status = sa.Enum('active', 'inactive', name='enrollmentstatus')
sync_log_status = sa.Enum('started', 'completed', 'failed', name='synclogstatus')

def upgrade() -> None:
    op.create_table('users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('role', user_role, nullable=False, server_default='student'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)

    op.create_table('lti_platforms',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('platform_type', sa.String(), nullable=False),
        sa.Column('issuer', sa.String(), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('auth_endpoint', sa.String(), nullable=False),
        sa.Column('token_endpoint', sa.String(), nullable=False),
        sa.Column('jwks_endpoint', sa.String(), nullable=False),
        sa.Column('deployment_id', sa.String(), nullable=True),
        sa.Column('nrps_endpoint', sa.String(), nullable=True),
        sa.Column('auto_provision_users', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.ForeignKeyConstraint(['created_by'], [USERS_ID], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_lti_platforms_id'), 'lti_platforms', ['id'], unique=False)
    op.create_index(op.f('ix_lti_platforms_issuer'), 'lti_platforms', ['issuer'], unique=False)
    op.create_index('uq_lti_platforms_active_issuer', 'lti_platforms', ['issuer'], unique=True,
                    postgresql_where=sa.text('is_active'))

    op.create_table('lti_keys',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('platform_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('key_id', sa.String(), nullable=False),
        sa.Column('public_key', sa.Text(), nullable=False),
        sa.Column('private_key', sa.LargeBinary(), nullable=False),
        sa.Column('algorithm', sa.String(), nullable=False, server_default='RS256'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.ForeignKeyConstraint(['platform_id'], [LTI_PLATFORMS_ID], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key_id'),
    )
    op.create_index(op.f('ix_lti_keys_id'), 'lti_keys', ['id'], unique=False)
    op.create_index(op.f('ix_lti_keys_platform_id'), 'lti_keys', ['platform_id'], unique=False)
    op.create_index('uq_lti_keys_active_platform', 'lti_keys', ['platform_id'], unique=True,
                    postgresql_where=sa.text('is_active'))

    op.create_table('lti_launch_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('launch_id', sa.String(), nullable=False),
        sa.Column('platform_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_type', sa.String(), nullable=True),
        sa.Column('launch_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['platform_id'], [LTI_PLATFORMS_ID], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_lti_launch_sessions_id'), 'lti_launch_sessions', ['id'], unique=False)
    op.create_index(op.f('ix_lti_launch_sessions_launch_id'), 'lti_launch_sessions', ['launch_id'], unique=True)
    op.create_index('ix_lti_launch_sessions_expires_at', 'lti_launch_sessions', ['expires_at'], unique=False)

    op.create_table('lti_user_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('platform_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('lti_user_id', sa.String(), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('given_name', sa.String(), nullable=True),
        sa.Column('family_name', sa.String(), nullable=True),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('lms_roles', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('lms_user_data', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.ForeignKeyConstraint(['platform_id'], [LTI_PLATFORMS_ID], ),
        sa.ForeignKeyConstraint(['user_id'], [USERS_ID], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('platform_id', 'lti_user_id', name='uq_lti_user_mapping'),
    )
    op.create_index(op.f('ix_lti_user_mappings_id'), 'lti_user_mappings', ['id'], unique=False)

    op.create_table('lti_contexts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('platform_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('context_id', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('lms_course_data', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('sync_status', context_sync_status, nullable=False, server_default='pending'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('course_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.ForeignKeyConstraint(['platform_id'], [LTI_PLATFORMS_ID], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('platform_id', 'context_id', name='uq_lti_context'),
    )
    op.create_index(op.f('ix_lti_contexts_id'), 'lti_contexts', ['id'], unique=False)

    op.create_table('lti_enrollments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('context_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_mapping_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('status', enrollment_status, nullable=False, server_default='active'),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.ForeignKeyConstraint(['context_id'], [LTI_CONTEXTS_ID], ),
        sa.ForeignKeyConstraint(['user_mapping_id'], ['lti_user_mappings.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('context_id', 'user_mapping_id', name='uq_lti_enrollment'),
    )
    op.create_index(op.f('ix_lti_enrollments_id'), 'lti_enrollments', ['id'], unique=False)

    op.create_table('lti_sync_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('platform_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('context_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('sync_type', sa.String(), nullable=False),
        sa.Column('status', sync_log_status, nullable=False, server_default='started'),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['platform_id'], [LTI_PLATFORMS_ID], ),
        sa.ForeignKeyConstraint(['context_id'], [LTI_CONTEXTS_ID], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_lti_sync_logs_id'), 'lti_sync_logs', ['id'], unique=False)

    op.create_table('lti_launch_handoffs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('code_hash', sa.String(), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('launch_session_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=SERVER_DEFAULT_NOW, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], [USERS_ID], ),
        sa.ForeignKeyConstraint(['launch_session_id'], ['lti_launch_sessions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code_hash'),
    )
    op.create_index(op.f('ix_lti_launch_handoffs_id'), 'lti_launch_handoffs', ['id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_lti_launch_handoffs_id'), table_name='lti_launch_handoffs')
    op.drop_table('lti_launch_handoffs')
    op.drop_index(op.f('ix_lti_sync_logs_id'), table_name='lti_sync_logs')
    op.drop_table('lti_sync_logs')
    op.drop_index(op.f('ix_lti_enrollments_id'), table_name='lti_enrollments')
    op.drop_table('lti_enrollments')
    op.drop_index(op.f('ix_lti_contexts_id'), table_name='lti_contexts')
    op.drop_table('lti_contexts')
    op.drop_index(op.f('ix_lti_user_mappings_id'), table_name='lti_user_mappings')
    op.drop_table('lti_user_mappings')
    op.drop_index('ix_lti_launch_sessions_expires_at', table_name='lti_launch_sessions')
    op.drop_index(op.f('ix_lti_launch_sessions_launch_id'), table_name='lti_launch_sessions')
    op.drop_index(op.f('ix_lti_launch_sessions_id'), table_name='lti_launch_sessions')
    op.drop_table('lti_launch_sessions')
    op.drop_index('uq_lti_keys_active_platform', table_name='lti_keys')
    op.drop_index(op.f('ix_lti_keys_platform_id'), table_name='lti_keys')
    op.drop_index(op.f('ix_lti_keys_id'), table_name='lti_keys')
    op.drop_table('lti_keys')
    op.drop_index('uq_lti_platforms_active_issuer', table_name='lti_platforms')
    op.drop_index(op.f('ix_lti_platforms_issuer'), table_name='lti_platforms')
    op.drop_index(op.f('ix_lti_platforms_id'), table_name='lti_platforms')
    op.drop_table('lti_platforms')
    op.drop_index(op.f('ix_users_id'), table_name='users')
    op.drop_table('users')

    for enum_type in (sync_log_status, enrollment_status, context_sync_status, user_role):
        enum_type.drop(op.get_bind(), checkfirst=True)
