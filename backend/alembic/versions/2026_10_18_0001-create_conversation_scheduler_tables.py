"""
create conversation scheduler tables

Revision ID: create_scheduler_tables_0001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'create_scheduler_tables_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_organizations_id', 'organizations', ['id'])
    op.create_index('ix_organizations_name', 'organizations', ['name'])
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'conversations',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('assigned_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('channel', sa.String(length=50), nullable=True, server_default='webchat'),
        sa.Column('conv_metadata', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('needs_processing', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_locked_until', sa.DateTime(), nullable=True),
        sa.Column('processing_locked_by', sa.String(length=255), nullable=True),
        sa.Column('cooldown_until', sa.DateTime(), nullable=True),
        sa.Column('last_processed_at', sa.DateTime(), nullable=True),
        sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processing_error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_processing_error', sa.Text(), nullable=True),
        sa.Column('last_processing_error_at', sa.DateTime(), nullable=True),
        sa.Column('is_stuck', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stuck_detected_at', sa.DateTime(), nullable=True),
        sa.Column('stuck_reason', sa.String(length=50), nullable=True),
        sa.Column('recovery_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_recovery_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversations_id', 'conversations', ['id'])
    op.create_index('ix_conversations_organization_id', 'conversations', ['organization_id'])
    op.create_index('ix_conversations_assigned_user_id', 'conversations', ['assigned_user_id'])
    op.create_index(
        'idx_conversations_stale_detection',
        'conversations',
        ['status', 'needs_processing', 'processing_locked_until', 'is_stuck'],
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True, nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('sender', sa.String(), nullable=True),
        sa.Column('conversation_id', sa.Integer(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('msg_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_messages_id', 'messages', ['id'])
    op.create_index('ix_messages_type', 'messages', ['type'])
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])


def downgrade() -> None:
    op.drop_table('messages')
    op.drop_index('idx_conversations_stale_detection', table_name='conversations')
    op.drop_table('conversations')
    op.drop_table('users')
    op.drop_table('organizations')
