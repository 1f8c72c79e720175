"""create_chat_tables

Create tables for Netyora Chat.

Tables:
- chats
- chat_participants
- chat_messages
- chat_attachments
- chat_attachment_downloads

Revision ID: 3c1e9a7d5b20
Revises:
Create Date: 2026-10-01 00:01:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1e9a7d5b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =============================================
    # 1. CHATS
    # personal_key is unique, one personal chat per pair
    # =============================================
    op.create_table(
        'chats',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('personal_key', sa.String(200)),
        sa.Column('title', sa.String(255)),
        sa.Column('avatar_url', sa.Text),
        sa.Column('community_id', sa.String(64)),
        sa.Column('created_by', sa.String(64), nullable=False),
        sa.Column('message_seq', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_message_preview', sa.String(200)),
        sa.Column('read_by', sa.JSON),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
        sa.UniqueConstraint('personal_key', name='uq_chats_personal_key'),
    )
    op.create_index('idx_chats_kind', 'chats', ['kind'])
    op.create_index('idx_chats_updated', 'chats', ['updated_at'])

    # =============================================
    # 2. PARTICIPANTS
    # =============================================
    op.create_table(
        'chat_participants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('chat_id', sa.String(36), sa.ForeignKey('chats.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('display_name', sa.String(255)),
        sa.Column('avatar_url', sa.Text),
        sa.Column('joined_at', sa.DateTime),
        sa.Column('hidden_at', sa.DateTime),
        sa.Column('left_at', sa.DateTime),
        sa.UniqueConstraint('chat_id', 'user_id', name='uq_chat_participants_chat_user'),
    )
    op.create_index('idx_chat_participants_user', 'chat_participants', ['user_id'])
    op.create_index('idx_chat_participants_chat', 'chat_participants', ['chat_id'])

    # =============================================
    # 3. MESSAGES
    # =============================================
    op.create_table(
        'chat_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('chat_id', sa.String(36), sa.ForeignKey('chats.id', ondelete='CASCADE'), nullable=False),
        sa.Column('seq', sa.Integer, nullable=False),
        sa.Column('sender_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('content', sa.Text),
        sa.Column('edited', sa.Boolean, server_default=sa.false()),
        sa.Column('edited_at', sa.DateTime),
        sa.Column('voice_url', sa.Text),
        sa.Column('voice_duration_ms', sa.Integer),
        sa.Column('voice_file_size', sa.BigInteger),
        sa.Column('invitation_data', sa.JSON),
        sa.Column('system_meta', sa.JSON),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('idx_chat_messages_chat_order', 'chat_messages', ['chat_id', 'created_at', 'seq'])
    op.create_index('idx_chat_messages_kind', 'chat_messages', ['kind'])
    op.create_index('idx_chat_messages_sender', 'chat_messages', ['sender_id'])

    # =============================================
    # 4. ATTACHMENTS
    # =============================================
    op.create_table(
        'chat_attachments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('chat_id', sa.String(36), sa.ForeignKey('chats.id', ondelete='CASCADE'), nullable=False),
        sa.Column('url', sa.Text, nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_size', sa.BigInteger, nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('public_id', sa.String(500), nullable=False),
        sa.Column('width', sa.Integer),
        sa.Column('height', sa.Integer),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.Column('is_deleted', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('deleted_at', sa.DateTime),
        sa.Column('deletion_reason', sa.String(30)),
        sa.Column('created_at', sa.DateTime),
        sa.UniqueConstraint('message_id', name='uq_chat_attachments_message'),
    )
    op.create_index('idx_chat_attachments_expiry', 'chat_attachments', ['is_deleted', 'expires_at'])
    op.create_index('idx_chat_attachments_chat', 'chat_attachments', ['chat_id'])

    # =============================================
    # 5. DOWNLOAD RECEIPTS
    # =============================================
    op.create_table(
        'chat_attachment_downloads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('attachment_id', sa.String(36), sa.ForeignKey('chat_attachments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('via_redirect', sa.Boolean, server_default=sa.false()),
        sa.Column('downloaded_at', sa.DateTime),
        sa.UniqueConstraint('attachment_id', 'user_id', name='uq_attachment_downloads_user'),
    )


def downgrade() -> None:
    # Reverse order, respecting foreign keys
    op.drop_table('chat_attachment_downloads')
    op.drop_index('idx_chat_attachments_chat', table_name='chat_attachments')
    op.drop_index('idx_chat_attachments_expiry', table_name='chat_attachments')
    op.drop_table('chat_attachments')
    op.drop_index('idx_chat_messages_sender', table_name='chat_messages')
    op.drop_index('idx_chat_messages_kind', table_name='chat_messages')
    op.drop_index('idx_chat_messages_chat_order', table_name='chat_messages')
    op.drop_table('chat_messages')
    op.drop_index('idx_chat_participants_chat', table_name='chat_participants')
    op.drop_index('idx_chat_participants_user', table_name='chat_participants')
    op.drop_table('chat_participants')
    op.drop_index('idx_chats_updated', table_name='chats')
    op.drop_index('idx_chats_kind', table_name='chats')
    op.drop_table('chats')
