"""Baseline migration - users, cases, conversations, messages, WhatsApp mappings

Revision ID: 0001_conversations_baseline
Revises:
Create Date: 2026-10-16

Creates the collaborator tables (users, cases, case_members) and the
conversation subsystem.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_conversations_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Users (directory)
    # ==========================================================================
    op.execute('''
        CREATE TABLE users (
            id UUID CONSTRAINT pk_users PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) NOT NULL CONSTRAINT uq_users_email UNIQUE,
            display_name VARCHAR(255) NOT NULL,
            avatar_url VARCHAR(500),
            role VARCHAR(50) NOT NULL DEFAULT 'internal_team',
            token_version INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            last_active_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Cases
    # ==========================================================================
    op.execute('''
        CREATE TABLE cases (
            id UUID CONSTRAINT pk_cases PRIMARY KEY DEFAULT gen_random_uuid(),
            title VARCHAR(255) NOT NULL,
            created_by_user_id UUID
                CONSTRAINT fk_cases_created_by_user_id_users
                REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE case_members (
            case_id UUID NOT NULL
                CONSTRAINT fk_case_members_case_id_cases
                REFERENCES cases(id) ON DELETE CASCADE,
            user_id UUID NOT NULL
                CONSTRAINT fk_case_members_user_id_users
                REFERENCES users(id) ON DELETE CASCADE,
            added_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT pk_case_members PRIMARY KEY (case_id, user_id)
        )
    ''')

    # ==========================================================================
    # Conversations
    # ==========================================================================
    op.execute('''
        CREATE TABLE conversations (
            id UUID CONSTRAINT pk_conversations PRIMARY KEY DEFAULT gen_random_uuid(),
            case_id UUID NOT NULL
                CONSTRAINT fk_conversations_case_id_cases
                REFERENCES cases(id) ON DELETE RESTRICT,
            title VARCHAR(255) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            priority VARCHAR(20) NOT NULL DEFAULT 'medium',
            created_by_user_id UUID
                CONSTRAINT fk_conversations_created_by_user_id_users
                REFERENCES users(id) ON DELETE SET NULL,
            external_phone VARCHAR(32),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_message_at TIMESTAMPTZ,
            CONSTRAINT ck_conversations_status_valid
                CHECK (status IN ('active', 'resolved', 'archived')),
            CONSTRAINT ck_conversations_priority_valid
                CHECK (priority IN ('low', 'medium', 'high', 'urgent'))
        )
    ''')
    op.execute('CREATE INDEX idx_conversations_case ON conversations(case_id)')
    op.execute(
        'CREATE INDEX idx_conversations_case_phone ON conversations(case_id, external_phone)'
    )

    op.execute('''
        CREATE TABLE conversation_participants (
            conversation_id UUID NOT NULL
                CONSTRAINT fk_conversation_participants_conversation_id_conversations
                REFERENCES conversations(id) ON DELETE CASCADE,
            user_id UUID NOT NULL
                CONSTRAINT fk_conversation_participants_user_id_users
                REFERENCES users(id) ON DELETE CASCADE,
            role VARCHAR(50) NOT NULL,
            joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_seen_at TIMESTAMPTZ,
            CONSTRAINT pk_conversation_participants PRIMARY KEY (conversation_id, user_id)
        )
    ''')
    op.execute('CREATE INDEX idx_participants_user ON conversation_participants(user_id)')

    # ==========================================================================
    # Messages (id is the ordering key)
    # ==========================================================================
    op.execute('''
        CREATE TABLE messages (
            id BIGSERIAL CONSTRAINT pk_messages PRIMARY KEY,
            conversation_id UUID NOT NULL
                CONSTRAINT fk_messages_conversation_id_conversations
                REFERENCES conversations(id) ON DELETE CASCADE,
            sender_user_id UUID
                CONSTRAINT fk_messages_sender_user_id_users
                REFERENCES users(id) ON DELETE SET NULL,
            sender_external_id VARCHAR(64),
            sender_display_name VARCHAR(255),
            content TEXT NOT NULL DEFAULT '',
            message_type VARCHAR(20) NOT NULL DEFAULT 'text',
            file_url VARCHAR(1000),
            file_name VARCHAR(255),
            file_size BIGINT,
            file_type VARCHAR(100),
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            external_message_id VARCHAR(64) CONSTRAINT uq_messages_external_message_id UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_messages_type_valid
                CHECK (message_type IN ('text', 'file', 'system')),
            CONSTRAINT ck_messages_sender_present
                CHECK (sender_user_id IS NOT NULL OR sender_external_id IS NOT NULL)
        )
    ''')
    op.execute(
        'CREATE INDEX idx_messages_conversation_id ON messages(conversation_id, id)'
    )

    op.execute('''
        CREATE TABLE message_read_receipts (
            message_id BIGINT NOT NULL
                CONSTRAINT fk_message_read_receipts_message_id_messages
                REFERENCES messages(id) ON DELETE CASCADE,
            user_id UUID NOT NULL
                CONSTRAINT fk_message_read_receipts_user_id_users
                REFERENCES users(id) ON DELETE CASCADE,
            read_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT pk_message_read_receipts PRIMARY KEY (message_id, user_id)
        )
    ''')
    op.execute('CREATE INDEX idx_read_receipts_user ON message_read_receipts(user_id)')

    # ==========================================================================
    # WhatsApp phone -> case mapping
    # ==========================================================================
    op.execute('''
        CREATE TABLE phone_case_mappings (
            phone VARCHAR(32) CONSTRAINT pk_phone_case_mappings PRIMARY KEY,
            case_id UUID NOT NULL
                CONSTRAINT fk_phone_case_mappings_case_id_cases
                REFERENCES cases(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')


def downgrade() -> None:
    """Drop all tables."""
    op.execute('DROP TABLE IF EXISTS phone_case_mappings CASCADE')
    op.execute('DROP TABLE IF EXISTS message_read_receipts CASCADE')
    op.execute('DROP TABLE IF EXISTS messages CASCADE')
    op.execute('DROP TABLE IF EXISTS conversation_participants CASCADE')
    op.execute('DROP TABLE IF EXISTS conversations CASCADE')
    op.execute('DROP TABLE IF EXISTS case_members CASCADE')
    op.execute('DROP TABLE IF EXISTS cases CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
