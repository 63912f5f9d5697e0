"""Initial schema - memory documents, context chunks, retrieval sessions, update queue,
org AI configs and context rules

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create memory_documents table
    op.create_table(
        'memory_documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('org_id', sa.String(100), nullable=False, index=True),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('level_entity_id', sa.String(100), nullable=True),
        sa.Column('scope_key', sa.String(255), nullable=False, unique=True),
        sa.Column('document_key', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('token_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_auto_generated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_editor_id', sa.String(100), nullable=True),
        sa.Column('edit_reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_memory_documents_org_level', 'memory_documents', ['org_id', 'level'])

    # Create context_chunks table
    op.create_table(
        'context_chunks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('org_id', sa.String(100), nullable=False),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('section_id', sa.String(255), nullable=False),
        sa.Column('section_title', sa.String(500), nullable=False),
        sa.Column('line_start', sa.Integer(), nullable=False),
        sa.Column('line_end', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('keywords', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('importance', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('token_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_retrieved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_helpful', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_insufficient', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['document_id'], ['memory_documents.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_context_chunks_org_level', 'context_chunks', ['org_id', 'level'])
    op.create_index(
        'ix_context_chunks_keywords', 'context_chunks', ['keywords'], postgresql_using='gin'
    )

    # Create retrieval_sessions table
    op.create_table(
        'retrieval_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('org_id', sa.String(100), nullable=False, index=True),
        sa.Column('user_id', sa.String(100), nullable=True),
        sa.Column('session_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('was_successful', sa.Boolean(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('document_ids', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('served_chunk_ids', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('keywords', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('matched_keywords', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('missed_keywords', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('request_types', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('iteration_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('initial_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_retrieval_sessions_status_created', 'retrieval_sessions', ['status', 'created_at']
    )

    # Create memory_update_queue table
    op.create_table(
        'memory_update_queue',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('org_id', sa.String(100), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('source_entity_id', sa.String(100), nullable=False),
        sa.Column('target_level', sa.String(20), nullable=False),
        sa.Column('target_entity_id', sa.String(100), nullable=True),
        sa.Column('update_type', sa.String(30), nullable=False),
        sa.Column('section_id', sa.String(255), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('keywords', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_memory_update_queue_status_created', 'memory_update_queue', ['status', 'created_at']
    )

    # Create org_ai_configs table
    op.create_table(
        'org_ai_configs',
        sa.Column('org_id', sa.String(100), primary_key=True),
        sa.Column('classification_mode', sa.String(20), nullable=False, server_default='hybrid'),
        sa.Column('monthly_budget_usd', sa.Float(), nullable=True),
        sa.Column('daily_request_limit', sa.Integer(), nullable=True),
        sa.Column('current_month_spend', sa.Float(), nullable=False, server_default='0'),
        sa.Column('requests_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column('reserved_requests', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Create context_rules table
    op.create_table(
        'context_rules',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('org_id', sa.String(100), nullable=False, index=True),
        sa.Column('session_type', sa.String(50), nullable=True),
        sa.Column('rule_type', sa.String(20), nullable=False),
        sa.Column('section_pattern', sa.String(255), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('context_rules')
    op.drop_table('org_ai_configs')
    op.drop_index('ix_memory_update_queue_status_created', table_name='memory_update_queue')
    op.drop_table('memory_update_queue')
    op.drop_index('ix_retrieval_sessions_status_created', table_name='retrieval_sessions')
    op.drop_table('retrieval_sessions')
    op.drop_index('ix_context_chunks_keywords', table_name='context_chunks')
    op.drop_index('ix_context_chunks_org_level', table_name='context_chunks')
    op.drop_table('context_chunks')
    op.drop_index('ix_memory_documents_org_level', table_name='memory_documents')
    op.drop_table('memory_documents')
