"""SQLAlchemy models for the memory store, retrieval sessions and org AI configuration"""

import json
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.dialects.postgresql import ARRAY as PG_ARRAY

from airouter.storage.database import Base


class StringArrayType(TypeDecorator):
    """Stores Python list of strings as JSON string for SQLite, native ARRAY for PostgreSQL"""

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_ARRAY(String))
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return list(value)
        return json.dumps(list(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return list(value)
        return json.loads(value)


# ============================================================================
# Memory Documents
# ============================================================================


class MemoryDocumentDB(Base):
    """One leveled knowledge document owned by an organization"""

    __tablename__ = "memory_documents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    org_id = Column(String(100), nullable=False, index=True)
    level = Column(String(20), nullable=False)
    level_entity_id = Column(String(100), nullable=True)
    # "<org>:<level>:<entity or ->" so uniqueness also holds for the org level (NULL entity)
    scope_key = Column(String(255), nullable=False, unique=True)
    document_key = Column(String(255), nullable=False)
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=False)
    token_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    is_auto_generated = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_editor_id = Column(String(100), nullable=True)
    edit_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("ix_memory_documents_org_level", "org_id", "level"),)


class ContextChunkDB(Base):
    """Heading-delimited section of a memory document with usage counters"""

    __tablename__ = "context_chunks"

    id = Column(Uuid, primary_key=True, default=uuid4)
    document_id = Column(
        Uuid, ForeignKey("memory_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    org_id = Column(String(100), nullable=False)
    level = Column(String(20), nullable=False)
    chunk_index = Column(Integer, nullable=False, default=0)
    section_id = Column(String(255), nullable=False)
    section_title = Column(String(500), nullable=False)
    line_start = Column(Integer, nullable=False)
    line_end = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    keywords = Column(StringArrayType, nullable=False, default=list)
    importance = Column(Integer, nullable=False, default=5)
    token_count = Column(Integer, nullable=False, default=0)

    # Feedback counters
    times_retrieved = Column(Integer, nullable=False, default=0)
    times_helpful = Column(Integer, nullable=False, default=0)
    times_insufficient = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_context_chunks_org_level", "org_id", "level"),)


# ============================================================================
# Retrieval Sessions
# ============================================================================


class RetrievalSessionDB(Base):
    """Context fetches made on behalf of one downstream model call"""

    __tablename__ = "retrieval_sessions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    org_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), nullable=True)
    session_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="open")
    was_successful = Column(Boolean, nullable=True)
    notes = Column(Text, nullable=True)

    document_ids = Column(StringArrayType, nullable=False, default=list)
    served_chunk_ids = Column(StringArrayType, nullable=False, default=list)
    keywords = Column(StringArrayType, nullable=False, default=list)
    matched_keywords = Column(StringArrayType, nullable=False, default=list)
    missed_keywords = Column(StringArrayType, nullable=False, default=list)
    request_types = Column(StringArrayType, nullable=False, default=list)  # One per iterative request
    iteration_count = Column(Integer, nullable=False, default=0)
    initial_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_retrieval_sessions_status_created", "status", "created_at"),)


# ============================================================================
# Memory Update Queue
# ============================================================================


class MemoryUpdateDB(Base):
    """Queued document change triggered by a domain event"""

    __tablename__ = "memory_update_queue"

    id = Column(Uuid, primary_key=True, default=uuid4)
    org_id = Column(String(100), nullable=False)
    source_type = Column(String(50), nullable=False)
    source_entity_id = Column(String(100), nullable=False)
    target_level = Column(String(20), nullable=False)
    target_entity_id = Column(String(100), nullable=True)
    update_type = Column(String(30), nullable=False)
    section_id = Column(String(255), nullable=True)
    content = Column(Text, nullable=True)
    keywords = Column(StringArrayType, nullable=False, default=list)
    status = Column(String(20), nullable=False, default="pending")
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_memory_update_queue_status_created", "status", "created_at"),)


# ============================================================================
# Organization AI Configuration
# ============================================================================


class OrgAIConfigDB(Base):
    """Per-organization classification mode and budget ledger"""

    __tablename__ = "org_ai_configs"

    org_id = Column(String(100), primary_key=True)
    classification_mode = Column(String(20), nullable=False, default="hybrid")

    # NULL limits mean unlimited
    monthly_budget_usd = Column(Float, nullable=True)
    daily_request_limit = Column(Integer, nullable=True)

    current_month_spend = Column(Float, nullable=False, default=0.0)
    requests_this_month = Column(Integer, nullable=False, default=0)
    # Held by in-flight requests between check and record
    reserved_usd = Column(Float, nullable=False, default=0.0)
    reserved_requests = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class ContextRuleDB(Base):
    """Organization rule that filters or reorders served chunks"""

    __tablename__ = "context_rules"

    id = Column(Uuid, primary_key=True, default=uuid4)
    org_id = Column(String(100), nullable=False, index=True)
    session_type = Column(String(50), nullable=True)  # NULL applies to every session type
    rule_type = Column(String(20), nullable=False)  # exclude | prioritize
    section_pattern = Column(String(255), nullable=False)  # Regex matched against section_id
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
