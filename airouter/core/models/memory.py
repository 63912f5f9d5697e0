"""Models for the hierarchical memory store"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class MemoryLevel(str, Enum):
    """Hierarchy levels, broadest first"""

    ORG = "org"
    DOMAIN = "domain"
    PROJECT = "project"
    CIRCLE = "circle"
    USER = "user"


# Hierarchy order used for tie-breaking and document resolution
LEVEL_ORDER: tuple[MemoryLevel, ...] = tuple(MemoryLevel)


class SessionType(str, Enum):
    """Kind of model call a retrieval session serves"""

    TICKET_ANALYSIS = "ticket_analysis"
    CODE_REVIEW = "code_review"
    MEETING_SUMMARY = "meeting_summary"
    CHAT = "chat"
    TEST_GENERATION = "test_generation"


class RequestType(str, Enum):
    """What a downstream model asks for when its context is insufficient"""

    CODE_SNIPPET = "code_snippet"
    SCHEMA = "schema"
    FILE_CONTENT = "file_content"
    API_ENDPOINT = "api_endpoint"
    BUSINESS_LOGIC = "business_logic"
    CLARIFICATION = "clarification"


class SessionStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    EXPIRED = "expired"


class UpdateSourceType(str, Enum):
    """Domain events that feed memory updates"""

    TICKET_CLOSED = "ticket_closed"
    MEETING_COMPLETED = "meeting_completed"
    PR_MERGED = "pr_merged"
    DECISION_MADE = "decision_made"


class UpdateType(str, Enum):
    APPEND = "append"
    UPDATE_SECTION = "update_section"
    REGENERATE = "regenerate"


class UpdateStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


class ContextRuleType(str, Enum):
    EXCLUDE = "exclude"
    PRIORITIZE = "prioritize"


class HierarchyPosition(BaseModel):
    """Where the caller sits in the organization hierarchy"""

    org_id: str
    user_id: str | None = None
    domain_id: str | None = None
    project_id: str | None = None
    circle_id: str | None = None

    def entity_for(self, level: MemoryLevel) -> str | None:
        """Level-entity id for a level, or None when not supplied (org is always None)"""
        return {
            MemoryLevel.ORG: None,
            MemoryLevel.DOMAIN: self.domain_id,
            MemoryLevel.PROJECT: self.project_id,
            MemoryLevel.CIRCLE: self.circle_id,
            MemoryLevel.USER: self.user_id,
        }[level]


class ParsedSection(BaseModel):
    """A heading-delimited section of a memory document, before persistence"""

    section_id: str
    section_title: str
    line_start: int = Field(..., description="First line of the section, 1-based")
    line_end: int = Field(..., description="Last line of the section, inclusive")
    content: str
    keywords: list[str] = Field(default_factory=list)
    importance: int = Field(default=5, ge=0, le=10)
    token_count: int = 0


class ContextChunk(BaseModel):
    """A chunk served to a caller"""

    id: UUID
    document_id: UUID
    level: MemoryLevel
    section_id: str
    section_title: str
    content: str
    keywords: list[str] = Field(default_factory=list)
    importance: int
    token_count: int
    score: float = Field(default=0.0, description="Composite ranking score at retrieval time")


class RetrievalResult(BaseModel):
    """Initial context for a model call"""

    session_id: UUID
    chunks: list[ContextChunk] = Field(default_factory=list)
    total_tokens: int = 0
    levels_included: list[MemoryLevel] = Field(default_factory=list)
    matched_keywords: list[str] = Field(default_factory=list)

    def render(self) -> str:
        """Chunk contents joined for prompt injection"""
        return "\n\n".join(chunk.content for chunk in self.chunks)


class IterativeResponse(BaseModel):
    """Answer to a downstream model's request for more context"""

    additional_chunks: list[ContextChunk] = Field(default_factory=list)
    total_new_tokens: int = 0
    was_found: bool = False
    suggestion: str | None = None
    searched_keywords: list[str] = Field(default_factory=list)


class MemoryDocumentInfo(BaseModel):
    """Summary of a stored memory document"""

    id: UUID
    org_id: str
    level: MemoryLevel
    level_entity_id: str | None
    document_key: str
    title: str
    version: int
    token_count: int
    chunk_count: int
    updated_at: datetime | None = None


# ============================================================================
# Analytics
# ============================================================================


class HelpfulChunk(BaseModel):
    section_id: str
    section_title: str
    level: MemoryLevel
    document_title: str
    times_retrieved: int
    times_helpful: int
    helpfulness: float = Field(..., description="times_helpful / times_retrieved")


class MissingInfo(BaseModel):
    """Kind of information models had to ask for after the initial context"""

    request_type: RequestType
    occurrences: int
    suggestion: str


class MissingKeyword(BaseModel):
    keyword: str
    occurrences: int


class SessionTypeStats(BaseModel):
    session_type: SessionType
    count: int
    avg_iterations: float
    avg_tokens: int


class MemoryAnalytics(BaseModel):
    """Retrieval usage and learning signals for one organization over a period"""

    org_id: str
    days: int
    since: datetime

    total_sessions: int = 0
    successful_sessions: int = 0
    success_rate: float | None = Field(default=None, description="None without sessions")
    single_iteration_rate: float | None = Field(
        default=None, description="Share of sessions that needed no follow-up request"
    )
    avg_iterations: float = 0.0

    initial_tokens: int = Field(default=0, description="Tokens served by initial context")
    total_tokens: int = Field(default=0, description="Initial plus follow-up tokens")
    avg_tokens_per_session: int = 0
    estimated_naive_tokens: int = Field(
        default=0, description="Tokens a whole-document context would have cost"
    )
    tokens_saved: int = 0
    savings_rate: float | None = None

    most_efficient_session_type: SessionType | None = None
    most_helpful_chunks: list[HelpfulChunk] = Field(default_factory=list)
    common_missing_info: list[MissingInfo] = Field(default_factory=list)
    common_missing_keywords: list[MissingKeyword] = Field(default_factory=list)
    by_session_type: list[SessionTypeStats] = Field(default_factory=list)
