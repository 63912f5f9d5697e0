"""Hierarchical memory service

Organizations keep knowledge in leveled markdown documents (org, domain, project,
circle, user). Documents are split into keyword-indexed chunks so a model call gets
a small, relevant context instead of whole documents, and can ask for more through
the iterative protocol. Every retrieval session ends with a success or failure
outcome that feeds per-chunk counters used by future ranking.
"""

import re
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from airouter.config import settings
from airouter.core.exceptions import SessionClosedError, SessionNotFoundError
from airouter.core.models.memory import (
    LEVEL_ORDER,
    ContextChunk,
    ContextRuleType,
    HelpfulChunk,
    HierarchyPosition,
    IterativeResponse,
    MemoryAnalytics,
    MemoryDocumentInfo,
    MemoryLevel,
    MissingInfo,
    MissingKeyword,
    RequestType,
    RetrievalResult,
    SessionStatus,
    SessionType,
    SessionTypeStats,
    UpdateSourceType,
    UpdateStatus,
    UpdateType,
)
from airouter.core.models.routing import TokenEstimate
from airouter.services.chunking import (
    extract_request_keywords,
    find_section,
    normalize_keywords,
    parse_sections,
)
from airouter.services.metrics import MetricsCollector
from airouter.services.templates import get_template, render_template
from airouter.storage.database import get_session
from airouter.storage.models import (
    ContextChunkDB,
    ContextRuleDB,
    MemoryDocumentDB,
    MemoryUpdateDB,
    RetrievalSessionDB,
)
from airouter.utils.logger import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

DOCUMENT_KEY_PREFIX = "AIR"
MATCH_QUALITY_WEIGHT = 5.0
FEEDBACK_WEIGHT = 2.0
REQUEST_TYPE_BONUS = 1.0

# Tokens a session would cost if whole documents were sent instead of chunks
NAIVE_CONTEXT_TOKENS = 10_000
ANALYTICS_TOP_N = 10

MISSING_INFO_SUGGESTIONS: dict[RequestType, str] = {
    RequestType.CODE_SNIPPET: "Document important code patterns in project memory",
    RequestType.SCHEMA: "Add database schema documentation to project memory",
    RequestType.FILE_CONTENT: "Add summaries of key files to project memory",
    RequestType.API_ENDPOINT: "Document API endpoints in domain memory",
    RequestType.BUSINESS_LOGIC: "Add business rules and domain logic to org or domain memory",
    RequestType.CLARIFICATION: "Review memory for unclear or ambiguous sections",
}

# Section-id fragments that suit each kind of iterative request
REQUEST_TYPE_SECTION_HINTS: dict[RequestType, tuple[str, ...]] = {
    RequestType.CODE_SNIPPET: ("code", "example", "snippet", "pattern"),
    RequestType.SCHEMA: ("schema", "data_model", "database", "entities"),
    RequestType.FILE_CONTENT: ("file", "structure"),
    RequestType.API_ENDPOINT: ("api", "endpoint"),
    RequestType.BUSINESS_LOGIC: ("business", "logic", "rule", "workflow"),
    RequestType.CLARIFICATION: ("overview", "decision"),
}

# Placeholder that names the entity at each level
LEVEL_NAME_PLACEHOLDERS = {
    MemoryLevel.ORG: "ORG_NAME",
    MemoryLevel.DOMAIN: "DOMAIN_NAME",
    MemoryLevel.PROJECT: "PROJECT_NAME",
    MemoryLevel.CIRCLE: "CIRCLE_NAME",
    MemoryLevel.USER: "USER_NAME",
}


# ============================================================================
# Helpers
# ============================================================================


def scope_key_for(org_id: str, level: MemoryLevel, level_entity_id: str | None) -> str:
    """Unique key of the single document at (organization, level, entity)"""
    entity = None if level == MemoryLevel.ORG else level_entity_id
    return f"{org_id}:{level.value}:{entity or '-'}"


def document_key_for(level: MemoryLevel, org_id: str, level_entity_id: str | None) -> str:
    """Human-readable document key such as AIR_PROJECT_3f2a_91bc.md"""
    short_org = org_id.split("-")[0]
    if level == MemoryLevel.ORG:
        return f"{DOCUMENT_KEY_PREFIX}_ORG_{short_org}.md"
    short_entity = (level_entity_id or "").split("-")[0]
    return f"{DOCUMENT_KEY_PREFIX}_{level.value.upper()}_{short_org}_{short_entity}.md"


def feedback_bonus(chunk: ContextChunkDB) -> float:
    """Ranking adjustment in [-2, 2] from past helpful/insufficient outcomes"""
    raw = FEEDBACK_WEIGHT * (chunk.times_helpful - chunk.times_insufficient)
    raw /= max(chunk.times_retrieved, 1)
    return max(-FEEDBACK_WEIGHT, min(FEEDBACK_WEIGHT, raw))


def score_chunk(
    chunk: ContextChunkDB,
    keywords: list[str],
    request_type: RequestType | None = None,
) -> tuple[float, list[str]]:
    """Composite score and the query keywords the chunk matched

    Score = importance + 5 * (matched / queried) + feedback bonus, plus a small bonus
    when the section suits the iterative request type.
    """
    chunk_keywords = set(chunk.keywords or [])
    matched = [keyword for keyword in keywords if keyword in chunk_keywords]
    if not matched:
        return 0.0, []

    score = chunk.importance + MATCH_QUALITY_WEIGHT * len(matched) / len(keywords)
    score += feedback_bonus(chunk)

    if request_type is not None:
        hints = REQUEST_TYPE_SECTION_HINTS.get(request_type, ())
        if any(hint in chunk.section_id for hint in hints):
            score += REQUEST_TYPE_BONUS

    return score, matched


def select_within_budget(
    ranked: list[tuple[float, ContextChunkDB, list[str]]], max_tokens: int
) -> list[tuple[float, ContextChunkDB, list[str]]]:
    """Greedily accept ranked chunks; a chunk that would overflow is skipped whole"""
    selected = []
    used = 0
    for entry in ranked:
        chunk = entry[1]
        if used + chunk.token_count > max_tokens:
            continue
        selected.append(entry)
        used += chunk.token_count
    return selected


def to_context_chunk(chunk: ContextChunkDB, score: float = 0.0) -> ContextChunk:
    return ContextChunk(
        id=chunk.id,
        document_id=chunk.document_id,
        level=MemoryLevel(chunk.level),
        section_id=chunk.section_id,
        section_title=chunk.section_title,
        content=chunk.content,
        keywords=list(chunk.keywords or []),
        importance=chunk.importance,
        token_count=chunk.token_count,
        score=round(score, 4),
    )


def _section_heading(title: str) -> str:
    return f"## {title}"


def _keywords_line(keywords: list[str]) -> str:
    return f"Keywords: {', '.join(keywords)}"


# ============================================================================
# Memory Service
# ============================================================================


class MemoryService:
    """Leveled memory documents, chunked retrieval and retrieval sessions"""

    def __init__(self, session_factory: SessionFactory = get_session):
        self.session_factory = session_factory

    # ========================================================================
    # Document Lifecycle
    # ========================================================================

    async def _find_document(
        self, session: AsyncSession, scope_key: str, for_update: bool = False
    ) -> MemoryDocumentDB | None:
        query = select(MemoryDocumentDB).where(MemoryDocumentDB.scope_key == scope_key)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def _replace_content(
        self,
        session: AsyncSession,
        document: MemoryDocumentDB,
        content: str,
        editor_id: str | None,
        edit_reason: str | None,
    ) -> int:
        """Set new content and regenerate its chunks in the caller's transaction

        A section whose id survives the edit keeps its chunk row, so its id,
        usage counters and session references stay valid. Sections that
        disappeared are deleted.

        Returns:
            Number of chunks written
        """
        sections = parse_sections(content)

        result = await session.execute(
            select(ContextChunkDB).where(ContextChunkDB.document_id == document.id)
        )
        existing = {chunk.section_id: chunk for chunk in result.scalars()}
        kept_ids = {section.section_id for section in sections}

        for section_id, chunk in existing.items():
            if section_id not in kept_ids:
                await session.delete(chunk)

        for index, section in enumerate(sections):
            chunk = existing.get(section.section_id)
            if chunk is None:
                chunk = ContextChunkDB(
                    document_id=document.id,
                    org_id=document.org_id,
                    level=document.level,
                    section_id=section.section_id,
                    times_retrieved=0,
                    times_helpful=0,
                    times_insufficient=0,
                )
                session.add(chunk)

            chunk.chunk_index = index
            chunk.section_title = section.section_title
            chunk.line_start = section.line_start
            chunk.line_end = section.line_end
            chunk.content = section.content
            chunk.keywords = section.keywords
            chunk.importance = section.importance
            chunk.token_count = section.token_count

        document.content = content
        document.token_count = TokenEstimate.count(content)
        document.last_editor_id = editor_id
        document.edit_reason = edit_reason
        document.updated_at = datetime.utcnow()
        await session.flush()

        return len(sections)

    async def _create_document(
        self,
        session: AsyncSession,
        org_id: str,
        level: MemoryLevel,
        level_entity_id: str | None,
        title: str,
        content: str,
        editor_id: str | None,
        is_auto_generated: bool = False,
        edit_reason: str | None = None,
    ) -> MemoryDocumentDB:
        entity = None if level == MemoryLevel.ORG else level_entity_id
        document = MemoryDocumentDB(
            org_id=org_id,
            level=level.value,
            level_entity_id=entity,
            scope_key=scope_key_for(org_id, level, entity),
            document_key=document_key_for(level, org_id, entity),
            title=title,
            content="",
            version=1,
            is_auto_generated=is_auto_generated,
        )
        session.add(document)
        await session.flush()

        chunk_count = await self._replace_content(
            session, document, content, editor_id, edit_reason or "Created"
        )
        logger.info(
            f"Created {level.value} memory {document.document_key} for org {org_id} "
            f"({chunk_count} chunks)"
        )
        return document

    async def upsert_document(
        self,
        org_id: str,
        level: MemoryLevel | str,
        level_entity_id: str | None,
        title: str,
        content: str,
        updated_by: str | None = None,
        edit_reason: str | None = None,
    ) -> UUID:
        """
        Create or replace a memory document

        Content and chunks change in one transaction, so readers see either the old
        document with its old chunks or the new document with its new chunks.

        Args:
            org_id: Owning organization
            level: Hierarchy level
            level_entity_id: Entity at that level (ignored for org)
            title: Document title
            content: Full markdown content
            updated_by: Editor id
            edit_reason: Optional reason recorded with the edit

        Returns:
            Document id
        """
        level = MemoryLevel(level)
        if level != MemoryLevel.ORG and not level_entity_id:
            raise ValueError(f"{level.value} documents require a level entity id")

        async with self.session_factory() as session:
            document = await self._find_document(
                session, scope_key_for(org_id, level, level_entity_id), for_update=True
            )
            if document is None:
                document = await self._create_document(
                    session,
                    org_id,
                    level,
                    level_entity_id,
                    title,
                    content,
                    updated_by,
                    edit_reason=edit_reason,
                )
                return document.id

            document.title = title
            document.version += 1
            chunk_count = await self._replace_content(
                session, document, content, updated_by, edit_reason or "Updated"
            )
            logger.info(
                f"Updated {document.document_key} to v{document.version} ({chunk_count} chunks)"
            )
            return document.id

    async def initialize_from_template(
        self,
        org_id: str,
        level: MemoryLevel | str,
        level_entity_id: str | None,
        placeholders: dict[str, str],
        created_by: str | None = None,
        template_type: str = "default",
    ) -> UUID:
        """
        Create a document from its level's template, once

        Args:
            org_id: Owning organization
            level: Hierarchy level
            level_entity_id: Entity at that level (ignored for org)
            placeholders: Values such as {"ORG_NAME": "Acme"}
            created_by: Creator id
            template_type: Template variant (e.g. "saas" for organizations)

        Returns:
            Id of the new document, or of the existing one if already initialized
        """
        level = MemoryLevel(level)
        scope_key = scope_key_for(org_id, level, level_entity_id)
        title, content = render_template(get_template(level, template_type), placeholders)

        try:
            async with self.session_factory() as session:
                existing = await self._find_document(session, scope_key)
                if existing is not None:
                    logger.debug(f"{existing.document_key} already initialized")
                    return existing.id

                document = await self._create_document(
                    session,
                    org_id,
                    level,
                    level_entity_id,
                    title,
                    content,
                    created_by,
                    is_auto_generated=True,
                    edit_reason=f"Initialized from {template_type} template",
                )
                return document.id
        except IntegrityError:
            # Lost a race with a concurrent initializer
            async with self.session_factory() as session:
                existing = await self._find_document(session, scope_key)
                if existing is None:
                    raise
                return existing.id

    async def get_document(
        self, org_id: str, level: MemoryLevel | str, level_entity_id: str | None = None
    ) -> MemoryDocumentInfo | None:
        level = MemoryLevel(level)
        async with self.session_factory() as session:
            document = await self._find_document(
                session, scope_key_for(org_id, level, level_entity_id)
            )
            if document is None:
                return None

            chunk_ids = await session.execute(
                select(ContextChunkDB.id).where(ContextChunkDB.document_id == document.id)
            )
            return MemoryDocumentInfo(
                id=document.id,
                org_id=document.org_id,
                level=MemoryLevel(document.level),
                level_entity_id=document.level_entity_id,
                document_key=document.document_key,
                title=document.title,
                version=document.version,
                token_count=document.token_count,
                chunk_count=len(chunk_ids.all()),
                updated_at=document.updated_at,
            )

    # ========================================================================
    # Update Queue
    # ========================================================================

    async def queue_memory_update(
        self,
        org_id: str,
        source_type: UpdateSourceType | str,
        source_entity_id: str,
        target_level: MemoryLevel | str,
        update_type: UpdateType | str,
        content: str | None = None,
        section_id: str | None = None,
        keywords: list[str] | None = None,
        target_entity_id: str | None = None,
    ) -> UUID:
        """
        Enqueue a document change from a domain event

        Args:
            org_id: Owning organization
            source_type: Event that produced the change
            source_entity_id: Id of the ticket, meeting, PR or decision
            target_level: Level of the document to change
            update_type: append, update_section or regenerate
            content: Markdown to add or replace
            section_id: Section to extend or replace
            keywords: Extra retrieval keywords for the new content
            target_entity_id: Entity at the target level (required below org)

        Returns:
            Queue entry id
        """
        source_type = UpdateSourceType(source_type)
        target_level = MemoryLevel(target_level)
        update_type = UpdateType(update_type)

        if target_level != MemoryLevel.ORG and not target_entity_id:
            raise ValueError(f"{target_level.value} updates require a target entity id")
        if update_type == UpdateType.UPDATE_SECTION and not section_id:
            raise ValueError("update_section requires a section id")
        if update_type in (UpdateType.APPEND, UpdateType.UPDATE_SECTION) and not content:
            raise ValueError(f"{update_type.value} requires content")
        # Regenerate replaces the whole document, so keywords need content to attach to
        if update_type == UpdateType.REGENERATE and keywords and not content:
            raise ValueError("regenerate with keywords requires content")

        async with self.session_factory() as session:
            entry = MemoryUpdateDB(
                org_id=org_id,
                source_type=source_type.value,
                source_entity_id=source_entity_id,
                target_level=target_level.value,
                target_entity_id=None if target_level == MemoryLevel.ORG else target_entity_id,
                update_type=update_type.value,
                section_id=section_id,
                content=content,
                keywords=normalize_keywords(keywords),
                status=UpdateStatus.PENDING.value,
            )
            session.add(entry)
            await session.flush()

        logger.info(
            f"Queued {update_type.value} for {target_level.value} memory of org {org_id} "
            f"from {source_type.value} {source_entity_id}"
        )
        return entry.id

    @staticmethod
    def _updated_content(current: str, entry: MemoryUpdateDB) -> str:
        """Document content after applying one queued update"""
        update_type = UpdateType(entry.update_type)
        keywords = list(entry.keywords or [])
        body = (entry.content or "").strip()
        if keywords:
            body = f"{body}\n\n{_keywords_line(keywords)}" if body else _keywords_line(keywords)

        if update_type == UpdateType.REGENERATE:
            return body if entry.content else current

        lines = current.rstrip("\n").split("\n")
        section = find_section(current, entry.section_id) if entry.section_id else None

        if section is None:
            if entry.section_id:
                title = entry.section_id.replace("_", " ").title()
            else:
                source = UpdateSourceType(entry.source_type).value.replace("_", " ").title()
                title = f"{source} {entry.source_entity_id}"
            return "\n".join(lines + ["", _section_heading(title), "", body]) + "\n"

        # line_start/line_end are 1-based and inclusive
        before = lines[: section.line_start]
        section_body = lines[section.line_start : section.line_end]
        after = lines[section.line_end :]

        if update_type == UpdateType.APPEND:
            while section_body and not section_body[-1].strip():
                section_body.pop()
            new_section = section_body + ["", body, ""]
        else:
            new_section = ["", body, ""]

        return "\n".join(before + new_section + after).rstrip("\n") + "\n"

    async def _apply_update(self, session: AsyncSession, entry: MemoryUpdateDB) -> None:
        level = MemoryLevel(entry.target_level)
        scope_key = scope_key_for(entry.org_id, level, entry.target_entity_id)
        editor = f"{entry.source_type}:{entry.source_entity_id}"

        document = await self._find_document(session, scope_key, for_update=True)
        if document is None:
            name = entry.target_entity_id or entry.org_id
            title, content = render_template(
                get_template(level), {LEVEL_NAME_PLACEHOLDERS[level]: name}
            )
            document = await self._create_document(
                session,
                entry.org_id,
                level,
                entry.target_entity_id,
                title,
                content,
                editor,
                is_auto_generated=True,
                edit_reason="Initialized from default template",
            )

        new_content = self._updated_content(document.content, entry)
        document.version += 1
        await self._replace_content(
            session, document, new_content, editor, f"{entry.update_type} from {entry.source_type}"
        )

    async def process_pending_updates(self, limit: int | None = None) -> dict[str, int]:
        """
        Apply queued updates oldest first

        Each update runs in its own transaction together with its chunk regeneration.
        A failing update is marked failed and processing continues.

        Args:
            limit: Max updates to process (defaults to settings.memory_update_batch_size)

        Returns:
            Counts of applied and failed updates
        """
        limit = limit or settings.memory_update_batch_size
        async with self.session_factory() as session:
            result = await session.execute(
                select(MemoryUpdateDB.id)
                .where(MemoryUpdateDB.status == UpdateStatus.PENDING.value)
                .order_by(MemoryUpdateDB.created_at)
                .limit(limit)
            )
            pending_ids = list(result.scalars())

        counts = {"applied": 0, "failed": 0}
        for update_id in pending_ids:
            update_type = "unknown"
            try:
                async with self.session_factory() as session:
                    # Claim the entry; a concurrent processor sees rowcount 0
                    claimed = await session.execute(
                        update(MemoryUpdateDB)
                        .where(
                            MemoryUpdateDB.id == update_id,
                            MemoryUpdateDB.status == UpdateStatus.PENDING.value,
                        )
                        .values(status=UpdateStatus.APPLIED.value, processed_at=datetime.utcnow())
                    )
                    if claimed.rowcount == 0:
                        continue

                    entry = await session.get(MemoryUpdateDB, update_id)
                    update_type = entry.update_type
                    await self._apply_update(session, entry)

                counts["applied"] += 1
                MetricsCollector.record_memory_update(update_type, UpdateStatus.APPLIED.value)
            except Exception as e:
                logger.error(f"Memory update {update_id} failed: {e}")
                async with self.session_factory() as session:
                    await session.execute(
                        update(MemoryUpdateDB)
                        .where(MemoryUpdateDB.id == update_id)
                        .values(
                            status=UpdateStatus.FAILED.value,
                            error=str(e)[:2000],
                            processed_at=datetime.utcnow(),
                        )
                    )
                counts["failed"] += 1
                MetricsCollector.record_memory_update(update_type, UpdateStatus.FAILED.value)

        if pending_ids:
            logger.info(
                f"Processed memory updates: {counts['applied']} applied, {counts['failed']} failed"
            )
        return counts

    # ========================================================================
    # Retrieval
    # ========================================================================

    async def _resolve_documents(
        self, session: AsyncSession, position: HierarchyPosition
    ) -> list[tuple[UUID, MemoryLevel]]:
        """Documents visible from a hierarchy position, broadest level first

        The org document is always included; narrower levels only when their id is given.
        """
        scope_keys = [scope_key_for(position.org_id, MemoryLevel.ORG, None)]
        for level in LEVEL_ORDER[1:]:
            entity = position.entity_for(level)
            if entity:
                scope_keys.append(scope_key_for(position.org_id, level, entity))

        result = await session.execute(
            select(MemoryDocumentDB.id, MemoryDocumentDB.level).where(
                MemoryDocumentDB.scope_key.in_(scope_keys),
                MemoryDocumentDB.is_active.is_(True),
            )
        )
        documents = [(row.id, MemoryLevel(row.level)) for row in result]
        return sorted(documents, key=lambda doc: LEVEL_ORDER.index(doc[1]))

    async def _rank_chunks(
        self,
        session: AsyncSession,
        document_ids: list[UUID],
        keywords: list[str],
        exclude_ids: set[str] | None = None,
        request_type: RequestType | None = None,
    ) -> list[tuple[float, ContextChunkDB, list[str]]]:
        """Chunks matching any keyword, best first

        Ties break on hierarchy order, then position within the document.
        """
        if not document_ids or not keywords:
            return []

        result = await session.execute(
            select(ContextChunkDB).where(ContextChunkDB.document_id.in_(document_ids))
        )
        exclude_ids = exclude_ids or set()

        ranked = []
        for chunk in result.scalars():
            if str(chunk.id) in exclude_ids:
                continue
            score, matched = score_chunk(chunk, keywords, request_type)
            if matched:
                ranked.append((score, chunk, matched))

        ranked.sort(
            key=lambda entry: (
                -entry[0],
                LEVEL_ORDER.index(MemoryLevel(entry[1].level)),
                entry[1].chunk_index,
            )
        )
        return ranked

    async def _apply_context_rules(
        self,
        session: AsyncSession,
        org_id: str,
        session_type: SessionType,
        selected: list[tuple[float, ContextChunkDB, list[str]]],
    ) -> list[tuple[float, ContextChunkDB, list[str]]]:
        """Drop excluded sections and move prioritized ones to the front"""
        result = await session.execute(
            select(ContextRuleDB)
            .where(
                ContextRuleDB.org_id == org_id,
                ContextRuleDB.is_active.is_(True),
                (ContextRuleDB.session_type.is_(None))
                | (ContextRuleDB.session_type == session_type.value),
            )
            .order_by(ContextRuleDB.priority.desc())
        )
        rules = list(result.scalars())
        if not rules:
            return selected

        for rule in rules:
            if rule.rule_type == ContextRuleType.EXCLUDE.value:
                pattern = re.compile(rule.section_pattern, re.IGNORECASE)
                selected = [entry for entry in selected if not pattern.search(entry[1].section_id)]

        # Highest-priority rule first; stable within each group
        prioritized: list[tuple[float, ContextChunkDB, list[str]]] = []
        remaining = selected
        for rule in rules:
            if rule.rule_type != ContextRuleType.PRIORITIZE.value:
                continue
            pattern = re.compile(rule.section_pattern, re.IGNORECASE)
            prioritized.extend(entry for entry in remaining if pattern.search(entry[1].section_id))
            remaining = [entry for entry in remaining if not pattern.search(entry[1].section_id)]

        return prioritized + remaining

    async def _increment_counter(
        self, session: AsyncSession, chunk_ids: list[UUID], column: str
    ) -> None:
        if not chunk_ids:
            return
        counter = getattr(ContextChunkDB, column)
        await session.execute(
            update(ContextChunkDB)
            .where(ContextChunkDB.id.in_(chunk_ids))
            .values({column: counter + 1})
        )

    async def get_initial_context(
        self,
        position: HierarchyPosition,
        session_type: SessionType | str,
        keywords: list[str],
        max_tokens: int | None = None,
    ) -> RetrievalResult:
        """
        Open a retrieval session and return the best chunks within a token budget

        Args:
            position: Caller's place in the hierarchy
            session_type: Kind of model call being served
            keywords: Retrieval keywords (case-insensitive)
            max_tokens: Token budget (defaults to settings.default_memory_max_tokens)

        Returns:
            Session id, chunks, and what was included
        """
        session_type = SessionType(session_type)
        max_tokens = max_tokens if max_tokens is not None else settings.default_memory_max_tokens
        query_keywords = normalize_keywords(keywords)

        async with self.session_factory() as session:
            documents = await self._resolve_documents(session, position)
            document_ids = [doc_id for doc_id, _ in documents]

            ranked = await self._rank_chunks(session, document_ids, query_keywords)
            selected = select_within_budget(ranked, max_tokens)
            selected = await self._apply_context_rules(
                session, position.org_id, session_type, selected
            )

            chunks = [to_context_chunk(chunk, score) for score, chunk, _ in selected]
            matched = normalize_keywords([kw for _, _, hits in selected for kw in hits])
            total_tokens = sum(chunk.token_count for chunk in chunks)

            record = RetrievalSessionDB(
                org_id=position.org_id,
                user_id=position.user_id,
                session_type=session_type.value,
                status=SessionStatus.OPEN.value,
                document_ids=[str(doc_id) for doc_id in document_ids],
                served_chunk_ids=[str(chunk.id) for chunk in chunks],
                keywords=query_keywords,
                matched_keywords=matched,
                missed_keywords=[kw for kw in query_keywords if kw not in matched],
                initial_tokens=total_tokens,
                total_tokens=total_tokens,
            )
            session.add(record)
            await self._increment_counter(session, [chunk.id for chunk in chunks], "times_retrieved")
            await session.flush()
            session_id = record.id

        levels = []
        for _, level in documents:
            if level not in levels:
                levels.append(level)

        MetricsCollector.record_context_fetch("initial", len(chunks), total_tokens)
        logger.debug(
            f"Session {session_id}: {len(chunks)} chunks, {total_tokens}/{max_tokens} tokens "
            f"from {[level.value for level in levels]}"
        )

        return RetrievalResult(
            session_id=session_id,
            chunks=chunks,
            total_tokens=total_tokens,
            levels_included=levels,
            matched_keywords=matched,
        )

    async def _load_open_session(
        self, session: AsyncSession, session_id: UUID
    ) -> RetrievalSessionDB:
        result = await session.execute(
            select(RetrievalSessionDB).where(RetrievalSessionDB.id == session_id).with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise SessionNotFoundError(str(session_id))
        if record.status != SessionStatus.OPEN.value:
            raise SessionClosedError(str(session_id), record.status)
        return record

    async def handle_iterative_request(
        self,
        session_id: UUID,
        ai_request_text: str,
        request_type: RequestType | str,
        keywords: list[str] | None = None,
        max_tokens: int | None = None,
    ) -> IterativeResponse:
        """
        Serve more context when the downstream model reports it is missing something

        Chunks already served in the session are never returned again.

        Args:
            session_id: Open retrieval session
            ai_request_text: The model's own description of what it needs
            request_type: Kind of information requested
            keywords: Explicit keywords; extracted from ai_request_text when omitted
            max_tokens: Token budget for this step (defaults to settings.iterative_max_tokens)

        Returns:
            New chunks, or was_found=False with a suggestion naming the missing terms

        Raises:
            SessionNotFoundError: Unknown session id
            SessionClosedError: Session already completed or expired
        """
        request_type = RequestType(request_type)
        max_tokens = max_tokens if max_tokens is not None else settings.iterative_max_tokens
        search_keywords = normalize_keywords(keywords) or extract_request_keywords(ai_request_text)

        async with self.session_factory() as session:
            record = await self._load_open_session(session, session_id)
            served = set(record.served_chunk_ids or [])
            document_ids = [UUID(doc_id) for doc_id in record.document_ids or []]

            ranked = await self._rank_chunks(
                session, document_ids, search_keywords, exclude_ids=served, request_type=request_type
            )
            selected = select_within_budget(ranked, max_tokens)

            chunks = [to_context_chunk(chunk, score) for score, chunk, _ in selected]
            matched = normalize_keywords([kw for _, _, hits in selected for kw in hits])
            missed = [kw for kw in search_keywords if kw not in matched]
            new_tokens = sum(chunk.token_count for chunk in chunks)

            record.served_chunk_ids = list(record.served_chunk_ids or []) + [
                str(chunk.id) for chunk in chunks
            ]
            record.matched_keywords = normalize_keywords(list(record.matched_keywords or []) + matched)
            record.missed_keywords = normalize_keywords(list(record.missed_keywords or []) + missed)
            record.request_types = list(record.request_types or []) + [request_type.value]
            record.iteration_count += 1
            record.total_tokens += new_tokens
            await self._increment_counter(session, [chunk.id for chunk in chunks], "times_retrieved")

        was_found = bool(chunks)
        MetricsCollector.record_iterative_request(was_found)
        MetricsCollector.record_context_fetch("iterative", len(chunks), new_tokens)

        suggestion = None
        if not was_found:
            wanted = ", ".join(search_keywords) or ai_request_text.strip()[:100]
            suggestion = f"Could not find information about: {wanted}. Consider adding this to memory."
            logger.info(f"Session {session_id}: no memory for {request_type.value} request ({wanted})")

        return IterativeResponse(
            additional_chunks=chunks,
            total_new_tokens=new_tokens,
            was_found=was_found,
            suggestion=suggestion,
            searched_keywords=search_keywords,
        )

    # ========================================================================
    # Session Completion
    # ========================================================================

    async def complete_session(
        self, session_id: UUID, was_successful: bool, notes: str | None = None
    ) -> bool:
        """
        Close a retrieval session and record its outcome on every served chunk

        Only the first call has an effect.

        Args:
            session_id: Session to close
            was_successful: Whether the served context was sufficient
            notes: Optional free-form notes

        Returns:
            True if this call closed the session, False if it was already closed

        Raises:
            SessionNotFoundError: Unknown session id
        """
        async with self.session_factory() as session:
            # Conditional transition makes completion idempotent under concurrency
            result = await session.execute(
                update(RetrievalSessionDB)
                .where(
                    RetrievalSessionDB.id == session_id,
                    RetrievalSessionDB.status == SessionStatus.OPEN.value,
                )
                .values(
                    status=SessionStatus.COMPLETED.value,
                    was_successful=was_successful,
                    notes=notes,
                    completed_at=datetime.utcnow(),
                )
            )

            record = await session.get(RetrievalSessionDB, session_id)
            if record is None:
                raise SessionNotFoundError(str(session_id))
            if result.rowcount == 0:
                logger.debug(f"Session {session_id} already {record.status}, ignoring completion")
                return False

            served = [UUID(chunk_id) for chunk_id in record.served_chunk_ids or []]
            column = "times_helpful" if was_successful else "times_insufficient"
            await self._increment_counter(session, served, column)

        MetricsCollector.record_session_outcome("helpful" if was_successful else "insufficient")
        logger.debug(
            f"Completed session {session_id} ({'helpful' if was_successful else 'insufficient'}, "
            f"{len(served)} chunks)"
        )
        return True

    @asynccontextmanager
    async def retrieval_session(
        self,
        position: HierarchyPosition,
        session_type: SessionType | str,
        keywords: list[str],
        max_tokens: int | None = None,
    ) -> AsyncIterator[RetrievalResult]:
        """Open a retrieval session that is always completed

        Completes with success when the block exits normally and with failure when it
        raises (including cancellation).
        """
        context = await self.get_initial_context(position, session_type, keywords, max_tokens)
        succeeded = False
        try:
            yield context
            succeeded = True
        finally:
            try:
                await self.complete_session(
                    context.session_id,
                    was_successful=succeeded,
                    notes=None if succeeded else "Request failed before completion",
                )
            except Exception as e:
                if succeeded:
                    raise
                # Keep the original error; the session will be expired later
                logger.error(f"Could not complete session {context.session_id}: {e}")

    async def expire_stale_sessions(self, max_age_seconds: int | None = None) -> int:
        """
        Expire sessions left open too long

        Expired sessions do not touch chunk counters, since their outcome is unknown.

        Returns:
            Number of sessions expired
        """
        max_age = max_age_seconds if max_age_seconds is not None else settings.session_ttl_seconds
        cutoff = datetime.utcnow() - timedelta(seconds=max_age)

        async with self.session_factory() as session:
            result = await session.execute(
                update(RetrievalSessionDB)
                .where(
                    RetrievalSessionDB.status == SessionStatus.OPEN.value,
                    RetrievalSessionDB.created_at < cutoff,
                )
                .values(
                    status=SessionStatus.EXPIRED.value,
                    completed_at=datetime.utcnow(),
                    notes="Expired without completion",
                )
            )
            expired = result.rowcount or 0

        if expired:
            logger.warning(f"Expired {expired} retrieval sessions left open over {max_age}s")
            for _ in range(expired):
                MetricsCollector.record_session_outcome("expired")
        return expired

    async def add_context_rule(
        self,
        org_id: str,
        rule_type: ContextRuleType | str,
        section_pattern: str,
        session_type: SessionType | str | None = None,
        priority: int = 0,
    ) -> UUID:
        """Add an organization rule that excludes or prioritizes matching sections"""
        rule_type = ContextRuleType(rule_type)
        re.compile(section_pattern)  # Reject invalid patterns up front

        async with self.session_factory() as session:
            rule = ContextRuleDB(
                org_id=org_id,
                rule_type=rule_type.value,
                section_pattern=section_pattern,
                session_type=SessionType(session_type).value if session_type else None,
                priority=priority,
                is_active=True,
            )
            session.add(rule)
            await session.flush()
            return rule.id

    # ========================================================================
    # Analytics
    # ========================================================================

    async def get_analytics(self, org_id: str, days: int = 30) -> MemoryAnalytics:
        """
        Retrieval usage and learning signals for an organization

        Token savings compare served context against a naive whole-document context
        of NAIVE_CONTEXT_TOKENS per session. A session with iteration_count 0 was
        answered from its initial context alone.

        Args:
            org_id: Organization to report on
            days: Length of the reporting window ending now

        Returns:
            Aggregated analytics for sessions created within the window
        """
        if days <= 0:
            raise ValueError("days must be positive")
        since = datetime.utcnow() - timedelta(days=days)

        async with self.session_factory() as session:
            result = await session.execute(
                select(RetrievalSessionDB).where(
                    RetrievalSessionDB.org_id == org_id,
                    RetrievalSessionDB.created_at >= since,
                )
            )
            records = list(result.scalars())

            result = await session.execute(
                select(ContextChunkDB, MemoryDocumentDB.title)
                .join(MemoryDocumentDB, ContextChunkDB.document_id == MemoryDocumentDB.id)
                .where(ContextChunkDB.org_id == org_id, ContextChunkDB.times_retrieved > 0)
            )
            retrieved_chunks = list(result.all())

        analytics = MemoryAnalytics(org_id=org_id, days=days, since=since)
        total = len(records)

        retrieved_chunks.sort(
            key=lambda row: (
                -row[0].times_helpful / row[0].times_retrieved,
                -row[0].times_helpful,
                row[0].section_id,
            )
        )
        analytics.most_helpful_chunks = [
            HelpfulChunk(
                section_id=chunk.section_id,
                section_title=chunk.section_title,
                level=MemoryLevel(chunk.level),
                document_title=title,
                times_retrieved=chunk.times_retrieved,
                times_helpful=chunk.times_helpful,
                helpfulness=round(chunk.times_helpful / chunk.times_retrieved, 4),
            )
            for chunk, title in retrieved_chunks[:ANALYTICS_TOP_N]
        ]

        if total == 0:
            return analytics

        analytics.total_sessions = total
        analytics.successful_sessions = sum(1 for r in records if r.was_successful)
        analytics.success_rate = round(analytics.successful_sessions / total, 4)
        single = sum(1 for r in records if r.iteration_count == 0)
        analytics.single_iteration_rate = round(single / total, 4)
        analytics.avg_iterations = round(sum(r.iteration_count for r in records) / total, 2)

        analytics.initial_tokens = sum(r.initial_tokens for r in records)
        analytics.total_tokens = sum(r.total_tokens for r in records)
        analytics.avg_tokens_per_session = round(analytics.total_tokens / total)
        analytics.estimated_naive_tokens = total * NAIVE_CONTEXT_TOKENS
        analytics.tokens_saved = analytics.estimated_naive_tokens - analytics.total_tokens
        analytics.savings_rate = round(
            analytics.tokens_saved / analytics.estimated_naive_tokens, 4
        )

        request_types = Counter(t for r in records for t in r.request_types or [])
        analytics.common_missing_info = [
            MissingInfo(
                request_type=RequestType(request_type),
                occurrences=count,
                suggestion=MISSING_INFO_SUGGESTIONS[RequestType(request_type)],
            )
            for request_type, count in request_types.most_common()
        ]
        missed = Counter(kw for r in records for kw in r.missed_keywords or [])
        analytics.common_missing_keywords = [
            MissingKeyword(keyword=keyword, occurrences=count)
            for keyword, count in missed.most_common(ANALYTICS_TOP_N)
        ]

        by_type: dict[str, list[RetrievalSessionDB]] = {}
        for record in records:
            by_type.setdefault(record.session_type, []).append(record)
        analytics.by_session_type = [
            SessionTypeStats(
                session_type=SessionType(session_type),
                count=len(group),
                avg_iterations=round(sum(r.iteration_count for r in group) / len(group), 2),
                avg_tokens=round(sum(r.total_tokens for r in group) / len(group)),
            )
            for session_type, group in sorted(by_type.items())
        ]
        analytics.most_efficient_session_type = min(
            analytics.by_session_type, key=lambda stats: stats.avg_iterations
        ).session_type

        logger.debug(
            f"Analytics for org {org_id} over {days} days: {total} sessions, "
            f"{analytics.tokens_saved} tokens saved"
        )
        return analytics


# Singleton instance
_memory_service: MemoryService | None = None


def get_memory_service() -> MemoryService:
    """Get or create the memory service singleton"""
    global _memory_service

    if _memory_service is None:
        _memory_service = MemoryService()

    return _memory_service
