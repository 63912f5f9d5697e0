"""Tests for the hierarchical memory service"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from airouter.core.exceptions import SessionClosedError, SessionNotFoundError
from airouter.core.models.memory import (
    HierarchyPosition,
    MemoryLevel,
    RequestType,
    SessionStatus,
    SessionType,
)
from airouter.services.chunking import parse_sections
from airouter.services.memory import document_key_for, feedback_bonus, score_chunk
from airouter.storage.database import get_session
from airouter.storage.models import (
    ContextChunkDB,
    MemoryDocumentDB,
    MemoryUpdateDB,
    RetrievalSessionDB,
)

ORG_DOC = """# Acme Standards

## Coding Standards

Keywords: typescript
Use strict TypeScript everywhere.
"""


async def chunk_row(section_id: str) -> ContextChunkDB:
    async with get_session() as session:
        result = await session.execute(
            select(ContextChunkDB).where(ContextChunkDB.section_id == section_id)
        )
        return result.scalar_one()


async def session_row(session_id) -> RetrievalSessionDB:
    async with get_session() as session:
        return await session.get(RetrievalSessionDB, session_id)


async def document_content(org_id: str, level: MemoryLevel) -> str:
    async with get_session() as session:
        result = await session.execute(
            select(MemoryDocumentDB.content).where(
                MemoryDocumentDB.org_id == org_id, MemoryDocumentDB.level == level.value
            )
        )
        return result.scalar_one()


@pytest.fixture
async def project_memory(memory_service, org_id, sample_project_doc):
    """Org document plus the sample project document for project p1"""
    await memory_service.upsert_document(org_id, MemoryLevel.ORG, None, "Acme", ORG_DOC)
    await memory_service.upsert_document(
        org_id, MemoryLevel.PROJECT, "p1", "Checkout", sample_project_doc
    )
    return HierarchyPosition(org_id=org_id, user_id="u1", project_id="p1")


class TestDocumentLifecycle:
    """Test document creation, replacement and templates"""

    @pytest.mark.asyncio
    async def test_upsert_creates_chunks(self, memory_service, org_id, sample_project_doc):
        """Test that a new document is chunked in the same write"""
        await memory_service.upsert_document(
            org_id, "project", "p1", "Checkout", sample_project_doc, updated_by="u1"
        )
        document = await memory_service.get_document(org_id, MemoryLevel.PROJECT, "p1")

        assert document.version == 1
        assert document.chunk_count == len(parse_sections(sample_project_doc))
        assert document.document_key == "AIR_PROJECT_3f2a9c1e_p1.md"

    @pytest.mark.asyncio
    async def test_upsert_replaces_and_bumps_version(
        self, memory_service, org_id, sample_project_doc
    ):
        """Test that a second upsert replaces the chunk set"""
        first_id = await memory_service.upsert_document(
            org_id, MemoryLevel.PROJECT, "p1", "Checkout", sample_project_doc
        )
        second_id = await memory_service.upsert_document(
            org_id, MemoryLevel.PROJECT, "p1", "Checkout", "# Checkout\n\n## Only\n\ntext"
        )
        document = await memory_service.get_document(org_id, MemoryLevel.PROJECT, "p1")

        assert first_id == second_id
        assert document.version == 2
        assert document.chunk_count == 2

    @pytest.mark.asyncio
    async def test_non_org_document_requires_entity(self, memory_service, org_id):
        """Test that a project document without a project id is rejected"""
        with pytest.raises(ValueError):
            await memory_service.upsert_document(org_id, MemoryLevel.PROJECT, None, "x", "y")

    @pytest.mark.asyncio
    async def test_regenerating_unchanged_content_is_stable(
        self, memory_service, org_id, sample_project_doc
    ):
        """Test that re-chunking identical content yields identical chunks"""

        async def snapshot():
            async with get_session() as session:
                result = await session.execute(
                    select(ContextChunkDB).order_by(ContextChunkDB.chunk_index)
                )
                return [
                    (c.section_id, c.content, c.keywords, c.importance, c.token_count)
                    for c in result.scalars()
                ]

        await memory_service.upsert_document(
            org_id, MemoryLevel.PROJECT, "p1", "Checkout", sample_project_doc
        )
        before = await snapshot()
        await memory_service.upsert_document(
            org_id, MemoryLevel.PROJECT, "p1", "Checkout", sample_project_doc
        )

        assert await snapshot() == before

    @pytest.mark.asyncio
    async def test_counters_survive_regeneration(self, memory_service, project_memory):
        """Test that usage counters follow sections across content edits"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        await memory_service.complete_session(context.session_id, was_successful=True)

        await memory_service.upsert_document(
            project_memory.org_id,
            MemoryLevel.PROJECT,
            "p1",
            "Checkout",
            "# Project: Checkout\n\n## Tech Stack\n\nReact and Prisma, now with Redis.\n",
        )
        tech_stack = await chunk_row("tech_stack")

        assert tech_stack.times_retrieved == 1
        assert tech_stack.times_helpful == 1
        assert "redis" in tech_stack.keywords

    @pytest.mark.asyncio
    async def test_surviving_sections_keep_their_chunk_ids(
        self, memory_service, org_id, sample_project_doc
    ):
        """Test that an edit keeps chunk ids of unchanged section ids and drops removed ones"""
        await memory_service.upsert_document(
            org_id, MemoryLevel.PROJECT, "p1", "Checkout", sample_project_doc
        )
        before = await chunk_row("api_endpoints")

        edited = sample_project_doc.replace("## Team Notes\n\nStandups are on Monday.\n", "")
        edited = edited.replace("/api/v2", "/api/v3")
        await memory_service.upsert_document(org_id, MemoryLevel.PROJECT, "p1", "Checkout", edited)

        after = await chunk_row("api_endpoints")
        assert after.id == before.id
        assert "/api/v3" in after.content
        async with get_session() as session:
            result = await session.execute(
                select(ContextChunkDB.section_id).order_by(ContextChunkDB.chunk_index)
            )
            section_ids = list(result.scalars())
        assert "team_notes" not in section_ids
        assert section_ids[-1] == "database_schema"

    @pytest.mark.asyncio
    async def test_initialize_from_template_once(self, memory_service, org_id):
        """Test that template initialization is idempotent"""
        first = await memory_service.initialize_from_template(
            org_id, MemoryLevel.ORG, None, {"ORG_NAME": "Acme"}, created_by="u1"
        )
        second = await memory_service.initialize_from_template(
            org_id, MemoryLevel.ORG, None, {"ORG_NAME": "Other"}, created_by="u2"
        )
        document = await memory_service.get_document(org_id, MemoryLevel.ORG)

        assert first == second
        assert document.title == "Acme Organization Memory"
        assert document.version == 1
        assert document.document_key == "AIR_ORG_3f2a9c1e.md"

    def test_document_keys(self):
        """Test document key formats"""
        assert document_key_for(MemoryLevel.ORG, "abc-123", None) == "AIR_ORG_abc.md"
        assert document_key_for(MemoryLevel.USER, "abc-123", "u9-x") == "AIR_USER_abc_u9.md"


class TestInitialContext:
    """Test initial context retrieval"""

    @pytest.mark.asyncio
    async def test_union_of_hierarchy_documents(self, memory_service, project_memory):
        """Test that org and project documents are both searched"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CODE_REVIEW, ["TypeScript"]
        )

        assert [chunk.section_id for chunk in context.chunks] == [
            "tech_stack",
            "coding_standards",
        ]
        assert context.levels_included == [MemoryLevel.ORG, MemoryLevel.PROJECT]
        assert context.matched_keywords == ["typescript"]

    @pytest.mark.asyncio
    async def test_narrower_levels_need_their_id(self, memory_service, project_memory, org_id):
        """Test that the project document is skipped without a project id"""
        context = await memory_service.get_initial_context(
            HierarchyPosition(org_id=org_id), SessionType.CHAT, ["typescript"]
        )

        assert [chunk.section_id for chunk in context.chunks] == ["coding_standards"]
        assert context.levels_included == [MemoryLevel.ORG]

    @pytest.mark.asyncio
    async def test_hierarchy_order_breaks_ties(self, memory_service, org_id):
        """Test that equally scored chunks come org first"""
        await memory_service.upsert_document(
            org_id, MemoryLevel.PROJECT, "p1", "P", "## Notes\n\nKeywords: deploy\nShip on Mondays."
        )
        await memory_service.upsert_document(
            org_id, MemoryLevel.ORG, None, "O", "## Notes\n\nKeywords: deploy\nShip on Fridays."
        )

        context = await memory_service.get_initial_context(
            HierarchyPosition(org_id=org_id, project_id="p1"), SessionType.CHAT, ["deploy"]
        )

        assert [chunk.level for chunk in context.chunks] == [MemoryLevel.ORG, MemoryLevel.PROJECT]

    @pytest.mark.asyncio
    async def test_overflowing_chunk_is_skipped_not_truncated(
        self, memory_service, project_memory, sample_project_doc
    ):
        """Test greedy budgeting skips a chunk that does not fit and keeps going"""
        sections = {s.section_id: s for s in parse_sections(sample_project_doc)}
        budget = sections["tech_stack"].token_count + sections["team_notes"].token_count

        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres", "monday"], max_tokens=budget
        )

        assert [chunk.section_id for chunk in context.chunks] == ["tech_stack", "team_notes"]
        assert context.total_tokens == budget
        for chunk in context.chunks:
            assert chunk.content == sections[chunk.section_id].content

    @pytest.mark.asyncio
    async def test_total_tokens_never_exceed_budget(self, memory_service, project_memory):
        """Test the token budget invariant across budgets"""
        for budget in (0, 5, 30, 60, 4000):
            context = await memory_service.get_initial_context(
                project_memory, SessionType.CHAT, ["postgres", "typescript", "api"], budget
            )
            assert context.total_tokens <= budget
            assert context.total_tokens == sum(chunk.token_count for chunk in context.chunks)

    @pytest.mark.asyncio
    async def test_retrieved_counter_and_session_record(self, memory_service, project_memory):
        """Test that returned chunks are counted and the session is persisted"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma", "kafka"]
        )

        assert [chunk.section_id for chunk in context.chunks] == ["tech_stack"]
        assert (await chunk_row("tech_stack")).times_retrieved == 1
        assert (await chunk_row("overview")).times_retrieved == 0

        record = await session_row(context.session_id)
        assert record.status == SessionStatus.OPEN.value
        assert record.missed_keywords == ["kafka"]
        assert record.served_chunk_ids == [str(context.chunks[0].id)]

    @pytest.mark.asyncio
    async def test_no_matches_returns_empty_context(self, memory_service, project_memory):
        """Test that unmatched keywords still open a session"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["kafka"]
        )

        assert context.chunks == []
        assert context.render() == ""
        assert (await session_row(context.session_id)) is not None


class TestScoring:
    """Test chunk scoring"""

    def test_score_combines_importance_match_and_feedback(self):
        """Test the composite score"""
        chunk = ContextChunkDB(
            section_id="notes",
            importance=5,
            keywords=["a", "b"],
            times_retrieved=3,
            times_helpful=3,
            times_insufficient=0,
        )

        score, matched = score_chunk(chunk, ["a", "c"])

        assert matched == ["a"]
        assert score == pytest.approx(5 + 2.5 + 2.0)

    def test_feedback_is_clamped(self):
        """Test that poor feedback lowers the score by at most 2"""
        chunk = ContextChunkDB(times_retrieved=2, times_helpful=0, times_insufficient=4)
        assert feedback_bonus(chunk) == -2.0

    def test_request_type_hint_bonus(self):
        """Test the section hint bonus for iterative requests"""
        chunk = ContextChunkDB(
            section_id="database_schema",
            importance=5,
            keywords=["orders"],
            times_retrieved=0,
            times_helpful=0,
            times_insufficient=0,
        )

        plain, _ = score_chunk(chunk, ["orders"])
        hinted, _ = score_chunk(chunk, ["orders"], RequestType.SCHEMA)

        assert hinted == plain + 1


class TestContextRules:
    """Test organization context rules"""

    @pytest.mark.asyncio
    async def test_exclude_rule_filters_sections(self, memory_service, project_memory):
        """Test that excluded sections are never served"""
        await memory_service.add_context_rule(project_memory.org_id, "exclude", "^database")

        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres"]
        )

        assert [chunk.section_id for chunk in context.chunks] == ["tech_stack"]

    @pytest.mark.asyncio
    async def test_prioritize_rule_reorders(self, memory_service, project_memory):
        """Test that prioritized sections move to the front"""
        await memory_service.add_context_rule(
            project_memory.org_id, "prioritize", "team", session_type=SessionType.CHAT
        )

        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres", "monday"]
        )

        assert context.chunks[0].section_id == "team_notes"

    @pytest.mark.asyncio
    async def test_rules_for_other_session_types_are_ignored(
        self, memory_service, project_memory
    ):
        """Test session-type scoping of rules"""
        await memory_service.add_context_rule(
            project_memory.org_id, "exclude", "tech", session_type=SessionType.CODE_REVIEW
        )

        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )

        assert [chunk.section_id for chunk in context.chunks] == ["tech_stack"]


class TestIterativeRequests:
    """Test the ask-for-more protocol"""

    @pytest.mark.asyncio
    async def test_already_served_chunks_are_not_repeated(self, memory_service, project_memory):
        """Test that each chunk is served at most once per session"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres"]
        )
        served = {chunk.id for chunk in context.chunks}

        response = await memory_service.handle_iterative_request(
            context.session_id,
            "I need the table definitions",
            RequestType.SCHEMA,
            keywords=["postgres", "order_items"],
        )

        assert response.was_found is False
        assert response.additional_chunks == []
        assert response.suggestion == (
            "Could not find information about: postgres, order_items. "
            "Consider adding this to memory."
        )
        assert served.isdisjoint({chunk.id for chunk in response.additional_chunks})

    @pytest.mark.asyncio
    async def test_served_sections_survive_document_update(
        self, memory_service, project_memory, sample_project_doc
    ):
        """Test that a mid-session document update does not re-serve sections"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres"]
        )
        served = {chunk.section_id for chunk in context.chunks}
        assert "database_schema" in served

        await memory_service.upsert_document(
            project_memory.org_id,
            MemoryLevel.PROJECT,
            "p1",
            "Checkout",
            sample_project_doc + "\n## Misc\n\nPostgres backups run nightly.\n",
        )
        response = await memory_service.handle_iterative_request(
            context.session_id, "More about postgres", RequestType.SCHEMA, keywords=["postgres"]
        )

        new_sections = {chunk.section_id for chunk in response.additional_chunks}
        assert new_sections == {"misc"}
        assert served.isdisjoint(new_sections)

    @pytest.mark.asyncio
    async def test_additional_context_is_served_once(self, memory_service, project_memory):
        """Test that new chunks are returned and recorded on the session"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres"]
        )

        first = await memory_service.handle_iterative_request(
            context.session_id, "Where are the endpoints?", "api_endpoint", keywords=["endpoints"]
        )
        second = await memory_service.handle_iterative_request(
            context.session_id, "Where are the endpoints?", "api_endpoint", keywords=["endpoints"]
        )

        assert first.was_found is True
        assert [chunk.section_id for chunk in first.additional_chunks] == ["api_endpoints"]
        assert first.total_new_tokens == first.additional_chunks[0].token_count
        assert second.was_found is False

        record = await session_row(context.session_id)
        assert record.iteration_count == 2
        assert record.request_types == ["api_endpoint", "api_endpoint"]
        assert len(record.served_chunk_ids) == len(context.chunks) + 1

    @pytest.mark.asyncio
    async def test_keywords_are_extracted_from_request_text(
        self, memory_service, project_memory
    ):
        """Test keyword extraction when no explicit keywords are given"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["kafka"]
        )

        response = await memory_service.handle_iterative_request(
            context.session_id, "I need the Overview", RequestType.CLARIFICATION
        )

        assert response.searched_keywords == ["overview"]
        assert [chunk.section_id for chunk in response.additional_chunks] == ["overview"]

    @pytest.mark.asyncio
    async def test_iterative_budget(self, memory_service, project_memory):
        """Test the per-step token budget"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["kafka"]
        )

        response = await memory_service.handle_iterative_request(
            context.session_id, "need more", RequestType.SCHEMA, keywords=["postgres"], max_tokens=1
        )

        assert response.was_found is False
        assert response.total_new_tokens == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, memory_service):
        """Test requests against a missing session"""
        with pytest.raises(SessionNotFoundError):
            await memory_service.handle_iterative_request(uuid4(), "x", RequestType.SCHEMA, ["a"])

    @pytest.mark.asyncio
    async def test_closed_session(self, memory_service, project_memory):
        """Test requests against a completed session"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres"]
        )
        await memory_service.complete_session(context.session_id, was_successful=True)

        with pytest.raises(SessionClosedError):
            await memory_service.handle_iterative_request(
                context.session_id, "more", RequestType.SCHEMA, ["endpoints"]
            )


class TestSessionCompletion:
    """Test session outcomes and chunk feedback"""

    @pytest.mark.asyncio
    async def test_completion_is_idempotent(self, memory_service, project_memory):
        """Test that only the first completion counts"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )

        assert await memory_service.complete_session(context.session_id, True) is True
        assert await memory_service.complete_session(context.session_id, True) is False
        assert await memory_service.complete_session(context.session_id, False) is False

        tech_stack = await chunk_row("tech_stack")
        assert tech_stack.times_helpful == 1
        assert tech_stack.times_insufficient == 0

        record = await session_row(context.session_id)
        assert record.status == SessionStatus.COMPLETED.value
        assert record.was_successful is True
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_session_counts_insufficient(self, memory_service, project_memory):
        """Test that a failed session marks its chunks insufficient"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        await memory_service.complete_session(context.session_id, False, notes="missing schema")

        tech_stack = await chunk_row("tech_stack")
        assert tech_stack.times_insufficient == 1
        assert (await session_row(context.session_id)).notes == "missing schema"

    @pytest.mark.asyncio
    async def test_iteratively_served_chunks_get_feedback(self, memory_service, project_memory):
        """Test that chunks served by follow-up requests are also credited"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        await memory_service.handle_iterative_request(
            context.session_id, "endpoints?", RequestType.API_ENDPOINT, ["endpoints"]
        )
        await memory_service.complete_session(context.session_id, True)

        assert (await chunk_row("api_endpoints")).times_helpful == 1

    @pytest.mark.asyncio
    async def test_feedback_after_document_update(
        self, memory_service, project_memory, sample_project_doc
    ):
        """Test that completion credits chunks of a document edited mid-session"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["postgres"]
        )
        await memory_service.upsert_document(
            project_memory.org_id,
            MemoryLevel.PROJECT,
            "p1",
            "Checkout",
            sample_project_doc + "\n## Misc\n\nBackups run nightly.\n",
        )

        assert await memory_service.complete_session(context.session_id, True) is True

        schema = await chunk_row("database_schema")
        assert schema.times_retrieved == 1
        assert schema.times_helpful == 1

    @pytest.mark.asyncio
    async def test_complete_unknown_session(self, memory_service):
        """Test completing a missing session"""
        with pytest.raises(SessionNotFoundError):
            await memory_service.complete_session(uuid4(), True)

    @pytest.mark.asyncio
    async def test_scoped_session_success(self, memory_service, project_memory):
        """Test that a retrieval scope completes successfully on normal exit"""
        async with memory_service.retrieval_session(
            project_memory, SessionType.CHAT, ["prisma"]
        ) as context:
            session_id = context.session_id

        record = await session_row(session_id)
        assert record.status == SessionStatus.COMPLETED.value
        assert record.was_successful is True

    @pytest.mark.asyncio
    async def test_scoped_session_failure(self, memory_service, project_memory):
        """Test that a retrieval scope completes with failure when the body raises"""
        with pytest.raises(RuntimeError):
            async with memory_service.retrieval_session(
                project_memory, SessionType.CHAT, ["prisma"]
            ) as context:
                session_id = context.session_id
                raise RuntimeError("model call failed")

        record = await session_row(session_id)
        assert record.was_successful is False
        assert (await chunk_row("tech_stack")).times_insufficient == 1

    @pytest.mark.asyncio
    async def test_stale_sessions_expire_without_feedback(self, memory_service, project_memory):
        """Test expiry of abandoned sessions"""
        context = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        async with get_session() as session:
            await session.execute(
                update(RetrievalSessionDB)
                .where(RetrievalSessionDB.id == context.session_id)
                .values(created_at=datetime.utcnow() - timedelta(hours=2))
            )

        assert await memory_service.expire_stale_sessions(max_age_seconds=3600) == 1
        assert await memory_service.expire_stale_sessions(max_age_seconds=3600) == 0
        assert await memory_service.complete_session(context.session_id, True) is False

        record = await session_row(context.session_id)
        assert record.status == SessionStatus.EXPIRED.value
        tech_stack = await chunk_row("tech_stack")
        assert tech_stack.times_helpful == 0
        assert tech_stack.times_insufficient == 0


class TestUpdateQueue:
    """Test queued memory updates"""

    @pytest.mark.asyncio
    async def test_append_creates_missing_document_from_template(
        self, memory_service, org_id
    ):
        """Test that an append to a missing document initializes it first"""
        await memory_service.queue_memory_update(
            org_id,
            "decision_made",
            "d-42",
            MemoryLevel.PROJECT,
            "append",
            content="Decided to use Stripe for payments.",
            keywords=["Stripe", "billing"],
            target_entity_id="p1",
        )

        counts = await memory_service.process_pending_updates()

        assert counts == {"applied": 1, "failed": 0}
        content = await document_content(org_id, MemoryLevel.PROJECT)
        assert "## Project Overview" in content
        assert "## Decision Made d-42" in content
        assert "Keywords: stripe, billing" in content

        chunk = await chunk_row("decision_made_d_42")
        assert chunk.keywords[:2] == ["stripe", "billing"]

    @pytest.mark.asyncio
    async def test_update_section_replaces_body(self, memory_service, org_id):
        """Test replacing one section and extending another"""
        await memory_service.upsert_document(
            org_id,
            MemoryLevel.ORG,
            None,
            "Acme",
            "# Acme\n\n## Status\n\nold status\n\n## Next\n\nnext steps\n",
        )
        await memory_service.queue_memory_update(
            org_id,
            "meeting_completed",
            "m-1",
            MemoryLevel.ORG,
            "update_section",
            content="new status",
            section_id="status",
        )
        await memory_service.queue_memory_update(
            org_id, "meeting_completed", "m-1", "org", "append", content="more steps", section_id="next"
        )

        assert await memory_service.process_pending_updates() == {"applied": 2, "failed": 0}

        content = await document_content(org_id, MemoryLevel.ORG)
        assert "old status" not in content
        assert "## Status\n\nnew status\n\n## Next" in content
        assert content.endswith("next steps\n\nmore steps\n")

        document = await memory_service.get_document(org_id, MemoryLevel.ORG)
        assert document.version == 3

    @pytest.mark.asyncio
    async def test_regenerate_replaces_content(self, memory_service, org_id):
        """Test full regeneration from queued content"""
        await memory_service.upsert_document(org_id, MemoryLevel.ORG, None, "Acme", ORG_DOC)
        await memory_service.queue_memory_update(
            org_id, "pr_merged", "pr-7", MemoryLevel.ORG, "regenerate", content="# Fresh\n\nall new"
        )

        await memory_service.process_pending_updates()

        assert await document_content(org_id, MemoryLevel.ORG) == "# Fresh\n\nall new"

    @pytest.mark.asyncio
    async def test_failed_update_does_not_stop_processing(self, memory_service, org_id):
        """Test that one bad entry is marked failed and the rest still apply"""
        async with get_session() as session:
            session.add(
                MemoryUpdateDB(
                    org_id=org_id,
                    source_type="ticket_closed",
                    source_entity_id="t-1",
                    target_level="org",
                    update_type="explode",
                    content="x",
                    keywords=[],
                    status="pending",
                    created_at=datetime.utcnow() - timedelta(seconds=5),
                )
            )
        await memory_service.queue_memory_update(
            org_id, "ticket_closed", "t-2", MemoryLevel.ORG, "append", content="Closed t-2"
        )

        counts = await memory_service.process_pending_updates()

        assert counts == {"applied": 1, "failed": 1}
        async with get_session() as session:
            result = await session.execute(
                select(MemoryUpdateDB).where(MemoryUpdateDB.source_entity_id == "t-1")
            )
            failed = result.scalar_one()
        assert failed.status == "failed"
        assert failed.error

    @pytest.mark.asyncio
    async def test_processed_updates_are_not_reapplied(self, memory_service, org_id):
        """Test that applied entries leave the pending queue"""
        await memory_service.queue_memory_update(
            org_id, "ticket_closed", "t-3", MemoryLevel.ORG, "append", content="Closed t-3"
        )

        assert await memory_service.process_pending_updates() == {"applied": 1, "failed": 0}
        assert await memory_service.process_pending_updates() == {"applied": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_queue_validation(self, memory_service, org_id):
        """Test rejected queue entries"""
        with pytest.raises(ValueError):
            await memory_service.queue_memory_update(
                org_id, "ticket_closed", "t-1", MemoryLevel.PROJECT, "append", content="x"
            )
        with pytest.raises(ValueError):
            await memory_service.queue_memory_update(
                org_id, "ticket_closed", "t-1", MemoryLevel.ORG, "update_section", content="x"
            )
        with pytest.raises(ValueError):
            await memory_service.queue_memory_update(
                org_id, "unknown_event", "t-1", MemoryLevel.ORG, "append", content="x"
            )
        with pytest.raises(ValueError):
            await memory_service.queue_memory_update(
                org_id, "pr_merged", "pr-8", MemoryLevel.ORG, "regenerate", keywords=["billing"]
            )


class TestAnalytics:
    """Test retrieval analytics"""

    @pytest.mark.asyncio
    async def test_session_and_token_aggregates(self, memory_service, project_memory):
        """Test success, iteration and token figures across sessions"""
        helpful = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        await memory_service.complete_session(helpful.session_id, True)

        followed_up = await memory_service.get_initial_context(
            project_memory, SessionType.CODE_REVIEW, ["prisma"]
        )
        await memory_service.handle_iterative_request(
            followed_up.session_id, "endpoints?", RequestType.API_ENDPOINT, ["endpoints"]
        )
        await memory_service.complete_session(followed_up.session_id, False)

        await memory_service.get_initial_context(project_memory, SessionType.CHAT, ["kafka"])

        analytics = await memory_service.get_analytics(project_memory.org_id)

        assert analytics.total_sessions == 3
        assert analytics.successful_sessions == 1
        assert analytics.success_rate == 0.3333
        assert analytics.single_iteration_rate == 0.6667
        assert analytics.avg_iterations == 0.33

        api_tokens = (await chunk_row("api_endpoints")).token_count
        assert analytics.initial_tokens == helpful.total_tokens + followed_up.total_tokens
        assert analytics.total_tokens == analytics.initial_tokens + api_tokens
        assert analytics.estimated_naive_tokens == 30_000
        assert analytics.tokens_saved == 30_000 - analytics.total_tokens

        assert [(m.request_type, m.occurrences) for m in analytics.common_missing_info] == [
            (RequestType.API_ENDPOINT, 1)
        ]
        assert [(m.keyword, m.occurrences) for m in analytics.common_missing_keywords] == [
            ("kafka", 1)
        ]

        stats = {s.session_type: s for s in analytics.by_session_type}
        assert stats[SessionType.CHAT].count == 2
        assert stats[SessionType.CODE_REVIEW].avg_iterations == 1.0
        assert analytics.most_efficient_session_type == SessionType.CHAT

    @pytest.mark.asyncio
    async def test_most_helpful_chunks(self, memory_service, project_memory):
        """Test that chunks rank by helpful share of retrievals"""
        first = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        await memory_service.handle_iterative_request(
            first.session_id, "endpoints?", RequestType.API_ENDPOINT, ["endpoints"]
        )
        await memory_service.complete_session(first.session_id, True)
        second = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["endpoints"]
        )
        await memory_service.complete_session(second.session_id, False)

        analytics = await memory_service.get_analytics(project_memory.org_id)

        chunks = analytics.most_helpful_chunks
        assert [chunk.section_id for chunk in chunks] == ["tech_stack", "api_endpoints"]
        assert chunks[0].helpfulness == 1.0
        assert chunks[0].document_title == "Checkout"
        assert chunks[1].times_retrieved == 2
        assert chunks[1].helpfulness == 0.5

    @pytest.mark.asyncio
    async def test_window_excludes_older_sessions(self, memory_service, project_memory):
        """Test that only sessions inside the reporting window count"""
        old = await memory_service.get_initial_context(
            project_memory, SessionType.CHAT, ["prisma"]
        )
        await memory_service.get_initial_context(project_memory, SessionType.CHAT, ["prisma"])
        async with get_session() as session:
            await session.execute(
                update(RetrievalSessionDB)
                .where(RetrievalSessionDB.id == old.session_id)
                .values(created_at=datetime.utcnow() - timedelta(days=40))
            )

        recent = await memory_service.get_analytics(project_memory.org_id, days=30)
        everything = await memory_service.get_analytics(project_memory.org_id, days=60)

        assert recent.total_sessions == 1
        assert everything.total_sessions == 2

    @pytest.mark.asyncio
    async def test_empty_organization(self, memory_service):
        """Test analytics without any sessions"""
        analytics = await memory_service.get_analytics("org-empty", days=7)

        assert analytics.total_sessions == 0
        assert analytics.success_rate is None
        assert analytics.savings_rate is None
        assert analytics.most_helpful_chunks == []
        assert analytics.most_efficient_session_type is None

    @pytest.mark.asyncio
    async def test_days_must_be_positive(self, memory_service):
        with pytest.raises(ValueError):
            await memory_service.get_analytics("org-1", days=0)
