"""Pytest configuration and fixtures for AI router tests"""

import asyncio
import os
import tempfile

# Set test environment variables FIRST, before any imports
_db_dir = tempfile.mkdtemp(prefix="airouter-tests-")
os.environ["OPENROUTER_API_KEY"] = "test_key_for_testing"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["CACHE_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest

from airouter.core.models.classification import ClassificationMode
from airouter.core.models.registry import ModelTier
from airouter.core.models.routing import ModelCompletion
from airouter.services.classifier import TaskClassifier
from airouter.services.memory import MemoryService
from airouter.services.org_settings import StaticModeResolver
from airouter.storage import models  # noqa: F401
from airouter.storage.database import Base, close_db, get_engine


@pytest.fixture(autouse=True)
async def fresh_database():
    """Empty schema for every test

    The engine is disposed before and after each test, so every test (and every
    TestClient event loop) opens its own connections.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    await close_db()
    yield
    await close_db()


# ============================================================================
# Fakes
# ============================================================================


class FakeProvider:
    """Model provider that answers from a script instead of the network

    ``responses`` maps a tier key to a string (returned as content), an exception
    (raised) or a ModelCompletion (returned as is). Tiers without an entry answer
    with ``default``.
    """

    def __init__(
        self,
        responses: dict | None = None,
        default: str = "ok",
        delays: dict[str, float] | None = None,
    ):
        self.responses = responses or {}
        self.default = default
        self.delays = delays or {}
        self.calls: list[dict] = []

    @property
    def called_tiers(self) -> list[str]:
        return [call["tier"] for call in self.calls]

    async def complete(
        self,
        tier: ModelTier,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        json_schema: dict | None = None,
    ) -> ModelCompletion:
        self.calls.append(
            {
                "tier": tier.key,
                "prompt": prompt,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "system_prompt": system_prompt,
            }
        )
        if tier.key in self.delays:
            await asyncio.sleep(self.delays[tier.key])

        response = self.responses.get(tier.key, self.default)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, ModelCompletion):
            return response
        return ModelCompletion(content=response)


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis used by the cache"""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def scan_iter(self, match: str):
        prefix = match.rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key


class BrokenRedis:
    """Redis client whose every call fails"""

    async def get(self, key: str):
        raise ConnectionError("redis down")

    async def setex(self, key: str, ttl: int, value: str):
        raise ConnectionError("redis down")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_service():
    return MemoryService()


@pytest.fixture
def cost_classifier():
    """Pattern-only classifier that never calls a model"""
    return TaskClassifier(mode_resolver=StaticModeResolver(ClassificationMode.COST))


@pytest.fixture
def org_id():
    return "3f2a9c1e-0000-4000-8000-000000000001"


@pytest.fixture
def sample_project_doc():
    """Project memory document with several keyword-rich sections"""
    return """# Project: Checkout

## Overview

The checkout service handles carts and payments.

## Tech Stack

IMPORTANT: we use TypeScript with React on the frontend and Postgres behind Prisma.

## API Endpoints

Keywords: endpoints, rest
The REST api lives under /api/v2. Orders are created with POST /api/v2/orders.

## Database Schema

Tables: order_items, payment_intents. The database is Postgres.

```sql
CREATE TABLE order_items (id uuid primary key);
```

## Team Notes

Standups are on Monday.
"""
