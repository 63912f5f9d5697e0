#!/usr/bin/env python3
"""
Example 1: Routing With Project Memory

This example walks through a typical request against a running AI router:
- Storing a project memory document
- Previewing which model a request would go to and what it would cost
- Routing a request with memory keywords so project context is injected
- Asking for more context and closing the session with an outcome

Start the API first: uvicorn airouter.api.main:app
"""

import asyncio

import httpx

BASE_URL = "http://localhost:8000"
ORG_ID = "3f2a9c1e-0000-4000-8000-000000000001"

PROJECT_MEMORY = """# Project: Checkout

## Tech Stack

IMPORTANT: TypeScript with React on the frontend, Postgres behind Prisma.

## API Endpoints

Keywords: endpoints, rest
Orders are created with POST /api/v2/orders.

## Database Schema

Tables: order_items, payment_intents.
"""


async def main():
    """Run the project context example"""
    print("=" * 70)
    print("Example 1: Routing With Project Memory")
    print("=" * 70)
    print()

    async with httpx.AsyncClient(base_url=BASE_URL, timeout=120.0) as client:
        health = (await client.get("/health")).json()
        if health["status"] != "healthy":
            print("❌ API is not healthy. Please start the API server.")
            return
        print("✅ Connected to AI router\n")

        # ====================================================================
        # Phase 1: Project memory
        # ====================================================================
        print("📝 Storing project memory...")
        document = await client.post(
            "/api/v1/memory/documents",
            json={
                "org_id": ORG_ID,
                "level": "project",
                "level_entity_id": "checkout",
                "title": "Checkout",
                "content": PROJECT_MEMORY,
            },
        )
        document.raise_for_status()
        print(f"   ✅ {document.json()['document_key']} ({document.json()['chunk_count']} chunks)\n")

        # ====================================================================
        # Phase 2: Preview and route
        # ====================================================================
        prompt = "Write a Prisma query that loads order_items for an order"

        preview = (
            await client.get("/api/v1/ai/preview", params={"prompt": prompt, "org_id": ORG_ID})
        ).json()
        print(f"🔎 Preview: {preview['recommended_model']} ({preview['task_type']})")
        print(f"   Estimated cost: {preview['estimated_cost']}")
        print(f"   Reasoning: {preview['reasoning']}\n")

        print("🤖 Routing request with project context...")
        routed = await client.post(
            "/api/v1/ai",
            json={
                "prompt": prompt,
                "org_id": ORG_ID,
                "user_id": "demo-user",
                "project_id": "checkout",
                "memory_keywords": ["prisma", "order_items"],
            },
        )
        if routed.status_code != 200:
            print(f"   ❌ {routed.json()['error']}: {routed.json()['detail']}")
            return
        answer = routed.json()
        print(f"   ✅ Answered by {answer['model']} (fallback used: {answer['fallback_used']})")
        print(f"   💰 {answer['cost']['breakdown']}")
        print(f"   ⏱️  {answer['latency_ms']}ms\n")

        # ====================================================================
        # Phase 3: Iterative context
        # ====================================================================
        print("🧩 Opening a retrieval session and asking for more...")
        context = (
            await client.post(
                "/api/v1/memory/context",
                json={"org_id": ORG_ID, "project_id": "checkout", "keywords": ["react"]},
            )
        ).json()
        print(f"   Initial chunks: {[chunk['section_id'] for chunk in context['chunks']]}")

        more = (
            await client.post(
                f"/api/v1/memory/context/{context['session_id']}",
                json={
                    "ai_request_text": "I need the endpoints for creating orders",
                    "request_type": "api_endpoint",
                },
            )
        ).json()
        if more["was_found"]:
            print(f"   More chunks: {[chunk['section_id'] for chunk in more['additional_chunks']]}")
        else:
            print(f"   ⚠️  {more['suggestion']}")

        await client.post(
            f"/api/v1/memory/context/{context['session_id']}/complete",
            json={"was_successful": True},
        )
        print("   ✅ Session completed as helpful")


if __name__ == "__main__":
    asyncio.run(main())
