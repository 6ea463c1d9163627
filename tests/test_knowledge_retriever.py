"""
Test Knowledge Retriever and Notification Outbox
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from coach.adapters.knowledge_retriever import (
    MongoKnowledgeRetriever,
    context_tags,
    score_from_similarity,
    similarity_from_score,
)
from coach.adapters.notifications import MongoNotificationSink
from coach.core.types import EventKind, NotificationEvent
from fakes import InMemoryCollection


class StubEmbedder:
    """Maps known texts to fixed vectors."""

    def __init__(self, vectors):
        self.vectors = vectors

    async def embed(self, text):
        return self.vectors.get(text, [1.0, 0.0, 0.0])


def kb_doc(source_id, embedding, tags=()):
    return {
        "_id": source_id,
        "title": f"Title {source_id}",
        "text": f"Text {source_id}",
        "tags": list(tags),
        "embedding": embedding,
    }


class TestSimilarity:

    def test_atlas_score_conversion(self):
        assert score_from_similarity(1.0) == 1.0
        assert score_from_similarity(-1.0) == 0.0
        assert similarity_from_score(score_from_similarity(0.3)) == pytest.approx(0.3)

    def test_context_tags(self):
        context = {
            "profile": {"goals": ["weight_loss"], "health_conditions": ["diabetes"]},
            "advice_type": "fasting",
            "fasting_session": {"state": "active"},
        }
        assert context_tags(context) == {"weight_loss", "diabetes", "fasting"}


class TestMongoKnowledgeRetriever:

    @pytest.mark.asyncio
    async def test_ranks_by_similarity_with_tag_boost(self):
        collection = InMemoryCollection("knowledge_snippets")
        await collection.set("close", kb_doc("close", [1.0, 0.1, 0.0]))
        await collection.set("tagged", kb_doc("tagged", [1.0, 0.3, 0.0], tags=["fasting"]))
        await collection.set("far", kb_doc("far", [0.0, 1.0, 0.0]))
        await collection.set("raw", {"_id": "raw", "title": "no vector"})
        retriever = MongoKnowledgeRetriever(collection, StubEmbedder({}), limit=5)

        snippets = await retriever.retrieve("q", {"advice_type": "fasting"})

        assert [s.source_id for s in snippets] == ["tagged", "close"]
        assert snippets[0].tags == ("fasting",)

    @pytest.mark.asyncio
    async def test_limit(self):
        collection = InMemoryCollection("knowledge_snippets")
        for i in range(4):
            await collection.set(f"k{i}", kb_doc(f"k{i}", [1.0, 0.0, 0.0]))
        retriever = MongoKnowledgeRetriever(collection, StubEmbedder({}), limit=2)

        assert len(await retriever.retrieve("q", {})) == 2

    @pytest.mark.asyncio
    async def test_uses_vector_search_pipeline(self):
        collection = MagicMock()
        collection.aggregate = AsyncMock(return_value=[
            {"_id": "kb-1", "title": "Hydration", "text": "Drink water.", "tags": [], "score": 0.9},
        ])
        retriever = MongoKnowledgeRetriever(
            collection, StubEmbedder({"thirst": [0.0, 1.0, 0.0]}), limit=2, index="kb_index"
        )

        snippets = await retriever.retrieve("thirst", {})

        pipeline = collection.aggregate.await_args.args[0]
        search = pipeline[0]["$vectorSearch"]
        assert search["index"] == "kb_index"
        assert search["path"] == "embedding"
        assert search["queryVector"] == [0.0, 1.0, 0.0]
        assert search["limit"] == 6
        assert search["numCandidates"] >= search["limit"]
        assert pipeline[1]["$project"]["score"] == {"$meta": "vectorSearchScore"}
        assert pipeline[2] == {"$match": {"score": {"$gte": 0.65}}}
        collection.find.assert_not_called()
        assert snippets[0].source_id == "kb-1"
        assert snippets[0].score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_tag_boost_reorders_beyond_search_order(self):
        collection = InMemoryCollection("knowledge_snippets")
        for i in range(2):
            await collection.set(f"plain{i}", kb_doc(f"plain{i}", [1.0, 0.05 * i, 0.0]))
        await collection.set("tagged", kb_doc("tagged", [1.0, 0.3, 0.0], tags=["sleep"]))
        retriever = MongoKnowledgeRetriever(collection, StubEmbedder({}), limit=1)

        snippets = await retriever.retrieve("q", {"advice_type": "sleep"})

        assert [s.source_id for s in snippets] == ["tagged"]

    @pytest.mark.asyncio
    async def test_add_snippet_stores_embedding(self):
        collection = InMemoryCollection("knowledge_snippets")
        embedder = StubEmbedder({"Electrolytes\nSalt helps.": [0.0, 0.0, 1.0]})
        retriever = MongoKnowledgeRetriever(collection, embedder)

        await retriever.add_snippet("kb-7", "Electrolytes", "Salt helps.", tags=["fasting"])

        assert collection.docs["kb-7"]["embedding"] == [0.0, 0.0, 1.0]
        assert collection.docs["kb-7"]["tags"] == ["fasting"]


class TestNotificationOutbox:

    @pytest.mark.asyncio
    async def test_push_queues_pending_document(self):
        collection = MagicMock()
        collection.insert = AsyncMock(return_value=True)
        sink = MongoNotificationSink(collection)

        await sink.push(NotificationEvent(
            kind=EventKind.SESSION_STARTED, user_id="u1", payload={"session_id": "s1"}
        ))

        document = collection.insert.await_args.args[0]
        assert document["kind"] == "session_started"
        assert document["status"] == "pending"
        assert document["attempts"] == 0
        assert document["payload"] == {"session_id": "s1"}
