"""
Knowledge Retriever
===================

RAG retrieval over the ``knowledge_snippets`` collection.

Each snippet document:
{
    "_id": str,              # source id, cited on the advice record
    "title": str,
    "text": str,
    "tags": [str],           # e.g. ["fasting", "weight_loss", "diabetes"]
    "embedding": [float]
}

Candidates come from an Atlas ``$vectorSearch`` (cosine) over
``embedding``. The final score is the cosine similarity plus a small
boost for every snippet tag that matches the user's goals, conditions or
the advice type in the context, so a few extra candidates are fetched
for the boost to reorder.
"""
import logging
from typing import Any, Dict, List, Sequence, Set

from coach.advice.models import Snippet

logger = logging.getLogger(__name__)

TAG_BOOST = 0.05

# Candidates fetched per returned snippet, for the tag boost to reorder
CANDIDATE_FACTOR = 3


def similarity_from_score(score: float) -> float:
    """Atlas reports cosine similarity as (1 + cos) / 2."""
    return 2 * score - 1


def score_from_similarity(similarity: float) -> float:
    return (1 + similarity) / 2


def context_tags(context: Dict[str, Any]) -> Set[str]:
    profile = context.get("profile", {})
    tags = set(profile.get("goals", [])) | set(profile.get("health_conditions", []))
    if context.get("advice_type"):
        tags.add(context["advice_type"])
    if context.get("fasting_session"):
        tags.add("fasting")
    return tags


class MongoKnowledgeRetriever:
    """
    Args:
        collection: knowledge_snippets collection (MongoCollection interface)
        embedder: object with ``async embed(text) -> List[float]``
        limit: max snippets returned
        min_similarity: cosine threshold before boosts
        index: Atlas Vector Search index on ``embedding``
        num_candidates: ANN candidates considered by ``$vectorSearch``
    """

    def __init__(
        self,
        collection,
        embedder,
        limit: int = 5,
        min_similarity: float = 0.3,
        index: str = "knowledge_vector_index",
        num_candidates: int = 100,
    ):
        self.collection = collection
        self.embedder = embedder
        self.limit = limit
        self.min_similarity = min_similarity
        self.index = index
        self.num_candidates = num_candidates

    def pipeline(self, query_vector: List[float]) -> List[Dict[str, Any]]:
        fetch = self.limit * CANDIDATE_FACTOR
        return [
            {
                "$vectorSearch": {
                    "index": self.index,
                    "path": "embedding",
                    "queryVector": query_vector,
                    "numCandidates": max(self.num_candidates, fetch),
                    "limit": fetch,
                }
            },
            {
                "$project": {
                    "title": 1,
                    "text": 1,
                    "tags": 1,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
            {"$match": {"score": {"$gte": score_from_similarity(self.min_similarity)}}},
        ]

    async def retrieve(self, query: str, context: Dict[str, Any]) -> List[Snippet]:
        query_vector = await self.embedder.embed(query)
        documents = await self.collection.aggregate(self.pipeline(query_vector))
        wanted = context_tags(context)

        ranked: List[Snippet] = []
        for doc in documents:
            tags = tuple(doc.get("tags", []))
            similarity = similarity_from_score(doc["score"])
            score = similarity + TAG_BOOST * len(wanted.intersection(tags))
            ranked.append(Snippet(
                source_id=str(doc["_id"]),
                title=doc.get("title", ""),
                text=doc.get("text", ""),
                score=round(score, 4),
                tags=tags,
            ))

        ranked.sort(key=lambda s: s.score, reverse=True)
        logger.info(
            f"🧠 Vector search: {len(documents)} candidates above "
            f"{self.min_similarity}, returning {min(len(ranked), self.limit)}"
        )
        return ranked[:self.limit]

    async def add_snippet(
        self,
        source_id: str,
        title: str,
        text: str,
        tags: Sequence[str] = (),
    ) -> None:
        embedding = await self.embedder.embed(f"{title}\n{text}")
        await self.collection.set(source_id, {
            "_id": source_id,
            "title": title,
            "text": text,
            "tags": list(tags),
            "embedding": embedding,
        })
