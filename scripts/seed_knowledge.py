#!/usr/bin/env python3
"""
Knowledge Corpus Seeder
=======================

Embeds knowledge snippets with Gemini and upserts them into
``knowledge_snippets`` for the advice retriever.

Usage:
    python scripts/seed_knowledge.py                 # built-in starter corpus
    python scripts/seed_knowledge.py snippets.json   # [{"id", "title", "text", "tags"}]
"""

import asyncio
import json
import logging
import sys
import os

# Add backend root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings
from coach.adapters.gemini_adapter import create_gemini_client, create_gemini_embedder
from coach.adapters.knowledge_retriever import MongoKnowledgeRetriever
from coach.memory.mongo_store import DatabaseManager

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

STARTER_CORPUS = [
    {
        "id": "fasting-hydration",
        "title": "Hydration while fasting",
        "text": "Water, plain tea and black coffee do not break a fast. "
                "On fasts longer than 24 hours, a pinch of salt helps with electrolytes.",
        "tags": ["fasting", "hydration"],
    },
    {
        "id": "fasting-breaking",
        "title": "Breaking a fast",
        "text": "Break a fast with a moderate, protein-rich meal rather than a large "
                "high-sugar one, and eat slowly.",
        "tags": ["fasting", "nutrition"],
    },
    {
        "id": "fasting-diabetes",
        "title": "Fasting with diabetes",
        "text": "People taking insulin or sulfonylureas risk hypoglycemia while fasting "
                "and should plan any fasting schedule with their doctor.",
        "tags": ["fasting", "diabetes", "medical_reminder"],
    },
    {
        "id": "sleep-consistency",
        "title": "Consistent sleep timing",
        "text": "Going to bed and waking at the same time every day, weekends included, "
                "improves sleep quality more than sleeping longer on some nights.",
        "tags": ["sleep", "better_sleep"],
    },
    {
        "id": "exercise-weekly",
        "title": "Weekly activity targets",
        "text": "Aim for at least 150 minutes of moderate activity a week plus two "
                "sessions of strength training.",
        "tags": ["exercise", "weight_loss", "muscle_gain"],
    },
    {
        "id": "nutrition-protein",
        "title": "Protein and satiety",
        "text": "Including protein at every meal helps control hunger and preserve "
                "muscle during weight loss.",
        "tags": ["nutrition", "weight_loss", "fat_loss"],
    },
    {
        "id": "motivation-small-wins",
        "title": "Small wins",
        "text": "Tracking small, specific wins each day keeps motivation higher than "
                "focusing on a distant target weight.",
        "tags": ["motivation", "weight_loss"],
    },
]


def load_snippets(path: str) -> list:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError("Snippet file must contain a JSON list")
    return data


async def seed(snippets: list) -> int:
    db_manager = DatabaseManager()
    await db_manager.connect(settings.mongodb_uri, settings.mongodb_database)
    try:
        client = create_gemini_client(settings.gemini_api_key)
        embedder = create_gemini_embedder(client, embedding_model=settings.embedding_model)
        retriever = MongoKnowledgeRetriever(db_manager.collection("knowledge_snippets"), embedder)

        for item in snippets:
            await retriever.add_snippet(
                item["id"], item["title"], item["text"], tags=item.get("tags", [])
            )
            logger.info(f"✅ Seeded {item['id']}")
        return len(snippets)
    finally:
        await db_manager.disconnect()


if __name__ == "__main__":
    corpus = load_snippets(sys.argv[1]) if len(sys.argv) > 1 else STARTER_CORPUS
    count = asyncio.run(seed(corpus))
    print(f"Seeded {count} knowledge snippets")
