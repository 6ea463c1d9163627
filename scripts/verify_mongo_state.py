#!/usr/bin/env python3
"""
MongoDB State Verification Script
=================================

Verifies collections and indexes the coach relies on.

Usage:
    python scripts/verify_mongo_state.py

Checks:
    - one_open_session_per_user partial unique index on fasting_sessions
    - no user has more than one open fasting session
    - knowledge_snippets documents carry embeddings
    - the Atlas vector index used by the advice retriever exists
"""

import sys
import os

# Add backend root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pymongo import MongoClient
from pymongo.errors import OperationFailure
from config import settings

COLLECTIONS = (
    "health_profiles",
    "fasting_sessions",
    "activity_log",
    "behavior_snapshots",
    "advice_records",
    "advice_feedback",
    "knowledge_snippets",
    "notification_outbox",
)


def verify_mongo_state() -> bool:
    """Main verification function. Returns True when every check passes."""
    print("=" * 70)
    print("  Wellness Coach MongoDB State Verification")
    print("=" * 70)
    print()

    client = MongoClient(settings.mongodb_uri)
    db = client[settings.mongodb_database]
    ok = True

    print(f"📦 Database: {settings.mongodb_database}")
    print()

    # 1. Collections
    print("─" * 50)
    print("📁 Collections:")
    existing = set(db.list_collection_names())
    for name in COLLECTIONS:
        if name in existing:
            print(f"   • {name}: {db[name].count_documents({})} documents")
        else:
            print(f"   • {name}: (missing)")
    print()

    # 2. Open-session index
    print("─" * 50)
    print("🔒 fasting_sessions indexes:")
    indexes = db.fasting_sessions.index_information()
    for name, info in indexes.items():
        print(f"   • {name}: {info.get('key')}")
    open_index = indexes.get("one_open_session_per_user")
    if open_index and open_index.get("unique") and open_index.get("partialFilterExpression"):
        print("   ✅ one_open_session_per_user is unique and partial")
    else:
        print("   ❌ one_open_session_per_user index missing or misconfigured")
        ok = False
    print()

    # 3. At most one open session per user
    print("─" * 50)
    print("⏱️ Open sessions:")
    duplicates = list(db.fasting_sessions.aggregate([
        {"$match": {"is_open": True}},
        {"$group": {"_id": "$user_id", "count": {"$sum": 1}}},
        {"$match": {"count": {"$gt": 1}}},
    ]))
    if duplicates:
        ok = False
        for dup in duplicates:
            print(f"   ❌ user {dup['_id']} has {dup['count']} open sessions")
    else:
        print("   ✅ no user has more than one open session")
    print()

    # 4. Knowledge corpus
    print("─" * 50)
    print("🧠 Knowledge snippets:")
    total = db.knowledge_snippets.count_documents({})
    embedded = db.knowledge_snippets.count_documents({"embedding": {"$exists": True}})
    print(f"   • {embedded}/{total} snippets have embeddings")
    if total and embedded < total:
        print("   ⚠️ run scripts/seed_knowledge.py to embed the rest")
    try:
        search_indexes = [ix["name"] for ix in db.knowledge_snippets.list_search_indexes()]
    except OperationFailure as e:
        search_indexes = []
        print(f"   ⚠️ search indexes unavailable: {e}")
    if settings.knowledge_vector_index in search_indexes:
        print(f"   ✅ vector index {settings.knowledge_vector_index} present")
    else:
        print(f"   ❌ vector index {settings.knowledge_vector_index} missing")
        ok = False
    print()

    client.close()
    print("✅ All checks passed" if ok else "❌ Some checks failed")
    return ok


if __name__ == "__main__":
    sys.exit(0 if verify_mongo_state() else 1)
