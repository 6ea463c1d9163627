"""
In-memory test doubles for the coach's collaborators.

InMemoryCollection implements the MongoCollection interface with the
query operators the repositories use, so repositories and services run
unchanged on top of it.
"""
import asyncio
import copy
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from coach.advice.models import Snippet
from coach.core.errors import PersistenceError

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

_MISSING = object()


def _lookup(doc: Dict[str, Any], dotted: str) -> Any:
    value: Any = doc
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _match_value(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
                continue
            if value is _MISSING:
                return False
            if op == "$in" and value not in arg:
                return False
            if op == "$ne" and value == arg:
                return False
            if op == "$gte" and not (value is not None and value >= arg):
                return False
            if op == "$gt" and not (value is not None and value > arg):
                return False
            if op == "$lte" and not (value is not None and value <= arg):
                return False
            if op == "$lt" and not (value is not None and value < arg):
                return False
        return True
    return value is not _MISSING and value == condition


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    return all(_match_value(_lookup(doc, k), v) for k, v in query.items())


def cosine_similarity(vec1, vec2) -> float:
    if len(vec1) != len(vec2):
        return 0.0
    dot = sum(a * b for a, b in zip(vec1, vec2))
    norm1 = sum(a * a for a in vec1) ** 0.5
    norm2 = sum(b * b for b in vec2) ** 0.5
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / (norm1 * norm2)


def _vector_search(docs, stage):
    """Exact cosine ranking scored like Atlas: (1 + cos) / 2."""
    scored = []
    for doc in docs:
        vector = _lookup(doc, stage["path"])
        if not isinstance(vector, list):
            continue
        score = (1 + cosine_similarity(stage["queryVector"], vector)) / 2
        scored.append({**doc, "__score": score})
    scored.sort(key=lambda d: d["__score"], reverse=True)
    return scored[:stage["limit"]]


def _project(doc, spec):
    projected = {"_id": doc["_id"]}
    for field, rule in spec.items():
        if rule == {"$meta": "vectorSearchScore"}:
            projected[field] = doc["__score"]
        elif rule and field in doc:
            projected[field] = doc[field]
    return projected


class InMemoryCollection:
    """
    Dict-backed stand-in for MongoCollection.

    ``unique_open_per_user`` mimics the partial unique index on
    fasting_sessions. ``fail(op, times)`` makes the next calls of an
    operation raise PersistenceError.
    """

    def __init__(self, name: str = "memory", unique_open_per_user: bool = False):
        self.name = name
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.unique_open_per_user = unique_open_per_user
        self.calls: List[str] = []
        self.pipelines: List[List[Dict[str, Any]]] = []
        self._failures: Dict[str, int] = {}

    def fail(self, operation: str, times: int = 1) -> None:
        self._failures[operation] = times

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        remaining = self._failures.get(operation, 0)
        if remaining:
            self._failures[operation] = remaining - 1
            raise PersistenceError(f"{operation} on '{self.name}' failed: injected")

    def _violates_open_index(self, document: Dict[str, Any]) -> bool:
        if not self.unique_open_per_user or not document.get("is_open"):
            return False
        return any(
            d["_id"] != document["_id"]
            and d.get("is_open")
            and d.get("user_id") == document.get("user_id")
            for d in self.docs.values()
        )

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.find_one({"_id": key})

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._maybe_fail("find_one")
        for doc in self.docs.values():
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def find(self, query, sort=None, limit: int = 0) -> List[Dict[str, Any]]:
        self._maybe_fail("find")
        found = [copy.deepcopy(d) for d in self.docs.values() if matches(d, query)]
        for field, direction in reversed(list(sort or [])):
            found.sort(key=lambda d: _lookup(d, field), reverse=direction < 0)
        return found[:limit] if limit else found

    async def insert(self, document: Dict[str, Any]) -> bool:
        self._maybe_fail("insert")
        if document["_id"] in self.docs or self._violates_open_index(document):
            return False
        self.docs[document["_id"]] = copy.deepcopy(document)
        return True

    async def set(self, key: str, document: Dict[str, Any]) -> None:
        self._maybe_fail("set")
        self.docs[key] = copy.deepcopy({**document, "_id": key})

    async def merge(
        self,
        key: str,
        fields: Dict[str, Any],
        upsert: bool = False,
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> bool:
        self._maybe_fail("merge")
        if key not in self.docs:
            if not upsert:
                return False
            self.docs[key] = {"_id": key, **copy.deepcopy(on_insert or {})}
        doc = self.docs[key]
        for dotted, value in fields.items():
            target = doc
            *parents, leaf = dotted.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = copy.deepcopy(value)
        return True

    async def aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Supports $vectorSearch, $project and $match stages."""
        self._maybe_fail("aggregate")
        docs = [copy.deepcopy(d) for d in self.docs.values()]
        self.pipelines.append(pipeline)
        for stage in pipeline:
            operator, arg = next(iter(stage.items()))
            if operator == "$vectorSearch":
                docs = _vector_search(docs, arg)
            elif operator == "$project":
                docs = [_project(d, arg) for d in docs]
            elif operator == "$match":
                docs = [d for d in docs if matches(d, arg)]
            else:
                raise NotImplementedError(operator)
        return docs

    async def compare_and_set(
        self, key: str, document: Dict[str, Any], expected_version: int
    ) -> bool:
        self._maybe_fail("compare_and_set")
        current = self.docs.get(key)
        if current is None or current.get("version") != expected_version:
            return False
        if self._violates_open_index(document):
            return False
        self.docs[key] = copy.deepcopy(document)
        return True


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRetriever:
    def __init__(self, snippets=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.snippets = list(snippets or [])
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def retrieve(self, query: str, context: Dict[str, Any]) -> List[Snippet]:
        self.calls.append((query, copy.deepcopy(context)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.snippets)


class FakeBackend:
    """Returns ``text`` (or raises ``error``) and records every prompt."""

    def __init__(self, text: str = "", error: Optional[Exception] = None, delay: float = 0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.prompts: List[Any] = []

    async def generate(self, prompt) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.text


class RecordingSink:
    def __init__(self, error: Optional[Exception] = None):
        self.events: List[Any] = []
        self.error = error

    async def push(self, event) -> None:
        if self.error:
            raise self.error
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind.value for e in self.events]


def advice_json(**overrides) -> str:
    payload = {
        "title": "Hydrate Through Your Fast",
        "content": "Drink water regularly. Electrolytes help on longer fasts.",
        "summary": "Drink water regularly.",
        "actions": ["Drink a glass of water now"],
        "tags": ["fasting", "hydration"],
        "confidence": 0.85,
        "urgent": False,
        "important": False,
    }
    payload.update(overrides)
    return json.dumps(payload)


def snippet(source_id: str = "kb-1", score: float = 0.9, tags=("fasting",)) -> Snippet:
    return Snippet(
        source_id=source_id,
        title="Hydration while fasting",
        text="Water, tea and black coffee do not break a fast.",
        score=score,
        tags=tuple(tags),
    )
