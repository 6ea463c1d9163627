"""
Collaborator Interfaces
=======================

Protocols for the services the coach consumes but does not own.
Concrete implementations live in ``coach.adapters``, ``coach.memory``
and ``coach.policy``; tests substitute in-memory fakes.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from coach.advice.models import PromptSpec, Snippet
from coach.core.types import ActivityKind, NotificationEvent, SessionState


@dataclass(frozen=True)
class ContentItem:
    """A piece of content the app is about to show the user."""
    item_id: str
    title: str
    description: str = ""
    category: str = ""
    tags: Sequence[str] = ()


@dataclass(frozen=True)
class FilterDecision:
    allowed: bool
    substitute: Optional[str] = None
    matched_category: Optional[str] = None
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "substitute": self.substitute,
            "matched_category": self.matched_category,
            "confidence": round(self.confidence, 3),
        }


ALLOW = FilterDecision(allowed=True)


class ContentFilterPolicy(Protocol):
    def evaluate(
        self, item: ContentItem, session_state: SessionState, severity: Any
    ) -> FilterDecision:
        ...


class ActivityLogStore(Protocol):
    async def append(self, record: Any) -> Any:
        ...

    async def query(
        self,
        user_id: str,
        kind: Optional[ActivityKind] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Any]:
        ...

    def subscribe(self, user_id: str) -> Any:
        ...


class KnowledgeRetriever(Protocol):
    async def retrieve(self, query: str, context: Dict[str, Any]) -> List[Snippet]:
        ...


class TextGenerationBackend(Protocol):
    async def generate(self, prompt: PromptSpec) -> str:
        ...


class NotificationSink(Protocol):
    async def push(self, event: NotificationEvent) -> None:
        ...
