"""Contracts for the collaborators the researcher depends on.

Storage, ranking and directory lookups live elsewhere in the product; the
researcher only relies on these shapes. Store methods take a ``db`` argument
that is either the pool itself (the call checks a connection out for just
that query) or a connection already acquired by the caller.
"""

from __future__ import annotations

from typing import Any, AsyncContextManager, List, Optional, Protocol, Sequence

from researcher.schemas.access_spec import AccessSpec
from researcher.schemas.models import (
    Author,
    Conversation,
    GatheredMemoHit,
    MessageSearchFilters,
    MessageSearchRow,
)


class ConnectionPool(Protocol):
    """Database pool shared with the rest of the backend."""

    def acquire(self) -> AsyncContextManager[Any]:
        ...


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


class StructuredModel(Protocol):
    """Chat model able to answer with a payload shaped by ``schema``."""

    async def generate(self, schema: type, messages: Sequence[Any], run_name: str) -> Any:
        ...


class ConversationStore(Protocol):
    async def find_by_id(self, db: Any, conversation_id: str) -> Optional[Conversation]:
        ...

    async def list_participant_ids(self, db: Any, conversation_id: str) -> List[str]:
        ...


class MemoSearchStore(Protocol):
    async def semantic_search(
        self,
        db: Any,
        workspace_id: str,
        embedding: List[float],
        conversation_ids: List[str],
        limit: int,
        distance_threshold: Optional[float] = None,
    ) -> List[GatheredMemoHit]:
        ...

    async def full_text_search(
        self,
        db: Any,
        workspace_id: str,
        query: str,
        conversation_ids: List[str],
        limit: int,
    ) -> List[GatheredMemoHit]:
        ...


class MessageSearchStore(Protocol):
    async def full_text_search(
        self,
        db: Any,
        query: str,
        conversation_ids: List[str],
        filters: MessageSearchFilters,
        limit: int,
    ) -> List[MessageSearchRow]:
        ...

    async def hybrid_search(
        self,
        db: Any,
        query: str,
        embedding: List[float],
        conversation_ids: List[str],
        filters: MessageSearchFilters,
        limit: int,
    ) -> List[MessageSearchRow]:
        ...

    async def list_recent(self, db: Any, conversation_ids: List[str], limit: int) -> List[MessageSearchRow]:
        ...

    async def find_surrounding(
        self,
        db: Any,
        message_id: str,
        conversation_id: str,
        before: int,
        after: int,
    ) -> List[MessageSearchRow]:
        ...

    async def get_accessible_conversations(self, db: Any, access_spec: AccessSpec, workspace_id: str) -> List[str]:
        ...


class Directory(Protocol):
    """Batched lookups used to denormalize display names onto hits."""

    async def find_users_by_ids(self, db: Any, user_ids: List[str]) -> List[Author]:
        ...

    async def find_personas_by_ids(self, db: Any, persona_ids: List[str]) -> List[Author]:
        ...

    async def find_conversations_by_ids(self, db: Any, conversation_ids: List[str]) -> List[Conversation]:
        ...


class EventPublisher(Protocol):
    async def publish(self, event: Any) -> None:
        ...
