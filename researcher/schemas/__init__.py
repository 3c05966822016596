"""Pydantic schemas for the researcher."""

from researcher.schemas.access_spec import (
    AccessSpec,
    FullUserAccess,
    PublicOnly,
    PublicPlusConversation,
    UserUnion,
)
from researcher.schemas.models import (
    CachedResult,
    CacheEntry,
    CitationItem,
    Conversation,
    GatheredMemoHit,
    GatheredMessageHit,
    Memo,
    OrchestrationResult,
    RecentMessage,
    ResearchInput,
    SearchQuery,
)

__all__ = [
    "AccessSpec",
    "CacheEntry",
    "CachedResult",
    "CitationItem",
    "Conversation",
    "FullUserAccess",
    "GatheredMemoHit",
    "GatheredMessageHit",
    "Memo",
    "OrchestrationResult",
    "PublicOnly",
    "PublicPlusConversation",
    "RecentMessage",
    "ResearchInput",
    "SearchQuery",
    "UserUnion",
]
