"""Data models for the workspace researcher.

Everything that crosses a component boundary (store rows, gathered hits,
citations, cache entries, the research input and result) is a pydantic model.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from researcher.schemas.access_spec import AccessSpec


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationKinds:
    """Known conversation kinds. Stores may report others."""

    NOTEBOOK = "notebook"
    CHANNEL = "channel"
    THREAD = "thread"
    DM = "dm"


class Visibilities:
    PUBLIC = "public"
    PRIVATE = "private"


AuthorKind = Literal["user", "persona"]
SearchTarget = Literal["memo", "message"]
SearchMode = Literal["semantic", "exact"]


# Directory / store rows

class Conversation(BaseModel):
    """An addressable stream of messages: notebook, channel, thread or DM."""

    id: str
    workspace_id: str
    kind: str
    visibility: str = Visibilities.PRIVATE
    root_conversation_id: Optional[str] = None
    display_name: Optional[str] = None
    slug: Optional[str] = None

    @property
    def is_thread(self) -> bool:
        return self.kind == ConversationKinds.THREAD

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibilities.PUBLIC

    @property
    def label(self) -> str:
        """Name shown to readers, with a fallback for unnamed conversations."""
        if self.display_name:
            return self.display_name
        if self.slug:
            return f"#{self.slug}"
        return {
            ConversationKinds.DM: "Direct message",
            ConversationKinds.NOTEBOOK: "Notebook",
            ConversationKinds.THREAD: "Thread",
        }.get(self.kind, "Conversation")


class Author(BaseModel):
    """A user or persona as seen by the directory lookups."""

    id: str
    display_name: str


class Memo(BaseModel):
    """A summarized, durable knowledge artifact distilled from conversations."""

    id: str
    workspace_id: str
    title: str
    abstract: str = ""
    key_points: List[str] = Field(default_factory=list)
    source_conversation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class MessageSearchRow(BaseModel):
    """Raw message row returned by the message search store."""

    id: str
    conversation_id: str
    content: str
    author_id: str
    author_kind: AuthorKind = "user"
    created_at: datetime
    rank: float = 0.0


class MessageSearchFilters(BaseModel):
    """Resolved message search filters. Empty means "no filtering"."""

    author_id: Optional[str] = None
    conversation_kinds: List[str] = Field(default_factory=list)
    before: Optional[datetime] = None
    after: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.author_id is None
            and not self.conversation_kinds
            and self.before is None
            and self.after is None
        )


# Queries and gathered hits

class SearchQuery(BaseModel):
    """One typed search against the memo or message corpus."""

    model_config = ConfigDict(extra="forbid")

    target: SearchTarget
    mode: SearchMode
    text: str


class GatheredMemoHit(BaseModel):
    memo: Memo
    similarity_distance: float = 0.0
    source_conversation: Optional[Conversation] = None

    @property
    def hit_id(self) -> str:
        return self.memo.id


class GatheredMessageHit(BaseModel):
    id: str
    conversation_id: str
    content: str
    author_id: str
    author_kind: AuthorKind = "user"
    author_display_name: str
    conversation_display_name: str
    created_at: datetime

    @property
    def hit_id(self) -> str:
        return self.id


class SearchBatchResult(BaseModel):
    """Hits returned by one executed batch of queries."""

    memo_hits: List[GatheredMemoHit] = Field(default_factory=list)
    message_hits: List[GatheredMessageHit] = Field(default_factory=list)


# Input and output

class RecentMessage(BaseModel):
    """A message in the invocation conversation (trigger or history)."""

    id: str
    content: str
    author_id: str
    author_kind: AuthorKind = "user"
    created_at: Optional[datetime] = None


class ResearchInput(BaseModel):
    """Everything the researcher needs for one triggering message."""

    workspace_id: str
    conversation_id: str
    triggering_message: RecentMessage
    recent_history: List[RecentMessage] = Field(default_factory=list)
    invoking_user_id: str
    participant_ids: Optional[List[str]] = None
    trace_id: Optional[str] = None


class CitationItem(BaseModel):
    """A pointer back to a source memo or message."""

    kind: Literal["workspace"] = "workspace"
    title: str
    url: str
    snippet: Optional[str] = None


class CachedResult(BaseModel):
    """Reduced projection of a result kept in the cache."""

    retrieved_context_text: Optional[str] = None
    sources: List[CitationItem] = Field(default_factory=list)
    searched: bool = False


class OrchestrationResult(BaseModel):
    """What the downstream response generator receives."""

    retrieved_context_text: Optional[str] = None
    sources: List[CitationItem] = Field(default_factory=list)
    searched: bool = False
    # Only populated on fresh runs; the cache does not keep them.
    memo_hits: List[GatheredMemoHit] = Field(default_factory=list)
    message_hits: List[GatheredMessageHit] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "OrchestrationResult":
        return cls()

    @classmethod
    def from_cached(cls, cached: CachedResult) -> "OrchestrationResult":
        return cls(
            retrieved_context_text=cached.retrieved_context_text,
            sources=list(cached.sources),
            searched=cached.searched,
        )

    def to_cached(self) -> CachedResult:
        return CachedResult(
            retrieved_context_text=self.retrieved_context_text,
            sources=list(self.sources),
            searched=self.searched,
        )


class CacheEntry(BaseModel):
    """A memoized result for one triggering message."""

    triggering_message_id: str
    workspace_id: str
    conversation_id: str
    access_spec: AccessSpec
    result: CachedResult
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())
