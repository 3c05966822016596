"""Parallel execution of researcher search queries.

A batch runs in three stages:

1. Embeddings for every query that needs one, concurrently. No database
   connection is held while the provider is called.
2. Store searches for every query, concurrently. Each store call checks a
   connection out of the pool for that call only.
3. One batched enrichment pass that attaches author and conversation display
   names to the message hits of the whole batch.

A failure inside one query (embedding, search, timeout) empties that query's
result and never touches its siblings.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import AbstractSet, Any, Dict, List, Optional, Sequence, Tuple

import structlog

from libs.common.settings import Settings, get_settings
from researcher.schemas.models import (
    Conversation,
    GatheredMemoHit,
    GatheredMessageHit,
    MessageSearchFilters,
    MessageSearchRow,
    SearchBatchResult,
    SearchQuery,
)
from researcher.stores import (
    ConnectionPool,
    Directory,
    EmbeddingProvider,
    MemoSearchStore,
    MessageSearchStore,
)

logger = structlog.get_logger(__name__)

SURROUNDING_CONTEXT_HITS = 3
RECENT_STREAM_CONVERSATIONS = 2
RECENT_STREAM_MESSAGES = 5


@dataclass
class PreparedQuery:
    """A query with its store-ready text and, if obtained, its embedding."""

    query: SearchQuery
    search_text: str
    embedding: Optional[List[float]] = None
    embedding_failed: bool = False


@dataclass
class QueryOutcome:
    query: SearchQuery
    memo_hits: List[GatheredMemoHit]
    message_rows: List[MessageSearchRow]
    failed: bool = False


class SearchExecutor:
    """Runs batches of ``SearchQuery`` against the memo and message stores."""

    def __init__(
        self,
        pool: ConnectionPool,
        memo_store: MemoSearchStore,
        message_store: MessageSearchStore,
        directory: Directory,
        embeddings: EmbeddingProvider,
        settings: Optional[Settings] = None,
    ):
        self.pool = pool
        self.memo_store = memo_store
        self.message_store = message_store
        self.directory = directory
        self.embeddings = embeddings
        self.settings = settings or get_settings()

    async def execute(
        self,
        queries: Sequence[SearchQuery],
        accessible_conversation_ids: List[str],
        workspace_id: str,
        exclude_message_ids: AbstractSet[str] = frozenset(),
        trace_id: Optional[str] = None,
    ) -> SearchBatchResult:
        """Run every query of the batch and return the aggregated, enriched hits."""
        log = logger.bind(trace_id=trace_id, workspace_id=workspace_id)
        if not queries or not accessible_conversation_ids:
            return SearchBatchResult()

        start_time = time.time()

        prepared = await asyncio.gather(*[self._prepare(query, log) for query in queries])

        outcomes = await asyncio.gather(
            *[
                self._run_query(item, accessible_conversation_ids, workspace_id, exclude_message_ids, log)
                for item in prepared
            ]
        )

        memo_hits: List[GatheredMemoHit] = []
        message_rows: List[MessageSearchRow] = []
        for outcome in outcomes:
            memo_hits.extend(outcome.memo_hits)
            message_rows.extend(outcome.message_rows)

        message_hits = await self._enrich(message_rows, log)

        log.info(
            "Researcher query batch completed",
            query_count=len(queries),
            searches=[
                {
                    "target": o.query.target,
                    "mode": o.query.mode,
                    "query": o.query.text[:80],
                    "result_count": len(o.memo_hits) + len(o.message_rows),
                    "failed": o.failed,
                }
                for o in outcomes
            ],
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return SearchBatchResult(memo_hits=memo_hits, message_hits=message_hits)

    # ------------------------------------------------------------------
    # Stage 1: embeddings

    async def _prepare(self, query: SearchQuery, log) -> PreparedQuery:
        text = query.text.strip()
        if query.target == "message" and query.mode == "exact" and text:
            search_text = f'"{text}"'
        else:
            search_text = text

        needs_embedding = bool(text) and (query.target == "message" or query.mode == "semantic")
        if not needs_embedding:
            return PreparedQuery(query=query, search_text=search_text)

        try:
            embedding = await asyncio.wait_for(
                self.embeddings.embed(text),
                timeout=self.settings.embedding_timeout_seconds,
            )
            if not embedding:
                raise ValueError("empty embedding")
            return PreparedQuery(query=query, search_text=search_text, embedding=list(embedding))
        except Exception as e:
            log.warning(
                "Failed to generate embedding for researcher query",
                target=query.target,
                mode=query.mode,
                query=query.text[:80],
                error=str(e) or type(e).__name__,
            )
            return PreparedQuery(query=query, search_text=search_text, embedding_failed=True)

    # ------------------------------------------------------------------
    # Stage 2: store searches

    async def _run_query(
        self,
        item: PreparedQuery,
        conversation_ids: List[str],
        workspace_id: str,
        exclude_message_ids: AbstractSet[str],
        log,
    ) -> QueryOutcome:
        try:
            if item.query.target == "memo":
                hits = await self._search_memos(item, conversation_ids, workspace_id, log)
                return QueryOutcome(query=item.query, memo_hits=hits, message_rows=[])
            rows = await self._search_messages(item, conversation_ids, exclude_message_ids)
            return QueryOutcome(query=item.query, memo_hits=[], message_rows=rows)
        except Exception as e:
            log.warning(
                "Researcher search failed",
                target=item.query.target,
                mode=item.query.mode,
                query=item.query.text[:80],
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return QueryOutcome(query=item.query, memo_hits=[], message_rows=[], failed=True)

    async def _store_call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.settings.search_timeout_seconds)

    async def _search_memos(
        self,
        item: PreparedQuery,
        conversation_ids: List[str],
        workspace_id: str,
        log,
    ) -> List[GatheredMemoHit]:
        limit = self.settings.max_results_per_search
        if not item.search_text:
            return []

        if item.query.mode == "semantic":
            if item.embedding is None:
                # Already logged in _prepare; a semantic memo query needs a vector.
                return []
            hits = await self._store_call(
                self.memo_store.semantic_search(
                    self.pool,
                    workspace_id,
                    item.embedding,
                    conversation_ids,
                    limit,
                    self.settings.semantic_distance_threshold,
                )
            )
            if hits:
                return list(hits)[:limit]
            log.debug("No semantic memo matches, trying full-text", query=item.query.text[:80])

        hits = await self._store_call(
            self.memo_store.full_text_search(self.pool, workspace_id, item.search_text, conversation_ids, limit)
        )
        return list(hits)[:limit]

    async def _search_messages(
        self,
        item: PreparedQuery,
        conversation_ids: List[str],
        exclude_message_ids: AbstractSet[str],
    ) -> List[MessageSearchRow]:
        limit = self.settings.max_results_per_search
        filters = MessageSearchFilters()
        text = item.search_text

        if not text and filters.is_empty:
            rows = await self._store_call(self.message_store.list_recent(self.pool, conversation_ids, limit))
        elif item.embedding is None:
            rows = await self._store_call(
                self.message_store.full_text_search(self.pool, text, conversation_ids, filters, limit)
            )
        else:
            rows = await self._store_call(
                self.message_store.hybrid_search(self.pool, text, item.embedding, conversation_ids, filters, limit)
            )
            if not rows:
                rows = await self._store_call(
                    self.message_store.full_text_search(self.pool, text, conversation_ids, filters, limit)
                )

        primary = [row for row in rows if row.id not in exclude_message_ids][:limit]
        collected = list(primary)
        if self.settings.include_surrounding_context and primary:
            collected.extend(await self._surrounding_context(primary, conversation_ids, exclude_message_ids))

        deduped: Dict[str, MessageSearchRow] = {}
        for row in collected:
            deduped.setdefault(row.id, row)
        return list(deduped.values())

    async def _surrounding_context(
        self,
        primary: List[MessageSearchRow],
        conversation_ids: List[str],
        exclude_message_ids: AbstractSet[str],
    ) -> List[MessageSearchRow]:
        """Neighbours of the top hits plus the latest messages of the top hit conversations.

        Padding is best effort: a failed lookup is logged and skipped, the
        query keeps its primary hits.
        """
        top_conversations: List[str] = []
        for row in primary:
            if row.conversation_id not in top_conversations:
                top_conversations.append(row.conversation_id)

        lookups = [
            self._store_call(self.message_store.find_surrounding(self.pool, row.id, row.conversation_id, 1, 1))
            for row in primary[:SURROUNDING_CONTEXT_HITS]
        ]
        lookups.extend(
            self._store_call(self.message_store.list_recent(self.pool, [conversation_id], RECENT_STREAM_MESSAGES))
            for conversation_id in top_conversations[:RECENT_STREAM_CONVERSATIONS]
        )
        batches = await asyncio.gather(*lookups, return_exceptions=True)

        accessible = set(conversation_ids)
        padding: List[MessageSearchRow] = []
        for batch in batches:
            if isinstance(batch, Exception):
                logger.warning("Surrounding context lookup failed", error=str(batch))
                continue
            padding.extend(
                row for row in batch
                if row.id not in exclude_message_ids and row.conversation_id in accessible
            )
        return padding

    # ------------------------------------------------------------------
    # Stage 3: enrichment

    async def _enrich(self, rows: List[MessageSearchRow], log) -> List[GatheredMessageHit]:
        """Attach display names using one lookup per id kind for the whole batch."""
        if not rows:
            return []

        user_ids = sorted({row.author_id for row in rows if row.author_kind == "user"})
        persona_ids = sorted({row.author_id for row in rows if row.author_kind == "persona"})
        conversation_ids = sorted({row.conversation_id for row in rows})

        author_names: Dict[Tuple[str, str], str] = {}
        conversations: Dict[str, Conversation] = {}
        try:
            users, personas, found_conversations = await asyncio.gather(
                self._lookup(self.directory.find_users_by_ids, user_ids),
                self._lookup(self.directory.find_personas_by_ids, persona_ids),
                self._lookup(self.directory.find_conversations_by_ids, conversation_ids),
            )
            author_names.update({("user", a.id): a.display_name for a in users})
            author_names.update({("persona", a.id): a.display_name for a in personas})
            conversations.update({c.id: c for c in found_conversations})
        except Exception as e:
            log.warning("Message hit enrichment failed, using fallback names", error=str(e) or type(e).__name__)

        return [
            GatheredMessageHit(
                id=row.id,
                conversation_id=row.conversation_id,
                content=row.content,
                author_id=row.author_id,
                author_kind=row.author_kind,
                author_display_name=author_names.get((row.author_kind, row.author_id), "Unknown"),
                conversation_display_name=(
                    conversations[row.conversation_id].label
                    if row.conversation_id in conversations
                    else "Unknown conversation"
                ),
                created_at=row.created_at,
            )
            for row in rows
        ]

    async def _lookup(self, finder, ids: List[str]) -> List[Any]:
        if not ids:
            return []
        return list(await self._store_call(finder(self.pool, ids)))
