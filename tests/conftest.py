"""
Pytest configuration and fixtures for researcher tests.

Provides shared fixtures for:
- Test environment and settings
- Mock Redis client (fakeredis)
- An instrumented connection pool that records checkouts made while an
  external (model or embedding) call is in flight
- An in-memory workspace implementing the conversation, memo, message and
  directory stores
- Fake embeddings and a scripted structured model
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from libs.common.settings import Settings, get_settings
from researcher.schemas.access_spec import (
    AccessSpec,
    FullUserAccess,
    PublicOnly,
    PublicPlusConversation,
    UserUnion,
)
from researcher.schemas.models import (
    Author,
    Conversation,
    GatheredMemoHit,
    Memo,
    MessageSearchRow,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test in test mode with fresh settings."""
    monkeypatch.setenv("RESEARCHER_APP_ENV", "test")
    monkeypatch.delenv("RESEARCHER_REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        model_timeout_seconds=0.5,
        embedding_timeout_seconds=0.5,
        search_timeout_seconds=0.5,
    )


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)
    await client.flushdb()

    yield client

    await client.flushdb()
    await client.aclose()


# ==============================================================================
# Connection pool
# ==============================================================================


class FakeConnection:
    def __init__(self, pool: "InstrumentedPool", number: int):
        self.pool = pool
        self.number = number


class InstrumentedPool:
    """Counts checkouts and flags any overlap with an external call."""

    def __init__(self):
        self.checked_out = 0
        self.max_checked_out = 0
        self.acquire_count = 0
        self.external_in_flight = 0
        self.violations: List[str] = []

    @asynccontextmanager
    async def acquire(self):
        if self.external_in_flight:
            self.violations.append("connection acquired during external call")
        self.acquire_count += 1
        self.checked_out += 1
        self.max_checked_out = max(self.max_checked_out, self.checked_out)
        try:
            # Yield control so overlapping work actually interleaves
            await asyncio.sleep(0)
            yield FakeConnection(self, self.acquire_count)
        finally:
            self.checked_out -= 1

    @asynccontextmanager
    async def external_call(self, name: str):
        if self.checked_out:
            self.violations.append(f"{name} started with {self.checked_out} connection(s) checked out")
        self.external_in_flight += 1
        try:
            await asyncio.sleep(0)
            yield
            if self.checked_out:
                self.violations.append(f"{name} finished with {self.checked_out} connection(s) checked out")
        finally:
            self.external_in_flight -= 1


@asynccontextmanager
async def checkout(db):
    """Store helper: use a given connection, or check one out of the pool."""
    if isinstance(db, FakeConnection):
        yield db
        return
    async with db.acquire() as conn:
        yield conn


# ==============================================================================
# External calls
# ==============================================================================


class FakeEmbeddings:
    """Returns ``[index]`` for the n-th embedded text so stores can recover it."""

    def __init__(self, pool: InstrumentedPool):
        self.pool = pool
        self.texts: List[str] = []
        self.fail_for: set = set()

    async def embed(self, text: str) -> List[float]:
        async with self.pool.external_call("embed"):
            if text in self.fail_for:
                raise RuntimeError("embedding provider unavailable")
            self.texts.append(text)
            return [float(len(self.texts) - 1), 0.5]

    def text_for(self, embedding: List[float]) -> str:
        return self.texts[int(embedding[0])]


class ScriptedModel:
    """Structured model fake that replays scripted decide/evaluate payloads.

    A script item may be a payload (dict), an exception instance to raise, or
    a callable taking the messages and returning either.
    """

    def __init__(self, pool: InstrumentedPool, decide: Optional[List[Any]] = None, evaluate: Optional[List[Any]] = None):
        self.pool = pool
        self.scripts: Dict[str, List[Any]] = {
            "SearchDecision": list(decide or []),
            "ResultsEvaluation": list(evaluate or []),
        }
        self.defaults: Dict[str, Any] = {
            "SearchDecision": {"needs_search": False, "reasoning": "nothing to look up", "queries": None},
            "ResultsEvaluation": {"sufficient": True, "reasoning": "enough", "additional_queries": None},
        }
        self.calls: List[Dict[str, Any]] = []
        self.delay = 0.0

    def count(self, schema_name: str) -> int:
        return sum(1 for call in self.calls if call["schema"] == schema_name)

    async def generate(self, schema, messages, run_name):
        name = schema.__name__
        self.calls.append({"schema": name, "messages": list(messages), "run_name": run_name})
        async with self.pool.external_call(run_name):
            if self.delay:
                await asyncio.sleep(self.delay)
            script = self.scripts[name]
            item = script.pop(0) if script else self.defaults[name]
            if callable(item):
                item = item(messages)
            if isinstance(item, Exception):
                raise item
            return item


def decision(needs_search: bool, *queries, reasoning: str = "scripted") -> dict:
    return {
        "needs_search": needs_search,
        "reasoning": reasoning,
        "queries": [{"target": t, "mode": m, "text": x} for t, m, x in queries] or None,
    }


def evaluation(sufficient: bool, *queries, reasoning: str = "scripted") -> dict:
    return {
        "sufficient": sufficient,
        "reasoning": reasoning,
        "additional_queries": [{"target": t, "mode": m, "text": x} for t, m, x in queries] or None,
    }


# ==============================================================================
# In-memory workspace
# ==============================================================================


def _terms(text: str) -> List[str]:
    cleaned = text.lower().replace('"', " ").replace("?", " ").replace("!", " ").replace(",", " ")
    return [t for t in cleaned.split() if len(t) >= 3]


def _matches(query: str, haystack: str) -> bool:
    terms = _terms(query)
    haystack = haystack.lower()
    return bool(terms) and any(term in haystack for term in terms)


class InMemoryWorkspace:
    """Conversation store and directory over plain lists.

    Memo and message search live on the ``memo_store`` and ``message_store``
    views. Every method accepts the pool (one checkout per call) or a connection.
    """

    def __init__(self, embeddings: Optional[FakeEmbeddings] = None, workspace_id: str = "ws_1"):
        self.workspace_id = workspace_id
        self.embeddings = embeddings
        self.conversations: Dict[str, Conversation] = {}
        self.participants: Dict[str, List[str]] = {}
        self.memos: List[Memo] = []
        self.messages: List[MessageSearchRow] = []
        self.users: Dict[str, str] = {}
        self.personas: Dict[str, str] = {}
        self.calls: List[str] = []
        self.failing: set = set()
        self.hybrid_enabled = True
        self.memo_store = MemoStoreView(self)
        self.message_store = MessageStoreView(self)

    # Builders

    def add_conversation(self, conversation_id: str, kind: str, visibility: str = "private", **kwargs) -> Conversation:
        conversation = Conversation(
            id=conversation_id,
            workspace_id=self.workspace_id,
            kind=kind,
            visibility=visibility,
            **kwargs,
        )
        self.conversations[conversation_id] = conversation
        return conversation

    def add_memo(self, memo_id: str, title: str, abstract: str, conversation_id: str, key_points=None) -> Memo:
        memo = Memo(
            id=memo_id,
            workspace_id=self.workspace_id,
            title=title,
            abstract=abstract,
            key_points=list(key_points or []),
            source_conversation_id=conversation_id,
            created_at=NOW - timedelta(days=3),
        )
        self.memos.append(memo)
        return memo

    def add_message(self, message_id: str, conversation_id: str, content: str, author_id: str = "user_a",
                    author_kind: str = "user", minutes_ago: int = 60) -> MessageSearchRow:
        row = MessageSearchRow(
            id=message_id,
            conversation_id=conversation_id,
            content=content,
            author_id=author_id,
            author_kind=author_kind,
            created_at=NOW - timedelta(minutes=minutes_ago),
        )
        self.messages.append(row)
        return row

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError(f"{name} failed")

    def count(self, name: str) -> int:
        return self.calls.count(name)

    # ConversationStore

    async def find_by_id(self, db, conversation_id):
        async with checkout(db):
            self._record("find_by_id")
            return self.conversations.get(conversation_id)

    async def list_participant_ids(self, db, conversation_id):
        async with checkout(db):
            self._record("list_participant_ids")
            return list(self.participants.get(conversation_id, []))

    # Directory

    async def find_users_by_ids(self, db, user_ids):
        async with checkout(db):
            self._record("find_users_by_ids")
            return [Author(id=i, display_name=self.users[i]) for i in user_ids if i in self.users]

    async def find_personas_by_ids(self, db, persona_ids):
        async with checkout(db):
            self._record("find_personas_by_ids")
            return [Author(id=i, display_name=self.personas[i]) for i in persona_ids if i in self.personas]

    async def find_conversations_by_ids(self, db, conversation_ids):
        async with checkout(db):
            self._record("find_conversations_by_ids")
            return [self.conversations[i] for i in conversation_ids if i in self.conversations]


class MemoStoreView:
    """Memo search over the workspace's memos."""

    def __init__(self, ws: InMemoryWorkspace):
        self.ws = ws

    def _hit(self, memo: Memo, distance: float = 0.2) -> GatheredMemoHit:
        return GatheredMemoHit(
            memo=memo,
            similarity_distance=distance,
            source_conversation=self.ws.conversations.get(memo.source_conversation_id),
        )

    @staticmethod
    def _text(memo: Memo) -> str:
        return " ".join([memo.title, memo.abstract, *memo.key_points])

    async def semantic_search(self, db, workspace_id, embedding, conversation_ids, limit, distance_threshold=None):
        async with checkout(db):
            self.ws._record("memo.semantic_search")
            text = self.ws.embeddings.text_for(embedding)
            return [
                self._hit(m)
                for m in self.ws.memos
                if m.source_conversation_id in conversation_ids and _matches(text, self._text(m))
            ][:limit]

    async def full_text_search(self, db, workspace_id, query, conversation_ids, limit):
        async with checkout(db):
            self.ws._record("memo.full_text_search")
            return [
                self._hit(m, distance=0.0)
                for m in self.ws.memos
                if m.source_conversation_id in conversation_ids and _matches(query, self._text(m))
            ][:limit]


class MessageStoreView:
    """Message search and access resolution over the workspace's messages."""

    def __init__(self, ws: InMemoryWorkspace):
        self.ws = ws
        self.last_access_spec: Optional[AccessSpec] = None

    def _search(self, query, conversation_ids, limit):
        return [
            m for m in self.ws.messages if m.conversation_id in conversation_ids and _matches(query, m.content)
        ][:limit]

    async def full_text_search(self, db, query, conversation_ids, filters, limit):
        async with checkout(db):
            self.ws._record("message.full_text_search")
            return self._search(query, conversation_ids, limit)

    async def hybrid_search(self, db, query, embedding, conversation_ids, filters, limit):
        async with checkout(db):
            self.ws._record("message.hybrid_search")
            if not self.ws.hybrid_enabled:
                return []
            return self._search(query, conversation_ids, limit)

    async def list_recent(self, db, conversation_ids, limit):
        async with checkout(db):
            self.ws._record("message.list_recent")
            rows = [m for m in self.ws.messages if m.conversation_id in conversation_ids]
            return sorted(rows, key=lambda m: m.created_at, reverse=True)[:limit]

    async def find_surrounding(self, db, message_id, conversation_id, before, after):
        async with checkout(db):
            self.ws._record("message.find_surrounding")
            rows = sorted(
                (m for m in self.ws.messages if m.conversation_id == conversation_id),
                key=lambda m: m.created_at,
            )
            ids = [m.id for m in rows]
            if message_id not in ids:
                return []
            index = ids.index(message_id)
            return rows[max(0, index - before):index] + rows[index + 1:index + 1 + after]

    async def get_accessible_conversations(self, db, access_spec: AccessSpec, workspace_id):
        async with checkout(db):
            self.ws._record("get_accessible_conversations")
            self.last_access_spec = access_spec
            conversations = self.ws.conversations.values()
            participants = self.ws.participants
            public = [c.id for c in conversations if c.is_public]
            if isinstance(access_spec, PublicOnly):
                return public
            if isinstance(access_spec, PublicPlusConversation):
                return public + [access_spec.conversation_id]
            if isinstance(access_spec, FullUserAccess):
                return public + [c for c, members in participants.items() if access_spec.user_id in members]
            if isinstance(access_spec, UserUnion):
                return public + [
                    c for c, members in participants.items()
                    if all(user in members for user in access_spec.user_ids)
                ]
            return []


class RecordingPublisher:
    def __init__(self, fail: bool = False):
        self.events: List[Any] = []
        self.fail = fail

    async def publish(self, event) -> None:
        if self.fail:
            raise RuntimeError("stream unavailable")
        self.events.append(event)


@pytest.fixture
def pool():
    return InstrumentedPool()


@pytest.fixture
def embeddings(pool):
    return FakeEmbeddings(pool)


@pytest.fixture
def workspace(embeddings):
    """A small workspace: a public #engineering channel with a database memo."""
    ws = InMemoryWorkspace(embeddings=embeddings)
    ws.users.update({"user_a": "Ada", "user_b": "Brook"})
    ws.personas.update({"persona_1": "Ariadne"})

    ws.add_conversation("conv_eng", "channel", "public", display_name="#engineering", slug="engineering")
    ws.add_conversation("conv_private", "channel", "private", display_name="#leadership", slug="leadership")
    ws.add_conversation("conv_dm", "dm", "private")
    ws.add_conversation("conv_notebook", "notebook", "private")
    ws.participants.update({
        "conv_private": ["user_a"],
        "conv_dm": ["user_a", "user_b"],
        "conv_notebook": ["user_a"],
    })

    ws.add_memo(
        "memo_db",
        "Database choice",
        "The team chose Postgres over MongoDB for the primary datastore.",
        "conv_eng",
        key_points=["Postgres selected for relational integrity", "MongoDB rejected"],
    )
    ws.add_memo(
        "memo_salaries",
        "Compensation review",
        "Confidential salary bands for the database team.",
        "conv_private",
    )
    return ws
