"""Retrieval orchestrator for the workspace researcher.

Runs before the responding agent answers a message and decides whether, and
what, to retrieve from workspace memory. The work happens in three phases:

1. Setup: cache lookup, then one short connection checkout to load the
   conversation, resolve its access boundary and list the accessible
   conversations.
2. Research: a LangGraph state machine (decide -> search -> evaluate, looping
   on evaluate) that holds no connection. Model and embedding calls are made
   with the pool fully released; store reads check out per call.
3. Persist: the reduced result is written to the cache and a completion
   event is published.

Every failure on the way is converted to the conservative outcome (no search,
sufficient, empty results) and logged. ``research`` never raises.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from langgraph.graph import END, StateGraph
from langsmith import traceable

from libs.common.settings import Settings, get_settings
from researcher.access import AccessSpecResolver, effective_access_spec
from researcher.cache import ResultCache
from researcher.composer.context_formatter import (
    build_citations,
    format_for_evaluation,
    format_retrieved_context,
)
from researcher.composer.prompts import get_prompt_template
from researcher.events import ResearchCompleted
from researcher.llm.structured_model import parse_structured
from researcher.schemas.access_spec import AccessSpec, describe_access_spec
from researcher.schemas.model_outputs import ResultsEvaluation, SearchDecision
from researcher.schemas.models import (
    CacheEntry,
    OrchestrationResult,
    RecentMessage,
    ResearchInput,
    SearchQuery,
)
from researcher.schemas.research_state import ResearchState, merge_hits
from researcher.stores import (
    ConnectionPool,
    ConversationStore,
    Directory,
    EmbeddingProvider,
    EventPublisher,
    MemoSearchStore,
    MessageSearchStore,
    StructuredModel,
)
from researcher.tools.search_executor import SearchExecutor

logger = structlog.get_logger(__name__)

NO_RESULTS_TEXT = "No results found."


def build_context_summary(
    trigger: RecentMessage,
    history: Sequence[RecentMessage],
    limit: int = 5,
) -> str:
    """Render the triggering message and the tail of the conversation for the model."""
    lines = ["## Message to answer", f"{trigger.author_kind}: {trigger.content}"]

    recent = [m for m in history if m.id != trigger.id][-limit:] if limit > 0 else []
    if recent:
        lines.append("")
        lines.append("## Recent conversation")
        lines.extend(f"{m.author_kind}: {m.content}" for m in recent)

    return "\n".join(lines)


def baseline_queries(text: str) -> List[SearchQuery]:
    """Queries derived from the message itself when the model asked for search but named none."""
    text = text.strip()
    if not text:
        return []
    return [
        SearchQuery(target="memo", mode="semantic", text=text),
        SearchQuery(target="message", mode="semantic", text=text),
    ]


class RetrievalOrchestrator:
    """Decides whether to search workspace memory and gathers context for a message."""

    def __init__(
        self,
        pool: ConnectionPool,
        conversations: ConversationStore,
        memo_store: MemoSearchStore,
        message_store: MessageSearchStore,
        directory: Directory,
        embeddings: EmbeddingProvider,
        model: StructuredModel,
        cache: Optional[ResultCache] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        resolver: Optional[AccessSpecResolver] = None,
        search_executor: Optional[SearchExecutor] = None,
    ):
        self.settings = settings or get_settings()
        self.pool = pool
        self.conversations = conversations
        self.message_store = message_store
        self.model = model
        self.cache = cache if self.settings.cache_enabled else None
        self.publisher = publisher
        self.resolver = resolver or AccessSpecResolver(conversations)
        self.search_executor = search_executor or SearchExecutor(
            pool=pool,
            memo_store=memo_store,
            message_store=message_store,
            directory=directory,
            embeddings=embeddings,
            settings=self.settings,
        )
        self._cache_connected = False
        self.graph = self._build_graph()

    # ------------------------------------------------------------------
    # Graph

    def _build_graph(self):
        """Build and compile the decide/search/evaluate state machine."""
        graph = StateGraph(ResearchState)

        graph.add_node("decide", self._decide_node)
        graph.add_node("search", self._search_node)
        graph.add_node("evaluate", self._evaluate_node)

        graph.set_entry_point("decide")
        graph.add_conditional_edges("decide", self._route_after_decide, {"search": "search", "end": END})
        graph.add_edge("search", "evaluate")
        graph.add_conditional_edges("evaluate", self._route_after_evaluate, {"search": "search", "end": END})

        compiled = graph.compile()
        logger.debug("Researcher graph compiled")
        return compiled

    @staticmethod
    def _route_after_decide(state: ResearchState) -> str:
        return "search" if state.needs_search and state.pending_queries else "end"

    @staticmethod
    def _route_after_evaluate(state: ResearchState) -> str:
        return "search" if state.stop_reason is None and state.pending_queries else "end"

    @traceable(run_type="chain", name="researcher_decide", tags=["researcher", "decide"])
    async def _decide_node(self, state: ResearchState) -> Dict[str, Any]:
        """Ask the model whether the message needs workspace search, and for what."""
        start_time = time.time()
        log = logger.bind(trace_id=state.trace_id, message_id=state.message_id)

        messages = get_prompt_template("decide").format_messages(context_summary=state.context_summary)
        try:
            payload = await asyncio.wait_for(
                self.model.generate(SearchDecision, messages, run_name="researcher-decide"),
                timeout=self.settings.model_timeout_seconds,
            )
            decision = parse_structured(SearchDecision, payload)
        except Exception as e:
            log.warning(
                "Researcher decide step failed, skipping search",
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return {"needs_search": False, "stop_reason": "no_search"}

        if not decision.needs_search:
            log.info("Researcher decided no search needed", reasoning=decision.reasoning)
            return {
                "needs_search": False,
                "decision_reasoning": decision.reasoning,
                "stop_reason": "no_search",
            }

        queries = self._clean_queries(decision.queries)
        if not queries:
            queries = baseline_queries(state.trigger_text)
            log.info("Decide returned no queries, using baseline queries", query_count=len(queries))

        if not queries:
            return {
                "needs_search": False,
                "decision_reasoning": decision.reasoning,
                "stop_reason": "no_search",
            }

        log.info(
            "Researcher decided to search",
            reasoning=decision.reasoning,
            queries=[q.model_dump() for q in queries],
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return {
            "needs_search": True,
            "decision_reasoning": decision.reasoning,
            "pending_queries": queries,
        }

    async def _search_node(self, state: ResearchState) -> Dict[str, Any]:
        """Run the pending batch and merge its net-new hits."""
        batch = await self.search_executor.execute(
            state.pending_queries,
            state.accessible_conversation_ids,
            state.workspace_id,
            exclude_message_ids={state.message_id},
            trace_id=state.trace_id,
        )

        memo_hits = merge_hits(state.memo_hits, batch.memo_hits)
        message_hits = merge_hits(state.message_hits, batch.message_hits)
        iteration = state.iteration + 1

        logger.info(
            "Researcher search round completed",
            trace_id=state.trace_id,
            iteration=iteration,
            new_memo_hits=len(memo_hits) - len(state.memo_hits),
            new_message_hits=len(message_hits) - len(state.message_hits),
            total_memo_hits=len(memo_hits),
            total_message_hits=len(message_hits),
        )
        return {
            "memo_hits": memo_hits,
            "message_hits": message_hits,
            "iteration": iteration,
            "pending_queries": [],
        }

    @traceable(run_type="chain", name="researcher_evaluate", tags=["researcher", "evaluate"])
    async def _evaluate_node(self, state: ResearchState) -> Dict[str, Any]:
        """Judge whether the gathered hits suffice; otherwise plan the next round."""
        log = logger.bind(trace_id=state.trace_id, message_id=state.message_id, iteration=state.iteration)

        results_text = format_for_evaluation(state.memo_hits, state.message_hits) or NO_RESULTS_TEXT
        messages = get_prompt_template("evaluate").format_messages(
            context_summary=state.context_summary,
            results_text=results_text,
        )
        try:
            payload = await asyncio.wait_for(
                self.model.generate(ResultsEvaluation, messages, run_name="researcher-evaluate"),
                timeout=self.settings.model_timeout_seconds,
            )
            evaluation = parse_structured(ResultsEvaluation, payload)
        except Exception as e:
            log.warning(
                "Researcher evaluate step failed, treating results as sufficient",
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )
            return {"sufficient": True, "stop_reason": "sufficient"}

        if evaluation.sufficient:
            log.info("Researcher results sufficient", reasoning=evaluation.reasoning)
            return {"sufficient": True, "stop_reason": "sufficient"}

        if state.iteration >= self.settings.max_iterations:
            log.info("Researcher reached max iterations", max_iterations=self.settings.max_iterations)
            return {"stop_reason": "max_iterations"}

        queries = self._clean_queries(evaluation.additional_queries)
        if not queries:
            log.info("Researcher results insufficient but no further queries", reasoning=evaluation.reasoning)
            return {"stop_reason": "no_more_queries"}

        log.info(
            "Researcher searching again",
            reasoning=evaluation.reasoning,
            queries=[q.model_dump() for q in queries],
        )
        return {"pending_queries": queries}

    def _clean_queries(self, queries: Optional[List[SearchQuery]]) -> List[SearchQuery]:
        cleaned = [q for q in (queries or []) if q.text.strip()]
        return cleaned[: self.settings.max_queries_per_step]

    # ------------------------------------------------------------------
    # Phases 1 and 3

    async def _ensure_cache_connected(self) -> None:
        if self.cache is None or self._cache_connected:
            return
        try:
            await self.cache.connect(use_fake=self.settings.is_test)
        except Exception as e:
            logger.warning("Failed to connect researcher cache, caching disabled", error=str(e))
            self.cache = None
            return
        if not self.cache.is_available:
            self.cache = None
            return
        self._cache_connected = True

    async def _find_cached(self, message_id: str, log) -> Optional[CacheEntry]:
        await self._ensure_cache_connected()
        if self.cache is None:
            return None
        try:
            return await self.cache.find(message_id)
        except Exception as e:
            log.warning("Researcher cache read failed, treating as miss", error=str(e))
            return None

    async def _fetch_setup(self, research_input: ResearchInput, log) -> Optional[Tuple[AccessSpec, List[str]]]:
        """Resolve the access boundary and accessible conversations in one short checkout."""
        async with self.pool.acquire() as conn:
            conversation = await self.conversations.find_by_id(conn, research_input.conversation_id)
            if conversation is None:
                log.warning("Researcher conversation not found")
                return None

            resolved = await self.resolver.resolve(conn, conversation, research_input.invoking_user_id)
            access_spec = effective_access_spec(conversation, resolved, research_input.participant_ids)
            accessible = await self.message_store.get_accessible_conversations(
                conn, access_spec, research_input.workspace_id
            )

        return access_spec, list(dict.fromkeys(accessible))

    async def _persist(
        self,
        research_input: ResearchInput,
        access_spec: AccessSpec,
        result: OrchestrationResult,
        log,
    ) -> None:
        if self.cache is None:
            return
        entry = CacheEntry(
            triggering_message_id=research_input.triggering_message.id,
            workspace_id=research_input.workspace_id,
            conversation_id=research_input.conversation_id,
            access_spec=access_spec,
            result=result.to_cached(),
        )
        try:
            await self.cache.set(entry, ttl_seconds=self.settings.cache_ttl_seconds)
        except Exception as e:
            log.warning("Failed to cache research result", error=str(e))

    async def _publish(self, event: ResearchCompleted, log) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(event)
        except Exception as e:
            log.warning("Failed to publish research event", error=str(e), event_type=event.event_type)

    # ------------------------------------------------------------------
    # Entry point

    async def research(self, research_input: ResearchInput) -> OrchestrationResult:
        """Gather workspace context for the triggering message. Never raises."""
        trace_id = research_input.trace_id or uuid.uuid4().hex
        message_id = research_input.triggering_message.id
        log = logger.bind(
            trace_id=trace_id,
            workspace_id=research_input.workspace_id,
            conversation_id=research_input.conversation_id,
            message_id=message_id,
        )

        try:
            return await self._research(research_input, trace_id, log)
        except Exception as e:
            log.error(
                "Research failed unexpectedly, continuing without context",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return OrchestrationResult.empty()

    async def _research(self, research_input: ResearchInput, trace_id: str, log) -> OrchestrationResult:
        start_time = time.time()
        message_id = research_input.triggering_message.id

        cached = await self._find_cached(message_id, log)
        if cached is not None:
            log.info("Returning cached research result", searched=cached.result.searched)
            return OrchestrationResult.from_cached(cached.result)

        setup = await self._fetch_setup(research_input, log)
        if setup is None:
            return OrchestrationResult.empty()
        access_spec, accessible_ids = setup

        log.info(
            "Researcher setup completed",
            access_spec=describe_access_spec(access_spec),
            accessible_conversations=len(accessible_ids),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

        if not accessible_ids:
            state = ResearchState(
                trace_id=trace_id,
                workspace_id=research_input.workspace_id,
                message_id=message_id,
                context_summary="",
                stop_reason="no_search",
            )
        else:
            state = await self._run_graph(research_input, trace_id, accessible_ids)

        result = OrchestrationResult(
            retrieved_context_text=format_retrieved_context(state.memo_hits, state.message_hits),
            sources=build_citations(
                state.memo_hits,
                state.message_hits,
                research_input.workspace_id,
                snippet_length=self.settings.snippet_length,
            ),
            searched=state.needs_search,
            memo_hits=state.memo_hits,
            message_hits=state.message_hits,
        )

        await self._persist(research_input, access_spec, result, log)

        duration_ms = round((time.time() - start_time) * 1000, 2)
        await self._publish(
            ResearchCompleted(
                trace_id=trace_id,
                workspace_id=research_input.workspace_id,
                conversation_id=research_input.conversation_id,
                triggering_message_id=message_id,
                searched=result.searched,
                iterations=state.iteration,
                memo_hit_count=len(state.memo_hits),
                message_hit_count=len(state.message_hits),
                stop_reason=state.stop_reason,
                duration_ms=duration_ms,
            ),
            log,
        )

        log.info(
            "Research completed",
            searched=result.searched,
            iterations=state.iteration,
            stop_reason=state.stop_reason,
            memo_hits=len(state.memo_hits),
            message_hits=len(state.message_hits),
            duration_ms=duration_ms,
        )
        return result

    async def _run_graph(
        self,
        research_input: ResearchInput,
        trace_id: str,
        accessible_ids: List[str],
    ) -> ResearchState:
        initial = ResearchState(
            trace_id=trace_id,
            workspace_id=research_input.workspace_id,
            message_id=research_input.triggering_message.id,
            context_summary=build_context_summary(
                research_input.triggering_message,
                research_input.recent_history,
                self.settings.recent_history_limit,
            ),
            trigger_text=research_input.triggering_message.content,
            accessible_conversation_ids=accessible_ids,
        )
        config = {
            "recursion_limit": 2 * self.settings.max_iterations + 5,
            "metadata": {"trace_id": trace_id},
            "run_name": "researcher",
        }

        final = await self.graph.ainvoke(initial, config=config)

        # LangGraph hands back a mapping of channel values
        if isinstance(final, ResearchState):
            return final
        return ResearchState.model_validate({**initial.model_dump(), **dict(final)})
