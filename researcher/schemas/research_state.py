"""State flowing through the research graph (decide, search, evaluate).

Setup data (access boundary, accessible conversations) is fixed before the
graph runs; the graph only grows the gathered hits and advances the iteration
counter.
"""

from __future__ import annotations

import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from researcher.schemas.models import (
    GatheredMemoHit,
    GatheredMessageHit,
    SearchQuery,
)


class ResearchState(BaseModel):
    """Per-invocation working state of the decision loop."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workspace_id: str
    message_id: str
    context_summary: str
    trigger_text: str = ""
    accessible_conversation_ids: List[str] = Field(default_factory=list)

    # Decide
    needs_search: bool = False
    decision_reasoning: Optional[str] = None

    # Search / evaluate
    pending_queries: List[SearchQuery] = Field(default_factory=list)
    memo_hits: List[GatheredMemoHit] = Field(default_factory=list)
    message_hits: List[GatheredMessageHit] = Field(default_factory=list)
    iteration: int = 0
    sufficient: bool = False
    stop_reason: Optional[Literal["no_search", "sufficient", "no_more_queries", "max_iterations"]] = None

    @property
    def has_hits(self) -> bool:
        return bool(self.memo_hits or self.message_hits)


def merge_hits(existing: list, incoming: list) -> list:
    """Append the net-new hits of ``incoming`` to ``existing``, keyed by ``hit_id``.

    Existing order is preserved and the first occurrence of an id wins.
    """
    merged = list(existing)
    seen = {hit.hit_id for hit in existing}
    for hit in incoming:
        if hit.hit_id in seen:
            continue
        seen.add(hit.hit_id)
        merged.append(hit)
    return merged
