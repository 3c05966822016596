"""Structured outputs expected from the decide and evaluate model calls.

Both schemas forbid unknown fields. A payload that does not validate is
treated exactly like a failed call.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from researcher.schemas.models import SearchQuery


class SearchDecision(BaseModel):
    """Whether workspace search would help, and what to search for first."""

    model_config = ConfigDict(extra="forbid")

    needs_search: bool = Field(description="True if searching the workspace would help answer the message")
    reasoning: str = Field(description="Brief explanation of the decision")
    queries: Optional[List[SearchQuery]] = Field(
        default=None,
        description="1-3 search queries to run if needs_search is true, null otherwise",
    )


class ResultsEvaluation(BaseModel):
    """Whether the gathered results are enough, and what to search next if not."""

    model_config = ConfigDict(extra="forbid")

    sufficient: bool = Field(description="True if the gathered results are enough to help answer")
    reasoning: str = Field(description="Brief explanation")
    additional_queries: Optional[List[SearchQuery]] = Field(
        default=None,
        description="1-3 further queries if results are insufficient, null otherwise",
    )
