"""Context rendering and prompts for the researcher."""

from researcher.composer.context_formatter import (
    build_citations,
    format_for_evaluation,
    format_retrieved_context,
)
from researcher.composer.prompts import get_prompt_template

__all__ = [
    "build_citations",
    "format_for_evaluation",
    "format_retrieved_context",
    "get_prompt_template",
]
