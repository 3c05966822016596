"""
Rendering of gathered workspace knowledge.

Produces the context block injected into the responding agent's system
prompt, the matching citation list, and the compact listing the evaluate step
reads. Memos always come before messages, in gathered order, in all three, so
a caller numbering citations lines them up with the text.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from researcher.schemas.models import CitationItem, GatheredMemoHit, GatheredMessageHit

SNIPPET_LENGTH = 200

CITATION_INSTRUCTION = (
    "When you use information from the workspace knowledge above, cite it by "
    "naming the memo title or the message author and conversation. Do not "
    "present it as your own knowledge."
)


def relative_time(moment: datetime, now: Optional[datetime] = None) -> str:
    """Human phrasing of how long ago ``moment`` was ("3 days ago")."""
    now = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)

    seconds = int((now - moment).total_seconds())
    if seconds < 60:
        return "just now"

    for unit, size in (("year", 365 * 86400), ("month", 30 * 86400), ("week", 7 * 86400),
                       ("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def _quote(text: str) -> str:
    return "\n".join(f"> {line}" if line else ">" for line in text.strip().splitlines())


def _memo_origin(hit: GatheredMemoHit) -> str:
    if hit.source_conversation is not None:
        return hit.source_conversation.label
    return "Unknown conversation"


def format_retrieved_context(
    memo_hits: Sequence[GatheredMemoHit],
    message_hits: Sequence[GatheredMessageHit],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Render gathered hits as a context block for the responding agent.

    Returns:
        The formatted block, or None when there is nothing to show
    """
    if not memo_hits and not message_hits:
        return None

    sections: List[str] = ["## Retrieved Workspace Knowledge"]

    if memo_hits:
        parts = ["### Memos"]
        for hit in memo_hits:
            memo = hit.memo
            lines = [f"#### {memo.title}", f"_From: {_memo_origin(hit)}_"]
            if memo.abstract:
                lines.append(memo.abstract.strip())
            if memo.key_points:
                lines.append("Key points:")
                lines.extend(f"- {point}" for point in memo.key_points)
            parts.append("\n".join(lines))
        sections.append("\n\n".join(parts))

    if message_hits:
        parts = ["### Messages"]
        for hit in message_hits:
            header = (
                f"**{hit.author_display_name}** in {hit.conversation_display_name} "
                f"({relative_time(hit.created_at, now)}):"
            )
            parts.append(f"{header}\n{_quote(hit.content)}")
        sections.append("\n\n".join(parts))

    sections.append(CITATION_INSTRUCTION)
    return "\n\n".join(sections)


def build_citations(
    memo_hits: Sequence[GatheredMemoHit],
    message_hits: Sequence[GatheredMessageHit],
    workspace_id: str,
    snippet_length: int = SNIPPET_LENGTH,
) -> List[CitationItem]:
    """One citation per hit, in the same order as ``format_retrieved_context``."""
    citations: List[CitationItem] = []

    for hit in memo_hits:
        memo = hit.memo
        citations.append(
            CitationItem(
                title=memo.title,
                url=f"/w/{workspace_id}/memos/{memo.id}",
                snippet=_truncate(memo.abstract, snippet_length) if memo.abstract else None,
            )
        )

    for hit in message_hits:
        citations.append(
            CitationItem(
                title=f"{hit.author_display_name} in {hit.conversation_display_name}",
                url=f"/w/{workspace_id}/streams/{hit.conversation_id}?message={hit.id}",
                snippet=_truncate(hit.content, snippet_length) if hit.content else None,
            )
        )

    return citations


def format_for_evaluation(
    memo_hits: Sequence[GatheredMemoHit],
    message_hits: Sequence[GatheredMessageHit],
) -> str:
    """Compact one-line-per-hit listing for the evaluate prompt."""
    parts: List[str] = []

    if memo_hits:
        parts.append("### Memos Found")
        parts.append("\n".join(f"- **{hit.memo.title}**: {hit.memo.abstract}" for hit in memo_hits))

    if message_hits:
        parts.append("### Messages Found")
        parts.append(
            "\n".join(
                f'- {hit.author_display_name} in {hit.conversation_display_name}: "{_truncate(hit.content, 500)}"'
                for hit in message_hits
            )
        )

    return "\n\n".join(parts)
