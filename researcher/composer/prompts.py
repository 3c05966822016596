"""
Prompt templates for the researcher's decide and evaluate steps.

Both steps share one system prompt and receive the same context summary (the
triggering message plus recent conversation), so the model judges relevance
against the same framing on every round.
"""

from typing import Dict

from langchain_core.prompts import ChatPromptTemplate


# ==============================================================================
# SYSTEM PROMPT
# ==============================================================================

RESEARCHER_SYSTEM_PROMPT = """You are a research assistant inside a team workspace. Before the main assistant answers a message, you decide whether searching the workspace's prior knowledge would improve that answer, and if so what to search for.

The workspace has two searchable corpora:
- memos: summarized knowledge distilled from past conversations (decisions, context, outcomes)
- messages: raw messages, useful for exact wording, recent activity, specific names or terms

Search only when the message refers to shared history, prior decisions, people, projects or facts the workspace is likely to hold. Greetings, small talk and general knowledge questions do not need search.

Keep queries short and specific. Prefer fewer, better queries over many overlapping ones."""

QUERY_GUIDELINES = """Each query must have:
- target: "memo" or "message"
- mode: "semantic" or "exact"
- text: the search text

Guidelines:
- Use target "memo" for summarized knowledge (decisions, context, discussions)
- Use target "message" for specific quotes, recent activity, or exact terms
- Use mode "semantic" for concepts and topics
- Use mode "exact" for error messages, identifiers, or quoted text
- Return at most 3 queries"""


# ==============================================================================
# DECIDE
# ==============================================================================

DECIDE_USER_PROMPT = """Analyze this message and decide if workspace search would help answer it.

{context_summary}

Respond with:
- needs_search: true or false
- reasoning: brief explanation of your decision
- queries: list of 1-3 search queries, or null if needs_search is false

""" + QUERY_GUIDELINES

DECIDE_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", RESEARCHER_SYSTEM_PROMPT),
    ("user", DECIDE_USER_PROMPT),
])


# ==============================================================================
# EVALUATE
# ==============================================================================

EVALUATE_USER_PROMPT = """Evaluate if these search results are sufficient to help answer the user's message.

{context_summary}

## Current Results

{results_text}

Respond with:
- sufficient: true or false
- reasoning: brief explanation
- additional_queries: list of 1-3 new queries, or null if sufficient

Do not repeat queries that already produced the results above.

""" + QUERY_GUIDELINES

EVALUATE_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", RESEARCHER_SYSTEM_PROMPT),
    ("user", EVALUATE_USER_PROMPT),
])


def get_prompt_template(template_name: str) -> ChatPromptTemplate:
    """
    Get a researcher prompt template by name.

    Raises:
        ValueError: If template_name is not found
    """
    templates: Dict[str, ChatPromptTemplate] = {
        "decide": DECIDE_TEMPLATE,
        "evaluate": EVALUATE_TEMPLATE,
    }

    if template_name not in templates:
        available = list(templates.keys())
        raise ValueError(f"Unknown template: {template_name}. Available: {available}")

    return templates[template_name]
