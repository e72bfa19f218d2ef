"""Prompt construction for summary completions.

Prompts are deterministic given the date, the query and the results, so
they can be asserted on in tests by passing ``today`` explicitly.
"""

import re
from datetime import date
from typing import List, Optional, Sequence

from search_gateway.models import DATE_UNKNOWN, ChatMessage, SearchResult

_TAG = re.compile(r"<[^>]*>?")


def strip_markup(text: str) -> str:
    """Remove anything that looks like an HTML tag."""
    return _TAG.sub("", text or "")


def format_today(today: Optional[date] = None) -> str:
    """Today's date as ``Month Day, Year``."""
    today = today or date.today()
    return "{:%B} {}, {}".format(today, today.day, today.year)


def format_results(results: Sequence[SearchResult], max_results: int = 5) -> str:
    """Render the top results as numbered source blocks.

    Each block is ``[index] title``, the snippet (markup stripped, falling
    back to the URL when empty) and the published date.
    """
    blocks: List[str] = []
    for index, result in enumerate(results[:max_results], start=1):
        snippet = strip_markup(result.snippet).strip() or result.url
        blocks.append(
            "[{}] {}\n{}\n{}".format(
                index,
                result.title,
                snippet,
                result.published_at or DATE_UNKNOWN,
            )
        )
    return "\n\n".join(blocks)


def chat_messages(
    query: str, sources: str, max_tokens: int, today: Optional[date] = None
) -> List[ChatMessage]:
    """Role-tagged prompt for chat-style providers."""
    system = (
        "You are a search assistant that summarizes search results based on "
        "today's date ({date}).\n\n"
        "Guidelines:\n"
        "- Use only information from provided sources\n"
        "- Be direct and factual; avoid speculation\n"
        "- Explain concepts clearly when needed\n"
        "- Cite sources using [1], [2], etc. when relevant\n"
        "- End definitively without questions or offers of further help\n"
        "- Keep response under {max_tokens} tokens"
    ).format(date=format_today(today), max_tokens=max_tokens)
    user = (
        'Summarize the search results for "{query}".\n\n'
        "Format:\n"
        '- For "what/how/explain" queries: explain concepts first\n'
        "- For technical queries: prioritize accuracy and definitions\n"
        "- For current events: summarize key points and viewpoints, most recent first\n"
        "- Note agreement/disagreement between sources\n"
        "- No hyperlinks or follow-up questions\n\n"
        "SOURCES:\n{sources}"
    ).format(query=query, sources=sources)
    return [
        ChatMessage(role="system", content=system),
        ChatMessage(role="user", content=user),
    ]


def flat_prompt(
    query: str, sources: str, max_tokens: int, today: Optional[date] = None
) -> str:
    """Single free-text prompt for generate-style providers."""
    return (
        "You are a search assistant that answers questions using information "
        "from search results (date: {date}).\n\n"
        "Guidelines:\n"
        "- Answer the user's question directly using the provided sources\n"
        "- Extract and present actual content (recipes, code, facts), not a "
        "description of what the sources contain\n"
        "- Be concise and factual\n"
        "- Cite sources using [1], [2], etc. when relevant\n"
        "- End definitively without follow-up questions\n"
        "- Keep response under {max_tokens} tokens\n"
        "- No hyperlinks\n\n"
        'Answer this question: "{query}"\n\n'
        "SOURCES:\n{sources}"
    ).format(
        date=format_today(today), max_tokens=max_tokens, query=query, sources=sources
    )
