"""AI query classification for the "smart" summarization mode.

Asks a (small, fast) model whether a query deserves a summary at all, e.g.
a bare entity lookup like "Chicago" does not, "Chicago weather" does.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from search_gateway.provider import CompletionProvider, ProviderError

_logger = logging.getLogger("search_gateway.classifier")

SYSTEM_PROMPT = """You are a query classifier. Determine if a search query needs AI summarization.

Queries that DON'T need summarization:
- Just a proper name (person, place, organization, brand, product)
- Single entity without context or questions
- Examples: "Taylor Swift", "Chicago", "iPhone 15", "Manchester United"

Queries that NEED summarization:
- Ask questions or seek specific information
- Have qualifying words (how, what, why, when, best, latest, vs, etc.)
- Request comparison or details
- Examples: "Taylor Swift tour dates", "Chicago weather", "iPhone 15 vs 16"
"""

CLASSIFY_FUNCTION = {
    "name": "classify_query",
    "description": "Classify whether a search query needs AI summarization",
    "parameters": {
        "type": "object",
        "properties": {
            "needs_summary": {
                "type": "boolean",
                "description": (
                    "True if the query needs AI summarization, false if it's "
                    "just a name/entity lookup"
                ),
            },
            "reasoning": {
                "type": "string",
                "description": "Brief explanation of the classification decision",
            },
        },
        "required": ["needs_summary"],
    },
}


class ClassificationError(Exception):
    """The classifier could not produce a usable answer."""


@dataclass
class Classification:
    """Parsed classifier answer."""

    needs_summary: bool
    reasoning: Optional[str] = None


def parse_needs_summary(value: Any) -> bool:
    """Interpret ``needs_summary`` as returned by a model.

    Models are inconsistent here: a JSON boolean and the strings
    "true"/"false" (any case) are accepted.

    Raises:
        ClassificationError: For any other value.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ClassificationError(
        "Unexpected needs_summary value: {!r}".format(value)
    )


class QueryClassifier:
    """Single-shot structured classification on top of a completion provider."""

    def __init__(self, provider: CompletionProvider) -> None:
        self._provider = provider

    async def classify(self, query: str) -> Classification:
        """Classify a query.

        Args:
            query: The user's search query.

        Returns:
            The parsed classification.

        Raises:
            ClassificationError: On missing model, transport failure or a
                malformed answer.
        """
        try:
            arguments = await self._provider.classify(
                SYSTEM_PROMPT, query, CLASSIFY_FUNCTION
            )
        except ProviderError as exc:
            raise ClassificationError(exc.message) from exc

        if "needs_summary" not in arguments:
            raise ClassificationError("Classifier answer lacks needs_summary")

        result = Classification(
            needs_summary=parse_needs_summary(arguments["needs_summary"]),
            reasoning=arguments.get("reasoning") or None,
        )
        _logger.info(
            "Classification: %s%s",
            "SUMMARIZE" if result.needs_summary else "SKIP",
            " - {}".format(result.reasoning) if result.reasoning else "",
        )
        return result
