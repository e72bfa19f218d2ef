"""Summarize-or-skip decisions for search result pages.

Three mutually exclusive modes, selected by configuration:

- manual: summarize whenever there is anything to summarize; the widget
  only generates text when the user asks for it.
- auto: keyword/result thresholds plus exclude and override word lists.
- smart: ask an AI classifier; fail open on any classifier problem.

Zero results always means "do not summarize", whatever the mode.
"""

import logging
import string
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from search_gateway.classifier import ClassificationError, QueryClassifier
from search_gateway.config import SummaryConfig
from search_gateway.limiter import QueryThrottle
from search_gateway.models import SearchResult

_logger = logging.getLogger("search_gateway.decision")


class SummaryMode(str, Enum):
    """How the gateway decides whether a page gets a summary."""

    MANUAL = "manual"
    AUTO = "auto"
    SMART = "smart"


@dataclass
class DecisionOutcome:
    """Result of a summarize/skip decision.

    ``reason`` is informational and only set when summarizing is skipped.
    """

    should_summarize: bool
    reason: Optional[str] = None

    @classmethod
    def proceed(cls) -> "DecisionOutcome":
        return cls(should_summarize=True)

    @classmethod
    def skip(cls, reason: str) -> "DecisionOutcome":
        return cls(should_summarize=False, reason=reason)


def query_tokens(query: str) -> List[str]:
    """Lower-cased whitespace tokens with surrounding punctuation removed."""
    tokens = (t.strip(string.punctuation) for t in query.lower().split())
    return [t for t in tokens if t]


class DecisionEngine:
    """Decides whether a results page should carry a summary.

    Args:
        config: Summarization policy parameters.
        classifier: Required for smart mode; ignored otherwise.
        throttle: Per-query duplicate suppression; a fresh one is created
            from ``config.rate_limit_ms`` when omitted.
    """

    def __init__(
        self,
        config: SummaryConfig,
        classifier: Optional[QueryClassifier] = None,
        throttle: Optional[QueryThrottle] = None,
    ) -> None:
        self._config = config
        self._mode = SummaryMode(config.mode)
        self._classifier = classifier
        self._throttle = throttle or QueryThrottle(config.rate_limit_ms)
        self._exclude = {w.lower() for w in config.exclude_words}
        self._override = {w.lower() for w in config.override_words}

    @property
    def mode(self) -> SummaryMode:
        return self._mode

    @property
    def is_manual(self) -> bool:
        return self._mode == SummaryMode.MANUAL

    def rate_limited(self, query: str) -> bool:
        """Record ``query`` and report whether it repeats within the window.

        Callers must consult this before honouring a "summarize" outcome.
        """
        return self._throttle.is_limited(query)

    async def decide(
        self, query: str, results: Sequence[SearchResult]
    ) -> DecisionOutcome:
        """Decide whether to summarize ``results`` for ``query``.

        Args:
            query: The user's search query.
            results: Extracted results, in ranking order.

        Returns:
            The decision; never "summarize" for an empty result set.
        """
        if not results:
            return DecisionOutcome.skip("No results to summarize")

        if self._mode == SummaryMode.MANUAL:
            return DecisionOutcome.proceed()
        if self._mode == SummaryMode.AUTO:
            return self.heuristic(query, results)
        return await self._classify(query)

    def heuristic(
        self, query: str, results: Sequence[SearchResult]
    ) -> DecisionOutcome:
        """Threshold and word-list policy used by auto mode.

        Override words always win over exclude words. Matching is on whole
        tokens, so "appliance" does not match "app".
        """
        keyword_count = len(query.split())
        result_count = len(results)

        if keyword_count < self._config.min_keywords:
            return DecisionOutcome.skip(
                "Not enough keywords ({}/{})".format(
                    keyword_count, self._config.min_keywords
                )
            )
        if result_count < self._config.min_results:
            return DecisionOutcome.skip(
                "Not enough results ({}/{})".format(
                    result_count, self._config.min_results
                )
            )

        tokens = query_tokens(query)
        if any(token in self._override for token in tokens):
            return DecisionOutcome.proceed()

        for token in tokens:
            if token in self._exclude:
                return DecisionOutcome.skip(
                    'Query contains word in the exclude list: "{}"'.format(token)
                )

        return DecisionOutcome.proceed()

    async def _classify(self, query: str) -> DecisionOutcome:
        if self._classifier is None:
            _logger.warning(
                "Smart mode without a classifier, defaulting to SUMMARIZE"
            )
            return DecisionOutcome.proceed()

        try:
            classification = await self._classifier.classify(query)
        except ClassificationError as exc:
            _logger.warning(
                "Classification failed (%s), defaulting to SUMMARIZE", exc
            )
            return DecisionOutcome.proceed()

        if classification.needs_summary:
            return DecisionOutcome.proceed()
        return DecisionOutcome.skip(
            "Classifier: {}".format(
                classification.reasoning or "query does not need a summary"
            )
        )
