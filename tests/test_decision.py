"""Tests for the summarize-or-skip decision engine."""

from typing import List, Optional

import httpx
import pytest

from search_gateway.classifier import (
    Classification,
    ClassificationError,
    QueryClassifier,
)
from search_gateway.config import ProviderConfig, SummaryConfig
from search_gateway.decision import DecisionEngine, SummaryMode, query_tokens
from search_gateway.models import SearchResult
from search_gateway.provider import ChatStyleProvider


def _results(count: int) -> List[SearchResult]:
    return [
        SearchResult(title="Result {}".format(i), url="https://example.com/{}".format(i))
        for i in range(count)
    ]


class _FakeClassifier:
    def __init__(
        self,
        answer: Optional[Classification] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.answer = answer
        self.error = error
        self.calls: List[str] = []

    async def classify(self, query: str) -> Classification:
        self.calls.append(query)
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["manual", "auto", "smart"])
async def test_zero_results_never_summarize(mode: str) -> None:
    classifier = _FakeClassifier(Classification(needs_summary=True))
    engine = DecisionEngine(SummaryConfig(mode=mode), classifier=classifier)

    outcome = await engine.decide("how does tokio schedule tasks", [])

    assert outcome.should_summarize is False
    assert outcome.reason == "No results to summarize"
    assert classifier.calls == []


@pytest.mark.asyncio
async def test_manual_mode_always_proceeds() -> None:
    engine = DecisionEngine(SummaryConfig(mode="manual"))
    outcome = await engine.decide("x", _results(1))
    assert outcome.should_summarize is True
    assert engine.is_manual is True
    assert engine.mode == SummaryMode.MANUAL


@pytest.mark.asyncio
async def test_auto_not_enough_keywords() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("tokio runtime", _results(5))
    assert outcome.should_summarize is False
    assert outcome.reason == "Not enough keywords (2/3)"


@pytest.mark.asyncio
async def test_auto_not_enough_results() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("rust async runtime comparison", _results(2))
    assert outcome.should_summarize is False
    assert outcome.reason == "Not enough results (2/3)"


@pytest.mark.asyncio
async def test_auto_exclude_word_skips() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("tokio github repository link", _results(5))
    assert outcome.should_summarize is False
    assert outcome.reason == 'Query contains word in the exclude list: "github"'


@pytest.mark.asyncio
async def test_auto_override_beats_exclude() -> None:
    """An override word wins even when an exclude word is present."""
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("how to download tokio", _results(5))
    assert outcome.should_summarize is True


@pytest.mark.asyncio
async def test_auto_matches_whole_tokens_only() -> None:
    """The exclude word "app" does not match inside "appliance"."""
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("best kitchen appliance brands", _results(5))
    assert outcome.should_summarize is True


@pytest.mark.asyncio
async def test_auto_tokens_ignore_surrounding_punctuation() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("tokio source (github)", _results(5))
    assert outcome.should_summarize is False


@pytest.mark.asyncio
async def test_auto_word_lists_are_case_insensitive() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("Tokio GitHub Issues", _results(5))
    assert outcome.should_summarize is False


@pytest.mark.asyncio
async def test_auto_custom_thresholds() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto", min_keywords=1, min_results=1))
    outcome = await engine.decide("tokio", _results(1))
    assert outcome.should_summarize is True


@pytest.mark.asyncio
async def test_smart_mode_follows_classifier() -> None:
    classifier = _FakeClassifier(
        Classification(needs_summary=False, reasoning="bare entity lookup")
    )
    engine = DecisionEngine(SummaryConfig(mode="smart"), classifier=classifier)

    outcome = await engine.decide("Chicago", _results(5))

    assert outcome.should_summarize is False
    assert outcome.reason == "Classifier: bare entity lookup"
    assert classifier.calls == ["Chicago"]


@pytest.mark.asyncio
async def test_smart_mode_ignores_thresholds() -> None:
    classifier = _FakeClassifier(Classification(needs_summary=True))
    engine = DecisionEngine(SummaryConfig(mode="smart"), classifier=classifier)
    outcome = await engine.decide("weather", _results(1))
    assert outcome.should_summarize is True


@pytest.mark.asyncio
async def test_smart_mode_fails_open_on_classifier_error() -> None:
    classifier = _FakeClassifier(error=ClassificationError("timed out"))
    engine = DecisionEngine(SummaryConfig(mode="smart"), classifier=classifier)
    outcome = await engine.decide("Chicago", _results(5))
    assert outcome.should_summarize is True


@pytest.mark.asyncio
async def test_smart_mode_without_classifier_fails_open() -> None:
    engine = DecisionEngine(SummaryConfig(mode="smart"))
    outcome = await engine.decide("Chicago", _results(5))
    assert outcome.should_summarize is True


def test_rate_limited_uses_the_query_throttle() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto", rate_limit_ms=60_000))
    assert engine.rate_limited("rust async runtime") is False
    assert engine.rate_limited("Rust Async Runtime") is True


def test_query_tokens() -> None:
    assert query_tokens("What is Rust's 'async'?") == ["what", "is", "rust's", "async"]
    assert query_tokens("  ") == []


@pytest.mark.asyncio
async def test_override_question_with_exclude_word_proceeds() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("what is the capital of France", _results(3))
    assert outcome.should_summarize is True

    outcome = await engine.decide("what is the best python library", _results(3))
    assert outcome.should_summarize is True


@pytest.mark.asyncio
async def test_two_token_query_cites_keyword_count() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("torrent download", _results(10))
    assert outcome.should_summarize is False
    assert outcome.reason == "Not enough keywords (2/3)"


@pytest.mark.asyncio
async def test_exclude_word_without_override_names_the_word() -> None:
    engine = DecisionEngine(SummaryConfig(mode="auto"))
    outcome = await engine.decide("best python web framework comparison", _results(4))
    assert outcome.should_summarize is False
    assert "framework" in outcome.reason


@pytest.mark.asyncio
async def test_smart_mode_fails_open_on_malformed_tool_call(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TEST_API_KEY", "sk-test")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"choices": [{"message": {"tool_calls": ["oops"]}}]}
        )

    provider = ChatStyleProvider(
        ProviderConfig(
            kind="chat",
            name="openrouter",
            base_url="https://llm.example.com/api/v1",
            api_key_env="TEST_API_KEY",
            model="vendor/classifier",
        ),
        transport=httpx.MockTransport(handler),
    )
    engine = DecisionEngine(
        SummaryConfig(mode="smart"), classifier=QueryClassifier(provider)
    )

    outcome = await engine.decide("chicago weather today", _results(3))

    assert outcome.should_summarize is True
