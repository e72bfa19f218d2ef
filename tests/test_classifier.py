"""Tests for the smart-mode query classifier."""

from typing import Any, Dict, Optional

import pytest

from search_gateway.classifier import (
    CLASSIFY_FUNCTION,
    SYSTEM_PROMPT,
    ClassificationError,
    QueryClassifier,
    parse_needs_summary,
)
from search_gateway.provider import ProviderError


class _StubProvider:
    def __init__(
        self,
        arguments: Optional[Dict[str, Any]] = None,
        error: Optional[ProviderError] = None,
    ) -> None:
        self.arguments = arguments or {}
        self.error = error
        self.calls = []

    async def classify(
        self, system_prompt: str, query: str, function: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls.append((system_prompt, query, function))
        if self.error is not None:
            raise self.error
        return self.arguments


@pytest.mark.parametrize(
    "value, expected",
    [(True, True), (False, False), ("true", True), ("FALSE", False), (" True ", True)],
)
def test_parse_needs_summary(value, expected: bool) -> None:
    assert parse_needs_summary(value) is expected


@pytest.mark.parametrize("value", ["yes", 1, None, "maybe"])
def test_parse_needs_summary_rejects_other_values(value) -> None:
    with pytest.raises(ClassificationError):
        parse_needs_summary(value)


@pytest.mark.asyncio
async def test_classify_passes_prompt_and_function() -> None:
    provider = _StubProvider({"needs_summary": "false", "reasoning": "entity lookup"})
    result = await QueryClassifier(provider).classify("Taylor Swift")

    assert result.needs_summary is False
    assert result.reasoning == "entity lookup"
    assert provider.calls == [(SYSTEM_PROMPT, "Taylor Swift", CLASSIFY_FUNCTION)]


@pytest.mark.asyncio
async def test_classify_wraps_provider_errors() -> None:
    provider = _StubProvider(
        error=ProviderError(400, "configuration_error", "No model configured")
    )
    with pytest.raises(ClassificationError, match="No model configured"):
        await QueryClassifier(provider).classify("Chicago")


@pytest.mark.asyncio
async def test_classify_requires_needs_summary() -> None:
    provider = _StubProvider({"reasoning": "forgot the flag"})
    with pytest.raises(ClassificationError, match="needs_summary"):
        await QueryClassifier(provider).classify("Chicago")


def test_function_schema_requires_needs_summary() -> None:
    assert CLASSIFY_FUNCTION["name"] == "classify_query"
    assert CLASSIFY_FUNCTION["parameters"]["required"] == ["needs_summary"]
