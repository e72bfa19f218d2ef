"""Summary widget injection into rewritten result pages."""

import html as html_lib
import json
import logging
from typing import Any, Sequence

from bs4 import BeautifulSoup

from search_gateway.models import SearchResult
from search_gateway.prompts import strip_markup
from search_gateway.schemas import EngineSchema

_logger = logging.getLogger("search_gateway.injector")


def script_json(value: Any) -> str:
    """JSON for embedding inside a ``<script>`` element.

    ``<``, ``>`` and ``&`` are escaped so the value cannot close the script
    element or open a new one.
    """
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def render_template(
    template: str,
    query: str,
    results: Sequence[SearchResult],
    model_name: str,
    provider_name: str,
    is_manual: bool,
) -> str:
    """Substitute the widget placeholders into ``template``.

    Query and result text are stripped of markup before substitution; both
    come from untrusted sources.
    """
    clean_results = [
        {
            "title": strip_markup(r.title),
            "url": r.url,
            "snippet": strip_markup(r.snippet),
            "published_at": r.published_at,
        }
        for r in results
    ]
    return (
        template.replace("{{MODEL_NAME}}", html_lib.escape(model_name))
        .replace("{{PROVIDER_NAME}}", html_lib.escape(provider_name))
        .replace("{{QUERY_JSON}}", script_json(strip_markup(query)))
        .replace("{{RESULTS_JSON}}", script_json(clean_results))
        .replace("{{IS_MANUAL_MODE}}", "true" if is_manual else "false")
    )


def inject_summary(
    html: str,
    query: str,
    results: Sequence[SearchResult],
    template: str,
    schema: EngineSchema,
    model_name: str = "AI",
    provider_name: str = "",
    is_manual: bool = False,
) -> str:
    """Prepend the rendered summary widget into the schema's anchor element.

    Args:
        html: The (already rewritten) results page.
        query: The user's search query.
        results: Extracted results, passed to the widget.
        template: The raw widget template.
        schema: Engine schema naming the anchor element.
        model_name: Model name shown in the widget.
        provider_name: Provider name shown in the widget.
        is_manual: Whether the widget waits for the user to ask.

    Returns:
        The page with the widget inserted, or ``html`` unchanged when there
        are no results or the anchor element is missing.
    """
    if not results:
        return html

    soup = BeautifulSoup(html, "html.parser")
    anchor = soup.select_one(schema.anchor_selector)
    if anchor is None:
        _logger.warning(
            "Anchor %s not found in %s page, summary not injected",
            schema.anchor_selector,
            schema.name,
        )
        return html

    fragment = render_template(
        template, query, results, model_name, provider_name, is_manual
    )
    anchor.insert(0, BeautifulSoup(fragment, "html.parser"))
    return str(soup)
