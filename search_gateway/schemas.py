"""Per-engine extraction and rewrite schemas.

Everything that depends on the HTML structure or URL scheme of a specific
upstream search engine lives here, so the rest of the pipeline stays
engine-agnostic.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class EngineSchema:
    """Extraction selectors, anchor, and URL mapping for one upstream engine.

    Attributes:
        name: Engine identifier used in configuration.
        display_name: Human-readable engine name.
        result_selector: CSS selector matching one result card.
        title_selector: Selector (within a card) for the title text.
        link_selector: Selector (within a card) for the element carrying href.
        snippet_selector: Selector (within a card) for the snippet text.
        date_selector: Selector (within a card) for the published date.
        anchor_selector: Element the summary widget is prepended into.
        query_param: Name of the query parameter upstream expects.
        endpoints: Gateway path -> upstream path for query-carrying verticals.
        html_rewrites: (regex, replacement) pairs applied to HTML bodies.
        autocomplete_path: Upstream suggestion endpoint.
    """

    name: str
    display_name: str
    result_selector: str
    title_selector: str
    link_selector: str
    snippet_selector: str
    date_selector: str
    anchor_selector: str
    query_param: str
    endpoints: Dict[str, str] = field(default_factory=dict)
    html_rewrites: Tuple[Tuple[str, str], ...] = ()
    autocomplete_path: str = "/autocompleter"

    def extract_query(self, params: Mapping[str, str]) -> Optional[str]:
        """Return the search query carried by request parameters, if any."""
        return params.get(self.query_param) or params.get("q") or params.get("s")

    def is_general_search(self, upstream_path: str, params: Mapping[str, str]) -> bool:
        """Return True if this request is a general web search page.

        Only general searches get a summary; image, video and other
        verticals are proxied untouched.
        """
        if self.name == "4get":
            return upstream_path.startswith("/web") or upstream_path == "/"
        category = params.get("categories")
        return not category or category == "general"


SEARXNG = EngineSchema(
    name="searxng",
    display_name="SearXNG Search",
    result_selector=".result",
    title_selector="h3 a",
    link_selector="h3 a",
    snippet_selector=".content",
    date_selector="time, .published_date",
    anchor_selector="#urls",
    query_param="q",
    endpoints={"/search": "/search"},
    html_rewrites=(
        (r"""action=["']/search["']""", 'action="/search"'),
        (r"""href=["']/search\?q=""", 'href="/search?q='),
    ),
    autocomplete_path="/autocompleter",
)

FOURGET = EngineSchema(
    name="4get",
    display_name="4get Search",
    result_selector=".text-result",
    title_selector=".title",
    link_selector="a.hover",
    snippet_selector=".description",
    date_selector="time, .date",
    anchor_selector=".left",
    query_param="s",
    endpoints={
        "/search": "/web",
        "/images": "/images",
        "/videos": "/videos",
        "/news": "/news",
        "/music": "/music",
    },
    html_rewrites=(
        (r"""action=["']/web["']""", 'action="/search"'),
        (r"""href=["']/web\?s=""", 'href="/search?s='),
        (r"""src=["']/proxy\?i=""", 'src="/proxy?i='),
    ),
    autocomplete_path="/api/v1/ac",
)

_SCHEMAS = {schema.name: schema for schema in (SEARXNG, FOURGET)}


def get_schema(name: str) -> EngineSchema:
    """Look up the schema for an engine name.

    Raises:
        ValueError: If no schema is registered under ``name``.
    """
    try:
        return _SCHEMAS[name]
    except KeyError:
        raise ValueError(
            "No extraction schema for engine '{}'. Available: {}".format(
                name, ", ".join(sorted(_SCHEMAS))
            )
        ) from None
