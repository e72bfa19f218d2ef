"""FastAPI application for the search summarization gateway.

Sits in front of a SearXNG or 4get instance. Every request is forwarded
upstream and the response rewritten so links, redirects and cookies keep
pointing at the gateway. General search result pages additionally get a
summary widget, which streams its text back from /api/summary.

Request flow for a results page:
1. Fetch the page from upstream (no redirect following)
2. Rewrite headers, cookies and links for the client
3. Extract results, apply the per-query throttle and the decision policy
4. Inject the summary widget into the page
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from search_gateway.classifier import QueryClassifier
from search_gateway.config import GatewayConfig, load_config
from search_gateway.decision import DecisionEngine, SummaryMode
from search_gateway.extractor import extract_results
from search_gateway.injector import inject_summary
from search_gateway.limiter import QueryThrottle, RateLimitExceeded, RateLimiter
from search_gateway.models import (
    CompletionChunk,
    ErrorDetail,
    ErrorResponse,
    SummaryRequest,
)
from search_gateway.prompts import strip_markup
from search_gateway.provider import CompletionProvider, ProviderError, create_provider
from search_gateway.rewriter import ClientResponse, ResponseRewriter, RewriteContext
from search_gateway.schemas import EngineSchema, get_schema
from search_gateway.telemetry import log_event, logger, setup_logging
from search_gateway.templates import TemplateStore
from search_gateway.upstream import FetchError, UpstreamFetcher

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/config.yaml")

OPENSEARCH_SHORT_NAME = "Search Summarizer"
OPENSEARCH_DESCRIPTIONS = {
    "searxng": "Metasearch engine with AI summaries",
    "4get": "Privacy-focused search with AI summaries",
}

_config: Optional[GatewayConfig] = None
_fetcher: Optional[UpstreamFetcher] = None
_rewriter: Optional[ResponseRewriter] = None
_provider: Optional[CompletionProvider] = None
_decision_engine: Optional[DecisionEngine] = None
_summary_throttle: Optional[QueryThrottle] = None
_limiter: Optional[RateLimiter] = None
_templates: Optional[TemplateStore] = None


def get_config() -> GatewayConfig:
    """Return the loaded gateway configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_engine_schema() -> EngineSchema:
    """Return the extraction schema of the configured engine."""
    return get_schema(get_config().engine.name)


def get_fetcher() -> UpstreamFetcher:
    """Return the upstream fetcher (lazy-init from config)."""
    global _fetcher
    if _fetcher is None:
        cfg = get_config()
        _fetcher = UpstreamFetcher(cfg.engine.url, timeout=cfg.upstream_timeout)
    return _fetcher


def get_rewriter() -> ResponseRewriter:
    """Return the response rewriter (lazy-init from config)."""
    global _rewriter
    if _rewriter is None:
        cfg = get_config()
        _rewriter = ResponseRewriter(
            cfg.engine.url, get_engine_schema(), modify_csp=cfg.modify_csp_headers
        )
    return _rewriter


def get_provider() -> CompletionProvider:
    """Return the summary completion provider (lazy-init from config)."""
    global _provider
    if _provider is None:
        cfg = get_config()
        _provider = create_provider(cfg.provider, max_results=cfg.summary.max_results)
    return _provider


def get_decision_engine() -> DecisionEngine:
    """Return the decision engine (lazy-init from config).

    The classifier is only wired in for smart mode.
    """
    global _decision_engine
    if _decision_engine is None:
        cfg = get_config()
        classifier = None
        if cfg.summary.mode == SummaryMode.SMART.value:
            classifier = QueryClassifier(create_provider(cfg.classifier))
        _decision_engine = DecisionEngine(cfg.summary, classifier=classifier)
    return _decision_engine


def get_summary_throttle() -> QueryThrottle:
    """Return the per-query throttle guarding /api/summary.

    Separate from the page throttle: the widget posts right after the page
    view, which must not count as a duplicate of it.
    """
    global _summary_throttle
    if _summary_throttle is None:
        _summary_throttle = QueryThrottle(get_config().summary.rate_limit_ms)
    return _summary_throttle


def get_limiter() -> RateLimiter:
    """Return the per-client API rate limiter (lazy-init from config)."""
    global _limiter
    if _limiter is None:
        cfg = get_config()
        _limiter = RateLimiter(
            requests=cfg.rate_limit.requests,
            window_seconds=cfg.rate_limit.window_seconds,
        )
    return _limiter


def get_templates() -> TemplateStore:
    """Return the summary template cache (lazy-init from config)."""
    global _templates
    if _templates is None:
        cfg = get_config()
        _templates = TemplateStore(cfg.engine.name, cfg.templates_dir)
    return _templates


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, and the shared components on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file, cfg.log_level)
    get_fetcher()
    get_rewriter()
    get_provider()
    get_decision_engine()
    get_limiter()
    get_templates().load()
    logger.info("Search engine: %s, proxying to %s", cfg.engine.name, cfg.engine.url)
    logger.info(
        "Summary provider: %s (%s), mode: %s",
        cfg.provider.name,
        cfg.provider.model or "no model configured",
        cfg.summary.mode,
    )
    yield


app = FastAPI(title="Search Summarization Gateway", version="0.1.0", lifespan=lifespan)


def _error_response(status: int, error_type: str, message: str) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(type=error_type, message=message))
    return JSONResponse(status_code=status, content=body.model_dump())


def _new_request_id() -> str:
    return "gw-{}".format(uuid.uuid4().hex[:12])


def _client_id(request: Request) -> str:
    """Address used to key the per-client limiter."""
    if get_config().trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _rewrite_context(request: Request) -> RewriteContext:
    return RewriteContext.from_headers(
        request.headers, request.url.scheme, get_config().trust_proxy
    )


def _to_response(client: ClientResponse) -> Response:
    """Render a rewritten upstream response, keeping repeated headers."""
    body = client.body.encode("utf-8") if isinstance(client.body, str) else client.body
    response = Response(content=body, status_code=client.status_code)
    for name, value in client.headers:
        response.headers.append(name, value)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        "validation_error",
        "Request validation failed: {}".format(exc.errors()),
    )


@app.get("/health")
async def health() -> PlainTextResponse:
    return PlainTextResponse("OK")


@app.get("/opensearch.xml")
async def opensearch(request: Request) -> Response:
    """OpenSearch description so browsers can add the gateway as a search engine."""
    base_url = _rewrite_context(request).external_url
    description = OPENSEARCH_DESCRIPTIONS.get(get_config().engine.name, "")
    document = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<OpenSearchDescription xmlns="http://a9.com/-/spec/opensearch/1.1/">\n'
        "  <ShortName>{name}</ShortName>\n"
        "  <Description>{description}</Description>\n"
        "  <InputEncoding>UTF-8</InputEncoding>\n"
        '  <Image width="16" height="16" type="image/x-icon">{base}/favicon.ico</Image>\n'
        '  <Url type="text/html" method="GET" template="{base}/search?q={{searchTerms}}"/>\n'
        '  <Url type="application/x-suggestions+json" method="GET" '
        'template="{base}/ac?q={{searchTerms}}"/>\n'
        "</OpenSearchDescription>"
    ).format(name=OPENSEARCH_SHORT_NAME, description=description, base=base_url)
    return Response(content=document, media_type="application/opensearchdescription+xml")


async def _ndjson(
    first: CompletionChunk,
    rest: AsyncIterator[CompletionChunk],
    request_id: str,
) -> AsyncIterator[str]:
    """Serialize the provider's chunks as NDJSON, closing the stream on exit.

    Exiting early (client disconnect) closes the provider generator, which
    in turn closes the provider connection.
    """
    chunk_count = 1
    last = first
    try:
        yield first.to_line()
        if first.done or first.error is not None:
            return
        async for chunk in rest:
            chunk_count += 1
            last = chunk
            yield chunk.to_line()
    finally:
        await rest.aclose()
        log_event(
            "summary_stream",
            outcome="error" if last.error is not None else "completed",
            request_id=request_id,
            error=last.error,
            chunks=chunk_count,
        )


@app.post("/api/summary", response_model=None)
async def summary(request: Request, body: SummaryRequest) -> Response:
    """Stream a summary of the posted results as NDJSON chunks.

    Request flow:
    1. Validate the body (pydantic) and require at least one result
    2. Enforce the per-client rate limit
    3. Re-check the per-query throttle
    4. Open the provider stream; anything failing up to here is a JSON error
    5. Relay chunks; later failures arrive as a terminal error chunk
    """
    request_id = _new_request_id()
    query = strip_markup(body.query).strip()

    if not query:
        return _error_response(400, "validation_error", "Query is empty.")
    if not body.results:
        return _error_response(400, "validation_error", "No results to summarize.")

    try:
        get_limiter().check(_client_id(request))
    except RateLimitExceeded as exc:
        log_event(
            "summary_stream",
            outcome="rate_limited",
            request_id=request_id,
            query=query,
            error=exc.detail,
        )
        return _error_response(429, "rate_limit_exceeded", exc.detail)

    if get_summary_throttle().is_limited(query):
        log_event(
            "summary_stream",
            outcome="rate_limited",
            request_id=request_id,
            query=query,
            error="Duplicate summary request",
        )
        return _error_response(
            429,
            "rate_limit_exceeded",
            "A summary for this query was requested moments ago.",
        )

    provider = get_provider()
    stream = provider.stream_completion(
        query, body.results, referer=_rewrite_context(request).external_url
    )
    try:
        first = await stream.__anext__()
    except ProviderError as exc:
        log_event(
            "summary_stream",
            outcome=exc.code,
            request_id=request_id,
            query=query,
            error=exc.message,
            provider=provider.name,
        )
        return _error_response(exc.status_code, exc.code, exc.message)
    except StopAsyncIteration:
        first = CompletionChunk(done=True)

    log_event(
        "summary_stream",
        outcome="started",
        request_id=request_id,
        query=query,
        provider=provider.name,
        results=len(body.results),
    )
    return StreamingResponse(
        _ndjson(first, stream, request_id),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/ac")
async def autocomplete(request: Request) -> Response:
    """Proxy search suggestions from the engine's autocomplete endpoint."""
    cfg = get_config()
    schema = get_engine_schema()
    query = request.query_params.get("q") or request.query_params.get("s") or ""

    headers: List[Tuple[str, str]] = []
    cookie = request.headers.get("cookie")
    if cookie:
        headers.append(("cookie", cookie))

    try:
        upstream = await get_fetcher().fetch(
            "GET",
            schema.autocomplete_path,
            [(schema.query_param, query)],
            headers=headers,
            timeout=cfg.autocomplete_timeout,
        )
    except FetchError as exc:
        log_event("autocomplete", outcome="upstream_error", query=query, error=str(exc))
        return JSONResponse(status_code=500, content=[])

    if upstream.status_code >= 400:
        log_event(
            "autocomplete",
            outcome="upstream_error",
            query=query,
            error="Upstream returned {}".format(upstream.status_code),
        )
        return JSONResponse(status_code=500, content=[])

    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.content_type or "application/json",
    )


def _translate_query(
    params: List[Tuple[str, str]], schema: EngineSchema
) -> List[Tuple[str, str]]:
    """Rename ``q`` / ``s`` to the query parameter the engine expects."""
    query = next((v for k, v in params if k in ("q", "s")), None)
    translated = [(k, v) for k, v in params if k not in ("q", "s")]
    if query:
        translated.insert(0, (schema.query_param, query))
    return translated


async def _summarize_page(
    upstream_html: str, page_html: str, query: str, request_id: str
) -> str:
    """Decide on and inject the summary widget for one results page."""
    cfg = get_config()
    schema = get_engine_schema()
    engine = get_decision_engine()
    results = extract_results(upstream_html, schema)

    # Checked before deciding, so duplicates never reach the classifier
    if engine.rate_limited(query):
        log_event(
            "search_page",
            outcome="rate_limited",
            request_id=request_id,
            query=query,
            results=len(results),
        )
        return page_html

    outcome = await engine.decide(query, results)
    if not outcome.should_summarize:
        log_event(
            "search_page",
            outcome="skipped",
            request_id=request_id,
            query=query,
            reason=outcome.reason,
            results=len(results),
        )
        return page_html

    injected = inject_summary(
        page_html,
        query,
        results,
        get_templates().get(),
        schema,
        model_name=cfg.provider.model_display_name,
        provider_name=cfg.provider.name,
        is_manual=engine.is_manual,
    )
    log_event(
        "search_page",
        outcome="injected" if injected is not page_html else "anchor_missing",
        request_id=request_id,
        query=query,
        mode=engine.mode.value,
        results=len(results),
    )
    return injected


async def _proxy(
    request: Request, upstream_path: str, params: List[Tuple[str, str]]
) -> Response:
    """Forward one request upstream and return the rewritten response."""
    request_id = _new_request_id()
    schema = get_engine_schema()
    ctx = _rewrite_context(request)
    body = await request.body() if request.method not in ("GET", "HEAD") else None

    try:
        upstream = await get_fetcher().fetch(
            request.method,
            upstream_path,
            params,
            headers=request.headers.items(),
            body=body,
        )
    except FetchError as exc:
        log_event(
            "proxy",
            outcome="upstream_{}".format(exc.kind),
            request_id=request_id,
            error=str(exc),
            path=upstream_path,
        )
        status = 504 if exc.kind == "timeout" else 502
        return _error_response(status, "upstream_{}".format(exc.kind), str(exc))

    client = get_rewriter().rewrite(upstream, ctx)

    param_map = dict(params)
    content_type = request.headers.get("content-type", "")
    if body and "application/x-www-form-urlencoded" in content_type:
        # SearXNG submits searches as POST forms
        form = dict(parse_qsl(body.decode("utf-8", errors="replace")))
        param_map = {**form, **param_map}

    query = (schema.extract_query(param_map) or "").strip()
    if client.is_html and query and schema.is_general_search(upstream_path, param_map):
        client.body = await _summarize_page(
            upstream.text, client.body, query, request_id
        )

    return _to_response(client)


@app.api_route(
    "/{path:path}",
    methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
async def proxy(request: Request, path: str) -> Response:
    """Catch-all: proxy everything else to the upstream engine.

    Query-carrying verticals (``/search`` and, for 4get, the media tabs)
    are mapped to the engine's own path and query parameter first.
    """
    schema = get_engine_schema()
    gateway_path = "/" + path
    params = list(request.query_params.multi_items())

    upstream_path = gateway_path
    if request.method == "GET" and gateway_path in schema.endpoints:
        upstream_path = schema.endpoints[gateway_path]
        params = _translate_query(params, schema)

    return await _proxy(request, upstream_path, params)
