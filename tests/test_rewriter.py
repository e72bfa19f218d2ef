"""Tests for header, cookie and HTML rewriting."""

import httpx
import pytest

from search_gateway.rewriter import ResponseRewriter, RewriteContext
from search_gateway.schemas import FOURGET, SEARXNG
from search_gateway.upstream import UpstreamResponse

UPSTREAM = "http://searx.internal:8888"
HTTP_CTX = RewriteContext(external_url="http://search.example.org")
HTTPS_CTX = RewriteContext(external_url="https://search.example.org")


@pytest.fixture()
def rewriter() -> ResponseRewriter:
    return ResponseRewriter(UPSTREAM, SEARXNG)


def _upstream(status: int, headers: list, body: bytes = b"") -> UpstreamResponse:
    return UpstreamResponse(
        status_code=status, headers=httpx.Headers(headers), content=body
    )


def test_cookie_domain_is_rebound_to_gateway(rewriter: ResponseRewriter) -> None:
    cookie = "sid=abc; Path=/; Domain=searx.internal; Secure; SameSite=Lax"
    rewritten = rewriter.rewrite_cookie(cookie, HTTP_CTX)
    assert rewritten == "sid=abc; Path=/; Domain=search.example.org"


def test_cookie_leading_dot_domain(rewriter: ResponseRewriter) -> None:
    rewritten = rewriter.rewrite_cookie("a=1; domain=.searx.internal", HTTP_CTX)
    assert rewritten == "a=1; domain=search.example.org"


def test_cookie_secure_kept_over_https(rewriter: ResponseRewriter) -> None:
    rewritten = rewriter.rewrite_cookie(
        "sid=abc; Secure; SameSite=Strict; HttpOnly", HTTPS_CTX
    )
    assert rewritten == "sid=abc; Secure; HttpOnly"


def test_cookie_samesite_none_is_kept(rewriter: ResponseRewriter) -> None:
    rewritten = rewriter.rewrite_cookie("sid=abc; SameSite=None; Secure", HTTPS_CTX)
    assert rewritten == "sid=abc; SameSite=None; Secure"


def test_cookie_foreign_domain_untouched(rewriter: ResponseRewriter) -> None:
    rewritten = rewriter.rewrite_cookie("a=1; Domain=other.org", HTTPS_CTX)
    assert rewritten == "a=1; Domain=other.org"


def test_cookie_domain_prefix_is_not_rewritten(rewriter: ResponseRewriter) -> None:
    rewritten = rewriter.rewrite_cookie("a=1; Domain=searx.internal.evil", HTTPS_CTX)
    assert rewritten == "a=1; Domain=searx.internal.evil"


@pytest.mark.parametrize(
    "location, expected",
    [
        ("/search?q=rust", "http://search.example.org/search?q=rust"),
        ("http://searx.internal:8888/preferences", "http://search.example.org/preferences"),
        ("https://elsewhere.org/x", "https://elsewhere.org/x"),
    ],
)
def test_rewrite_location(rewriter: ResponseRewriter, location: str, expected: str) -> None:
    assert rewriter.rewrite_location(location, HTTP_CTX) == expected


def test_redirect_location_is_last_header(rewriter: ResponseRewriter) -> None:
    upstream = _upstream(
        302,
        [
            ("location", "/search?q=rust"),
            ("set-cookie", "sid=1; Domain=searx.internal"),
            ("x-custom", "kept"),
        ],
    )
    client = rewriter.rewrite(upstream, HTTP_CTX)

    assert client.status_code == 302
    assert client.headers[-1] == ("location", "http://search.example.org/search?q=rust")
    assert [name for name, _ in client.headers].count("location") == 1
    assert ("set-cookie", "sid=1; Domain=search.example.org") in client.headers
    assert ("x-custom", "kept") in client.headers
    assert client.body == b""


def test_html_response_is_rewritten(rewriter: ResponseRewriter) -> None:
    page = (
        "<html><head><title>t</title></head><body>"
        "<form action='/search'></form>"
        '<a href="http://searx.internal:8888/about">about</a>'
        "</body></html>"
    ).encode("utf-8")
    upstream = _upstream(
        200,
        [
            ("content-type", "text/html; charset=iso-8859-1"),
            ("content-length", str(len(page))),
            ("content-encoding", "gzip"),
        ],
        page,
    )
    client = rewriter.rewrite(upstream, HTTP_CTX)

    assert client.is_html
    assert ("content-type", "text/html; charset=utf-8") in client.headers
    names = [name for name, _ in client.headers]
    assert "content-length" not in names
    assert "content-encoding" not in names
    assert 'action="/search"' in client.body
    assert 'href="http://search.example.org/about"' in client.body
    assert (
        '<head><link rel="search" type="application/opensearchdescription+xml" '
        'title="SearXNG Search" href="http://search.example.org/opensearch.xml">'
    ) in client.body


def test_binary_response_passes_through(rewriter: ResponseRewriter) -> None:
    png = b"\x89PNG\r\n\x1a\n\x00\x01"
    upstream = _upstream(200, [("content-type", "image/png")], png)
    upstream.binary = True
    client = rewriter.rewrite(upstream, HTTP_CTX)
    assert client.body == png
    assert not client.is_html


def test_fourget_rules() -> None:
    rewriter = ResponseRewriter("http://4get.internal", FOURGET)
    html = (
        '<form action="/web"></form><a href="/web?s=rust&p=2">next</a>'
        '<img src="/proxy?i=abc">'
    )
    out = rewriter.rewrite_html(html, HTTP_CTX)
    assert 'action="/search"' in out
    assert 'href="/search?s=rust&p=2"' in out
    assert 'src="/proxy?i=abc"' in out


def test_csp_only_modified_when_enabled() -> None:
    policy = "default-src 'self'; script-src 'self'; connect-src 'self'"
    headers = [("content-security-policy", policy)]

    plain = ResponseRewriter(UPSTREAM, SEARXNG).rewrite_headers(headers, HTTP_CTX)
    assert plain == headers

    widened = ResponseRewriter(UPSTREAM, SEARXNG, modify_csp=True).rewrite_headers(
        headers, HTTP_CTX
    )
    value = widened[0][1]
    assert "script-src 'self' https://cdn.jsdelivr.net 'unsafe-inline'" in value
    assert "connect-src 'self' https://cdn.jsdelivr.net" in value


def test_context_from_forwarded_headers() -> None:
    headers = {
        "host": "127.0.0.1:3000",
        "x-forwarded-proto": "https",
        "x-forwarded-host": "search.example.org, proxy.local",
    }
    ctx = RewriteContext.from_headers(headers)
    assert ctx.external_url == "https://search.example.org"
    assert ctx.is_https
    assert ctx.hostname == "search.example.org"


def test_context_ignores_forwarded_headers_when_untrusted() -> None:
    headers = {"host": "127.0.0.1:3000", "x-forwarded-proto": "https"}
    ctx = RewriteContext.from_headers(headers, trust_proxy=False)
    assert ctx.external_url == "http://127.0.0.1:3000"
    assert ctx.hostname == "127.0.0.1"


def test_cookie_rewritten_for_plain_http_gateway() -> None:
    rewriter = ResponseRewriter("https://upstream.example", SEARXNG)
    ctx = RewriteContext(external_url="http://gw.example")
    rewritten = rewriter.rewrite_cookie(
        "sid=1; Domain=upstream.example; Secure; SameSite=Strict", ctx
    )
    assert rewritten == "sid=1; Domain=gw.example"
