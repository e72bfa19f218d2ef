"""Response rewriting so every client-visible reference targets the gateway.

Handles redirect ``Location`` headers, ``Set-Cookie`` domain and flags, an
opt-in Content-Security-Policy widening, and a best-effort textual rewrite
of links and forms inside HTML bodies. The HTML pass is regex based on
purpose: it is cheap and runs on every page, at the cost of missing
unusual markup.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit

from search_gateway.schemas import EngineSchema
from search_gateway.upstream import UpstreamResponse

_logger = logging.getLogger("search_gateway.rewriter")

# Recomputed by the ASGI server / invalid once the body is decoded or rewritten
_DROPPED_RESPONSE_HEADERS = {
    "transfer-encoding",
    "connection",
    "keep-alive",
    "content-length",
    "content-encoding",
    "date",
    "server",
}

_SECURE_FLAG = re.compile(r";\s*secure(?=\s*(;|$))", re.IGNORECASE)
_SAMESITE_FLAG = re.compile(r";\s*samesite=(strict|lax)(?=\s*(;|$))", re.IGNORECASE)
_HEAD_TAG = re.compile(r"<head[^>]*>", re.IGNORECASE)

CSP_ASSET_SOURCE = "https://cdn.jsdelivr.net"


@dataclass(frozen=True)
class RewriteContext:
    """The gateway's external base URL, as seen by the current caller.

    Derived per request from forwarded headers; never cached, since it
    depends on the caller's Host header.
    """

    external_url: str

    @property
    def hostname(self) -> str:
        return urlsplit(self.external_url).hostname or ""

    @property
    def is_https(self) -> bool:
        return self.external_url.startswith("https://")

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        scheme: str = "http",
        trust_proxy: bool = True,
    ) -> "RewriteContext":
        """Build the context from request headers.

        Args:
            headers: Case-insensitive inbound header mapping.
            scheme: Scheme the gateway itself was reached over.
            trust_proxy: Honour ``X-Forwarded-Proto`` / ``X-Forwarded-Host``.
        """
        host = headers.get("host", "localhost")
        if trust_proxy:
            proto = headers.get("x-forwarded-proto")
            fwd_host = headers.get("x-forwarded-host")
            if proto:
                scheme = proto.split(",")[0].strip()
            if fwd_host:
                host = fwd_host.split(",")[0].strip()
        return cls(external_url="{}://{}".format(scheme, host))


@dataclass
class ClientResponse:
    """Response ready to be sent to the end user."""

    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Union[bytes, str] = b""

    @property
    def is_html(self) -> bool:
        return isinstance(self.body, str)


class ResponseRewriter:
    """Translates upstream responses into gateway-relative responses."""

    def __init__(
        self, upstream_url: str, schema: EngineSchema, modify_csp: bool = False
    ) -> None:
        self.upstream_url = upstream_url.rstrip("/")
        parts = urlsplit(self.upstream_url)
        self.upstream_origin = "{}://{}".format(parts.scheme, parts.netloc)
        self.upstream_hostname = parts.hostname or ""
        self.schema = schema
        self.modify_csp = modify_csp
        self._domain_attr = re.compile(
            r"(;\s*domain=)\.?{}(?=\s*(;|$))".format(re.escape(self.upstream_hostname)),
            re.IGNORECASE,
        )
        self._absolute_attr = re.compile(
            r"""(\b(?:href|src|action)=["']){}""".format(
                re.escape(self.upstream_origin)
            ),
            re.IGNORECASE,
        )

    def rewrite_location(self, location: str, ctx: RewriteContext) -> str:
        """Resolve a redirect target and point it at the gateway if it is upstream."""
        resolved = urljoin(self.upstream_url + "/", location)
        if self.upstream_origin in resolved:
            resolved = resolved.replace(self.upstream_origin, ctx.external_url, 1)
        return resolved

    def rewrite_cookie(self, cookie: str, ctx: RewriteContext) -> str:
        """Rebind a Set-Cookie value to the gateway's host.

        ``Secure`` is removed when the gateway is served over plain HTTP and
        ``SameSite=Strict|Lax`` is always removed, so the browser keeps
        sending the cookie back through the proxy.
        """
        updated = self._domain_attr.sub(
            lambda m: m.group(1) + ctx.hostname, cookie
        )
        if not ctx.is_https:
            updated = _SECURE_FLAG.sub("", updated)
        return _SAMESITE_FLAG.sub("", updated)

    @staticmethod
    def rewrite_csp(policy: str) -> str:
        """Widen script/connect/style sources for the injected summary assets."""
        modified = re.sub(
            r"script-src[^;]*",
            "script-src 'self' {} 'unsafe-inline'".format(CSP_ASSET_SOURCE),
            policy,
        )
        modified = modified.replace(
            "connect-src 'self'", "connect-src 'self' {}".format(CSP_ASSET_SOURCE)
        )
        modified = modified.replace("style-src 'self'", "style-src 'self' 'unsafe-inline'")
        return modified

    def rewrite_headers(
        self,
        headers: Iterable[Tuple[str, str]],
        ctx: RewriteContext,
        skip_location: bool = False,
    ) -> List[Tuple[str, str]]:
        """Copy upstream headers, translating cookies and (optionally) CSP."""
        out: List[Tuple[str, str]] = []
        for name, value in headers:
            lowered = name.lower()
            if lowered in _DROPPED_RESPONSE_HEADERS:
                continue
            if skip_location and lowered == "location":
                continue
            if lowered == "set-cookie":
                if value:
                    out.append((name, self.rewrite_cookie(value, ctx)))
            elif lowered == "content-security-policy" and self.modify_csp:
                modified = self.rewrite_csp(value)
                _logger.debug("CSP modified: %s -> %s", value[:200], modified[:200])
                out.append((name, modified))
            else:
                out.append((name, value))
        return out

    def rewrite_html(self, html: str, ctx: RewriteContext) -> str:
        """Textually rewrite forms, links and image-proxy sources."""
        for pattern, replacement in self.schema.html_rewrites:
            html = re.sub(pattern, replacement, html, flags=re.IGNORECASE)
        return self._absolute_attr.sub(lambda m: m.group(1) + ctx.external_url, html)

    def inject_opensearch_link(self, html: str, ctx: RewriteContext) -> str:
        """Advertise the gateway's OpenSearch description in ``<head>``."""
        head = _HEAD_TAG.search(html)
        if head is None:
            return html
        link = (
            '<link rel="search" type="application/opensearchdescription+xml" '
            'title="{}" href="{}/opensearch.xml">'.format(
                self.schema.display_name, ctx.external_url
            )
        )
        return html[: head.end()] + link + html[head.end():]

    def rewrite(
        self, upstream: UpstreamResponse, ctx: RewriteContext
    ) -> ClientResponse:
        """Translate a complete upstream response for the client.

        Header copying happens before the location substitution, so the
        rewritten ``Location`` is always the last header.

        Args:
            upstream: The raw upstream response.
            ctx: The caller's rewrite context.

        Returns:
            A ClientResponse; ``body`` is ``str`` for HTML, ``bytes`` otherwise.
        """
        raw_headers = upstream.headers.multi_items()

        if upstream.is_redirect:
            headers = self.rewrite_headers(raw_headers, ctx, skip_location=True)
            location: Optional[str] = upstream.headers.get("location")
            headers.append(("location", self.rewrite_location(location or "/", ctx)))
            return ClientResponse(status_code=upstream.status_code, headers=headers)

        headers = self.rewrite_headers(raw_headers, ctx)
        if upstream.is_html:
            # The body is re-encoded as UTF-8 on the way out
            headers = [
                (name, "text/html; charset=utf-8")
                if name.lower() == "content-type"
                else (name, value)
                for name, value in headers
            ]
            html = self.inject_opensearch_link(upstream.text, ctx)
            return ClientResponse(
                status_code=upstream.status_code,
                headers=headers,
                body=self.rewrite_html(html, ctx),
            )
        return ClientResponse(
            status_code=upstream.status_code, headers=headers, body=upstream.content
        )
