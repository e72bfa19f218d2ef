"""Upstream fetcher: forwards one inbound request to the search engine.

Redirects are never followed here; they are surfaced to the rewriter so
that ``Location`` and cookies can be translated first. Nothing is retried,
since proxied requests (POSTs to settings pages, for example) are not
generally safe to replay.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

import httpx

_logger = logging.getLogger("search_gateway.upstream")

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# Never forwarded to upstream
_HOP_BY_HOP = {"host", "connection", "transfer-encoding", "content-length"}

_BINARY_SUFFIXES = (".ico", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")
_BINARY_PATH_MARKERS = ("/favicon", "/banner/", "/proxy")


class FetchError(Exception):
    """Raised when the upstream engine cannot be reached.

    Attributes:
        kind: "timeout" or "network".
        url: The upstream URL that failed.
    """

    def __init__(self, kind: str, url: str, detail: str) -> None:
        self.kind = kind
        self.url = url
        self.detail = detail
        super().__init__(
            "Upstream {} for {}: {}".format(
                "timed out" if kind == "timeout" else "unreachable", url, detail
            )
        )


@dataclass
class UpstreamResponse:
    """Raw upstream response, headers and body unmodified."""

    status_code: int
    headers: httpx.Headers
    content: bytes
    binary: bool = False
    encoding: Optional[str] = None

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_html(self) -> bool:
        return not self.binary and "text/html" in self.content_type

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400 and "location" in self.headers

    @property
    def text(self) -> str:
        """Body decoded as text (replacement characters on bad bytes)."""
        return self.content.decode(self.encoding or "utf-8", errors="replace")


def is_binary_request(path: str, accept: Optional[str]) -> bool:
    """Return True if the request is for an image, icon or similar asset."""
    lowered = path.lower()
    if any(marker in lowered for marker in _BINARY_PATH_MARKERS):
        return True
    if lowered.endswith(_BINARY_SUFFIXES):
        return True
    return bool(accept) and "image/" in accept


def filter_request_headers(
    headers: Iterable[Tuple[str, str]], upstream_host: str
) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers and pin Host and User-Agent.

    Args:
        headers: Inbound (name, value) pairs.
        upstream_host: ``host[:port]`` of the upstream origin.

    Returns:
        Header pairs to send upstream.
    """
    forwarded = [
        (name, value)
        for name, value in headers
        if name.lower() not in _HOP_BY_HOP
        and name.lower() not in ("user-agent", "accept-encoding")
    ]
    forwarded.append(("Host", upstream_host))
    forwarded.append(("User-Agent", BROWSER_USER_AGENT))
    # Only encodings httpx can always decode
    forwarded.append(("Accept-Encoding", "gzip, deflate"))
    return forwarded


class UpstreamFetcher:
    """Issues a single HTTP request per call against the upstream origin."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        parts = urlsplit(self.base_url)
        self.origin = "{}://{}".format(parts.scheme, parts.netloc)
        self.host = parts.netloc
        self.hostname = parts.hostname or ""
        self._timeout = timeout
        self._transport = transport

    async def fetch(
        self,
        method: str,
        path: str,
        query: Union[Mapping[str, str], List[Tuple[str, str]], None] = None,
        headers: Iterable[Tuple[str, str]] = (),
        body: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        """Forward a request to upstream and return its raw response.

        Args:
            method: HTTP method.
            path: Upstream path (leading slash).
            query: Query parameters.
            headers: Inbound header pairs; filtered before forwarding.
            body: Raw request body, if any.
            timeout: Per-call override of the default timeout.

        Returns:
            The unmodified upstream response.

        Raises:
            FetchError: On timeout or network failure.
        """
        url = "{}{}".format(self.base_url, path)
        header_list = list(headers)
        accept = next((v for k, v in header_list if k.lower() == "accept"), None)
        binary = is_binary_request(path, accept)

        try:
            async with httpx.AsyncClient(
                timeout=timeout or self._timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                resp = await client.request(
                    method,
                    url,
                    params=query,
                    headers=filter_request_headers(header_list, self.host),
                    content=body or None,
                )
        except httpx.TimeoutException as exc:
            _logger.warning("Upstream timeout: %s %s", method, url)
            raise FetchError("timeout", url, str(exc) or type(exc).__name__) from exc
        except httpx.HTTPError as exc:
            _logger.warning("Upstream network error: %s %s: %s", method, url, exc)
            raise FetchError("network", url, str(exc) or type(exc).__name__) from exc

        return UpstreamResponse(
            status_code=resp.status_code,
            headers=resp.headers,
            content=resp.content,
            binary=binary,
            encoding=None if binary else resp.encoding,
        )
