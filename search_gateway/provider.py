"""Completion providers for summary generation.

Two backend families sit behind the same ``CompletionProvider`` interface:

- ``ChatStyleProvider``: OpenAI-compatible ``/chat/completions`` (OpenRouter,
  OpenAI, vLLM, ...). Role-tagged messages in, server-sent events out, each
  ``data:`` line carrying ``choices[0].delta.content`` until ``[DONE]``.
- ``GenerateStyleProvider``: Ollama-style ``/api/generate``. A flat prompt
  in, one JSON object per line out, each carrying ``response`` and a
  ``done`` flag plus token counts on the last line.

Both are normalized into the gateway's ``CompletionChunk`` protocol.
"""

import abc
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Type

import httpx

from search_gateway.config import ProviderConfig
from search_gateway.models import ChatMessage, CompletionChunk, SearchResult
from search_gateway.prompts import chat_messages, flat_prompt, format_results

_logger = logging.getLogger("search_gateway.provider")

APP_TITLE = "Search Results Summarizer"


class ProviderError(Exception):
    """A completion backend failed or is not usable.

    Attributes:
        status_code: HTTP status the gateway should answer with.
        code: Machine-readable error code.
        message: Human-readable description.
    """

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


@dataclass
class ProviderRequest:
    """One outbound completion request, built fresh per call."""

    model: str
    messages: List[ChatMessage] = field(default_factory=list)
    prompt: Optional[str] = None
    system: Optional[str] = None
    temperature: float = 0.6
    max_tokens: Optional[int] = None
    stop: List[str] = field(default_factory=list)
    stream: bool = True
    tools: List[Dict[str, Any]] = field(default_factory=list)
    tool_choice: Optional[Dict[str, Any]] = None
    response_format: Optional[Dict[str, Any]] = None


@dataclass
class StreamEvent:
    """One parsed line of provider output."""

    content: str = ""
    done: bool = False
    error: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


class LineBuffer:
    """Reassembles lines from arbitrarily split transport reads.

    A read boundary need not align with a line boundary, so any trailing
    partial line is held until the next ``feed`` completes it.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        """Add a piece of text and return every line it completes."""
        self._pending += text
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def flush(self) -> str:
        """Return and clear whatever partial line remains."""
        tail, self._pending = self._pending.rstrip("\r"), ""
        return tail


async def iter_lines(pieces: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield complete, non-blank lines from a stream of text pieces."""
    buffer = LineBuffer()
    async for piece in pieces:
        for line in buffer.feed(piece):
            if line.strip():
                yield line
    tail = buffer.flush()
    if tail.strip():
        yield tail


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    detail = resp.text[:200] if resp.is_stream_consumed else ""
    suffix = ": {}".format(detail) if detail else ""
    if resp.status_code == 429:
        raise ProviderError(
            429, "provider_rate_limited", "Provider rate limit exceeded" + suffix
        )
    if resp.status_code in (401, 403):
        raise ProviderError(
            502,
            "provider_auth_error",
            "Provider rejected credentials ({}){}".format(resp.status_code, suffix),
        )
    if resp.status_code in (502, 503, 504):
        raise ProviderError(
            resp.status_code,
            "provider_upstream_error",
            "Provider returned {}{}".format(resp.status_code, suffix),
        )
    raise ProviderError(
        502,
        "provider_error",
        "Provider returned {}{}".format(resp.status_code, suffix),
    )


def _transport_error(exc: httpx.HTTPError) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(
            503, "provider_timeout", "Provider request timed out: {}".format(exc)
        )
    return ProviderError(
        502,
        "provider_connection_error",
        "Cannot reach provider: {}".format(str(exc) or type(exc).__name__),
    )


class CompletionProvider(abc.ABC):
    """Interface shared by every completion backend.

    Subclasses describe their wire format (URL, payload, line parsing); this
    base class owns the HTTP exchange and the chunk protocol.
    """

    kind = ""
    path = ""

    def __init__(
        self,
        config: ProviderConfig,
        max_results: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.max_results = max_results
        self._transport = transport

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def url(self) -> str:
        return "{}{}".format(self.config.base_url.rstrip("/"), self.path)

    def check_configured(self) -> None:
        """Fail fast, before any network call, on missing model or key.

        Raises:
            ProviderError: With code ``configuration_error``.
        """
        if not self.config.model:
            raise ProviderError(
                400,
                "configuration_error",
                "No model configured for provider '{}'.".format(self.name),
            )
        if self.config.requires_api_key and not self.config.api_key:
            raise ProviderError(
                400,
                "configuration_error",
                "API key missing for provider '{}' (set {}).".format(
                    self.name, self.config.api_key_env
                ),
            )

    def headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.config.api_key
        if api_key:
            headers["Authorization"] = "Bearer {}".format(api_key)
        return headers

    @abc.abstractmethod
    def build_request(
        self,
        query: str,
        results: Sequence[SearchResult],
        today: Optional[date] = None,
    ) -> ProviderRequest:
        """Build the summary request for ``query`` over ``results``."""

    @abc.abstractmethod
    def classification_request(
        self, system_prompt: str, query: str, function: Dict[str, Any]
    ) -> ProviderRequest:
        """Build a single-shot structured request asking for ``function``'s arguments."""

    @abc.abstractmethod
    def payload(self, request: ProviderRequest) -> Dict[str, Any]:
        """Serialize a request into this backend's JSON body."""

    @abc.abstractmethod
    def parse_line(self, line: str) -> Optional[StreamEvent]:
        """Parse one line of streamed output.

        Returns None for lines that carry nothing (keep-alives, comments).

        Raises:
            ValueError: If the line is not valid for this wire format.
        """

    @abc.abstractmethod
    def parse_classification(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Extract the structured arguments from a non-streaming response.

        Raises:
            ProviderError: If the response does not carry them.
        """

    async def events(self, pieces: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        """Parse raw text pieces into events, skipping malformed lines."""
        async for line in iter_lines(pieces):
            try:
                event = self.parse_line(line)
            except ValueError as exc:
                _logger.warning(
                    "Skipping malformed line from %s (%s): %.200s", self.name, exc, line
                )
                continue
            if event is not None:
                yield event

    async def stream_completion(
        self,
        query: str,
        results: Sequence[SearchResult],
        referer: Optional[str] = None,
        today: Optional[date] = None,
    ) -> AsyncIterator[CompletionChunk]:
        """Stream a summary of ``results`` for ``query`` as protocol chunks.

        Errors up to and including the provider's response status are
        raised, so callers can still answer with a structured error. Once
        the provider stream is open, failures become a terminal error
        chunk. The stream always ends with exactly one ``done`` or
        ``error`` chunk; a provider that closes without a completion signal
        gets a synthesized ``done``.

        Raises:
            ProviderError: Configuration, connection or HTTP status errors.
        """
        self.check_configured()
        request = self.build_request(query, results, today)
        opened = False
        chunk_count = 0

        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport
            ) as client:
                async with client.stream(
                    "POST",
                    self.url,
                    json=self.payload(request),
                    headers=self.headers(referer),
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        _raise_for_status(resp)
                    opened = True
                    _logger.info(
                        "Stream started (%s, %s)", self.name, self.config.model
                    )

                    async for event in self.events(resp.aiter_text()):
                        if event.error:
                            _logger.warning(
                                "Provider %s reported an error mid-stream: %s",
                                self.name,
                                event.error,
                            )
                            yield CompletionChunk(error=event.error)
                            return
                        if event.content:
                            chunk_count += 1
                            yield CompletionChunk(content=event.content)
                        if event.usage:
                            _logger.info("Token usage (%s): %s", self.name, event.usage)
                        if event.done:
                            _logger.info("Stream completed (%d chunks)", chunk_count)
                            yield CompletionChunk(done=True)
                            return
        except httpx.HTTPError as exc:
            error = _transport_error(exc)
            if not opened:
                raise error from exc
            _logger.warning("Stream failed after %d chunks: %s", chunk_count, error)
            yield CompletionChunk(error=error.message)
            return

        _logger.warning(
            "Stream ended without a completion signal (%d chunks)", chunk_count
        )
        yield CompletionChunk(done=True)

    async def classify(
        self, system_prompt: str, query: str, function: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Run a single-shot structured call and return its arguments.

        Raises:
            ProviderError: On configuration, transport, status or format errors.
        """
        self.check_configured()
        request = self.classification_request(system_prompt, query, function)
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    self.url, json=self.payload(request), headers=self.headers()
                )
        except httpx.HTTPError as exc:
            raise _transport_error(exc) from exc

        _raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                502, "malformed_response", "Provider returned non-JSON body"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                502, "malformed_response", "Provider returned a non-object body"
            )
        return self.parse_classification(data)


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ProviderError(
                502, "malformed_response", "Arguments are not valid JSON: {}".format(exc)
            ) from exc
    if not isinstance(raw, dict):
        raise ProviderError(
            502, "malformed_response", "Arguments are not a JSON object"
        )
    return raw


def _first_object(value: Any, what: str) -> Dict[str, Any]:
    """Return the first element of a JSON list (or {}), requiring an object.

    Raises:
        ValueError: If ``value`` is not a list or its first element is not an
            object.
    """
    if not value:
        return {}
    if not isinstance(value, list):
        raise ValueError("{} is not a list".format(what))
    first = value[0] or {}
    if not isinstance(first, dict):
        raise ValueError("{}[0] is not an object".format(what))
    return first


def _object(value: Any, what: str) -> Dict[str, Any]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ValueError("{} is not an object".format(what))
    return value


def _usage(value: Any) -> Optional[Dict[str, int]]:
    return value if isinstance(value, dict) else None


class ChatStyleProvider(CompletionProvider):
    """OpenAI-compatible chat/completions backend."""

    kind = "chat"
    path = "/chat/completions"

    def headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        headers = super().headers(referer)
        headers["X-Title"] = APP_TITLE
        if referer:
            headers["HTTP-Referer"] = referer
        return headers

    def build_request(
        self,
        query: str,
        results: Sequence[SearchResult],
        today: Optional[date] = None,
    ) -> ProviderRequest:
        sources = format_results(results, self.max_results)
        return ProviderRequest(
            model=self.config.model,
            messages=chat_messages(query, sources, self.config.max_tokens, today),
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            stop=list(self.config.stop),
        )

    def classification_request(
        self, system_prompt: str, query: str, function: Dict[str, Any]
    ) -> ProviderRequest:
        return ProviderRequest(
            model=self.config.model,
            messages=[
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(role="user", content=query),
            ],
            temperature=0.0,
            stream=False,
            tools=[{"type": "function", "function": function}],
            tool_choice={"type": "function", "function": {"name": function["name"]}},
        )

    def payload(self, request: ProviderRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": request.model,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": request.temperature,
            "stream": request.stream,
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.stop:
            body["stop"] = request.stop
        if request.tools:
            body["tools"] = request.tools
        if request.tool_choice:
            body["tool_choice"] = request.tool_choice
        return body

    def parse_line(self, line: str) -> Optional[StreamEvent]:
        line = line.strip()
        # SSE comments (": OPENROUTER PROCESSING") and non-data fields
        if line.startswith(":") or line.startswith(("event:", "id:", "retry:")):
            return None
        data = line[len("data:"):].strip() if line.startswith("data:") else line
        if data == "[DONE]":
            return StreamEvent(done=True)

        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("expected a JSON object")

        if parsed.get("error"):
            error = parsed["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return StreamEvent(error=message or "Unknown provider error")

        choice = _first_object(parsed.get("choices"), "choices")
        delta = _object(choice.get("delta"), "delta")
        content = delta.get("content") or choice.get("text") or ""
        if not isinstance(content, str):
            raise ValueError("content is not a string")
        return StreamEvent(content=content, usage=_usage(parsed.get("usage")))

    def parse_classification(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            choice = _first_object(data.get("choices"), "choices")
            message = _object(choice.get("message"), "message")
            tool_call = _first_object(message.get("tool_calls"), "tool_calls")
            function = _object(tool_call.get("function"), "function")
        except ValueError as exc:
            raise ProviderError(
                502, "malformed_response", "Unexpected response shape: {}".format(exc)
            ) from exc
        if function:
            return _parse_arguments(function.get("arguments"))
        if message.get("content"):
            return _parse_arguments(message["content"])
        raise ProviderError(
            502, "malformed_response", "No tool call in classification response"
        )


class GenerateStyleProvider(CompletionProvider):
    """Ollama-style /api/generate backend."""

    kind = "generate"
    path = "/api/generate"

    def build_request(
        self,
        query: str,
        results: Sequence[SearchResult],
        today: Optional[date] = None,
    ) -> ProviderRequest:
        sources = format_results(results, self.max_results)
        return ProviderRequest(
            model=self.config.model,
            prompt=flat_prompt(query, sources, self.config.max_tokens, today),
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            stop=list(self.config.stop) or ["\n\n\n"],
        )

    def classification_request(
        self, system_prompt: str, query: str, function: Dict[str, Any]
    ) -> ProviderRequest:
        return ProviderRequest(
            model=self.config.model,
            prompt=query,
            system=system_prompt,
            temperature=0.0,
            stream=False,
            response_format=function["parameters"],
        )

    def payload(self, request: ProviderRequest) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "temperature": request.temperature,
            "top_p": 0.9,
            "top_k": 40,
            "repeat_penalty": 1.1,
        }
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if request.stop:
            options["stop"] = request.stop
        body: Dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt or "",
            "stream": request.stream,
            "think": False,
            "options": options,
        }
        if request.system:
            body["system"] = request.system
        if request.response_format:
            body["format"] = request.response_format
        return body

    def parse_line(self, line: str) -> Optional[StreamEvent]:
        parsed = json.loads(line)
        if not isinstance(parsed, dict):
            raise ValueError("expected a JSON object")

        if parsed.get("error"):
            return StreamEvent(error=str(parsed["error"]))

        content = parsed.get("response") or ""
        if not isinstance(content, str):
            raise ValueError("response is not a string")
        if parsed.get("done"):
            prompt_tokens = parsed.get("prompt_eval_count") or 0
            completion_tokens = parsed.get("eval_count") or 0
            if not (
                isinstance(prompt_tokens, int) and isinstance(completion_tokens, int)
            ):
                raise ValueError("token counts are not integers")
            return StreamEvent(
                content=content,
                done=True,
                usage={
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                },
            )
        return StreamEvent(content=content)

    def parse_classification(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("error"):
            raise ProviderError(502, "provider_error", str(data["error"]))
        return _parse_arguments(data.get("response"))


_PROVIDERS: Dict[str, Type[CompletionProvider]] = {
    ChatStyleProvider.kind: ChatStyleProvider,
    GenerateStyleProvider.kind: GenerateStyleProvider,
}


def create_provider(
    config: ProviderConfig,
    max_results: int = 5,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CompletionProvider:
    """Instantiate the provider variant selected by ``config.kind``.

    Raises:
        ValueError: If the kind is unknown.
    """
    try:
        provider_cls = _PROVIDERS[config.kind]
    except KeyError:
        raise ValueError("Unknown provider kind '{}'".format(config.kind)) from None
    return provider_cls(config, max_results=max_results, transport=transport)
