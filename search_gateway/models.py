"""Data and wire models for the search summarization gateway."""

import json
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

DATE_UNKNOWN = "unknown"


class SearchResult(BaseModel):
    """One normalized upstream result card, in upstream ranking order."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    snippet: str = ""
    published_at: Optional[str] = None


class SummaryRequest(BaseModel):
    """Body of POST /api/summary, sent by the injected summary widget."""

    query: str = Field(..., min_length=1, description="The user's search query")
    results: List[SearchResult] = Field(
        ..., description="Results extracted from the search page"
    )


class CompletionChunk(BaseModel):
    """One line of the gateway's outbound NDJSON streaming protocol.

    Exactly one of ``content``, ``done`` or ``error`` is set.
    """

    content: Optional[str] = None
    done: bool = False
    error: Optional[str] = None

    def to_line(self) -> str:
        """Serialize as a single NDJSON line (trailing newline included)."""
        if self.error is not None:
            body = {"error": self.error}
        elif self.done:
            body = {"done": True}
        else:
            body = {"content": self.content or ""}
        return json.dumps(body) + "\n"


class ChatMessage(BaseModel):
    """A single role-tagged prompt segment."""

    role: str
    content: str


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
