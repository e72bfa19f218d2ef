"""Result extraction from upstream search-results pages.

Parses an HTML results page into an ordered list of ``SearchResult``
records using an engine's ``EngineSchema``. Cards missing a title or a URL
are dropped; that is filtering, not an error.
"""

import calendar
import re
from datetime import datetime, timedelta
from typing import List, Optional

from bs4 import BeautifulSoup, Tag

from search_gateway.models import DATE_UNKNOWN, SearchResult
from search_gateway.schemas import EngineSchema

_RELATIVE_DATE = re.compile(
    r"\b(\d+|an?|one)\s+(second|sec|minute|min|hour|hr|day|week|month|year)s?\s+ago\b"
)

_ABSOLUTE_FORMATS = (
    "%Y-%m-%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %y",
    "%B %d, %y",
    "%d %b %y",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d.%m.%Y",
    "%d.%m.%y",
)

_UNIT_SECONDS = {
    "second": 1,
    "sec": 1,
    "minute": 60,
    "min": 60,
    "hour": 3600,
    "hr": 3600,
    "day": 86400,
    "week": 7 * 86400,
}


def format_date(value: datetime) -> str:
    """Render a date as ``Month Day, Year`` (e.g. "January 5, 2024")."""
    return "{:%B} {}, {}".format(value, value.day, value.year)


def _shift_months(value: datetime, months: int) -> datetime:
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    day = min(value.day, calendar.monthrange(year, month + 1)[1])
    return value.replace(year=year, month=month + 1, day=day)


def parse_published_date(raw: Optional[str], now: Optional[datetime] = None) -> str:
    """Normalize an upstream date string to ``Month Day, Year``.

    Understands relative phrases ("2 hours ago", "yesterday"), ISO dates and
    the common absolute formats, including two-digit years. Relative values
    are computed against ``now`` (wall clock when omitted).

    Args:
        raw: Date text as found in the result card, or None.
        now: Reference time for relative phrases.

    Returns:
        The normalized date, or ``DATE_UNKNOWN`` if absent or unparseable.
    """
    if not raw:
        return DATE_UNKNOWN

    now = now or datetime.now()
    text = " ".join(raw.split()).strip().lower()
    # "Published date: Jan 5, 2024" and similar labels
    if ":" in text and not text[:4].isdigit():
        text = text.split(":", 1)[1].strip()
    text = text.strip(" .-|")
    if not text:
        return DATE_UNKNOWN

    if text in ("just now", "now", "today"):
        return format_date(now)
    if text == "yesterday":
        return format_date(now - timedelta(days=1))

    match = _RELATIVE_DATE.search(text)
    if match:
        amount_raw, unit = match.groups()
        amount = 1 if amount_raw in ("a", "an", "one") else int(amount_raw)
        if unit == "month":
            return format_date(_shift_months(now, amount))
        if unit == "year":
            return format_date(_shift_months(now, amount * 12))
        return format_date(now - timedelta(seconds=amount * _UNIT_SECONDS[unit]))

    try:
        return format_date(datetime.fromisoformat(text.upper().replace("Z", "+00:00")))
    except ValueError:
        pass

    candidate = text.title()
    for fmt in _ABSOLUTE_FORMATS:
        try:
            return format_date(datetime.strptime(candidate, fmt))
        except ValueError:
            continue

    return DATE_UNKNOWN


def _text(card: Tag, selector: str) -> str:
    el = card.select_one(selector)
    return el.get_text(" ", strip=True) if el else ""


def _date_text(card: Tag, selector: str) -> Optional[str]:
    el = card.select_one(selector)
    if el is None:
        return None
    return el.get("datetime") or el.get_text(" ", strip=True)


def extract_results(
    html: str, schema: EngineSchema, now: Optional[datetime] = None
) -> List[SearchResult]:
    """Extract result cards from a search-results page.

    Args:
        html: The upstream HTML document.
        schema: Engine schema describing the card structure.
        now: Reference time for relative dates (wall clock when omitted).

    Returns:
        Results in upstream ranking order. Cards without both a non-empty
        title and a URL are skipped.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    now = now or datetime.now()
    results: List[SearchResult] = []

    for card in soup.select(schema.result_selector):
        title = _text(card, schema.title_selector)
        link = card.select_one(schema.link_selector)
        url = (link.get("href") or "").strip() if link else ""
        if not title or not url:
            continue

        results.append(
            SearchResult(
                title=title,
                url=url,
                snippet=_text(card, schema.snippet_selector),
                published_at=parse_published_date(
                    _date_text(card, schema.date_selector), now
                ),
            )
        )

    return results
