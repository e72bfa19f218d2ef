"""Summary widget template cache.

Templates are opaque HTML strings; the injector only substitutes
placeholders into them. They are read from disk once and shared by all
requests.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Union

_logger = logging.getLogger("search_gateway.templates")

PACKAGED_TEMPLATES = Path(__file__).resolve().parent / "templates"

TEMPLATE_FILES = {
    "searxng": "summary-searxng.html",
    "4get": "summary-4get.html",
}

FALLBACK_TEMPLATE = "<div>Template loading error</div>"


class TemplateStore:
    """Thread-safe cache of the summary templates for every engine."""

    def __init__(
        self, engine_name: str, directory: Optional[Union[str, Path]] = None
    ) -> None:
        self.engine_name = engine_name
        self.directory = Path(directory) if directory else PACKAGED_TEMPLATES
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self) -> bool:
        """(Re)read every engine's template from disk.

        Returns:
            True if all templates loaded. On failure the affected engines
            fall back to a placeholder fragment and the error is logged.
        """
        loaded: Dict[str, str] = {}
        ok = True
        for engine, filename in TEMPLATE_FILES.items():
            path = self.directory / filename
            try:
                loaded[engine] = path.read_text(encoding="utf-8")
            except OSError as exc:
                _logger.error("Error loading summary template %s: %s", path, exc)
                loaded[engine] = FALLBACK_TEMPLATE
                ok = False

        with self._lock:
            self._cache = loaded
        _logger.info("Summary templates loaded for %s", self.engine_name)
        return ok

    def get(self) -> str:
        """Return the active engine's template, loading lazily."""
        with self._lock:
            template = self._cache.get(self.engine_name)
        if template is None:
            self.load()
            with self._lock:
                template = self._cache.get(self.engine_name, FALLBACK_TEMPLATE)
        return template

    def reload(self) -> bool:
        """Force a re-read of all templates from disk."""
        return self.load()
