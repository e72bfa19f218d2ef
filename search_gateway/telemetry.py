"""Logging and telemetry for the search summarization gateway.

Emits structured log records to stdout and appends them to an append-only
log file for local review.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("search_gateway")


def setup_logging(log_file: str, level: str = "INFO") -> None:
    """Configure the gateway logger with stdout and file handlers.

    Child loggers (``search_gateway.provider`` and friends) propagate to
    these handlers.

    Args:
        log_file: Path to the append-only log file.
        level: Logging level name.
    """
    logger.setLevel(level.upper())

    if not logger.handlers:
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

        stdout_handler = logging.StreamHandler()
        stdout_handler.setFormatter(fmt)
        logger.addHandler(stdout_handler)

        # File handler (append-only)
        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)


def log_event(
    event: str,
    *,
    outcome: str,
    request_id: Optional[str] = None,
    query: Optional[str] = None,
    error: Optional[str] = None,
    **fields: Any
) -> None:
    """Log a single gateway event as one JSON line.

    Args:
        event: Event name (e.g. "search_page", "summary_stream").
        outcome: Short outcome label (e.g. "injected", "skipped", "error").
        request_id: Gateway-assigned request ID.
        query: The search query the event relates to.
        error: Error message if the event describes a failure.
        **fields: Extra event-specific fields, included verbatim.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "request_id": request_id,
        "outcome": outcome,
    }

    if query is not None:
        record["query"] = query

    record.update(fields)

    if error:
        record["error"] = error
        logger.warning(json.dumps(record))
    else:
        logger.info(json.dumps(record))
