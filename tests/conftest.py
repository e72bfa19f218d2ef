"""Shared test fixtures for the search summarization gateway tests."""

from pathlib import Path
from typing import Dict, Optional

import pytest
import yaml

from search_gateway.config import GatewayConfig, load_config
from search_gateway.models import SearchResult

SEARXNG_PAGE = """<!DOCTYPE html>
<html>
<head><title>rust async runtime comparison - SearXNG</title></head>
<body>
<form id="search" action="/search" method="POST"><input name="q"></form>
<div id="results">
  <div id="urls">
    <article class="result">
      <h3><a href="https://tokio.rs/">Tokio - An asynchronous Rust runtime</a></h3>
      <p class="content">Tokio is an <b>event-driven</b>, non-blocking I/O platform.</p>
      <time datetime="2024-01-05">Jan 5, 2024</time>
    </article>
    <article class="result">
      <h3><a href="https://async.rs/">async-std</a></h3>
      <p class="content">Async version of the Rust standard library.</p>
      <span class="published_date">Published date: Mar 2, 2023</span>
    </article>
    <article class="result">
      <h3><a href="https://smol.rs/">smol</a></h3>
    </article>
    <article class="result">
      <h3><a href="">Broken card without a link</a></h3>
      <p class="content">Should be skipped.</p>
    </article>
    <article class="result">
      <p class="content">Card without a title.</p>
    </article>
  </div>
  <a href="/search?q=rust&amp;pageno=2">Next page</a>
</div>
</body>
</html>
"""

FOURGET_PAGE = """<!DOCTYPE html>
<html>
<head><title>4get</title></head>
<body>
<form action="/web" method="GET"><input name="s"></form>
<div class="left">
  <div class="text-result">
    <a class="hover" href="https://docs.python.org/3/library/asyncio.html">
      <div class="title">asyncio - Asynchronous I/O</div>
    </a>
    <div class="description">asyncio is a library to write concurrent code.</div>
    <span class="date">2 days ago</span>
  </div>
  <div class="text-result">
    <a class="hover" href="https://realpython.com/async-io-python/">
      <div class="title">Async IO in Python: A Complete Walkthrough</div>
    </a>
    <div class="description">A complete walkthrough of async IO.</div>
  </div>
  <div class="text-result">
    <a class="hover" href="https://peps.python.org/pep-0492/">
      <div class="title">PEP 492</div>
    </a>
  </div>
</div>
<img src="/proxy?i=https%3A%2F%2Fexample.com%2Fa.png">
</body>
</html>
"""


def make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "engine": {"name": "searxng", "url": "http://searx.internal:8888"},
        "provider": {
            "kind": "chat",
            "name": "openrouter",
            "base_url": "https://llm.example.com/api/v1",
            "api_key_env": "TEST_API_KEY",
            "model": "vendor/test-model",
        },
        "classifier": {
            "kind": "chat",
            "base_url": "https://llm.example.com/api/v1",
            "api_key_env": "TEST_API_KEY",
            "model": "vendor/classifier-model",
        },
        "summary": {"mode": "auto", "min_keywords": 3, "min_results": 3},
        "rate_limit": {"requests": 5, "window_seconds": 900},
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key] = {**config[key], **value}
            else:
                config[key] = value

    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return str(path)


@pytest.fixture()
def config_factory(tmp_path: Path):
    """Return a writer for test configs with per-test overrides."""
    return lambda overrides=None: make_config(tmp_path, overrides)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def sample_results() -> list:
    """Three well-formed results."""
    return [
        SearchResult(
            title="Tokio",
            url="https://tokio.rs/",
            snippet="An asynchronous Rust runtime.",
            published_at="January 5, 2024",
        ),
        SearchResult(
            title="async-std",
            url="https://async.rs/",
            snippet="",
            published_at="unknown",
        ),
        SearchResult(title="smol", url="https://smol.rs/", snippet="A small runtime."),
    ]


@pytest.fixture()
def searxng_page() -> str:
    """A SearXNG results page with three usable cards and two broken ones."""
    return SEARXNG_PAGE


@pytest.fixture()
def fourget_page() -> str:
    """A 4get web results page with three cards."""
    return FOURGET_PAGE
