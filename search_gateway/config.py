"""Configuration loader for the search summarization gateway.

Reads a YAML config file (JSON is accepted as well) describing the upstream
search engine, the completion provider, the optional query classifier and
the summarization policy. API keys are resolved from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

ENGINE_NAMES = ("searxng", "4get")
PROVIDER_KINDS = ("chat", "generate")
SUMMARY_MODES = ("manual", "auto", "smart")

DEFAULT_EXCLUDE_WORDS = [
    "github",
    "gitlab",
    "download",
    "repository",
    "repo",
    "link",
    "url",
    "tool",
    "software",
    "program",
    "app",
    "library",
    "framework",
]

DEFAULT_OVERRIDE_WORDS = [
    "what",
    "why",
    "how",
    "when",
    "where",
    "who",
    "which",
    "can",
    "will",
    "would",
    "could",
    "should",
    "is",
    "are",
    "was",
    "were",
    "do",
    "does",
    "did",
    "example",
    "explain",
    "simplify",
    "eli5",
]


@dataclass
class EngineConfig:
    """The upstream search engine being proxied."""

    name: str = "searxng"
    url: str = "http://localhost:8888"


@dataclass
class ProviderConfig:
    """Configuration for a completion backend."""

    kind: str = "chat"
    name: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = ""
    model: str = ""
    temperature: float = 0.6
    max_tokens: int = 750
    stop: List[str] = field(default_factory=list)
    timeout: float = 120.0

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        if not self.api_key_env:
            return None
        return os.getenv(self.api_key_env)

    @property
    def requires_api_key(self) -> bool:
        """Return True if this backend authenticates with a bearer key."""
        return bool(self.api_key_env)

    @property
    def model_display_name(self) -> str:
        """Short model name for display, e.g. "gpt-4o" for "openai/gpt-4o"."""
        if "/" in self.model:
            return self.model.split("/", 1)[1] or "AI"
        return self.model or "AI"


@dataclass
class SummaryConfig:
    """Summarization policy parameters."""

    mode: str = "auto"
    min_keywords: int = 3
    min_results: int = 3
    exclude_words: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_WORDS)
    )
    override_words: List[str] = field(
        default_factory=lambda: list(DEFAULT_OVERRIDE_WORDS)
    )
    max_results: int = 5
    rate_limit_ms: int = 1000


@dataclass
class RateLimitConfig:
    """Per-client limit applied to the summary API."""

    requests: int = 30
    window_seconds: float = 900.0


@dataclass
class ServerConfig:
    """Listen address for the gateway process."""

    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    classifier: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(timeout=20.0)
    )
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    trust_proxy: bool = True
    modify_csp_headers: bool = False
    upstream_timeout: float = 30.0
    autocomplete_timeout: float = 10.0
    log_file: str = "logs/gateway.log"
    log_level: str = "INFO"
    templates_dir: Optional[str] = None


def _provider_from_dict(
    raw: Dict[str, Any], section: str, default_timeout: float
) -> ProviderConfig:
    kind = raw.get("kind", "chat")
    if kind not in PROVIDER_KINDS:
        raise ValueError(
            "Unknown {}.kind '{}' (expected one of: {})".format(
                section, kind, ", ".join(PROVIDER_KINDS)
            )
        )
    if kind == "chat":
        default_name, default_url = "openrouter", "https://openrouter.ai/api/v1"
    else:
        default_name, default_url = "ollama", "http://localhost:11434"
    return ProviderConfig(
        kind=kind,
        name=raw.get("name", default_name),
        base_url=raw.get("base_url", default_url).rstrip("/"),
        api_key_env=raw.get("api_key_env", ""),
        model=raw.get("model", ""),
        temperature=float(raw.get("temperature", 0.6)),
        max_tokens=int(raw.get("max_tokens", 750)),
        stop=list(raw.get("stop", [])),
        timeout=float(raw.get("timeout", default_timeout)),
    )


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a YAML (or JSON) file.

    Args:
        path: Path to the config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a mapping at the top level")

    engine_raw = raw.get("engine", {})
    engine = EngineConfig(
        name=engine_raw.get("name", "searxng"),
        url=engine_raw.get("url", "http://localhost:8888").rstrip("/"),
    )
    if engine.name not in ENGINE_NAMES:
        raise ValueError(
            "Unknown engine.name '{}' (expected one of: {})".format(
                engine.name, ", ".join(ENGINE_NAMES)
            )
        )

    summary_raw = raw.get("summary", {})
    summary = SummaryConfig(
        mode=summary_raw.get("mode", "auto"),
        min_keywords=int(summary_raw.get("min_keywords", 3)),
        min_results=int(summary_raw.get("min_results", 3)),
        exclude_words=[
            w.lower() for w in summary_raw.get("exclude_words", DEFAULT_EXCLUDE_WORDS)
        ],
        override_words=[
            w.lower()
            for w in summary_raw.get("override_words", DEFAULT_OVERRIDE_WORDS)
        ],
        max_results=int(summary_raw.get("max_results", 5)),
        rate_limit_ms=int(summary_raw.get("rate_limit_ms", 1000)),
    )
    if summary.mode not in SUMMARY_MODES:
        raise ValueError(
            "Unknown summary.mode '{}' (expected one of: {})".format(
                summary.mode, ", ".join(SUMMARY_MODES)
            )
        )

    rate_limit_raw = raw.get("rate_limit", {})
    rate_limit = RateLimitConfig(
        requests=int(rate_limit_raw.get("requests", 30)),
        window_seconds=float(rate_limit_raw.get("window_seconds", 900)),
    )

    server_raw = raw.get("server", {})
    server = ServerConfig(
        host=server_raw.get("host", "0.0.0.0"),
        port=int(server_raw.get("port", 3000)),
    )

    return GatewayConfig(
        engine=engine,
        provider=_provider_from_dict(raw.get("provider", {}), "provider", 120.0),
        classifier=_provider_from_dict(
            raw.get("classifier", {}), "classifier", 20.0
        ),
        summary=summary,
        rate_limit=rate_limit,
        server=server,
        trust_proxy=raw.get("trust_proxy", True),
        modify_csp_headers=raw.get("modify_csp_headers", False),
        upstream_timeout=float(raw.get("upstream_timeout", 30)),
        autocomplete_timeout=float(raw.get("autocomplete_timeout", 10)),
        log_file=raw.get("log_file", "logs/gateway.log"),
        log_level=raw.get("log_level", "INFO"),
        templates_dir=raw.get("templates_dir"),
    )
