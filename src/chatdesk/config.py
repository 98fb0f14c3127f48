"""Settings for chatdesk.

Config discovery (first match wins):
  1. explicit path
  2. ``./chatdesk.yaml``
  3. ``~/.config/chatdesk/config.yaml``
  4. Built-in defaults

API keys left empty in the file are filled from ``ANTHROPIC_API_KEY`` /
``OPENAI_API_KEY``; ``OLLAMA_HOST`` overrides the local endpoint.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from chatdesk.types import Provider

_logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful, harmless, and honest AI assistant."

DEFAULT_URLS: dict[Provider, str] = {
    Provider.CLAUDE: "https://api.anthropic.com/v1",
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.OLLAMA: "http://localhost:11434",
}

_ENV_KEYS: dict[Provider, str] = {
    Provider.CLAUDE: "ANTHROPIC_API_KEY",
    Provider.OPENAI: "OPENAI_API_KEY",
}


class ConfigError(ValueError):
    """Raised when a settings value is out of range."""


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderSpec:
    """Credential and endpoint for one provider."""

    api_key: str = ""
    url: str = ""


def _default_providers() -> dict[Provider, ProviderSpec]:
    return {p: ProviderSpec(url=url) for p, url in DEFAULT_URLS.items()}


@dataclass
class ChatConfig:
    """Top-level settings."""

    provider: Provider = Provider.CLAUDE
    model: str = "claude-3-sonnet-20240229"
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Transport
    retry_attempts: int = 3
    timeout: float = 30.0

    # Minimum milliseconds between store flushes of a streaming message
    stream_rate_limit_ms: int = 50

    db_path: str = "~/.chatdesk/chatdesk.db"

    providers: dict[Provider, ProviderSpec] = field(default_factory=_default_providers)

    def spec(self, provider: Provider | str) -> ProviderSpec:
        p = Provider.parse(provider)
        if p not in self.providers:
            self.providers[p] = ProviderSpec(url=DEFAULT_URLS[p])
        return self.providers[p]

    def api_key(self, provider: Provider | str) -> str:
        return self.spec(provider).api_key

    def url(self, provider: Provider | str) -> str:
        p = Provider.parse(provider)
        return self.spec(p).url or DEFAULT_URLS[p]

    @property
    def ollama_endpoint(self) -> str:
        return self.url(Provider.OLLAMA)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "system_prompt": self.system_prompt,
            "retry_attempts": self.retry_attempts,
            "timeout": self.timeout,
            "stream_rate_limit_ms": self.stream_rate_limit_ms,
            "db_path": self.db_path,
            "providers": {
                p.value: {"api_key": s.api_key, "url": s.url}
                for p, s in self.providers.items()
            },
        }

    def updated(self, **changes: Any) -> ChatConfig:
        """Return a validated copy with *changes* applied."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
        raw = self.to_dict()
        for k, v in changes.items():
            if k == "provider":
                v = Provider.parse(v).value
            elif k == "providers":
                v = {
                    Provider.parse(p).value: (
                        {"api_key": s.api_key, "url": s.url}
                        if isinstance(s, ProviderSpec) else s
                    )
                    for p, s in v.items()
                }
            raw[k] = v
        cfg = _from_raw(raw)
        validate_config(cfg)
        return cfg


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_config(cfg: ChatConfig) -> None:
    """Check value ranges.  Raises ``ConfigError`` on the first violation."""
    if not cfg.model:
        raise ConfigError("model must not be empty")
    if not 0 <= cfg.temperature <= 2:
        raise ConfigError(f"temperature must be within 0..2, got {cfg.temperature}")
    if not 1 <= cfg.max_tokens <= 128000:
        raise ConfigError(f"max_tokens must be within 1..128000, got {cfg.max_tokens}")
    if not 0 <= cfg.retry_attempts <= 10:
        raise ConfigError(
            f"retry_attempts must be within 0..10, got {cfg.retry_attempts}"
        )
    if not 10 <= cfg.stream_rate_limit_ms <= 1000:
        raise ConfigError(
            f"stream_rate_limit_ms must be within 10..1000, got {cfg.stream_rate_limit_ms}"
        )
    if cfg.timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {cfg.timeout}")
    endpoint = urlparse(cfg.ollama_endpoint)
    if endpoint.scheme not in ("http", "https") or not endpoint.netloc:
        raise ConfigError(f"Invalid ollama endpoint: {cfg.ollama_endpoint!r}")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chatdesk.yaml"),
    Path.home() / ".config" / "chatdesk" / "config.yaml",
]


def _parse_providers(raw: dict[str, Any] | None) -> dict[Provider, ProviderSpec]:
    providers = _default_providers()
    for name, praw in (raw or {}).items():
        try:
            p = Provider.parse(name)
        except ValueError:
            _logger.warning("Ignoring unknown provider in config: %s", name)
            continue
        praw = praw or {}
        providers[p] = ProviderSpec(
            api_key=str(praw.get("api_key", "") or ""),
            url=str(praw.get("url", "") or DEFAULT_URLS[p]),
        )
    return providers


def _from_raw(raw: dict[str, Any]) -> ChatConfig:
    defaults = ChatConfig()
    try:
        return ChatConfig(
            provider=Provider.parse(raw.get("provider", defaults.provider)),
            model=str(raw.get("model", defaults.model)),
            temperature=float(raw.get("temperature", defaults.temperature)),
            max_tokens=int(raw.get("max_tokens", defaults.max_tokens)),
            system_prompt=str(raw.get("system_prompt", defaults.system_prompt) or ""),
            retry_attempts=int(raw.get("retry_attempts", defaults.retry_attempts)),
            timeout=float(raw.get("timeout", defaults.timeout)),
            stream_rate_limit_ms=int(
                raw.get("stream_rate_limit_ms", defaults.stream_rate_limit_ms)
            ),
            db_path=str(raw.get("db_path", defaults.db_path)),
            providers=_parse_providers(raw.get("providers")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from e


def _apply_env(cfg: ChatConfig) -> None:
    for provider, var in _ENV_KEYS.items():
        value = os.environ.get(var)
        if value and not cfg.api_key(provider):
            cfg.spec(provider).api_key = value
    host = os.environ.get("OLLAMA_HOST")
    if host:
        if "://" not in host:
            host = f"http://{host}"
        cfg.spec(Provider.OLLAMA).url = host


def load_config(path: str | Path | None = None) -> ChatConfig:
    """Load settings from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Raises
    ------
    FileNotFoundError
        If an explicit *path* does not exist.
    ConfigError
        If a value is out of range.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    raw: dict[str, Any] = {}
    if config_path is None:
        _logger.info("No config file found, using defaults")
    else:
        _logger.info("Loading config from %s", config_path)
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")

    cfg = _from_raw(raw)
    _apply_env(cfg)
    validate_config(cfg)
    return cfg


def save_config(cfg: ChatConfig, path: str | Path) -> Path:
    """Write *cfg* to *path* as YAML and return the resolved path."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w") as f:
        yaml.safe_dump(cfg.to_dict(), f, sort_keys=False)
    _logger.debug("Saved config to %s", target)
    return target
