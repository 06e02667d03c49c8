"""Configuration for reply-stream.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./reply_stream.yaml``
  3. ``~/.config/reply-stream/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from reply_stream.errors import ConfigError

_logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openrouter/auto"
EMPTY_REPLY_TEXT = "(empty reply)"
API_KEY_ENV = "OPENROUTER_API_KEY"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class EndpointSpec:
    """The OpenAI-compatible chat-completion endpoint."""

    url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    default_model: str = DEFAULT_MODEL
    extra_headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 120
    connect_timeout: float = 30
    read_timeout: float = 60

    def resolved_api_key(self) -> str:
        return self.api_key or os.environ.get(API_KEY_ENV, "")


@dataclass
class ReplyDefaults:
    """Per-request defaults."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool = True
    reasoning: bool = False
    system_prompt: str = ""
    history_window: int = 20  # 0 = whole transcript
    empty_reply_text: str = EMPTY_REPLY_TEXT


@dataclass
class ReplyStreamConfig:
    """Top-level config."""

    endpoint: EndpointSpec = field(default_factory=EndpointSpec)
    defaults: ReplyDefaults = field(default_factory=ReplyDefaults)

    # Reasoning flag and transcript persistence
    settings_path: str = "~/.config/reply-stream/settings.yaml"
    transcript_db: str = "~/.reply_stream/transcripts.db"


def resolve_model_id(
    default: str | None,
    selected: str | None = None,
    override: str | None = None,
) -> str:
    """Pick the model id: override, then selected, then default."""
    for candidate in (override, selected, default):
        normalized = (candidate or "").strip()
        if normalized:
            return normalized
    return DEFAULT_MODEL


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./reply_stream.yaml"),
    Path.home() / ".config" / "reply-stream" / "config.yaml",
]


def _pick(cls: type, raw: dict[str, Any] | None) -> dict[str, Any]:
    """Keep only keys that are fields of *cls* and not None."""
    if not raw:
        return {}
    return {
        k: v for k, v in raw.items()
        if v is not None and k in cls.__dataclass_fields__
    }


def load_config(path: str | Path | None = None) -> tuple[ReplyStreamConfig, Path | None]:
    """Load configuration from YAML.

    Returns the config and the file it was read from (``None`` for
    built-in defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return ReplyStreamConfig(), None
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return ReplyStreamConfig(), None

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    endpoint = EndpointSpec(**_pick(EndpointSpec, raw.get("endpoint")))
    defaults = ReplyDefaults(**_pick(ReplyDefaults, raw.get("defaults")))
    top = {
        k: raw[k] for k in ("settings_path", "transcript_db")
        if raw.get(k) is not None
    }
    return ReplyStreamConfig(endpoint=endpoint, defaults=defaults, **top), config_path
