"""Process-wide "extended reasoning enabled" flag."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import yaml

_logger = logging.getLogger(__name__)

_SETTINGS_KEY = "enable_reasoning"


class ReasoningFlag(Protocol):
    def get(self) -> bool:
        ...

    def set(self, enabled: bool) -> None:
        ...


class InMemoryReasoningFlag:
    """Flag held in memory for the lifetime of the process."""

    def __init__(self, enabled: bool = False) -> None:
        self._enabled = enabled

    def get(self) -> bool:
        return self._enabled

    def set(self, enabled: bool) -> None:
        self._enabled = bool(enabled)


class YamlReasoningFlag:
    """Flag persisted as ``enable_reasoning`` in a YAML settings file.

    Other keys in the file are preserved on write.
    """

    def __init__(self, path: str | Path, default: bool = False) -> None:
        self.path = Path(path).expanduser()
        self._default = default

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            _logger.warning("Ignoring malformed settings file %s", self.path)
            return {}
        return raw

    def get(self) -> bool:
        value = self._load().get(_SETTINGS_KEY)
        if value is None:
            return self._default
        return bool(value)

    def set(self, enabled: bool) -> None:
        data = self._load()
        data[_SETTINGS_KEY] = bool(enabled)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
        _logger.info("Reasoning %s (%s)", "enabled" if enabled else "disabled", self.path)
