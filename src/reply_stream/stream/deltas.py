"""Delta extraction from chat-completion payloads.

Providers disagree on where content and reasoning live, so extraction is a
pair of ordered rule lists evaluated first-match-wins.  Supporting a new
provider means appending a rule.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from reply_stream.types import DeltaEvent

_logger = logging.getLogger(__name__)

Path = tuple[str | int, ...]

REASONING_FIELDS = ("reasoning", "thinking", "reasoning_content", "thinking_content")
# Nesting levels checked for reasoning, innermost first
_REASONING_LEVELS: tuple[Path, ...] = (
    ("choices", 0, "delta"),
    ("choices", 0, "message"),
    ("choices", 0),
    (),
)


@dataclass(frozen=True)
class ExtractionRule:
    """Locate a string by walking *path* through nested dicts and lists."""

    path: Path

    def apply(self, payload: Any) -> str | None:
        node = payload
        for key in self.path:
            if isinstance(key, int):
                if not isinstance(node, list) or len(node) <= key:
                    return None
            elif not isinstance(node, dict):
                return None
            node = node[key] if isinstance(key, int) else node.get(key)
        return _as_text(node)

    def __str__(self) -> str:
        return ".".join(str(k) for k in self.path)


def _as_text(value: Any) -> str | None:
    """Return non-empty text; content-part lists are joined."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, list):
        parts = [
            part.get("text", "")
            for part in value
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "".join(parts) or None
    return None


DEFAULT_CONTENT_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule(("choices", 0, "delta", "content")),
    ExtractionRule(("choices", 0, "message", "content")),
    ExtractionRule(("choices", 0, "text")),
    ExtractionRule(("text",)),
)

DEFAULT_REASONING_RULES: tuple[ExtractionRule, ...] = tuple(
    ExtractionRule(level + (name,))
    for level in _REASONING_LEVELS
    for name in REASONING_FIELDS
)


def first_match(rules: Iterable[ExtractionRule], payload: Any) -> str | None:
    for rule in rules:
        value = rule.apply(payload)
        if value:
            return value
    return None


class DeltaExtractor:
    """Turn one payload into a :class:`DeltaEvent`."""

    def __init__(
        self,
        content_rules: Iterable[ExtractionRule] = DEFAULT_CONTENT_RULES,
        reasoning_rules: Iterable[ExtractionRule] = DEFAULT_REASONING_RULES,
    ) -> None:
        self.content_rules: list[ExtractionRule] = list(content_rules)
        self.reasoning_rules: list[ExtractionRule] = list(reasoning_rules)

    def add_content_rule(self, *path: str | int) -> None:
        self.content_rules.append(ExtractionRule(tuple(path)))

    def add_reasoning_rule(self, *path: str | int) -> None:
        self.reasoning_rules.append(ExtractionRule(tuple(path)))

    def extract(self, payload_text: str) -> DeltaEvent | None:
        """Parse one event payload.

        Returns ``None`` for a malformed record, which the caller skips.
        """
        try:
            data = json.loads(payload_text)
        except json.JSONDecodeError as e:
            _logger.warning(
                "Skipping malformed event record (%s): %.80r", e, payload_text,
            )
            return None
        if not isinstance(data, dict):
            _logger.warning("Skipping non-object event record: %.80r", payload_text)
            return None
        return self.extract_document(data)

    def extract_document(self, data: dict[str, Any]) -> DeltaEvent:
        model = data.get("model")
        return DeltaEvent(
            content=first_match(self.content_rules, data),
            reasoning=first_match(self.reasoning_rules, data),
            model=model if isinstance(model, str) and model else None,
        )
