"""Pull the research text and usage out of a Responses API payload.

Strategies are tried in ascending ``priority``; the first one returning
non-empty text wins:

1. ``output_text`` - the convenience field on the response.
2. ``output`` - the first ``message`` item whose content holds an
   ``output_text`` or ``text`` part.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from deepresearch.models.errors import ExtractionError
from deepresearch.models.run import TokenUsage

TEXT_PART_TYPES = ("output_text", "text")


@dataclass(frozen=True, slots=True)
class ExtractionStrategy:
    priority: int
    name: str
    extract: Callable[[dict[str, Any]], str | None]


def _from_output_text(payload: dict[str, Any]) -> str | None:
    text = payload.get("output_text")
    return text if isinstance(text, str) and text else None


def _from_output_items(payload: dict[str, Any]) -> str | None:
    items = payload.get("output")
    if not isinstance(items, list):
        return None
    for item in items:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict) or part.get("type") not in TEXT_PART_TYPES:
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                return text
    return None


EXTRACTION_STRATEGIES: tuple[ExtractionStrategy, ...] = tuple(
    sorted(
        (
            ExtractionStrategy(priority=10, name="output_text", extract=_from_output_text),
            ExtractionStrategy(priority=20, name="output_items", extract=_from_output_items),
        ),
        key=lambda s: s.priority,
    )
)


def extract_output_text(
    payload: dict[str, Any],
    strategies: tuple[ExtractionStrategy, ...] = EXTRACTION_STRATEGIES,
) -> tuple[str, str]:
    """Return ``(text, strategy_name)`` or raise ExtractionError."""
    for strategy in strategies:
        text = strategy.extract(payload)
        if text:
            return text, strategy.name
    raise ExtractionError("no content returned")


def extract_usage(payload: dict[str, Any]) -> TokenUsage | None:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        input_tokens=usage.get("input_tokens"),
        output_tokens=usage.get("output_tokens"),
        total_tokens=usage.get("total_tokens"),
    )
