from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Mapping

import yaml

from app.logging_config import get_logger

logger = get_logger("pattern_service")

PATTERNS_DIR = Path(__file__).resolve().parents[1] / "patterns"

INTENT_PATTERNS = "intents"
EMERGENCY_PATTERNS = "emergency"
SAFETY_PATTERNS = "safety"
SPECIAL_EVENT_PATTERNS = "special_events"


@dataclass(frozen=True)
class PatternSet:
    """Ordered mapping category -> compiled patterns, loaded from a versioned table."""

    name: str
    version: int
    categories: dict[str, tuple[re.Pattern, ...]] = field(default_factory=dict)

    def get(self, category: str) -> tuple[re.Pattern, ...]:
        return self.categories.get(category, ())

    def with_prefix(self, prefix: str) -> list[tuple[str, tuple[re.Pattern, ...]]]:
        """Categories under `prefix.` in table order, with the prefix stripped."""
        marker = f"{prefix}."
        return [
            (category[len(marker):], patterns)
            for category, patterns in self.categories.items()
            if category.startswith(marker)
        ]

    def first_match(self, category: str, text: str) -> re.Match | None:
        for pattern in self.get(category):
            match = pattern.search(text)
            if match:
                return match
        return None

    def matches(self, category: str, text: str) -> bool:
        return self.first_match(category, text) is not None


def _compile(raw_patterns: Iterable[str], table: str, category: str) -> tuple[re.Pattern, ...]:
    compiled = []
    for raw in raw_patterns:
        try:
            compiled.append(re.compile(str(raw), re.IGNORECASE))
        except re.error as exc:
            # A broken entry must not take the whole table down.
            logger.error(
                "Invalid pattern skipped",
                extra={"context": {"table": table, "category": category, "pattern": raw, "error": str(exc)}},
            )
    return tuple(compiled)


def build_pattern_set(name: str, categories: Mapping[str, Iterable[str]], version: int = 0) -> PatternSet:
    """Build a PatternSet from plain data. Tests use this to substitute minimal tables."""
    compiled = {
        str(category): _compile(patterns or [], name, str(category))
        for category, patterns in categories.items()
    }
    return PatternSet(name=name, version=version, categories=compiled)


@lru_cache(maxsize=8)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


@lru_cache(maxsize=8)
def load_pattern_set(name: str) -> PatternSet:
    data = _load_yaml(PATTERNS_DIR / f"{name}.yaml")
    if not data:
        logger.warning(f"Pattern table {name} is missing or empty")
    categories = data.get("categories") if isinstance(data.get("categories"), dict) else {}
    version = data.get("version") if isinstance(data.get("version"), int) else 0
    pattern_set = build_pattern_set(name, categories, version=version)
    logger.debug(f"Loaded pattern table {name} v{version} with {len(pattern_set.categories)} categories")
    return pattern_set
