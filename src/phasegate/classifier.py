from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable

from phasegate.errors import ClassificationError
from phasegate.models import ComplexityLevel

WORD_PATTERN = re.compile(r"[a-z0-9]+")

DEFAULT_LEVEL_KEYWORDS: dict[ComplexityLevel, tuple[str, ...]] = {
    ComplexityLevel.L1: ("typo", "fix", "bug", "hotfix", "rename", "tweak", "patch"),
    ComplexityLevel.L2: ("enhance", "improve", "add", "option", "flag", "extend", "update"),
    ComplexityLevel.L3: ("feature", "refactor", "integrate", "module", "workflow", "endpoint"),
    ComplexityLevel.L4: (
        "architecture",
        "system",
        "platform",
        "migration",
        "distributed",
        "redesign",
        "rewrite",
    ),
}

ARCHITECTURE_KEYWORDS = (
    "architecture",
    "design",
    "interface",
    "schema",
    "protocol",
    "boundary",
    "redesign",
)


class ComplexityClassifier(ABC):
    @abstractmethod
    def classify(self, description: str, scope_estimate: int | None = None) -> ComplexityLevel:
        """Return the initial complexity level for a task description."""

    def requires_architecture(self, description: str) -> bool:
        """Whether a full-auto workflow should keep its design phase."""
        return True


class KeywordClassifier(ComplexityClassifier):
    """Deterministic classifier from description keywords and a file-count scope.

    The scope estimate is the number of files the work is expected to touch.
    Keyword matches and scope each propose a level; the higher one wins.
    """

    def __init__(
        self,
        *,
        level_keywords: dict[ComplexityLevel, Iterable[str]] | None = None,
        scope_thresholds: Iterable[int] = (2, 6, 15),
        architecture_keywords: Iterable[str] = ARCHITECTURE_KEYWORDS,
    ) -> None:
        source = DEFAULT_LEVEL_KEYWORDS if level_keywords is None else level_keywords
        self.level_keywords = {
            level: frozenset(word.lower() for word in words) for level, words in source.items()
        }
        self.scope_thresholds = tuple(sorted(int(item) for item in scope_thresholds))
        if len(self.scope_thresholds) != 3:
            raise ValueError("scope_thresholds needs exactly three level boundaries.")
        self.architecture_keywords = frozenset(word.lower() for word in architecture_keywords)

    @staticmethod
    def _words(description: str) -> set[str]:
        return set(WORD_PATTERN.findall(description.lower()))

    def _level_from_scope(self, scope_estimate: int) -> ComplexityLevel:
        for index, boundary in enumerate(self.scope_thresholds):
            if scope_estimate <= boundary:
                return ComplexityLevel(index + 1)
        return ComplexityLevel.L4

    def _level_from_keywords(self, words: set[str]) -> ComplexityLevel | None:
        matched = [level for level, keywords in self.level_keywords.items() if words & keywords]
        if not matched:
            return None
        return max(matched)

    def classify(self, description: str, scope_estimate: int | None = None) -> ComplexityLevel:
        if not description or not description.strip():
            raise ClassificationError("Task description is empty; cannot classify.")
        if scope_estimate is not None and scope_estimate < 0:
            raise ClassificationError(f"Scope estimate must be non-negative, got {scope_estimate}.")

        candidates: list[ComplexityLevel] = []
        keyword_level = self._level_from_keywords(self._words(description))
        if keyword_level is not None:
            candidates.append(keyword_level)
        if scope_estimate is not None:
            candidates.append(self._level_from_scope(scope_estimate))
        if not candidates:
            raise ClassificationError(
                "Cannot classify task: no recognised keywords and no scope estimate. "
                "Resubmit with more detail or a scope estimate."
            )
        return max(candidates)

    def requires_architecture(self, description: str) -> bool:
        return bool(self._words(description) & self.architecture_keywords)
