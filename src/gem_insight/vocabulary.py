"""Cut and color vocabularies and the term normalization used to compare them."""

from __future__ import annotations

import re
from typing import Any

import inflect

from gem_insight.config import VocabularyConfig

_INFLECT_ENGINE: Any | None = None
_WHITESPACE_RE = re.compile(r"[\s_]+")
_CUT_SUFFIX_RE = re.compile(r"\s+(?:cut|shape)$")


def _get_inflect_engine() -> Any:
    global _INFLECT_ENGINE
    if _INFLECT_ENGINE is None:
        _INFLECT_ENGINE = inflect.engine()
    return _INFLECT_ENGINE


def normalize_term(value: Any) -> str:
    """Normalize free text for comparison: trim, casefold, collapse whitespace."""

    text = _WHITESPACE_RE.sub(" ", str(value)).strip().casefold()
    return _CUT_SUFFIX_RE.sub("", text)


class Vocabulary:
    """Validates detections against the configured cut and color vocabularies."""

    def __init__(self, config: VocabularyConfig) -> None:
        self._cuts = {normalize_term(term): term for term in config.cuts}
        self._colors = {normalize_term(term): term for term in config.colors}
        self._aliases = {normalize_term(key): normalize_term(value) for key, value in config.aliases.items()}

    @property
    def cuts(self) -> list[str]:
        return list(self._cuts.values())

    @property
    def colors(self) -> list[str]:
        return list(self._colors.values())

    def _lookup(self, value: Any, table: dict[str, str]) -> str | None:
        text = normalize_term(value)
        if not text:
            return None
        text = self._aliases.get(text, text)
        if text in table:
            return table[text]

        # Only singularize unknown terms: "princess" and "colorless" must stay intact.
        singular = _get_inflect_engine().singular_noun(text)
        if singular:
            singular = self._aliases.get(singular, singular)
            return table.get(singular)
        return None

    def canonical_cut(self, value: Any) -> str | None:
        return self._lookup(value, self._cuts)

    def canonical_color(self, value: Any) -> str | None:
        return self._lookup(value, self._colors)

    def canonical(self, prop: str, value: Any) -> str | None:
        if prop == "cut":
            return self.canonical_cut(value)
        if prop == "color":
            return self.canonical_color(value)
        return normalize_term(value) or None


__all__ = ["Vocabulary", "normalize_term"]
