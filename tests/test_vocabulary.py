from __future__ import annotations

from gem_insight.config import VocabularyConfig
from gem_insight.vocabulary import Vocabulary, normalize_term


def test_normalize_term_collapses_case_whitespace_and_suffix() -> None:
    assert normalize_term("  Emerald   Cut ") == "emerald"
    assert normalize_term("PEAR_shape") == "pear"
    assert normalize_term("Multi  Color") == "multi color"


def test_canonical_cut_resolves_aliases_and_plurals() -> None:
    vocabulary = Vocabulary(VocabularyConfig())

    assert vocabulary.canonical_cut("Round Brilliant") == "round"
    assert vocabulary.canonical_cut("ovals") == "oval"
    assert vocabulary.canonical_cut("Princess") == "princess"
    assert vocabulary.canonical_cut("hexagon") is None


def test_canonical_color_resolves_aliases_and_rejects_off_palette() -> None:
    vocabulary = Vocabulary(VocabularyConfig())

    assert vocabulary.canonical_color("Grey") == "gray"
    assert vocabulary.canonical_color("colorless") == "colorless"
    assert vocabulary.canonical_color("multicolour") == "multi-color"
    assert vocabulary.canonical_color("chartreuse") is None


def test_custom_vocabulary_replaces_defaults() -> None:
    vocabulary = Vocabulary(VocabularyConfig(cuts=("rose",), colors=("blue",), aliases={}))

    assert vocabulary.cuts == ["rose"]
    assert vocabulary.canonical_cut("round") is None
    assert vocabulary.canonical("color", "BLUE") == "blue"
