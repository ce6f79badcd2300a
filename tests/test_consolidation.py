"""Cross-validation of readings and primary-image ranking."""

from __future__ import annotations

import pytest

from gem_insight.config import ConsolidationConfig, VocabularyConfig
from gem_insight.consolidation import Consolidator, default_primary_choice
from gem_insight.models import (
    AssetKind,
    AssetRole,
    DeclaredMetadata,
    GemstoneAsset,
    ImageClassification,
    ResolvedGemstone,
    SourceKind,
    SourceReading,
    TaskKind,
)
from gem_insight.vision.engine import TaskResult
from gem_insight.vision.schemas import (
    CutDetectionResult,
    ExtractedReading,
    ImageScore,
    PrimaryImageSelectionResult,
    TextExtractionResult,
)
from gem_insight.vocabulary import Vocabulary


def _consolidator(**overrides: float) -> Consolidator:
    return Consolidator(ConsolidationConfig(**overrides), Vocabulary(VocabularyConfig()))


def _assets(count: int, role: AssetRole = AssetRole.PHOTO) -> list[GemstoneAsset]:
    return [
        GemstoneAsset(
            asset_id=f"a{index}", gemstone_id="g1", kind=AssetKind.IMAGE, locator=f"a{index}", ordinal=index, role=role
        )
        for index in range(count)
    ]


def _selection(overalls: list[float], classifications: list[ImageClassification] | None = None) -> TaskResult:
    classes = classifications or [ImageClassification.UNKNOWN] * len(overalls)
    scores = [
        ImageScore(
            index=index,
            quality=overall,
            composition=overall,
            clarity=overall,
            professional_presentation=overall,
            overall=overall,
            classification=classes[index],
        )
        for index, overall in enumerate(overalls)
    ]
    payload = PrimaryImageSelectionResult(selected_index=0, reasoning="sharp and well lit", image_scores=scores)
    return TaskResult(
        kind=TaskKind.PRIMARY_IMAGE_SELECTION,
        payload=payload,
        asset_ids=tuple(f"a{index}" for index in range(len(overalls))),
        model="gpt-4o-mini",
        cost_usd=0.0,
        elapsed_ms=10,
    )


def _cut(value: str, confidence: float) -> TaskResult:
    return TaskResult(
        kind=TaskKind.CUT_DETECTION,
        payload=CutDetectionResult(detected_cut=value, confidence=confidence, reasoning="outline"),
        asset_ids=("a0",),
        model="gpt-4o-mini",
        cost_usd=0.0,
        elapsed_ms=10,
    )


def test_declared_cut_mismatch_is_reported() -> None:
    consolidation = _consolidator().consolidate(
        [_cut("round", 0.95)], DeclaredMetadata(cut="emerald"), _assets(1)
    )

    field = consolidation.fields["cut"]
    assert field.value == "round"
    assert field.matches_metadata is False
    assert field.confidence == pytest.approx(0.95)
    assert field.sources[-1].source is SourceKind.EXISTING_METADATA


def test_matching_declared_value_uses_vocabulary_normalization() -> None:
    consolidation = _consolidator().consolidate(
        [_cut("marquise", 0.8)], DeclaredMetadata(cut="Navette Cut"), _assets(1)
    )

    assert consolidation.fields["cut"].matches_metadata is True


def test_no_declared_value_leaves_match_unset() -> None:
    field = _consolidator().consolidate([_cut("oval", 0.7)], DeclaredMetadata(), _assets(1)).fields["cut"]

    assert field.matches_metadata is None
    assert all(reading.source is not SourceKind.EXISTING_METADATA for reading in field.sources)


def test_confident_disagreement_is_discounted() -> None:
    readings = [
        SourceReading(SourceKind.LABEL, 1.52, 0.9),
        SourceReading(SourceKind.SCALE, 1.61, 0.7),
    ]

    field = _consolidator().resolve_field("weight_carats", readings, None)

    assert field.value == 1.52
    assert field.conflict is True
    assert field.confidence == pytest.approx(0.72)


def test_readings_within_tolerance_do_not_conflict() -> None:
    readings = [
        SourceReading(SourceKind.LABEL, 1.52, 0.9),
        SourceReading(SourceKind.SCALE, 1.55, 0.8),
    ]

    field = _consolidator().resolve_field("weight_carats", readings, 1.5)

    assert field.conflict is False
    assert field.confidence == pytest.approx(0.9)
    assert field.matches_metadata is True


def test_low_confidence_disagreement_is_not_a_conflict() -> None:
    readings = [
        SourceReading(SourceKind.VISUAL_ESTIMATE, "oval", 0.8),
        SourceReading(SourceKind.LABEL, "pear", 0.4),
    ]

    field = _consolidator().resolve_field("cut", readings, None)

    assert field.conflict is False
    assert field.confidence == pytest.approx(0.8)


def test_equal_confidence_prefers_higher_priority_source() -> None:
    readings = [
        SourceReading(SourceKind.LABEL, 1.40, 0.8),
        SourceReading(SourceKind.CERTIFICATE, 1.41, 0.8),
    ]

    field = _consolidator().resolve_field("weight_carats", readings, None)

    assert field.value == 1.41
    assert field.sources[0].source is SourceKind.CERTIFICATE


def test_degraded_run_discounts_confidence() -> None:
    field = _consolidator().resolve_field(
        "cut", [SourceReading(SourceKind.VISUAL_ESTIMATE, "oval", 0.8)], None, degraded=True
    )

    assert field.confidence == pytest.approx(0.72)


def test_text_readings_are_merged_with_visual_estimate() -> None:
    label = TaskResult(
        kind=TaskKind.LABEL_EXTRACTION,
        payload=TextExtractionResult(
            raw_text="Овал 2,1 кт",
            translated_text="Oval 2.1 ct",
            readings=[
                ExtractedReading(name="cut", value="oval", confidence=0.6, source="label_text"),
                ExtractedReading(name="weight_carats", value=2.1, unit="ct", confidence=0.9, source="label_text"),
            ],
        ),
        asset_ids=("a0",),
        model="gpt-4o",
        cost_usd=0.0,
        elapsed_ms=5,
    )

    fields = _consolidator().consolidate([_cut("oval", 0.8), label], DeclaredMetadata(), _assets(1)).fields

    assert fields["cut"].value == "oval"
    assert {reading.source for reading in fields["cut"].sources} == {SourceKind.VISUAL_ESTIMATE, SourceKind.LABEL}
    assert fields["weight_carats"].value == 2.1
    assert fields["weight_carats"].sources[0].raw == "2.1 ct"


def test_primary_is_highest_adjusted_score() -> None:
    consolidation = _consolidator().consolidate(
        [_selection([0.74, 0.60, 0.55, 0.88, 0.70])], DeclaredMetadata(), _assets(5)
    )

    recommendation = consolidation.recommendation
    assert recommendation is not None
    assert recommendation.asset_id == "a3"
    assert recommendation.ordinal == 3
    assert recommendation.score == pytest.approx(0.88)
    assert len(consolidation.image_scores) == 5


def test_primary_tie_prefers_lower_ordinal() -> None:
    recommendation, _ = _consolidator().recommend_primary(
        _selection([0.7, 0.8, 0.8]), {asset.asset_id: asset for asset in _assets(3)}
    )

    assert recommendation is not None
    assert recommendation.asset_id == "a1"


def test_classification_boosts_and_measurement_tool_cap() -> None:
    classes = [
        ImageClassification.MEASUREMENT_TOOL,
        ImageClassification.ACCEPTABLE_SUBJECT,
        ImageClassification.CERTIFICATE,
    ]
    breakdowns = _consolidator().rank_images(
        _selection([0.95, 0.6, 0.9], classes), {asset.asset_id: asset for asset in _assets(3)}
    )

    adjusted = [item.adjusted for item in breakdowns]
    assert adjusted == pytest.approx([0.2, 0.7, 0.7])
    assert breakdowns[0].overall == 0.95


def test_primary_withheld_below_threshold() -> None:
    consolidation = _consolidator().consolidate([_selection([0.3, 0.45])], DeclaredMetadata(), _assets(2))

    assert consolidation.recommendation is None
    assert len(consolidation.image_scores) == 2


def test_default_policy_picks_first_photo_only_without_existing_primary() -> None:
    photos = _assets(3)
    certificate = GemstoneAsset(
        asset_id="cert", gemstone_id="g1", kind=AssetKind.IMAGE, locator="cert", ordinal=0, role=AssetRole.CERTIFICATE
    )
    shifted = [
        GemstoneAsset(asset_id=item.asset_id, gemstone_id="g1", kind=AssetKind.IMAGE, locator=item.locator, ordinal=item.ordinal + 1)
        for item in photos
    ]
    resolved = ResolvedGemstone("g1", (certificate, *shifted), DeclaredMetadata())

    choice = default_primary_choice(resolved)
    assert choice is not None
    assert choice.asset_id == "a0"

    assert default_primary_choice(resolved, ["a1", "a2"]).asset_id == "a1"  # type: ignore[union-attr]
    assert default_primary_choice(resolved, ["cert"]).asset_id == "cert"  # type: ignore[union-attr]
    assert default_primary_choice(resolved, []) is None

    with_primary = ResolvedGemstone(
        "g1",
        (
            certificate,
            shifted[0],
            GemstoneAsset(asset_id="a1", gemstone_id="g1", kind=AssetKind.IMAGE, locator="a1", ordinal=2, is_primary=True),
        ),
        DeclaredMetadata(),
    )
    assert default_primary_choice(with_primary) is None


def test_round_declared_emerald_detected_flags_mismatch() -> None:
    field = _consolidator().consolidate(
        [_cut("emerald", 0.95)], DeclaredMetadata(cut="round"), _assets(1)
    ).fields["cut"]

    assert field.value == "emerald"
    assert field.matches_metadata is False
