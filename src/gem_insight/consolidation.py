"""Cross-validation of multi-source readings and primary-image ranking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from gem_insight.config import ConsolidationConfig
from gem_insight.models import (
    NUMERIC_PROPERTIES,
    AssetRole,
    DeclaredMetadata,
    FieldExtraction,
    GemstoneAsset,
    ImageClassification,
    ImageScoreBreakdown,
    PrimaryImageRecommendation,
    ResolvedGemstone,
    SourceKind,
    SourceReading,
)
from gem_insight.vision.engine import TaskResult
from gem_insight.vision.schemas import (
    ColorDetectionResult,
    CutDetectionResult,
    PrimaryImageSelectionResult,
    TextExtractionResult,
)
from gem_insight.vocabulary import Vocabulary, normalize_term
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "consolidation"})

PRIMARY_FROM_RECOMMENDATION = "vision_recommendation"
PRIMARY_FROM_DEFAULT_POLICY = "first_image_default"

# Tie-break between equally confident readings.
SOURCE_PRIORITY: dict[SourceKind, int] = {
    SourceKind.CERTIFICATE: 5,
    SourceKind.SCALE: 4,
    SourceKind.GAUGE: 3,
    SourceKind.LABEL: 2,
    SourceKind.VISUAL_ESTIMATE: 1,
    SourceKind.EXISTING_METADATA: 0,
}

_READING_SOURCES: dict[str, SourceKind] = {
    "label_text": SourceKind.LABEL,
    "certificate_text": SourceKind.CERTIFICATE,
    "gauge_reading": SourceKind.GAUGE,
    "scale_reading": SourceKind.SCALE,
}

_SCORE_PRECISION = 6


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class ConsolidationResult:
    fields: dict[str, FieldExtraction]
    recommendation: PrimaryImageRecommendation | None
    image_scores: tuple[ImageScoreBreakdown, ...] = ()


@dataclass
class _Candidates:
    readings: list[SourceReading]
    reasoning: str | None = None


class Consolidator:
    """Merge completed task results with the declared metadata snapshot."""

    def __init__(self, config: ConsolidationConfig, vocabulary: Vocabulary) -> None:
        self._config = config
        self._vocabulary = vocabulary

    # Field resolution

    def _agree(self, prop: str, left: str | float, right: str | float) -> bool:
        if prop in NUMERIC_PROPERTIES:
            try:
                return abs(float(left) - float(right)) <= self._config.numeric_tolerances.get(prop, 0.0) + 1e-9
            except (TypeError, ValueError):
                return False
        return normalize_term(left) == normalize_term(right)

    def matches_declared(self, prop: str, value: str | float, declared: str | float | None) -> bool | None:
        """Compare a resolved value with the declared one; ``None`` when nothing was declared."""

        if declared is None:
            return None
        if prop in NUMERIC_PROPERTIES:
            return self._agree(prop, value, declared)
        declared_canonical = self._vocabulary.canonical(prop, declared) or declared
        return self._agree(prop, value, declared_canonical)

    def _collect(self, results: Iterable[TaskResult]) -> dict[str, _Candidates]:
        candidates: dict[str, _Candidates] = {}

        def _add(prop: str, reading: SourceReading, reasoning: str | None = None) -> None:
            entry = candidates.setdefault(prop, _Candidates(readings=[]))
            entry.readings.append(reading)
            if reasoning and entry.reasoning is None:
                entry.reasoning = reasoning

        for result in results:
            payload = result.payload
            if isinstance(payload, CutDetectionResult):
                _add(
                    "cut",
                    SourceReading(SourceKind.VISUAL_ESTIMATE, payload.detected_cut, payload.confidence),
                    payload.reasoning,
                )
            elif isinstance(payload, ColorDetectionResult):
                _add(
                    "color",
                    SourceReading(
                        SourceKind.VISUAL_ESTIMATE,
                        payload.detected_color,
                        payload.confidence,
                        raw=payload.color_description,
                    ),
                    payload.reasoning,
                )
            elif isinstance(payload, TextExtractionResult):
                for reading in payload.readings:
                    raw = f"{reading.value} {reading.unit}" if reading.unit else str(reading.value)
                    _add(
                        reading.name,
                        SourceReading(_READING_SOURCES[reading.source], reading.value, reading.confidence, raw=raw),
                    )
        return candidates

    def resolve_field(
        self,
        prop: str,
        readings: Sequence[SourceReading],
        declared: str | float | None,
        *,
        reasoning: str | None = None,
        degraded: bool = False,
    ) -> FieldExtraction:
        """Pick the most confident reading and discount the result on a confident disagreement."""

        ordered = sorted(readings, key=lambda item: (-item.confidence, -SOURCE_PRIORITY[item.source]))
        best = ordered[0]
        threshold = self._config.disagreement_threshold
        conflicting = [
            item
            for item in ordered[1:]
            if not self._agree(prop, item.value, best.value)
            and item.confidence >= threshold
            and best.confidence >= threshold
        ]

        confidence = best.confidence
        if conflicting:
            confidence *= self._config.conflict_discount
            LOGGER.info(
                "field_conflict_detected",
                extra={
                    "property": prop,
                    "resolved": best.value,
                    "resolved_source": best.source.value,
                    "conflicting": [(item.source.value, item.value, item.confidence) for item in conflicting],
                },
            )
        if degraded:
            confidence *= self._config.partial_failure_discount

        sources = list(ordered)
        if declared is not None:
            sources.append(SourceReading(SourceKind.EXISTING_METADATA, declared, 1.0, raw=str(declared)))

        return FieldExtraction(
            property=prop,
            value=best.value,
            confidence=_clamp(confidence),
            sources=tuple(sources),
            matches_metadata=self.matches_declared(prop, best.value, declared),
            conflict=bool(conflicting),
            reasoning=reasoning,
        )

    # Primary image

    def rank_images(
        self, result: TaskResult, assets_by_id: Mapping[str, GemstoneAsset]
    ) -> list[ImageScoreBreakdown]:
        payload = result.payload
        if not isinstance(payload, PrimaryImageSelectionResult):
            raise TypeError("rank_images expects a primary image selection result")

        breakdowns: list[ImageScoreBreakdown] = []
        for score in payload.image_scores:
            asset = assets_by_id[result.asset_ids[score.index]]
            overall = score.overall
            if score.classification is ImageClassification.MEASUREMENT_TOOL:
                overall = min(overall, self._config.measurement_tool_score_cap)
            boost = self._config.classification_boosts.get(score.classification.value, 0.0)
            breakdowns.append(
                ImageScoreBreakdown(
                    asset_id=asset.asset_id,
                    ordinal=asset.ordinal,
                    quality=score.quality,
                    composition=score.composition,
                    clarity=score.clarity,
                    professional_presentation=score.professional_presentation,
                    overall=score.overall,
                    classification=score.classification,
                    adjusted=round(overall + boost, _SCORE_PRECISION),
                    issues=tuple(score.issues),
                )
            )
        return sorted(breakdowns, key=lambda item: item.ordinal)

    def recommend_primary(
        self, result: TaskResult, assets_by_id: Mapping[str, GemstoneAsset]
    ) -> tuple[PrimaryImageRecommendation | None, tuple[ImageScoreBreakdown, ...]]:
        """Return the highest adjusted score (lowest ordinal on ties), or ``None`` below the threshold."""

        breakdowns = tuple(self.rank_images(result, assets_by_id))
        eligible = [item for item in breakdowns if item.adjusted >= self._config.min_primary_score]
        if not eligible:
            LOGGER.info(
                "primary_recommendation_withheld",
                extra={
                    "best_adjusted": max((item.adjusted for item in breakdowns), default=None),
                    "threshold": self._config.min_primary_score,
                },
            )
            return None, breakdowns

        winner = min(eligible, key=lambda item: (-item.adjusted, item.ordinal))
        payload = result.payload
        rationale = payload.reasoning if isinstance(payload, PrimaryImageSelectionResult) else ""
        recommendation = PrimaryImageRecommendation(
            asset_id=winner.asset_id,
            ordinal=winner.ordinal,
            score=_clamp(winner.adjusted),
            rationale=rationale,
            image_scores=breakdowns,
        )
        return recommendation, breakdowns

    # Entry point

    def consolidate(
        self,
        results: Sequence[TaskResult],
        declared: DeclaredMetadata,
        assets: Sequence[GemstoneAsset],
        *,
        degraded: bool = False,
    ) -> ConsolidationResult:
        """Produce one FieldExtraction per property that has readings, plus the primary recommendation.

        Properties whose producing task failed are simply absent.
        """

        fields: dict[str, FieldExtraction] = {}
        for prop, entry in self._collect(results).items():
            fields[prop] = self.resolve_field(
                prop,
                entry.readings,
                declared.value_for(prop),
                reasoning=entry.reasoning,
                degraded=degraded,
            )

        recommendation: PrimaryImageRecommendation | None = None
        breakdowns: tuple[ImageScoreBreakdown, ...] = ()
        assets_by_id = {asset.asset_id: asset for asset in assets}
        for result in results:
            if isinstance(result.payload, PrimaryImageSelectionResult):
                recommendation, breakdowns = self.recommend_primary(result, assets_by_id)
                break

        return ConsolidationResult(fields=fields, recommendation=recommendation, image_scores=breakdowns)


def default_primary_choice(
    resolved: ResolvedGemstone, usable_ids: Iterable[str] | None = None
) -> GemstoneAsset | None:
    """First-image default policy.

    Applies only when consolidation produced no recommendation and the gemstone
    has no primary yet: the photo with the lowest ordinal (any image if there
    are no photos) becomes primary. When ``usable_ids`` is given, images outside
    it (those that failed normalization) are never chosen.
    """

    if resolved.current_primary() is not None:
        return None
    usable = set(usable_ids) if usable_ids is not None else None

    def _candidates(role: AssetRole | None) -> list[GemstoneAsset]:
        return [asset for asset in resolved.images(role) if usable is None or asset.asset_id in usable]

    images = _candidates(AssetRole.PHOTO) or _candidates(None)
    if not images:
        return None
    return min(images, key=lambda asset: asset.ordinal)


__all__ = [
    "ConsolidationResult",
    "Consolidator",
    "PRIMARY_FROM_DEFAULT_POLICY",
    "PRIMARY_FROM_RECOMMENDATION",
    "SOURCE_PRIORITY",
    "default_primary_choice",
]
