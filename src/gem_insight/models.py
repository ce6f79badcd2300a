"""Domain value types shared across pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from gem_insight import config


class AssetKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class AssetRole(str, Enum):
    PHOTO = "photo"
    CERTIFICATE = "certificate"


class TaskKind(str, Enum):
    CUT_DETECTION = config.CUT_DETECTION
    COLOR_DETECTION = config.COLOR_DETECTION
    PRIMARY_IMAGE_SELECTION = config.PRIMARY_IMAGE_SELECTION
    LABEL_EXTRACTION = config.LABEL_EXTRACTION
    MEASUREMENT_EXTRACTION = config.MEASUREMENT_EXTRACTION


class TaskStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class SourceKind(str, Enum):
    """Where a property reading came from."""

    LABEL = "label"
    GAUGE = "gauge"
    SCALE = "scale"
    CERTIFICATE = "certificate"
    VISUAL_ESTIMATE = "visual_estimate"
    EXISTING_METADATA = "existing_metadata"


class ImageClassification(str, Enum):
    CLEAN_SUBJECT = "clean_subject"
    ACCEPTABLE_SUBJECT = "acceptable_subject"
    CERTIFICATE = "certificate"
    LABEL = "label"
    MEASUREMENT_TOOL = "measurement_tool"
    PACKAGING = "packaging"
    UNKNOWN = "unknown"


TEXT_PROPERTIES: tuple[str, ...] = ("cut", "color")
NUMERIC_PROPERTIES: tuple[str, ...] = ("weight_carats", "length_mm", "width_mm", "depth_mm")


@dataclass(frozen=True)
class GemstoneAsset:
    """Reference to one stored media file of a gemstone."""

    asset_id: str
    gemstone_id: str
    kind: AssetKind
    locator: str
    ordinal: int
    is_primary: bool = False
    original_filename: str | None = None
    role: AssetRole = AssetRole.PHOTO
    thumbnail_locator: str | None = None
    duration_seconds: float | None = None


@dataclass(frozen=True)
class DeclaredMetadata:
    """Catalog values entered before analysis, used for cross-validation."""

    cut: str | None = None
    color: str | None = None
    weight_carats: float | None = None
    length_mm: float | None = None
    width_mm: float | None = None
    depth_mm: float | None = None

    def value_for(self, prop: str) -> str | float | None:
        return getattr(self, prop, None)

    def declared_properties(self) -> list[str]:
        return [prop for prop in TEXT_PROPERTIES + NUMERIC_PROPERTIES if self.value_for(prop) is not None]


@dataclass(frozen=True)
class ResolvedGemstone:
    """Output of the asset resolver: ordered assets plus the declared snapshot."""

    gemstone_id: str
    assets: tuple[GemstoneAsset, ...]
    declared: DeclaredMetadata

    def images(self, role: AssetRole | None = None) -> list[GemstoneAsset]:
        return [
            asset
            for asset in self.assets
            if asset.kind is AssetKind.IMAGE and (role is None or asset.role is role)
        ]

    def videos(self) -> list[GemstoneAsset]:
        return [asset for asset in self.assets if asset.kind is AssetKind.VIDEO]

    def current_primary(self) -> GemstoneAsset | None:
        return next((asset for asset in self.assets if asset.is_primary), None)


@dataclass(frozen=True)
class NormalizedMedia:
    """Analysis-ready derivative of one asset."""

    asset: GemstoneAsset
    data: bytes
    mime_type: str
    width: int | None = None
    height: int | None = None
    thumbnail: bytes | None = None
    duration_seconds: float | None = None
    transcoded: bool = False

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class NormalizationFailure:
    asset: GemstoneAsset
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class NormalizationReport:
    """Per-file outcome of a normalization pass, partitioned by success."""

    succeeded: tuple[NormalizedMedia, ...] = ()
    failed: tuple[NormalizationFailure, ...] = ()

    def images(self) -> list[NormalizedMedia]:
        return [item for item in self.succeeded if item.asset.kind is AssetKind.IMAGE]

    def videos(self) -> list[NormalizedMedia]:
        return [item for item in self.succeeded if item.asset.kind is AssetKind.VIDEO]


@dataclass
class AnalysisTask:
    """One vision-capability invocation and its retry accounting."""

    kind: TaskKind
    inputs: list[NormalizedMedia]
    model: str
    timeout_s: float
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    declared_value: str | None = None

    def record_attempt(self) -> None:
        self.attempts += 1


@dataclass(frozen=True)
class SourceReading:
    source: SourceKind
    value: str | float
    confidence: float
    raw: str | None = None


def _check_confidence(value: float, what: str) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{what} confidence {value!r} outside [0, 1]")


@dataclass(frozen=True)
class FieldExtraction:
    """One cross-validated property value.

    ``matches_metadata`` is ``None`` when nothing was declared for the property.
    """

    property: str
    value: str | float
    confidence: float
    sources: tuple[SourceReading, ...] = ()
    matches_metadata: bool | None = None
    conflict: bool = False
    reasoning: str | None = None

    def __post_init__(self) -> None:
        _check_confidence(self.confidence, self.property)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "conflict": self.conflict,
            "sources": [
                {
                    "source": reading.source.value,
                    "value": reading.value,
                    "confidence": round(reading.confidence, 4),
                    "raw": reading.raw,
                }
                for reading in self.sources
            ],
        }
        if self.matches_metadata is not None:
            payload["matches_metadata"] = self.matches_metadata
        if self.reasoning:
            payload["reasoning"] = self.reasoning
        return payload


@dataclass(frozen=True)
class ImageScoreBreakdown:
    asset_id: str
    ordinal: int
    quality: float
    composition: float
    clarity: float
    professional_presentation: float
    overall: float
    classification: ImageClassification
    adjusted: float
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "ordinal": self.ordinal,
            "quality": self.quality,
            "composition": self.composition,
            "clarity": self.clarity,
            "professional_presentation": self.professional_presentation,
            "overall": self.overall,
            "classification": self.classification.value,
            "adjusted": round(self.adjusted, 4),
            "issues": list(self.issues),
        }


@dataclass(frozen=True)
class PrimaryImageRecommendation:
    asset_id: str
    ordinal: int
    score: float
    rationale: str
    image_scores: tuple[ImageScoreBreakdown, ...] = ()

    def __post_init__(self) -> None:
        _check_confidence(self.score, "primary image")


@dataclass(frozen=True)
class ExtractionTelemetry:
    """Run-level counters attached to an analysis record."""

    duration_ms: int = 0
    cost_usd: float = 0.0
    media_analyzed: dict[str, int] = field(default_factory=dict)
    normalization_failures: tuple[NormalizationFailure, ...] = ()
    task_failures: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AnalysisRecord:
    """Consolidated result for one gemstone and pipeline version.

    Build instances with :meth:`build` so ``needs_review`` always mirrors
    ``review_reasons``.
    """

    gemstone_id: str
    pipeline_version: str
    fields: dict[str, FieldExtraction]
    primary_recommendation: PrimaryImageRecommendation | None
    primary_source: str | None
    review_reasons: tuple[str, ...]
    needs_review: bool
    telemetry: ExtractionTelemetry
    image_scores: tuple[ImageScoreBreakdown, ...] = ()

    def __post_init__(self) -> None:
        if self.needs_review != bool(self.review_reasons):
            raise ValueError("needs_review must be true exactly when review_reasons is non-empty")

    @classmethod
    def build(
        cls,
        *,
        gemstone_id: str,
        pipeline_version: str,
        fields: dict[str, FieldExtraction],
        primary_recommendation: PrimaryImageRecommendation | None,
        primary_source: str | None,
        review_reasons: Iterable[str],
        telemetry: ExtractionTelemetry,
        image_scores: Iterable[ImageScoreBreakdown] = (),
    ) -> AnalysisRecord:
        reasons = tuple(dict.fromkeys(review_reasons))
        return cls(
            gemstone_id=gemstone_id,
            pipeline_version=pipeline_version,
            fields=dict(fields),
            primary_recommendation=primary_recommendation,
            primary_source=primary_source,
            review_reasons=reasons,
            needs_review=bool(reasons),
            telemetry=telemetry,
            image_scores=tuple(image_scores),
        )

    def average_confidence(self) -> float | None:
        if not self.fields:
            return None
        return sum(item.confidence for item in self.fields.values()) / len(self.fields)


__all__ = [
    "AnalysisRecord",
    "AnalysisTask",
    "AssetKind",
    "AssetRole",
    "DeclaredMetadata",
    "ExtractionTelemetry",
    "FieldExtraction",
    "GemstoneAsset",
    "ImageClassification",
    "ImageScoreBreakdown",
    "NUMERIC_PROPERTIES",
    "NormalizationFailure",
    "NormalizationReport",
    "NormalizedMedia",
    "PrimaryImageRecommendation",
    "ResolvedGemstone",
    "SourceKind",
    "SourceReading",
    "TEXT_PROPERTIES",
    "TaskKind",
    "TaskStatus",
]
