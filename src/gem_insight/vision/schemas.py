"""Typed response models for each vision task kind.

Responses are validated strictly: unknown keys, missing keys, out-of-range
scores and wrong types are all rejected.
"""

from __future__ import annotations

from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from gem_insight.models import ImageClassification, TaskKind

Score = Annotated[float, Field(ge=0.0, le=1.0)]

NUMERIC_READING_NAMES = ("weight_carats", "length_mm", "width_mm", "depth_mm")
TEXT_READING_NAMES = ("cut", "color")


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CutDetectionResult(_StrictModel):
    kind: ClassVar[TaskKind] = TaskKind.CUT_DETECTION

    detected_cut: str = Field(min_length=1)
    confidence: Score
    reasoning: str
    matches_metadata: bool | None = None


class ColorDetectionResult(_StrictModel):
    kind: ClassVar[TaskKind] = TaskKind.COLOR_DETECTION

    detected_color: str = Field(min_length=1)
    confidence: Score
    color_description: str
    reasoning: str
    matches_metadata: bool | None = None


class ImageScore(_StrictModel):
    index: int = Field(ge=0)
    quality: Score
    composition: Score
    clarity: Score
    professional_presentation: Score
    overall: Score
    classification: ImageClassification = ImageClassification.UNKNOWN
    issues: list[str] = Field(default_factory=list)


class PrimaryImageSelectionResult(_StrictModel):
    kind: ClassVar[TaskKind] = TaskKind.PRIMARY_IMAGE_SELECTION

    selected_index: int = Field(ge=0)
    reasoning: str
    image_scores: list[ImageScore] = Field(min_length=1)


class ExtractedReading(_StrictModel):
    name: Literal["weight_carats", "length_mm", "width_mm", "depth_mm", "cut", "color"]
    value: Union[float, str]
    unit: str | None = None
    confidence: Score
    source: Literal["label_text", "gauge_reading", "scale_reading", "certificate_text"]


class TextExtractionResult(_StrictModel):
    """Shared shape of label and measurement extraction responses."""

    kind: ClassVar[TaskKind] = TaskKind.LABEL_EXTRACTION

    raw_text: str
    translated_text: str
    readings: list[ExtractedReading] = Field(default_factory=list)


ExtractionPayload = Union[
    CutDetectionResult,
    ColorDetectionResult,
    PrimaryImageSelectionResult,
    TextExtractionResult,
]

RESPONSE_MODELS: dict[TaskKind, type[_StrictModel]] = {
    TaskKind.CUT_DETECTION: CutDetectionResult,
    TaskKind.COLOR_DETECTION: ColorDetectionResult,
    TaskKind.PRIMARY_IMAGE_SELECTION: PrimaryImageSelectionResult,
    TaskKind.LABEL_EXTRACTION: TextExtractionResult,
    TaskKind.MEASUREMENT_EXTRACTION: TextExtractionResult,
}


__all__ = [
    "ColorDetectionResult",
    "CutDetectionResult",
    "ExtractedReading",
    "ExtractionPayload",
    "ImageScore",
    "NUMERIC_READING_NAMES",
    "PrimaryImageSelectionResult",
    "RESPONSE_MODELS",
    "Score",
    "TEXT_READING_NAMES",
    "TextExtractionResult",
]
