"""Declarative rule set deciding whether an analysis needs human review."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Sequence

from gem_insight.config import ReviewConfig
from gem_insight.models import DeclaredMetadata, FieldExtraction, PrimaryImageRecommendation
from gem_insight.vision.engine import TaskResult
from gem_insight.vision.schemas import ColorDetectionResult, TextExtractionResult
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "review"})


class ReviewReason(str, Enum):
    MISMATCH = "mismatch"
    LOW_CONFIDENCE = "low_confidence"
    SLOW_RUN = "slow_run"
    MISSING_FIELD = "missing_field"
    PLACEHOLDER_TEXT = "placeholder_text"
    TASK_FAILED = "task_failed"
    MEDIA_FAILED = "media_failed"


def reason(kind: ReviewReason, subject: str | None = None) -> str:
    """Render a reason string such as ``mismatch:cut`` or ``slow_run``."""

    return f"{kind.value}:{subject}" if subject else kind.value


@dataclass(frozen=True)
class ReviewContext:
    """Everything the rules look at for one gemstone run."""

    fields: Mapping[str, FieldExtraction]
    declared: DeclaredMetadata
    duration_ms: int
    generated_texts: Mapping[str, str] = field(default_factory=dict)
    task_failures: Mapping[str, str] = field(default_factory=dict)
    media_failures: int = 0


def collect_generated_texts(
    fields: Mapping[str, FieldExtraction],
    results: Sequence[TaskResult],
    recommendation: PrimaryImageRecommendation | None,
) -> dict[str, str]:
    """Gather every model-written free-text value, keyed by where it appears."""

    texts: dict[str, str] = {}
    for prop, extraction in fields.items():
        if extraction.reasoning:
            texts[f"{prop}.reasoning"] = extraction.reasoning
    for result in results:
        payload = result.payload
        if isinstance(payload, ColorDetectionResult) and payload.color_description:
            texts["color.description"] = payload.color_description
        elif isinstance(payload, TextExtractionResult) and payload.translated_text:
            texts[f"{result.kind.value}.translated_text"] = payload.translated_text
    if recommendation is not None and recommendation.rationale:
        texts["primary.rationale"] = recommendation.rationale
    return texts


class ReviewRules:
    """Evaluate every rule independently and accumulate the reasons that fire."""

    def __init__(self, config: ReviewConfig) -> None:
        self._config = config
        self._placeholders = [re.compile(pattern, re.IGNORECASE) for pattern in config.placeholder_patterns]
        self._rules: list[Callable[[ReviewContext], list[str]]] = [
            self._metadata_mismatch,
            self._low_confidence,
            self._slow_run,
            self._missing_required,
            self._placeholder_text,
            self._task_failures,
            self._media_failures,
        ]

    def evaluate(self, context: ReviewContext) -> list[str]:
        reasons: list[str] = []
        for rule in self._rules:
            reasons.extend(rule(context))
        if reasons:
            LOGGER.info("review_flagged", extra={"reasons": reasons})
        return reasons

    def _metadata_mismatch(self, context: ReviewContext) -> list[str]:
        return [
            reason(ReviewReason.MISMATCH, prop)
            for prop, extraction in context.fields.items()
            if extraction.matches_metadata is False
        ]

    def _low_confidence(self, context: ReviewContext) -> list[str]:
        threshold = self._config.low_confidence_threshold
        return [
            reason(ReviewReason.LOW_CONFIDENCE, prop)
            for prop, extraction in context.fields.items()
            if context.declared.value_for(prop) is not None and extraction.confidence < threshold
        ]

    def _slow_run(self, context: ReviewContext) -> list[str]:
        if context.duration_ms > self._config.wall_clock_ceiling_ms:
            return [reason(ReviewReason.SLOW_RUN)]
        return []

    def _missing_required(self, context: ReviewContext) -> list[str]:
        return [
            reason(ReviewReason.MISSING_FIELD, prop)
            for prop in self._config.required_properties
            if prop not in context.fields
        ]

    def _placeholder_text(self, context: ReviewContext) -> list[str]:
        return [
            reason(ReviewReason.PLACEHOLDER_TEXT, location)
            for location, text in context.generated_texts.items()
            if any(pattern.search(text) for pattern in self._placeholders)
        ]

    def _task_failures(self, context: ReviewContext) -> list[str]:
        return [reason(ReviewReason.TASK_FAILED, kind) for kind in sorted(context.task_failures)]

    def _media_failures(self, context: ReviewContext) -> list[str]:
        return [reason(ReviewReason.MEDIA_FAILED)] if context.media_failures else []


__all__ = ["ReviewContext", "ReviewReason", "ReviewRules", "collect_generated_texts", "reason"]
