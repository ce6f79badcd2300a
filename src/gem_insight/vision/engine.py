"""Vision extraction engine: one structured request per task, strictly parsed."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Sequence

from pydantic import ValidationError

from gem_insight.config import VisionConfig
from gem_insight.errors import ExtractionParseError, ExtractionTimeout, TaskBudgetExceeded
from gem_insight.models import AnalysisTask, NormalizedMedia, TaskKind
from gem_insight.retry import RetryPolicy, call_with_retry
from gem_insight.vision.client import VisionClient, VisionImage, VisionRequest
from gem_insight.vision.prompts import system_prompt, user_prompt
from gem_insight.vision.schemas import (
    NUMERIC_READING_NAMES,
    RESPONSE_MODELS,
    ColorDetectionResult,
    CutDetectionResult,
    ExtractionPayload,
    PrimaryImageSelectionResult,
    TextExtractionResult,
)
from gem_insight.vocabulary import Vocabulary
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "vision_engine"})

_DECIMAL_RE = re.compile(r"-?\d+(?:[.,]\d+)?")


@dataclass(frozen=True)
class TaskResult:
    """Typed outcome of one successful task; ``asset_ids[i]`` is image index ``i``."""

    kind: TaskKind
    payload: ExtractionPayload
    asset_ids: tuple[str, ...]
    model: str
    cost_usd: float
    elapsed_ms: int


def parse_decimal(value: float | str) -> float | None:
    """Parse ``1.52``, ``"1,52"`` or ``"1.52 ct"`` into a float."""

    if isinstance(value, (int, float)):
        return float(value)
    match = _DECIMAL_RE.search(value)
    if match is None:
        return None
    return float(match.group(0).replace(",", "."))


class VisionExtractionEngine:
    """Build, dispatch and validate vision requests for the configured task kinds."""

    def __init__(self, client: VisionClient, config: VisionConfig, vocabulary: Vocabulary) -> None:
        self._client = client
        self._config = config
        self._vocabulary = vocabulary

    def budget_for(self, kind: TaskKind) -> int:
        return self._config.task(kind.value).max_images

    def build_task(
        self, kind: TaskKind, inputs: Sequence[NormalizedMedia], declared_value: str | None = None
    ) -> AnalysisTask:
        """Create a pending task; raise :class:`TaskBudgetExceeded` when ``inputs`` is over budget."""

        self._check_budget(kind, len(inputs))
        task_cfg = self._config.task(kind.value)
        return AnalysisTask(
            kind=kind,
            inputs=list(inputs),
            model=task_cfg.model,
            timeout_s=task_cfg.timeout_s,
            declared_value=declared_value,
        )

    def _check_budget(self, kind: TaskKind, count: int) -> None:
        budget = self.budget_for(kind)
        if count == 0:
            raise TaskBudgetExceeded(f"{kind.value} requires at least one image")
        if count > budget:
            raise TaskBudgetExceeded(f"{kind.value} accepts at most {budget} images, got {count}")

    def estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        input_price, output_price = self._config.pricing.get(model, (0.0, 0.0))
        return (prompt_tokens / 1000.0) * input_price + (completion_tokens / 1000.0) * output_price

    def _build_request(self, task: AnalysisTask) -> VisionRequest:
        task_cfg = self._config.task(task.kind.value)
        return VisionRequest(
            model=task.model,
            system_prompt=system_prompt(task.kind, self._vocabulary.cuts, self._vocabulary.colors),
            user_prompt=user_prompt(task.kind, len(task.inputs), task.declared_value),
            images=tuple(VisionImage(data=item.data, mime_type=item.mime_type) for item in task.inputs),
            max_tokens=task_cfg.max_tokens,
            temperature=task_cfg.temperature,
            image_detail=task_cfg.image_detail,
            timeout_s=task.timeout_s,
        )

    async def extract(self, task: AnalysisTask) -> TaskResult:
        """Issue exactly one request for ``task`` and return the validated result."""

        self._check_budget(task.kind, len(task.inputs))
        request = self._build_request(task)
        started = time.perf_counter()

        reply = await call_with_retry(
            lambda: self._client.complete(request),
            RetryPolicy(attempts=1, timeout_s=task.timeout_s, retry_on=()),
            label=f"vision_{task.kind.value}",
            on_timeout=lambda seconds: ExtractionTimeout(f"{task.kind.value} exceeded {seconds:.1f}s"),
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        payload = self.parse(task.kind, reply.content, image_count=len(task.inputs))
        # Providers report dated snapshot names; price by the configured model unless the snapshot is listed.
        priced_model = reply.model if reply.model in self._config.pricing else task.model
        cost = self.estimate_cost(priced_model, reply.prompt_tokens, reply.completion_tokens)
        LOGGER.info(
            "vision_task_completed",
            extra={
                "task_kind": task.kind.value,
                "model": task.model,
                "images": len(task.inputs),
                "elapsed_ms": elapsed_ms,
                "prompt_tokens": reply.prompt_tokens,
                "completion_tokens": reply.completion_tokens,
                "cost_usd": round(cost, 6),
            },
        )
        return TaskResult(
            kind=task.kind,
            payload=payload,
            asset_ids=tuple(item.asset.asset_id for item in task.inputs),
            model=task.model,
            cost_usd=cost,
            elapsed_ms=elapsed_ms,
        )

    def parse(self, kind: TaskKind, content: str, *, image_count: int) -> ExtractionPayload:
        """Validate ``content`` against the response model for ``kind``."""

        model = RESPONSE_MODELS[kind]
        try:
            payload = model.model_validate_json(content)
        except ValidationError as exc:
            raise ExtractionParseError(f"{kind.value} response does not match schema: {exc.error_count()} error(s)") from exc

        if isinstance(payload, CutDetectionResult):
            return self._canonical_cut(payload)
        if isinstance(payload, ColorDetectionResult):
            return self._canonical_color(payload)
        if isinstance(payload, PrimaryImageSelectionResult):
            return self._check_indices(payload, image_count)
        if isinstance(payload, TextExtractionResult):
            return self._normalize_readings(payload)
        raise ExtractionParseError(f"unexpected payload type for {kind.value}")  # pragma: no cover

    def _canonical_cut(self, payload: CutDetectionResult) -> CutDetectionResult:
        canonical = self._vocabulary.canonical_cut(payload.detected_cut)
        if canonical is None:
            raise ExtractionParseError(f"detected cut {payload.detected_cut!r} is not in the cut vocabulary")
        return payload.model_copy(update={"detected_cut": canonical})

    def _canonical_color(self, payload: ColorDetectionResult) -> ColorDetectionResult:
        canonical = self._vocabulary.canonical_color(payload.detected_color)
        if canonical is None:
            raise ExtractionParseError(f"detected color {payload.detected_color!r} is not in the color palette")
        return payload.model_copy(update={"detected_color": canonical})

    def _check_indices(self, payload: PrimaryImageSelectionResult, image_count: int) -> PrimaryImageSelectionResult:
        if payload.selected_index >= image_count:
            raise ExtractionParseError(f"selected_index {payload.selected_index} out of range for {image_count} images")
        seen: set[int] = set()
        for score in payload.image_scores:
            if score.index >= image_count:
                raise ExtractionParseError(f"image score index {score.index} out of range for {image_count} images")
            if score.index in seen:
                raise ExtractionParseError(f"duplicate image score for index {score.index}")
            seen.add(score.index)
        return payload

    def _normalize_readings(self, payload: TextExtractionResult) -> TextExtractionResult:
        readings = []
        for reading in payload.readings:
            if reading.name in NUMERIC_READING_NAMES:
                number = parse_decimal(reading.value)
                if number is None or number < 0:
                    raise ExtractionParseError(f"{reading.name} value {reading.value!r} is not a number")
                readings.append(reading.model_copy(update={"value": number}))
                continue
            canonical = self._vocabulary.canonical(reading.name, reading.value)
            if canonical is None:
                raise ExtractionParseError(f"{reading.name} value {reading.value!r} is not in the vocabulary")
            readings.append(reading.model_copy(update={"value": canonical}))
        return payload.model_copy(update={"readings": readings})


__all__ = ["TaskResult", "VisionExtractionEngine", "parse_decimal"]
