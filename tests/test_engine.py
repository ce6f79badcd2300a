"""Vision extraction engine: budgets, strict parsing and timeouts."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import pytest

from gem_insight.config import CUT_DETECTION, VisionConfig, VisionTaskConfig, VocabularyConfig
from gem_insight.errors import ExtractionParseError, ExtractionTimeout, TaskBudgetExceeded
from gem_insight.models import AssetKind, GemstoneAsset, NormalizedMedia, TaskKind
from gem_insight.vision.engine import VisionExtractionEngine, parse_decimal
from gem_insight.vision.schemas import CutDetectionResult, TextExtractionResult
from gem_insight.vocabulary import Vocabulary
from tests.utils.fakes import FakeVisionClient


def _media(count: int) -> list[NormalizedMedia]:
    return [
        NormalizedMedia(
            asset=GemstoneAsset(
                asset_id=f"a{index}", gemstone_id="g1", kind=AssetKind.IMAGE, locator=f"a{index}", ordinal=index
            ),
            data=b"img",
            mime_type="image/webp",
        )
        for index in range(count)
    ]


def _engine(client: FakeVisionClient, config: VisionConfig | None = None) -> VisionExtractionEngine:
    return VisionExtractionEngine(client, config or VisionConfig(), Vocabulary(VocabularyConfig()))


def test_parse_cut_canonicalizes_against_vocabulary() -> None:
    engine = _engine(FakeVisionClient())
    content = json.dumps({"detected_cut": "Round Brilliant", "confidence": 0.9, "reasoning": "circular outline"})

    payload = engine.parse(TaskKind.CUT_DETECTION, content, image_count=1)

    assert isinstance(payload, CutDetectionResult)
    assert payload.detected_cut == "round"


def test_parse_rejects_malformed_and_non_conforming_json() -> None:
    engine = _engine(FakeVisionClient())

    with pytest.raises(ExtractionParseError):
        engine.parse(TaskKind.CUT_DETECTION, "{not json", image_count=1)
    with pytest.raises(ExtractionParseError):
        engine.parse(
            TaskKind.CUT_DETECTION,
            json.dumps({"detected_cut": "oval", "confidence": 1.4, "reasoning": "x"}),
            image_count=1,
        )
    with pytest.raises(ExtractionParseError):
        engine.parse(
            TaskKind.CUT_DETECTION,
            json.dumps({"detected_cut": "oval", "confidence": 0.5, "reasoning": "x", "extra": True}),
            image_count=1,
        )


def test_parse_rejects_off_palette_color() -> None:
    engine = _engine(FakeVisionClient())
    content = json.dumps(
        {
            "detected_color": "chartreuse",
            "confidence": 0.8,
            "color_description": "yellowish green",
            "reasoning": "body color",
        }
    )

    with pytest.raises(ExtractionParseError):
        engine.parse(TaskKind.COLOR_DETECTION, content, image_count=1)


def test_parse_rejects_out_of_range_image_index() -> None:
    engine = _engine(FakeVisionClient())
    score = {"quality": 0.8, "composition": 0.8, "clarity": 0.8, "professional_presentation": 0.8, "overall": 0.8}
    content = json.dumps(
        {"selected_index": 2, "reasoning": "best", "image_scores": [{"index": 0, **score}, {"index": 1, **score}]}
    )

    with pytest.raises(ExtractionParseError):
        engine.parse(TaskKind.PRIMARY_IMAGE_SELECTION, content, image_count=2)


def test_parse_label_readings_accept_comma_decimals() -> None:
    engine = _engine(FakeVisionClient())
    content = json.dumps(
        {
            "raw_text": "Сапфир 1,52 кт",
            "translated_text": "Sapphire 1.52 ct",
            "readings": [
                {"name": "weight_carats", "value": "1,52", "unit": "ct", "confidence": 0.9, "source": "label_text"},
                {"name": "color", "value": "Blue", "unit": None, "confidence": 0.7, "source": "label_text"},
            ],
        },
        ensure_ascii=False,
    )

    payload = engine.parse(TaskKind.LABEL_EXTRACTION, content, image_count=1)

    assert isinstance(payload, TextExtractionResult)
    assert [(item.name, item.value) for item in payload.readings] == [("weight_carats", 1.52), ("color", "blue")]


def test_parse_decimal_variants() -> None:
    assert parse_decimal(1.5) == 1.5
    assert parse_decimal("4,56 ct") == 4.56
    assert parse_decimal("n/a") is None


def test_build_task_enforces_budget() -> None:
    engine = _engine(FakeVisionClient())

    task = engine.build_task(TaskKind.CUT_DETECTION, _media(3), "oval")
    assert task.model == "gpt-4o-mini"
    assert task.declared_value == "oval"

    with pytest.raises(TaskBudgetExceeded):
        engine.build_task(TaskKind.CUT_DETECTION, _media(4))
    with pytest.raises(TaskBudgetExceeded):
        engine.build_task(TaskKind.CUT_DETECTION, [])


def test_extract_returns_result_with_cost() -> None:
    client = FakeVisionClient(
        {TaskKind.CUT_DETECTION: [{"detected_cut": "oval", "confidence": 0.85, "reasoning": "elongated outline"}]}
    )
    engine = _engine(client)
    task = engine.build_task(TaskKind.CUT_DETECTION, _media(2))

    result = asyncio.run(engine.extract(task))

    assert result.asset_ids == ("a0", "a1")
    assert result.payload.detected_cut == "oval"
    # 1000 prompt tokens and 200 completion tokens at gpt-4o-mini prices.
    assert result.cost_usd == pytest.approx(0.00015 + 0.2 * 0.0006)
    _, request = client.requests[0]
    assert len(request.images) == 2
    assert "oval" in request.system_prompt


def test_extract_times_out() -> None:
    config = VisionConfig()
    tasks = dict(config.tasks)
    tasks[CUT_DETECTION] = replace(config.task(CUT_DETECTION), timeout_ms=20)
    engine = _engine(FakeVisionClient({TaskKind.CUT_DETECTION: [("sleep", 1.0)]}), replace(config, tasks=tasks))
    task = engine.build_task(TaskKind.CUT_DETECTION, _media(1))

    with pytest.raises(ExtractionTimeout):
        asyncio.run(engine.extract(task))


def test_task_config_timeout_is_in_seconds() -> None:
    assert VisionTaskConfig(timeout_ms=1500).timeout_s == 1.5
