"""End-to-end orchestrator runs against SQLite, an in-memory store and a scripted vision client."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from pathlib import Path

import pytest

from gem_insight.config import CUT_DETECTION, Settings
from gem_insight.consolidation import PRIMARY_FROM_DEFAULT_POLICY, PRIMARY_FROM_RECOMMENDATION
from gem_insight.db import SessionFactory
from gem_insight.errors import ExtractionUnavailable, NotFound, PersistenceFailed
from gem_insight.models import AssetKind, AssetRole, TaskKind
from gem_insight.pipeline import STATUS_CLEAN, STATUS_FAILED, STATUS_FLAGGED, GemstoneAnalysisPipeline
from gem_insight.transcoder import VideoTranscoder
from tests.utils.fakes import (
    FakeRunner,
    FakeVisionClient,
    InMemoryMediaStore,
    primary_flags,
    seed_asset,
    seed_gemstone,
    sqlite_sessions,
)

_EMPTY_TEXT = {"raw_text": "", "translated_text": "no readable text", "readings": []}


def _settings() -> Settings:
    base = Settings()
    return replace(
        base,
        vision=replace(base.vision, retry_backoff_s=0.0),
        storage=replace(base.storage, retry_backoff_s=0.0, write_attempts=1),
        batch=replace(base.batch, inter_call_delay_s=0.0),
    )


def _selection(overalls: list[float]) -> dict[str, object]:
    return {
        "selected_index": max(range(len(overalls)), key=lambda index: overalls[index]),
        "reasoning": "sharpest facets and neutral background",
        "image_scores": [
            {
                "index": index,
                "quality": overall,
                "composition": overall,
                "clarity": overall,
                "professional_presentation": overall,
                "overall": overall,
                "issues": [],
            }
            for index, overall in enumerate(overalls)
        ],
    }


def _replies(photo_count: int = 3) -> dict[TaskKind, list[object]]:
    overalls = [0.7, 0.9, 0.6, 0.5, 0.55, 0.65, 0.6, 0.62, 0.58, 0.61][:photo_count]
    return {
        TaskKind.CUT_DETECTION: [{"detected_cut": "oval", "confidence": 0.9, "reasoning": "elongated outline"}],
        TaskKind.COLOR_DETECTION: [
            {
                "detected_color": "blue",
                "confidence": 0.85,
                "color_description": "medium blue",
                "reasoning": "even body color",
            }
        ],
        TaskKind.PRIMARY_IMAGE_SELECTION: [_selection(overalls)],
        TaskKind.LABEL_EXTRACTION: [_EMPTY_TEXT],
        TaskKind.MEASUREMENT_EXTRACTION: [_EMPTY_TEXT],
    }


def _pipeline(
    sessions: SessionFactory,
    store: InMemoryMediaStore,
    client: FakeVisionClient,
    settings: Settings | None = None,
    **kwargs: object,
) -> GemstoneAnalysisPipeline:
    settings = settings or _settings()
    return GemstoneAnalysisPipeline(
        settings,
        sessions=sessions,
        store=store,
        vision_client=client,
        transcoder=VideoTranscoder(settings.media, runner=FakeRunner()),
        **kwargs,  # type: ignore[arg-type]
    )


def _seed_photos(sessions: SessionFactory, store: InMemoryMediaStore, gemstone_id: str, count: int) -> None:
    for ordinal in range(count):
        seed_asset(sessions, store, gemstone_id, f"{gemstone_id}-p{ordinal}", ordinal)


def test_clean_run_is_idempotent(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1", cut="Oval", color="blue")
    _seed_photos(sessions, store, "g1", 3)
    pipeline = _pipeline(sessions, store, FakeVisionClient(_replies(3)))

    async def _twice():
        first = await pipeline.analyze("g1")
        second = await pipeline.analyze("g1")
        return first, second

    first, second = asyncio.run(_twice())

    assert first.status == STATUS_CLEAN
    assert first.record.review_reasons == ()
    assert first.record.fields["cut"].value == "oval"
    assert first.record.fields["cut"].matches_metadata is True
    assert first.record.fields["color"].confidence == pytest.approx(0.85)
    assert first.record.primary_source == PRIMARY_FROM_RECOMMENDATION
    assert first.primary_asset_id == "g1-p1"
    assert first.record.telemetry.media_analyzed["cut_detection"] == 3
    assert first.record.telemetry.media_analyzed["video"] == 0
    assert first.record.telemetry.cost_usd > 0

    assert pipeline.repository.count("g1") == 1
    stored = pipeline.repository.load("g1", "v6")
    assert stored is not None
    assert stored["fields"] == {prop: field.to_dict() for prop, field in second.record.fields.items()}
    assert stored["primary_asset_id"] == "g1-p1"
    assert primary_flags(sessions, "g1") == {"g1-p0": False, "g1-p1": True, "g1-p2": False}


def test_failed_task_degrades_record(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1", color="blue")
    _seed_photos(sessions, store, "g1", 2)
    replies = _replies(2)
    replies[TaskKind.CUT_DETECTION] = [ExtractionUnavailable("capability down")]
    client = FakeVisionClient(replies)

    outcome = asyncio.run(_pipeline(sessions, store, client).analyze("g1"))

    assert outcome.status == STATUS_FLAGGED
    assert "cut" not in outcome.record.fields
    assert outcome.record.review_reasons == ("missing_field:cut", "task_failed:cut_detection")
    assert outcome.record.fields["color"].confidence == pytest.approx(0.85 * 0.9)
    assert outcome.record.telemetry.task_failures == {"cut_detection": "failure"}
    assert client.calls(TaskKind.CUT_DETECTION) == 2


def test_broken_media_is_reported_and_run_continues(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 2)
    seed_asset(sessions, store, "g1", "g1-bad", 2, data=b"corrupt")

    outcome = asyncio.run(_pipeline(sessions, store, FakeVisionClient(_replies(2))).analyze("g1"))

    assert "media_failed" in outcome.record.review_reasons
    failures = outcome.record.telemetry.normalization_failures
    assert [(item.asset.asset_id, item.reason) for item in failures] == [("g1-bad", "unsupported_format")]
    assert outcome.record.fields["cut"].value == "oval"


def test_single_photo_uses_default_primary_policy(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 1)
    client = FakeVisionClient(_replies(1))

    pipeline = _pipeline(sessions, store, client)

    outcome = asyncio.run(pipeline.analyze("g1"))

    assert client.calls(TaskKind.PRIMARY_IMAGE_SELECTION) == 0
    assert outcome.record.primary_source == PRIMARY_FROM_DEFAULT_POLICY
    assert primary_flags(sessions, "g1") == {"g1-p0": True}
    stored = pipeline.repository.load("g1", "v6")
    assert stored is not None
    assert stored["primary_asset_id"] == "g1-p0"


def test_inputs_are_truncated_to_task_budgets(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 12)
    client = FakeVisionClient(_replies(10))

    outcome = asyncio.run(_pipeline(sessions, store, client).analyze("g1"))

    sent = {kind: len(request.images) for kind, request in client.requests}
    assert sent[TaskKind.CUT_DETECTION] == 3
    assert sent[TaskKind.COLOR_DETECTION] == 10
    assert sent[TaskKind.PRIMARY_IMAGE_SELECTION] == 10
    assert sent[TaskKind.LABEL_EXTRACTION] == 4
    assert outcome.record.telemetry.media_analyzed["color_detection"] == 10


def test_certificate_only_runs_text_tasks(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    seed_asset(sessions, store, "g1", "cert", 0, role=AssetRole.CERTIFICATE)
    client = FakeVisionClient(_replies())

    outcome = asyncio.run(_pipeline(sessions, store, client).analyze("g1"))

    assert {kind for kind, _ in client.requests} == {TaskKind.LABEL_EXTRACTION, TaskKind.MEASUREMENT_EXTRACTION}
    assert "missing_field:cut" in outcome.record.review_reasons


def test_video_is_normalized_and_counted(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 2)
    seed_asset(sessions, store, "g1", "clip", 2, data=b"\x00" * 256, kind=AssetKind.VIDEO)

    outcome = asyncio.run(_pipeline(sessions, store, FakeVisionClient(_replies(2))).analyze("g1"))

    assert outcome.record.telemetry.media_analyzed["video"] == 1
    assert outcome.record.telemetry.media_analyzed["cut_detection"] == 2


def test_slow_run_is_flagged(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 2)
    ticks = itertools.count(0.0, 31.0)

    outcome = asyncio.run(
        _pipeline(sessions, store, FakeVisionClient(_replies(2)), clock=lambda: next(ticks)).compute("g1")
    )

    assert "slow_run" in outcome.record.review_reasons
    assert outcome.record.telemetry.duration_ms == 31_000


def test_unknown_gemstone_raises_not_found(tmp_path: Path) -> None:
    pipeline = _pipeline(sqlite_sessions(tmp_path), InMemoryMediaStore(), FakeVisionClient(_replies()))

    with pytest.raises(NotFound):
        asyncio.run(pipeline.analyze("missing"))


def test_persistence_failure_keeps_outcome_for_retry(tmp_path: Path, monkeypatch) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 2)
    client = FakeVisionClient(_replies(2))
    pipeline = _pipeline(sessions, store, client)
    original_save = pipeline.repository.save

    def _failing_save(*_args, **_kwargs) -> None:
        raise PersistenceFailed("database unavailable")

    monkeypatch.setattr(pipeline.repository, "save", _failing_save)
    with pytest.raises(PersistenceFailed) as excinfo:
        asyncio.run(pipeline.analyze("g1"))

    outcome = excinfo.value.outcome
    assert outcome is not None
    assert pipeline.repository.count("g1") == 0
    calls_before = len(client.requests)

    monkeypatch.setattr(pipeline.repository, "save", original_save)
    asyncio.run(pipeline.persist(outcome))

    assert pipeline.repository.count("g1") == 1
    assert len(client.requests) == calls_before


def test_batch_reports_per_gemstone_status(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1", cut="oval")
    seed_gemstone(sessions, "g2", cut="emerald")
    _seed_photos(sessions, store, "g1", 2)
    _seed_photos(sessions, store, "g2", 2)
    pipeline = _pipeline(sessions, store, FakeVisionClient(_replies(2)))

    summary = asyncio.run(pipeline.analyze_batch(["g1", "g2", "ghost"]))

    statuses = {item.gemstone_id: item.status for item in summary.results}
    assert statuses == {"g1": STATUS_CLEAN, "g2": STATUS_FLAGGED, "ghost": STATUS_FAILED}
    assert summary.counts == {STATUS_CLEAN: 1, STATUS_FLAGGED: 1, STATUS_FAILED: 1}
    assert summary.skipped == ()
    assert summary.stopped is False
    assert summary.total_cost_usd > 0


def test_batch_stop_lets_in_flight_runs_finish(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    for gemstone_id in ("g1", "g2", "g3"):
        seed_gemstone(sessions, gemstone_id)
        _seed_photos(sessions, store, gemstone_id, 2)
    settings = _settings()
    settings = replace(settings, batch=replace(settings.batch, inter_call_delay_s=0.01))
    pipeline = _pipeline(sessions, store, FakeVisionClient(_replies(2)), settings)

    async def _run():
        stop = asyncio.Event()
        original = pipeline.analyze

        async def _analyze_then_stop(gemstone_id: str):
            stop.set()
            return await original(gemstone_id)

        pipeline.analyze = _analyze_then_stop  # type: ignore[method-assign]
        return await pipeline.analyze_batch(["g1", "g2", "g3"], stop_event=stop)

    summary = asyncio.run(_run())

    assert summary.stopped is True
    assert [item.gemstone_id for item in summary.results] == ["g1"]
    assert summary.results[0].status != STATUS_FAILED
    assert summary.skipped == ("g2", "g3")
    assert pipeline.repository.count("g1") == 1
    assert pipeline.repository.count("g2") == 0


def test_default_primary_skips_media_that_failed_normalization(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    seed_asset(sessions, store, "g1", "bad", 0, data=b"corrupt")
    seed_asset(sessions, store, "g1", "good", 1)
    pipeline = _pipeline(sessions, store, FakeVisionClient(_replies(1)))

    outcome = asyncio.run(pipeline.analyze("g1"))

    assert outcome.record.primary_source == PRIMARY_FROM_DEFAULT_POLICY
    assert primary_flags(sessions, "g1") == {"bad": False, "good": True}
    stored = pipeline.repository.load("g1", "v6")
    assert stored is not None
    assert stored["primary_asset_id"] == "good"


def test_concurrent_reruns_are_serialized_and_last_write_wins(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 3)
    replies = _replies(3)
    replies[TaskKind.CUT_DETECTION] = [
        {"detected_cut": "oval", "confidence": 0.9, "reasoning": "elongated outline"},
        {"detected_cut": "oval", "confidence": 0.7, "reasoning": "elongated outline"},
    ]
    pipeline = _pipeline(sessions, store, FakeVisionClient(replies))
    events: list[str] = []
    original = pipeline.compute

    async def _tracked_compute(gemstone_id: str):
        events.append("start")
        outcome = await original(gemstone_id)
        events.append("end")
        return outcome

    pipeline.compute = _tracked_compute  # type: ignore[method-assign]

    async def _both():
        return await asyncio.gather(pipeline.analyze("g1"), pipeline.analyze("g1"))

    first, second = asyncio.run(_both())

    assert events == ["start", "end", "start", "end"]
    assert first.record.fields["cut"].confidence == pytest.approx(0.9)
    assert second.record.fields["cut"].confidence == pytest.approx(0.7)
    assert pipeline.repository.count("g1") == 1
    stored = pipeline.repository.load("g1", "v6")
    assert stored is not None
    assert stored["fields"]["cut"]["confidence"] == pytest.approx(0.7)
    assert sum(primary_flags(sessions, "g1").values()) == 1
    assert pipeline.active_locks == 0


def test_timed_out_task_is_recorded_as_timeout(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1", color="blue")
    _seed_photos(sessions, store, "g1", 2)
    settings = _settings()
    tasks = dict(settings.vision.tasks)
    tasks[CUT_DETECTION] = replace(settings.vision.task(CUT_DETECTION), timeout_ms=20)
    settings = replace(settings, vision=replace(settings.vision, tasks=tasks))
    replies = _replies(2)
    replies[TaskKind.CUT_DETECTION] = [("sleep", 1.0)]
    client = FakeVisionClient(replies)

    outcome = asyncio.run(_pipeline(sessions, store, client, settings).analyze("g1"))

    assert outcome.record.telemetry.task_failures == {"cut_detection": "timeout"}
    assert "task_failed:cut_detection" in outcome.record.review_reasons
    assert client.calls(TaskKind.CUT_DETECTION) == 2
    assert outcome.record.fields["color"].value == "blue"


def test_vision_retries_are_capped_at_one(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    seed_gemstone(sessions, "g1")
    _seed_photos(sessions, store, "g1", 2)
    settings = _settings()
    settings = replace(settings, vision=replace(settings.vision, max_attempts=5))
    replies = _replies(2)
    replies[TaskKind.CUT_DETECTION] = [ExtractionUnavailable("capability down")]
    client = FakeVisionClient(replies)

    asyncio.run(_pipeline(sessions, store, client, settings).analyze("g1"))

    assert client.calls(TaskKind.CUT_DETECTION) == 2


class _FlakyStore(InMemoryMediaStore):
    async def fetch(self, locator: str) -> bytes:
        if locator.endswith("/g1-p1.jpg"):
            raise ValueError("unexpected decoder state")
        return await super().fetch(locator)


def test_batch_survives_unexpected_media_error(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = _FlakyStore()
    for gemstone_id in ("g1", "g2"):
        seed_gemstone(sessions, gemstone_id, cut="oval", color="blue")
        _seed_photos(sessions, store, gemstone_id, 2)
    pipeline = _pipeline(sessions, store, FakeVisionClient(_replies(2)))

    summary = asyncio.run(pipeline.analyze_batch(["g1", "g2"]))

    statuses = {item.gemstone_id: item.status for item in summary.results}
    assert statuses == {"g1": STATUS_FLAGGED, "g2": STATUS_CLEAN}
    g1 = summary.results[0].outcome
    assert g1 is not None
    assert "media_failed" in g1.record.review_reasons
    failures = g1.record.telemetry.normalization_failures
    assert [(item.asset.asset_id, item.reason) for item in failures] == [("g1-p1", "fetch_failed")]


def test_batch_reports_unexpected_run_error_as_failed(tmp_path: Path) -> None:
    sessions = sqlite_sessions(tmp_path)
    store = InMemoryMediaStore()
    for gemstone_id in ("g1", "g2"):
        seed_gemstone(sessions, gemstone_id, cut="oval", color="blue")
        _seed_photos(sessions, store, gemstone_id, 2)
    pipeline = _pipeline(sessions, store, FakeVisionClient(_replies(2)))
    original = pipeline.compute

    async def _compute(gemstone_id: str):
        if gemstone_id == "g1":
            raise RuntimeError("decoder crashed")
        return await original(gemstone_id)

    pipeline.compute = _compute  # type: ignore[method-assign]

    summary = asyncio.run(pipeline.analyze_batch(["g1", "g2"]))

    results = {item.gemstone_id: item for item in summary.results}
    assert results["g1"].status == STATUS_FAILED
    assert "decoder crashed" in (results["g1"].reason or "")
    assert results["g2"].status == STATUS_CLEAN
    assert pipeline.repository.count("g1") == 0
    assert pipeline.active_locks == 0


def test_aclose_releases_client_and_store(tmp_path: Path) -> None:
    store = InMemoryMediaStore()
    client = FakeVisionClient(_replies())
    pipeline = _pipeline(sqlite_sessions(tmp_path), store, client)

    asyncio.run(pipeline.aclose())

    assert client.closed is True
    assert store.closed is True
