"""Orchestrator for per-gemstone and batch media analysis runs.

A run resolves the gemstone's assets, normalizes media, dispatches the vision
tasks concurrently, consolidates their results, evaluates the review rules and
persists the record. Per-file and per-task failures degrade the record; only
an unknown gemstone or a failed write abort the run.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from gem_insight.config import Settings
from gem_insight.consolidation import (
    PRIMARY_FROM_DEFAULT_POLICY,
    PRIMARY_FROM_RECOMMENDATION,
    ConsolidationResult,
    Consolidator,
    default_primary_choice,
)
from gem_insight.db import SessionFactory, session_factory
from gem_insight.errors import (
    ExtractionError,
    ExtractionTimeout,
    GemInsightError,
    NotFound,
    PersistenceFailed,
    StorageError,
)
from gem_insight.models import (
    AnalysisRecord,
    AnalysisTask,
    AssetRole,
    ExtractionTelemetry,
    NormalizationReport,
    NormalizedMedia,
    ResolvedGemstone,
    TaskKind,
    TaskStatus,
)
from gem_insight.normalizer import MediaNormalizer
from gem_insight.persistence import AnalysisRepository
from gem_insight.resolver import AssetResolver
from gem_insight.retry import RetryPolicy, call_with_retry
from gem_insight.review import ReviewContext, ReviewRules, collect_generated_texts
from gem_insight.storage import MediaStore, build_media_store
from gem_insight.transcoder import VideoTranscoder
from gem_insight.vision.client import OpenAIVisionClient, VisionClient
from gem_insight.vision.engine import TaskResult, VisionExtractionEngine
from gem_insight.vocabulary import Vocabulary
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "pipeline"})

STATUS_CLEAN = "completed_clean"
STATUS_FLAGGED = "completed_with_flags"
STATUS_FAILED = "failed"

_TEXT_TASKS = (TaskKind.LABEL_EXTRACTION, TaskKind.MEASUREMENT_EXTRACTION)
# One bounded retry per vision task, whatever the configuration asks for.
MAX_VISION_ATTEMPTS = 2


@dataclass(frozen=True)
class AnalysisOutcome:
    """Computed result of one gemstone run, ready (or already) persisted."""

    record: AnalysisRecord
    primary_asset_id: str | None = None

    @property
    def status(self) -> str:
        return STATUS_FLAGGED if self.record.needs_review else STATUS_CLEAN


@dataclass(frozen=True)
class GemstoneRunStatus:
    gemstone_id: str
    status: str
    reason: str | None = None
    outcome: AnalysisOutcome | None = None


@dataclass(frozen=True)
class BatchSummary:
    results: tuple[GemstoneRunStatus, ...]
    skipped: tuple[str, ...] = ()
    stopped: bool = False
    wall_clock_ms: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    total_cost_usd: float = 0.0
    average_confidence: float | None = None

    @classmethod
    def from_results(
        cls, results: Sequence[GemstoneRunStatus], *, skipped: Sequence[str], stopped: bool, wall_clock_ms: int
    ) -> BatchSummary:
        counts = {STATUS_CLEAN: 0, STATUS_FLAGGED: 0, STATUS_FAILED: 0}
        cost = 0.0
        confidences: list[float] = []
        for item in results:
            counts[item.status] = counts.get(item.status, 0) + 1
            if item.outcome is not None:
                cost += item.outcome.record.telemetry.cost_usd
                average = item.outcome.record.average_confidence()
                if average is not None:
                    confidences.append(average)
        return cls(
            results=tuple(results),
            skipped=tuple(skipped),
            stopped=stopped,
            wall_clock_ms=wall_clock_ms,
            counts=counts,
            total_cost_usd=cost,
            average_confidence=sum(confidences) / len(confidences) if confidences else None,
        )


class GemstoneAnalysisPipeline:
    """Run the resolve → normalize → extract → consolidate → persist chain."""

    def __init__(
        self,
        settings: Settings,
        *,
        sessions: SessionFactory,
        store: MediaStore,
        vision_client: VisionClient,
        transcoder: VideoTranscoder | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._settings = settings
        self._clock = clock
        vocabulary = Vocabulary(settings.vocabulary)
        storage = settings.storage

        self._storage_policy = RetryPolicy(
            attempts=storage.write_attempts,
            timeout_s=storage.timeout_s,
            backoff_s=storage.retry_backoff_s,
            retry_on=(StorageError, SQLAlchemyError),
        )
        self._vision_policy = RetryPolicy(
            attempts=max(1, min(settings.vision.max_attempts, MAX_VISION_ATTEMPTS)),
            timeout_s=None,
            backoff_s=settings.vision.retry_backoff_s,
            retry_on=(ExtractionError,),
        )

        self._resolver = AssetResolver(sessions)
        self._normalizer = MediaNormalizer(
            settings.media,
            store,
            transcoder=transcoder or VideoTranscoder(settings.media),
            fetch_policy=RetryPolicy(
                attempts=storage.write_attempts,
                timeout_s=storage.timeout_s,
                backoff_s=storage.retry_backoff_s,
                retry_on=(StorageError,),
            ),
        )
        self._engine = VisionExtractionEngine(vision_client, settings.vision, vocabulary)
        self._consolidator = Consolidator(settings.consolidation, vocabulary)
        self._review = ReviewRules(settings.review)
        self._repository = AnalysisRepository(sessions)
        self._store = store
        self._vision_client = vision_client
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    @property
    def repository(self) -> AnalysisRepository:
        return self._repository

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    async def aclose(self) -> None:
        """Release connection pools held by the vision client and media store."""

        for resource in (self._vision_client, self._store):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()

    # Single gemstone

    async def analyze(self, gemstone_id: str) -> AnalysisOutcome:
        """Compute and persist the analysis of one gemstone.

        Raises :class:`NotFound` for unknown ids and :class:`PersistenceFailed`
        (carrying the computed outcome) when the write keeps failing.
        """

        lock = self._locks.setdefault(gemstone_id, asyncio.Lock())
        self._lock_holders[gemstone_id] = self._lock_holders.get(gemstone_id, 0) + 1
        try:
            async with lock:
                outcome = await self.compute(gemstone_id)
                await self.persist(outcome)
        finally:
            # Forget the lock once no run holds or awaits it.
            self._lock_holders[gemstone_id] -= 1
            if not self._lock_holders[gemstone_id]:
                del self._lock_holders[gemstone_id]
                del self._locks[gemstone_id]

        LOGGER.info(
            "gemstone_analysis_completed",
            extra={
                "gemstone_id": gemstone_id,
                "status": outcome.status,
                "review_reasons": list(outcome.record.review_reasons),
                "duration_ms": outcome.record.telemetry.duration_ms,
                "cost_usd": round(outcome.record.telemetry.cost_usd, 6),
            },
        )
        return outcome

    async def compute(self, gemstone_id: str) -> AnalysisOutcome:
        """Run every stage except persistence."""

        started = self._clock()
        resolved = await call_with_retry(
            lambda: asyncio.to_thread(self._resolver.resolve, gemstone_id),
            self._storage_policy,
            label="resolve_gemstone",
            on_timeout=lambda seconds: StorageError(f"resolving {gemstone_id} exceeded {seconds:.0f}s"),
            log_extra={"gemstone_id": gemstone_id},
        )

        to_normalize = resolved.images()
        if self._settings.pipeline.normalize_videos:
            to_normalize += resolved.videos()
        report = await self._normalizer.normalize(to_normalize)

        tasks = self.plan_tasks(resolved, report)
        results, task_failures = await self._run_tasks(gemstone_id, tasks)

        degraded = bool(report.failed) or bool(task_failures)
        consolidation = self._consolidator.consolidate(
            results, resolved.declared, resolved.assets, degraded=degraded
        )
        primary_asset_id, primary_source = self._choose_primary(resolved, report, consolidation)

        duration_ms = int((self._clock() - started) * 1000)
        media_analyzed = {result.kind.value: len(result.asset_ids) for result in results}
        media_analyzed["video"] = len(report.videos())
        telemetry = ExtractionTelemetry(
            duration_ms=duration_ms,
            cost_usd=sum(result.cost_usd for result in results),
            media_analyzed=media_analyzed,
            normalization_failures=report.failed,
            task_failures=task_failures,
        )

        reasons = self._review.evaluate(
            ReviewContext(
                fields=consolidation.fields,
                declared=resolved.declared,
                duration_ms=duration_ms,
                generated_texts=collect_generated_texts(consolidation.fields, results, consolidation.recommendation),
                task_failures=task_failures,
                media_failures=len(report.failed),
            )
        )
        record = AnalysisRecord.build(
            gemstone_id=gemstone_id,
            pipeline_version=self._settings.pipeline.version,
            fields=consolidation.fields,
            primary_recommendation=consolidation.recommendation,
            primary_source=primary_source,
            review_reasons=reasons,
            telemetry=telemetry,
            image_scores=consolidation.image_scores,
        )
        return AnalysisOutcome(record=record, primary_asset_id=primary_asset_id)

    async def persist(self, outcome: AnalysisOutcome) -> None:
        """Write ``outcome``; safe to call again after :class:`PersistenceFailed`."""

        storage = self._settings.storage
        policy = RetryPolicy(
            attempts=storage.write_attempts,
            timeout_s=storage.timeout_s,
            backoff_s=storage.retry_backoff_s,
            retry_on=(PersistenceFailed,),
        )
        try:
            await call_with_retry(
                lambda: asyncio.to_thread(
                    self._repository.save, outcome.record, primary_asset_id=outcome.primary_asset_id
                ),
                policy,
                label="persist_analysis",
                on_timeout=lambda seconds: PersistenceFailed(f"write exceeded {seconds:.0f}s"),
                log_extra={"gemstone_id": outcome.record.gemstone_id},
            )
        except PersistenceFailed as exc:
            raise PersistenceFailed(str(exc), outcome=outcome) from exc

    def plan_tasks(self, resolved: ResolvedGemstone, report: NormalizationReport) -> list[AnalysisTask]:
        """Decide which tasks run and with which (budget-truncated) inputs."""

        enabled = set(self._settings.pipeline.enabled_tasks)
        images = sorted(report.images(), key=lambda item: item.asset.ordinal)
        photos = [item for item in images if item.asset.role is AssetRole.PHOTO]
        certificates = [item for item in images if item.asset.role is AssetRole.CERTIFICATE]
        declared = resolved.declared

        planned: list[tuple[TaskKind, list[NormalizedMedia], str | None]] = []
        if photos:
            planned.append((TaskKind.CUT_DETECTION, photos, declared.cut))
            planned.append((TaskKind.COLOR_DETECTION, photos, declared.color))
            if len(photos) >= 2:
                planned.append((TaskKind.PRIMARY_IMAGE_SELECTION, photos, None))
            text_inputs = certificates + photos
        elif certificates and self._settings.pipeline.text_tasks_without_photos:
            text_inputs = certificates
        else:
            text_inputs = []
            LOGGER.info(
                "vision_tasks_skipped_no_images",
                extra={"gemstone_id": resolved.gemstone_id, "normalized_images": len(images)},
            )
        if text_inputs:
            planned.extend((kind, text_inputs, None) for kind in _TEXT_TASKS)

        tasks: list[AnalysisTask] = []
        for kind, inputs, declared_value in planned:
            if kind.value not in enabled:
                continue
            budget = self._engine.budget_for(kind)
            if len(inputs) > budget:
                LOGGER.info(
                    "vision_task_inputs_truncated",
                    extra={
                        "gemstone_id": resolved.gemstone_id,
                        "task_kind": kind.value,
                        "available": len(inputs),
                        "budget": budget,
                    },
                )
                inputs = inputs[:budget]
            tasks.append(self._engine.build_task(kind, inputs, declared_value))
        return tasks

    async def _run_task(self, gemstone_id: str, task: AnalysisTask) -> TaskResult:
        try:
            result = await call_with_retry(
                lambda: self._engine.extract(task),
                self._vision_policy,
                label=f"vision_{task.kind.value}",
                on_attempt=lambda _attempt: task.record_attempt(),
                log_extra={"gemstone_id": gemstone_id, "task_kind": task.kind.value},
            )
        except ExtractionError as exc:
            task.status = TaskStatus.TIMEOUT if isinstance(exc, ExtractionTimeout) else TaskStatus.FAILURE
            LOGGER.warning(
                "vision_task_failed",
                extra={
                    "gemstone_id": gemstone_id,
                    "task_kind": task.kind.value,
                    "attempts": task.attempts,
                    "status": task.status.value,
                    "error": str(exc),
                },
            )
            raise
        task.status = TaskStatus.SUCCESS
        return result

    async def _run_tasks(
        self, gemstone_id: str, tasks: Sequence[AnalysisTask]
    ) -> tuple[list[TaskResult], dict[str, str]]:
        outcomes = await asyncio.gather(
            *(self._run_task(gemstone_id, task) for task in tasks), return_exceptions=True
        )
        results: list[TaskResult] = []
        failures: dict[str, str] = {}
        for task, outcome in zip(tasks, outcomes):
            if isinstance(outcome, TaskResult):
                results.append(outcome)
            elif isinstance(outcome, ExtractionError):
                failures[task.kind.value] = task.status.value
            elif isinstance(outcome, BaseException):
                raise outcome
        return results, failures

    def _choose_primary(
        self, resolved: ResolvedGemstone, report: NormalizationReport, consolidation: ConsolidationResult
    ) -> tuple[str | None, str | None]:
        if consolidation.recommendation is not None:
            return consolidation.recommendation.asset_id, PRIMARY_FROM_RECOMMENDATION
        fallback = default_primary_choice(resolved, (item.asset.asset_id for item in report.images()))
        if fallback is not None:
            LOGGER.info(
                "primary_default_policy_applied",
                extra={"gemstone_id": resolved.gemstone_id, "asset_id": fallback.asset_id},
            )
            return fallback.asset_id, PRIMARY_FROM_DEFAULT_POLICY
        return None, None

    # Batch

    async def _run_guarded(self, gemstone_id: str, semaphore: asyncio.Semaphore) -> GemstoneRunStatus:
        try:
            outcome = await self.analyze(gemstone_id)
        except NotFound as exc:
            LOGGER.warning("gemstone_not_found", extra={"gemstone_id": gemstone_id})
            return GemstoneRunStatus(gemstone_id, STATUS_FAILED, reason=str(exc))
        except PersistenceFailed as exc:
            return GemstoneRunStatus(gemstone_id, STATUS_FAILED, reason=f"persistence_failed: {exc}", outcome=exc.outcome)
        except (GemInsightError, SQLAlchemyError) as exc:
            LOGGER.error("gemstone_analysis_error", extra={"gemstone_id": gemstone_id, "error": str(exc)})
            return GemstoneRunStatus(gemstone_id, STATUS_FAILED, reason=str(exc))
        except Exception as exc:
            LOGGER.exception(
                "gemstone_analysis_unexpected_error",
                extra={"gemstone_id": gemstone_id, "error_type": type(exc).__name__},
            )
            return GemstoneRunStatus(gemstone_id, STATUS_FAILED, reason=f"{type(exc).__name__}: {exc}")
        finally:
            semaphore.release()
        return GemstoneRunStatus(gemstone_id, outcome.status, outcome=outcome)

    async def analyze_batch(
        self, gemstone_ids: Iterable[str], *, stop_event: asyncio.Event | None = None
    ) -> BatchSummary:
        """Analyze many gemstones under the configured concurrency cap and start delay.

        Setting ``stop_event`` stops new gemstones from starting; runs already in
        flight finish normally.
        """

        batch = self._settings.batch
        semaphore = asyncio.Semaphore(max(1, batch.concurrency))
        stop = stop_event or asyncio.Event()
        pending = list(gemstone_ids)
        started = self._clock()
        running: list[asyncio.Task[GemstoneRunStatus]] = []
        stopped = False

        for index, gemstone_id in enumerate(pending):
            if index > 0 and batch.inter_call_delay_s > 0:
                await asyncio.sleep(batch.inter_call_delay_s)
            if stop.is_set():
                stopped = True
                break
            await semaphore.acquire()
            if stop.is_set():
                semaphore.release()
                stopped = True
                break
            running.append(asyncio.create_task(self._run_guarded(gemstone_id, semaphore)))

        results = list(await asyncio.gather(*running))
        skipped = pending[len(running):]
        summary = BatchSummary.from_results(
            results,
            skipped=skipped,
            stopped=stopped,
            wall_clock_ms=int((self._clock() - started) * 1000),
        )
        LOGGER.info(
            "analysis_batch_completed",
            extra={
                "total": len(pending),
                "counts": summary.counts,
                "skipped": len(summary.skipped),
                "stopped": summary.stopped,
                "total_cost_usd": round(summary.total_cost_usd, 6),
                "average_confidence": summary.average_confidence,
                "wall_clock_ms": summary.wall_clock_ms,
            },
        )
        return summary


def build_pipeline(settings: Settings, *, vision_client: VisionClient | None = None) -> GemstoneAnalysisPipeline:
    """Wire the pipeline against the configured database, media store and vision endpoint."""

    return GemstoneAnalysisPipeline(
        settings,
        sessions=session_factory(settings.databases.primary_url),
        store=build_media_store(settings.storage),
        vision_client=vision_client or OpenAIVisionClient.from_config(settings.vision),
    )


__all__ = [
    "AnalysisOutcome",
    "BatchSummary",
    "GemstoneAnalysisPipeline",
    "GemstoneRunStatus",
    "STATUS_CLEAN",
    "STATUS_FAILED",
    "STATUS_FLAGGED",
    "build_pipeline",
]
