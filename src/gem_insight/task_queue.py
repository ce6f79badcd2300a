"""Celery task wiring for on-demand gemstone analysis."""

from __future__ import annotations

import asyncio
from functools import lru_cache

from celery import Celery

from gem_insight.config import Settings, load_settings
from gem_insight.errors import NotFound, PersistenceFailed
from gem_insight.pipeline import STATUS_FAILED, AnalysisOutcome, build_pipeline
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    return load_settings()


def _init_celery() -> Celery:
    settings = _load_settings()
    app = Celery("gem_insight")
    app.conf.update(
        broker_url=settings.queues.broker_url,
        result_backend=settings.queues.result_backend,
        worker_concurrency=settings.queues.default_concurrency,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_default_queue=settings.queues.analysis_queue,
        task_routes={"gem_insight.task_queue.analyze_gemstone": {"queue": settings.queues.analysis_queue}},
    )
    return app


celery_app = _init_celery()


async def _run_analysis(gemstone_id: str) -> AnalysisOutcome:
    """Analyze inside one event loop, retrying a failed write once, then release the clients."""

    pipeline = build_pipeline(_load_settings())
    try:
        try:
            return await pipeline.analyze(gemstone_id)
        except PersistenceFailed as exc:
            LOGGER.error("analyze_gemstone_persist_failed", extra={"gemstone_id": gemstone_id, "error": str(exc)})
            if exc.outcome is None:
                raise
            await pipeline.persist(exc.outcome)
            return exc.outcome
    finally:
        await pipeline.aclose()


@celery_app.task(
    name="gem_insight.task_queue.analyze_gemstone",
    acks_late=True,
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def analyze_gemstone(self, gemstone_id: str) -> dict[str, object]:  # type: ignore[no-untyped-def]
    """Analyze one gemstone and return its status.

    A failed write is retried once from the computed outcome before the task
    itself is handed back to Celery for a delayed retry.
    """

    try:
        outcome = asyncio.run(_run_analysis(gemstone_id))
    except NotFound as exc:
        LOGGER.warning("analyze_gemstone_not_found", extra={"gemstone_id": gemstone_id})
        return {"gemstone_id": gemstone_id, "status": STATUS_FAILED, "reason": str(exc)}
    except PersistenceFailed as exc:
        raise self.retry(exc=exc)

    return {
        "gemstone_id": gemstone_id,
        "status": outcome.status,
        "review_reasons": list(outcome.record.review_reasons),
        "duration_ms": outcome.record.telemetry.duration_ms,
    }


__all__ = ["analyze_gemstone", "celery_app"]
