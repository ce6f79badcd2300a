"""CLI entrypoint for analyzing one or more gemstones.

Runs the full pipeline in-process against the configured database, media
store and vision endpoint. Ctrl-C stops new gemstones from starting; runs
already in flight are allowed to finish and are reported in the summary.
"""

from __future__ import annotations

import asyncio
import json
import signal
from dataclasses import replace
from pathlib import Path

import typer

from gem_insight.config import Settings, load_settings
from gem_insight.db import session_factory
from gem_insight.pipeline import BatchSummary, build_pipeline
from gem_insight.resolver import AssetResolver
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def _apply_cli_overrides(
    settings: Settings,
    *,
    db: str | None,
    concurrency: int | None,
    delay: float | None,
) -> Settings:
    """Apply CLI overrides for the database target and batch rate limits."""

    if db:
        settings = replace(settings, databases=replace(settings.databases, primary_url=db))

    batch = settings.batch
    if concurrency is not None and concurrency > 0:
        batch = replace(batch, concurrency=concurrency)
    if delay is not None and delay >= 0:
        batch = replace(batch, inter_call_delay_s=delay)
    return replace(settings, batch=batch)


def _summary_payload(summary: BatchSummary) -> dict[str, object]:
    return {
        "counts": summary.counts,
        "skipped": list(summary.skipped),
        "stopped": summary.stopped,
        "wall_clock_ms": summary.wall_clock_ms,
        "total_cost_usd": round(summary.total_cost_usd, 6),
        "average_confidence": summary.average_confidence,
        "results": [
            {
                "gemstone_id": item.gemstone_id,
                "status": item.status,
                "reason": item.reason,
                "review_reasons": list(item.outcome.record.review_reasons) if item.outcome else [],
            }
            for item in summary.results
        ],
    }


async def _run_batch(settings: Settings, gemstone_ids: list[str]) -> BatchSummary:
    pipeline = build_pipeline(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_event.is_set():
            LOGGER.warning("analysis_stop_requested", extra={"pending": len(gemstone_ids)})
            stop_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, _request_stop)
    except NotImplementedError:  # pragma: no cover - Windows event loops
        pass

    try:
        return await pipeline.analyze_batch(gemstone_ids, stop_event=stop_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass
        await pipeline.aclose()


def main(
    gemstone_ids: list[str] | None = typer.Argument(
        None,
        help="Gemstones to analyze, in order.",
        show_default=False,
    ),
    all_gemstones: bool = typer.Option(
        False,
        "--all",
        help="Analyze every gemstone in the catalog, in id order.",
    ),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        file_okay=True,
        dir_okay=False,
        exists=True,
        readable=True,
        help="Settings file. Defaults to config/settings.yaml or GEM_INSIGHT_SETTINGS.",
    ),
    db: str | None = typer.Option(
        None,
        "--db",
        help="Database URL or path. Defaults to databases.primary_url in settings.yaml.",
    ),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        help="Override batch.concurrency from settings.yaml.",
    ),
    delay: float | None = typer.Option(
        None,
        "--delay",
        help="Override batch.inter_call_delay_s (seconds between gemstone starts).",
    ),
) -> None:
    """Analyze gemstones and print a JSON batch summary."""

    settings = load_settings(settings_path)
    settings = _apply_cli_overrides(settings, db=db, concurrency=concurrency, delay=delay)

    targets = list(gemstone_ids or [])
    if all_gemstones:
        known = AssetResolver(session_factory(settings.databases.primary_url)).list_gemstone_ids()
        targets.extend(item for item in known if item not in targets)

    if not targets:
        raise typer.BadParameter("pass at least one gemstone id or --all")

    summary = asyncio.run(_run_batch(settings, targets))
    typer.echo(json.dumps(_summary_payload(summary), indent=2, ensure_ascii=False))

    if summary.counts.get("failed"):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]
