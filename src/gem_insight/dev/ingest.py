"""CLI entrypoint for attaching local media files to a gemstone."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from gem_insight.config import Settings, load_settings
from gem_insight.db import session_factory
from gem_insight.ingest import IngestItem, IngestReport, MediaIngestor
from gem_insight.models import AssetRole
from gem_insight.normalizer import MediaNormalizer
from gem_insight.storage import build_media_store
from utils.logging import get_logger

LOGGER = get_logger(__name__)


async def _ingest(settings: Settings, target: str, gemstone_id: str, items: list[IngestItem]) -> IngestReport:
    store = build_media_store(settings.storage)
    ingestor = MediaIngestor(MediaNormalizer(settings.media, store), store, session_factory(target))
    try:
        return await ingestor.ingest(gemstone_id, items)
    finally:
        close = getattr(store, "aclose", None)
        if close is not None:
            await close()


def main(
    gemstone_id: str = typer.Argument(..., help="Gemstone that receives the media."),
    files: list[Path] = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        help="Image or video files, in display order.",
    ),
    certificate: list[Path] = typer.Option(
        [],
        "--certificate",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        help="Certificate or label image; read by the text tasks only. May be repeated.",
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
) -> None:
    """Normalize, store and register media files for one gemstone."""

    settings = load_settings(settings_path)
    target = db or settings.databases.primary_url

    items = [IngestItem(filename=path.name, data=path.read_bytes()) for path in files]
    items.extend(
        IngestItem(filename=path.name, data=path.read_bytes(), role=AssetRole.CERTIFICATE) for path in certificate
    )

    report = asyncio.run(_ingest(settings, target, gemstone_id, items))
    for asset in report.created:
        typer.echo(f"{asset.asset_id}\t{asset.kind.value}\t{asset.ordinal}\t{asset.locator}")
    for failure in report.failed:
        typer.echo(f"FAILED\t{failure.asset.original_filename}\t{failure.reason}", err=True)

    LOGGER.info(
        "ingest_cli_complete",
        extra={"gemstone_id": gemstone_id, "created_assets": len(report.created), "failed": len(report.failed)},
    )
    if report.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    typer.run(main)


__all__ = ["main"]
