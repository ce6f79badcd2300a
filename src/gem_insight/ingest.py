"""Media ingestion for a gemstone and admin deletion of assets."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Sequence

from sqlalchemy import func, select

from gem_insight.db import Gemstone, GemstoneAssetRow, SessionFactory
from gem_insight.errors import MediaError, NormalizationFailed, NotFound, StorageError
from gem_insight.hasher import compute_bytes_hash
from gem_insight.models import AssetKind, AssetRole, GemstoneAsset, NormalizationFailure, NormalizedMedia
from gem_insight.normalizer import MediaNormalizer
from gem_insight.resolver import asset_from_row
from gem_insight.retry import RetryPolicy, call_with_retry
from gem_insight.storage import MediaStore
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "ingest"})

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif", ".tif", ".tiff", ".bmp", ".gif"}
VIDEO_SUFFIXES = {".mp4", ".mov", ".m4v", ".webm", ".avi", ".mkv"}

_EXTENSIONS = {
    "image/webp": ".webp",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "video/mp4": ".mp4",
}


def kind_for_filename(filename: str) -> AssetKind | None:
    suffix = PurePosixPath(filename).suffix.lower()
    if suffix in IMAGE_SUFFIXES:
        return AssetKind.IMAGE
    if suffix in VIDEO_SUFFIXES:
        return AssetKind.VIDEO
    return None


@dataclass(frozen=True)
class IngestItem:
    filename: str
    data: bytes
    kind: AssetKind | None = None
    role: AssetRole = AssetRole.PHOTO


@dataclass(frozen=True)
class IngestReport:
    created: tuple[GemstoneAsset, ...]
    failed: tuple[NormalizationFailure, ...]


class MediaIngestor:
    """Normalize uploads, store the derivatives and register them as gemstone assets.

    Ingestion never marks a primary image; that is decided by analysis or by
    the first-image default policy.
    """

    def __init__(
        self,
        normalizer: MediaNormalizer,
        store: MediaStore,
        session_factory: SessionFactory,
        *,
        write_policy: RetryPolicy | None = None,
    ) -> None:
        self._normalizer = normalizer
        self._store = store
        self._session_factory = session_factory
        self._write_policy = write_policy or RetryPolicy(attempts=3, timeout_s=30.0, backoff_s=0.5, retry_on=(StorageError,))

    def _next_ordinal(self, gemstone_id: str) -> int:
        with self._session_factory() as session:
            if session.get(Gemstone, gemstone_id) is None:
                raise NotFound("gemstone", gemstone_id)
            current = session.execute(
                select(func.max(GemstoneAssetRow.ordinal)).where(GemstoneAssetRow.gemstone_id == gemstone_id)
            ).scalar_one_or_none()
        return 0 if current is None else current + 1

    async def _put(self, locator: str, data: bytes, content_type: str) -> str:
        return await call_with_retry(
            lambda: self._store.put(locator, data, content_type),
            self._write_policy,
            label="media_put",
            on_timeout=lambda seconds: StorageError(f"upload exceeded {seconds:.0f}s"),
            log_extra={"locator": locator},
        )

    async def _store_media(self, media: NormalizedMedia) -> tuple[str, str | None, str]:
        # One stored object per asset; identical uploads never share a locator.
        asset = media.asset
        digest = compute_bytes_hash(media.data)
        folder = "videos" if asset.kind is AssetKind.VIDEO else "images"
        extension = _EXTENSIONS.get(media.mime_type, "")
        stem = f"{digest}-{asset.asset_id}"
        locator = await self._put(f"gemstones/{asset.gemstone_id}/{folder}/{stem}{extension}", media.data, media.mime_type)

        thumbnail_locator = None
        if media.thumbnail is not None:
            thumbnail_locator = await self._put(
                f"gemstones/{asset.gemstone_id}/thumbnails/{stem}.jpg", media.thumbnail, "image/jpeg"
            )
        return locator, thumbnail_locator, digest

    async def ingest(self, gemstone_id: str, items: Sequence[IngestItem]) -> IngestReport:
        """Register ``items`` under ``gemstone_id`` with consecutive ordinals."""

        ordinal = await asyncio.to_thread(self._next_ordinal, gemstone_id)
        rows: list[GemstoneAssetRow] = []
        failed: list[NormalizationFailure] = []

        for item in items:
            kind = item.kind or kind_for_filename(item.filename)
            provisional = GemstoneAsset(
                asset_id=uuid.uuid4().hex,
                gemstone_id=gemstone_id,
                kind=kind or AssetKind.IMAGE,
                locator=f"upload:{item.filename}",
                ordinal=ordinal,
                original_filename=item.filename,
                role=item.role,
            )
            if kind is None:
                failed.append(NormalizationFailure(asset=provisional, reason="unsupported_format", detail=item.filename))
                continue

            try:
                media = await self._normalizer.normalize_blob(provisional, item.data)
                locator, thumbnail_locator, digest = await self._store_media(media)
            except MediaError as exc:
                LOGGER.warning(
                    "ingest_media_rejected",
                    extra={"gemstone_id": gemstone_id, "original_filename": item.filename, "reason": exc.reason},
                )
                failed.append(NormalizationFailure(asset=provisional, reason=exc.reason, detail=str(exc)))
                continue
            except StorageError as exc:
                LOGGER.error(
                    "ingest_upload_failed",
                    extra={"gemstone_id": gemstone_id, "original_filename": item.filename, "error": str(exc)},
                )
                failed.append(NormalizationFailure(asset=provisional, reason="upload_failed", detail=str(exc)))
                continue
            except Exception as exc:
                LOGGER.error(
                    "ingest_media_error",
                    extra={
                        "gemstone_id": gemstone_id,
                        "original_filename": item.filename,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                failed.append(NormalizationFailure(asset=provisional, reason=NormalizationFailed.reason, detail=str(exc)))
                continue

            rows.append(
                GemstoneAssetRow(
                    asset_id=provisional.asset_id,
                    gemstone_id=gemstone_id,
                    kind=kind.value,
                    role=item.role.value,
                    locator=locator,
                    ordinal=ordinal,
                    is_primary=False,
                    original_filename=item.filename,
                    thumbnail_locator=thumbnail_locator,
                    duration_seconds=media.duration_seconds,
                    size_bytes=media.size_bytes,
                    content_hash=digest,
                    created_at=time.time(),
                )
            )
            ordinal += 1

        created = await asyncio.to_thread(self._insert_rows, rows)
        LOGGER.info(
            "media_ingested",
            extra={"gemstone_id": gemstone_id, "created_assets": len(created), "failed": len(failed)},
        )
        return IngestReport(created=tuple(created), failed=tuple(failed))

    def _insert_rows(self, rows: list[GemstoneAssetRow]) -> list[GemstoneAsset]:
        if not rows:
            return []
        with self._session_factory() as session, session.begin():
            session.add_all(rows)
            session.flush()
            return [asset_from_row(row) for row in rows]

    async def delete_asset(self, asset_id: str) -> None:
        """Remove the stored media (and thumbnail) first, then the asset row."""

        def _load() -> GemstoneAsset:
            with self._session_factory() as session:
                row = session.get(GemstoneAssetRow, asset_id)
                if row is None:
                    raise NotFound("asset", asset_id)
                return asset_from_row(row)

        asset = await asyncio.to_thread(_load)
        for locator in (asset.locator, asset.thumbnail_locator):
            if locator:
                await call_with_retry(
                    lambda locator=locator: self._store.delete(locator),
                    self._write_policy,
                    label="media_delete",
                    on_timeout=lambda seconds: StorageError(f"delete exceeded {seconds:.0f}s"),
                    log_extra={"asset_id": asset_id},
                )

        def _delete_row() -> None:
            with self._session_factory() as session, session.begin():
                row = session.get(GemstoneAssetRow, asset_id)
                if row is not None:
                    session.delete(row)

        await asyncio.to_thread(_delete_row)
        LOGGER.info("asset_deleted", extra={"asset_id": asset_id, "gemstone_id": asset.gemstone_id})


__all__ = ["IngestItem", "IngestReport", "MediaIngestor", "kind_for_filename"]
