"""Turn raw stored media into analysis-ready derivatives.

Every asset is handled independently: a file that cannot be fetched, decoded,
transcoded or brought under the storage size ceiling ends up in
``NormalizationReport.failed`` with a reason string, and the remaining files
are still processed.
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path, PurePosixPath
from typing import Sequence

from gem_insight.config import MediaConfig
from gem_insight.errors import MediaError, NormalizationFailed, NotFound, SizeLimitExceeded, StorageError
from gem_insight.models import (
    AssetKind,
    GemstoneAsset,
    NormalizationFailure,
    NormalizationReport,
    NormalizedMedia,
)
from gem_insight.retry import RetryPolicy, call_with_retry
from gem_insight.storage import MediaStore
from gem_insight.thumbnailing import prepare_image_bytes
from gem_insight.transcoder import VideoTranscoder
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "normalizer"})

VIDEO_MIME_TYPE = "video/mp4"


class MediaNormalizer:
    """Fetch, decode and re-encode gemstone media under size and time limits."""

    def __init__(
        self,
        config: MediaConfig,
        store: MediaStore,
        *,
        transcoder: VideoTranscoder | None = None,
        fetch_policy: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._transcoder = transcoder or VideoTranscoder(config)
        self._fetch_policy = fetch_policy or RetryPolicy(attempts=2, timeout_s=30.0, retry_on=(StorageError,))
        self._image_policy = RetryPolicy(attempts=1, timeout_s=config.transcode_timeout_s)

    def _check_size(self, data: bytes, what: str) -> None:
        if len(data) > self._config.max_file_bytes:
            raise SizeLimitExceeded(
                f"{what} is {len(data)} bytes after normalization, limit {self._config.max_file_bytes}"
            )

    async def normalize_image(self, asset: GemstoneAsset, data: bytes) -> NormalizedMedia:
        """Orient, cap and re-encode one image blob; raise :class:`MediaError` on failure."""

        cfg = self._config
        encoded = await call_with_retry(
            lambda: asyncio.to_thread(
                prepare_image_bytes, data, cfg.max_image_edge_px, cfg.image_format, cfg.image_quality
            ),
            self._image_policy,
            label="image_normalize",
            on_timeout=lambda seconds: NormalizationFailed(f"image normalization exceeded {seconds:.0f}s"),
            log_extra={"asset_id": asset.asset_id},
        )
        self._check_size(encoded.data, "image")
        return NormalizedMedia(
            asset=asset,
            data=encoded.data,
            mime_type=encoded.mime_type,
            width=encoded.width,
            height=encoded.height,
        )

    async def normalize_video(self, asset: GemstoneAsset, data: bytes) -> NormalizedMedia:
        """Optimize a video when its bitrate is above the ceiling; extract thumbnail and duration."""

        cfg = self._config
        suffix = PurePosixPath(asset.original_filename or asset.locator).suffix or ".mp4"

        with tempfile.TemporaryDirectory(prefix="gem_insight_video_") as tmp:
            workdir = Path(tmp)
            source = workdir / f"source{suffix}"
            await asyncio.to_thread(source.write_bytes, data)

            probe = await self._transcoder.probe(source)
            output = source
            transcoded = False
            if probe.bit_rate is None or probe.bit_rate > cfg.video_max_bitrate_bps:
                output = workdir / "optimized.mp4"
                await self._transcoder.optimize(source, output)
                transcoded = True

            offset = cfg.thumbnail_offset_s
            if probe.duration_seconds is not None and probe.duration_seconds <= offset:
                offset = probe.duration_seconds / 2.0
            thumbnail_path = workdir / "thumbnail.jpg"
            await self._transcoder.extract_thumbnail(output, thumbnail_path, offset)

            try:
                video_bytes = await asyncio.to_thread(output.read_bytes)
                thumbnail_raw = await asyncio.to_thread(thumbnail_path.read_bytes)
            except FileNotFoundError as exc:
                raise NormalizationFailed(f"transcoder produced no output: {exc.filename}") from exc

        self._check_size(video_bytes, "video")
        thumbnail = await asyncio.to_thread(
            prepare_image_bytes, thumbnail_raw, cfg.thumbnail_max_edge_px, "JPEG", cfg.image_quality
        )
        duration = round(probe.duration_seconds, 2) if probe.duration_seconds is not None else None

        LOGGER.info(
            "video_normalized",
            extra={
                "asset_id": asset.asset_id,
                "transcoded": transcoded,
                "input_bit_rate": probe.bit_rate,
                "input_bytes": len(data),
                "output_bytes": len(video_bytes),
                "duration_seconds": duration,
            },
        )
        return NormalizedMedia(
            asset=asset,
            data=video_bytes,
            mime_type=VIDEO_MIME_TYPE,
            thumbnail=thumbnail.data,
            duration_seconds=duration,
            transcoded=transcoded,
        )

    async def normalize_blob(self, asset: GemstoneAsset, data: bytes) -> NormalizedMedia:
        if asset.kind is AssetKind.VIDEO:
            return await self.normalize_video(asset, data)
        return await self.normalize_image(asset, data)

    async def _normalize_one(
        self, asset: GemstoneAsset, semaphore: asyncio.Semaphore
    ) -> NormalizedMedia | NormalizationFailure:
        async with semaphore:
            try:
                data = await call_with_retry(
                    lambda: self._store.fetch(asset.locator),
                    self._fetch_policy,
                    label="media_fetch",
                    on_timeout=lambda seconds: StorageError(f"fetch exceeded {seconds:.0f}s"),
                    log_extra={"asset_id": asset.asset_id},
                )
            except (NotFound, StorageError) as exc:
                LOGGER.warning(
                    "media_fetch_failed",
                    extra={"asset_id": asset.asset_id, "locator": asset.locator, "error": str(exc)},
                )
                return NormalizationFailure(asset=asset, reason="fetch_failed", detail=str(exc))
            except Exception as exc:
                LOGGER.error(
                    "media_fetch_error",
                    extra={"asset_id": asset.asset_id, "locator": asset.locator, "error_type": type(exc).__name__, "error": str(exc)},
                )
                return NormalizationFailure(asset=asset, reason="fetch_failed", detail=str(exc))

            try:
                return await self.normalize_blob(asset, data)
            except MediaError as exc:
                LOGGER.warning(
                    "media_normalization_failed",
                    extra={
                        "asset_id": asset.asset_id,
                        "kind": asset.kind.value,
                        "reason": exc.reason,
                        "error": str(exc),
                    },
                )
                return NormalizationFailure(asset=asset, reason=exc.reason, detail=str(exc))
            except Exception as exc:
                LOGGER.error(
                    "media_normalization_error",
                    extra={"asset_id": asset.asset_id, "error_type": type(exc).__name__, "error": str(exc)},
                )
                return NormalizationFailure(asset=asset, reason=NormalizationFailed.reason, detail=str(exc))

    async def normalize(self, assets: Sequence[GemstoneAsset]) -> NormalizationReport:
        """Normalize ``assets`` concurrently and partition the outcomes."""

        semaphore = asyncio.Semaphore(max(1, self._config.concurrency))
        outcomes = await asyncio.gather(*(self._normalize_one(asset, semaphore) for asset in assets))

        succeeded = tuple(item for item in outcomes if isinstance(item, NormalizedMedia))
        failed = tuple(item for item in outcomes if isinstance(item, NormalizationFailure))
        if failed:
            LOGGER.info(
                "media_normalization_partial",
                extra={"succeeded": len(succeeded), "failed": len(failed), "reasons": [item.reason for item in failed]},
            )
        return NormalizationReport(succeeded=succeeded, failed=failed)


__all__ = ["MediaNormalizer", "VIDEO_MIME_TYPE"]
