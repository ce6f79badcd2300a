"""Shared Pillow helpers for analysis-ready images and thumbnails."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError
from PIL.Image import Resampling

from gem_insight.errors import NormalizationFailed, UnsupportedFormat
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})

_ALPHA_FORMATS = {"PNG", "WEBP"}


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    mime_type: str
    width: int
    height: int


def _get_resample_filter() -> Resampling:
    """Return the preferred resample filter compatible with the current Pillow."""

    return Resampling.LANCZOS


def build_thumbnail_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce a resized copy of an image constrained to ``max_side`` pixels."""

    safe_side = max(1, int(max_side))
    resized = image.copy()
    resized.thumbnail((safe_side, safe_side), resample=_get_resample_filter())
    return resized


def decode_image(data: bytes) -> Image.Image:
    """Decode ``data`` and apply the EXIF orientation; raise :class:`UnsupportedFormat` if undecodable."""

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise UnsupportedFormat(f"undecodable image: {exc}") from exc


def encode_image(image: Image.Image, max_side: int, image_format: str, quality: int) -> EncodedImage:
    """Cap the long edge at ``max_side`` and re-encode to ``image_format``."""

    target_format = image_format.upper()
    working = image
    if max(working.size) > max_side:
        working = build_thumbnail_image(working, max_side)

    if target_format in _ALPHA_FORMATS and working.mode in ("RGBA", "LA"):
        working = working.convert("RGBA")
    elif working.mode not in ("RGB", "L"):
        working = working.convert("RGB")

    save_kwargs: dict[str, object] = {"quality": quality}
    if target_format == "JPEG":
        save_kwargs.update(optimize=True, progressive=True)
    elif target_format == "WEBP":
        save_kwargs["method"] = 4

    buffer = io.BytesIO()
    try:
        working.save(buffer, format=target_format, **save_kwargs)
    except (OSError, KeyError, ValueError) as exc:
        LOGGER.error(
            "image_encode_error",
            extra={"image_format": target_format, "max_side": max_side, "quality": quality, "error": str(exc)},
        )
        raise NormalizationFailed(f"failed to encode {target_format}: {exc}") from exc

    mime = Image.MIME.get(target_format, f"image/{target_format.lower()}")
    return EncodedImage(data=buffer.getvalue(), mime_type=mime, width=working.width, height=working.height)


def prepare_image_bytes(data: bytes, max_side: int, image_format: str, quality: int) -> EncodedImage:
    """Decode, orient, cap and re-encode an image blob."""

    return encode_image(decode_image(data), max_side, image_format, quality)


__all__ = ["EncodedImage", "build_thumbnail_image", "decode_image", "encode_image", "prepare_image_bytes"]
