"""Content digests for stored media derivatives."""

from __future__ import annotations

import xxhash


def compute_bytes_hash(data: bytes) -> str:
    """Return the 16-character xxhash64 hex digest of ``data``.

    The digest names derivatives in the media store, so identical uploads
    share a locator.
    """

    return xxhash.xxh64(data).hexdigest()


__all__ = ["compute_bytes_hash"]
