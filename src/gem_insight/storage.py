"""Media store collaborators: local filesystem and HTTP object storage."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol

import httpx

from gem_insight.config import StorageConfig
from gem_insight.errors import NotFound, StorageError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "storage"})


class MediaStore(Protocol):
    """Blob storage addressed by string locators."""

    async def fetch(self, locator: str) -> bytes: ...

    async def put(self, locator: str, data: bytes, content_type: str) -> str: ...

    async def delete(self, locator: str) -> None: ...


class LocalMediaStore:
    """Stores blobs as files below ``root``; locators are relative POSIX paths."""

    def __init__(self, root: Path) -> None:
        self._root = root.resolve()

    def _path_for(self, locator: str) -> Path:
        path = (self._root / locator.lstrip("/")).resolve()
        if not path.is_relative_to(self._root):
            raise StorageError(f"locator escapes media root: {locator!r}")
        return path

    async def fetch(self, locator: str) -> bytes:
        path = self._path_for(locator)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFound("media", locator) from exc
        except OSError as exc:
            raise StorageError(f"failed to read {locator!r}: {exc}") from exc

    async def put(self, locator: str, data: bytes, content_type: str) -> str:
        path = self._path_for(locator)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".part")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"failed to write {locator!r}: {exc}") from exc
        LOGGER.debug("media_stored", extra={"locator": locator, "size_bytes": len(data), "content_type": content_type})
        return locator

    async def delete(self, locator: str) -> None:
        path = self._path_for(locator)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise StorageError(f"failed to delete {locator!r}: {exc}") from exc


class HttpMediaStore:
    """Object storage reachable over HTTP (``GET``/``PUT``/``DELETE`` per locator)."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/", headers=headers, timeout=timeout_s, transport=transport
        )

    async def fetch(self, locator: str) -> bytes:
        try:
            response = await self._client.get(locator.lstrip("/"))
        except httpx.HTTPError as exc:
            raise StorageError(f"failed to fetch {locator!r}: {exc}") from exc
        if response.status_code == 404:
            raise NotFound("media", locator)
        if response.is_error:
            raise StorageError(f"failed to fetch {locator!r}: HTTP {response.status_code}")
        return response.content

    async def put(self, locator: str, data: bytes, content_type: str) -> str:
        try:
            response = await self._client.put(
                locator.lstrip("/"), content=data, headers={"Content-Type": content_type, "x-upsert": "true"}
            )
        except httpx.HTTPError as exc:
            raise StorageError(f"failed to upload {locator!r}: {exc}") from exc
        if response.is_error:
            raise StorageError(f"failed to upload {locator!r}: HTTP {response.status_code}")
        return locator

    async def delete(self, locator: str) -> None:
        try:
            response = await self._client.delete(locator.lstrip("/"))
        except httpx.HTTPError as exc:
            raise StorageError(f"failed to delete {locator!r}: {exc}") from exc
        if response.is_error and response.status_code != 404:
            raise StorageError(f"failed to delete {locator!r}: HTTP {response.status_code}")

    async def aclose(self) -> None:
        await self._client.aclose()


def build_media_store(config: StorageConfig) -> MediaStore:
    """Return the media store selected by ``config.backend``."""

    if config.backend == "http":
        if not config.base_url:
            raise ValueError("storage.base_url is required for the http backend")
        return HttpMediaStore(config.base_url, token=os.getenv(config.token_env), timeout_s=config.timeout_s)
    if config.backend == "local":
        return LocalMediaStore(Path(config.local_root))
    raise ValueError(f"Unsupported storage backend: {config.backend!r}")


__all__ = ["HttpMediaStore", "LocalMediaStore", "MediaStore", "build_media_store"]
