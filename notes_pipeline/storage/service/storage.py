from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, runtime_checkable

import orjson

from notes_pipeline.exceptions import InvalidObjectKeyError, TransientStoreError
from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

META_SUFFIX = ".meta.json"


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: bytes
    content_type: str = "application/octet-stream"
    metadata: dict[str, str] = field(default_factory=dict)

    def text(self) -> str:
        return self.body.decode("utf-8")


@runtime_checkable
class ObjectStore(Protocol):
    """Durable object storage keyed by slash-separated paths. Writes overwrite."""

    async def put(
        self,
        key: str,
        data: str | bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict[str, str]] = None,
    ) -> None: ...

    async def get(self, key: str) -> Optional[StoredObject]: ...

    async def head(self, key: str) -> Optional[dict[str, str]]: ...


class FileObjectStore:
    """Object store on the local filesystem.

    Each object is a file below ``base_path``; its content type and custom
    metadata live in a ``<name>.meta.json`` sidecar. Writes go through a temp
    file and ``os.replace`` so readers never see a partial object.
    """

    def __init__(self, base_path: str | Path | None = None) -> None:
        self._base_path = Path(base_path or get_settings().storage_path)

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _resolve(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not key or key.startswith("/") or ".." in parts or "\\" in key:
            raise InvalidObjectKeyError(key)
        if key.endswith(META_SUFFIX):
            raise InvalidObjectKeyError(key)
        return self._base_path.joinpath(*parts)

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    async def put(
        self,
        key: str,
        data: str | bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: Optional[dict[str, str]] = None,
    ) -> None:
        path = self._resolve(key)
        body = data.encode("utf-8") if isinstance(data, str) else data
        meta = orjson.dumps({"contentType": content_type, "metadata": metadata or {}})

        try:
            await asyncio.to_thread(self._write, path, body, meta)
        except OSError as e:
            logger.error("Object write failed", key=key, error=str(e))
            raise TransientStoreError(f"Failed to write {key}: {e}") from e

        logger.debug("Object written", key=key, size=len(body), content_type=content_type)

    def _write(self, path: Path, body: bytes, meta: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Metadata first: a reader that sees the new body also sees its metadata.
        _atomic_write(self._meta_path(path), meta)
        _atomic_write(path, body)

    async def get(self, key: str) -> Optional[StoredObject]:
        path = self._resolve(key)
        try:
            return await asyncio.to_thread(self._read, key, path)
        except OSError as e:
            logger.error("Object read failed", key=key, error=str(e))
            raise TransientStoreError(f"Failed to read {key}: {e}") from e

    def _read(self, key: str, path: Path) -> Optional[StoredObject]:
        if not path.is_file():
            return None
        body = path.read_bytes()
        meta = self._read_meta(path) or {}
        return StoredObject(
            key=key,
            body=body,
            content_type=meta.get("contentType", "application/octet-stream"),
            metadata=meta.get("metadata", {}),
        )

    async def head(self, key: str) -> Optional[dict[str, str]]:
        """Custom metadata of an object, or None when the object does not exist."""
        path = self._resolve(key)
        try:
            meta = await asyncio.to_thread(self._read_meta, path)
        except OSError as e:
            raise TransientStoreError(f"Failed to stat {key}: {e}") from e
        if meta is None:
            return None
        return meta.get("metadata", {})

    def _read_meta(self, path: Path) -> Optional[dict]:
        if not path.is_file():
            return None
        meta_path = self._meta_path(path)
        if not meta_path.is_file():
            return {}
        try:
            return orjson.loads(meta_path.read_bytes())
        except orjson.JSONDecodeError:
            logger.warning("Corrupt object metadata ignored", path=str(meta_path))
            return {}


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


_storage: Optional[ObjectStore] = None


def get_storage() -> ObjectStore:
    global _storage
    if _storage is None:
        _storage = FileObjectStore()
    return _storage
