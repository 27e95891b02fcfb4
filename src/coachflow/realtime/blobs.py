"""Blob storage for message attachments."""

from __future__ import annotations

import abc
import logging
from pathlib import Path, PurePosixPath
from typing import Final

from .errors import UploadError

logger = logging.getLogger(__name__)

_CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MiB


class BlobStorage(abc.ABC):
    """Accepts a path and a binary payload and hands back a retrieval URL."""

    @abc.abstractmethod
    async def upload(self, path: str, payload: bytes, content_type: str | None = None) -> str:
        """Persist ``payload`` under ``path`` and return its URL."""

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        """Remove a stored blob; missing blobs are ignored."""


def _normalize_blob_path(path: str) -> PurePosixPath:
    candidate = PurePosixPath(path)
    if candidate.is_absolute() or not candidate.parts or ".." in candidate.parts:
        raise UploadError(f"Invalid blob path: {path!r}")
    return candidate


class LocalBlobStorage(BlobStorage):
    """Writes blobs below a media root on the local filesystem."""

    def __init__(self, root: Path, base_url: str, *, max_size: int) -> None:
        self._root = Path(root).resolve()
        self._base_url = base_url.rstrip("/")
        self._max_size = max_size

    def _target(self, path: str) -> Path:
        relative = _normalize_blob_path(path)
        target = (self._root / Path(*relative.parts)).resolve()
        if not str(target).startswith(str(self._root)):
            raise UploadError(f"Invalid blob path: {path!r}")
        return target

    def resolve(self, path: str) -> Path:
        """Return the file stored under ``path``; raises :class:`UploadError` if unsafe."""

        return self._target(path)

    async def upload(self, path: str, payload: bytes, content_type: str | None = None) -> str:
        if len(payload) > self._max_size:
            raise UploadError("Attachment exceeds allowed size")
        target = self._target(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as buffer:
                for offset in range(0, len(payload), _CHUNK_SIZE):
                    buffer.write(payload[offset:offset + _CHUNK_SIZE])
        except OSError as exc:
            if target.exists():
                target.unlink()
            raise UploadError(f"Could not store attachment {path!r}") from exc
        logger.debug(
            "Stored attachment",
            extra={"path": path, "size": len(payload), "content_type": content_type},
        )
        return f"{self._base_url}/{_normalize_blob_path(path).as_posix()}"

    async def delete(self, path: str) -> None:
        target = self._target(path)
        if target.is_file():
            target.unlink()
