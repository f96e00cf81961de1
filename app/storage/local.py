"""Filesystem storage backend rooted at the configured media directory."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from ..services.events import emit_storage_event
from .base import (
    DEFAULT_CHUNK_SIZE,
    BackendKind,
    LocationRef,
    StorageBackend,
    StorageNotFound,
    StorageUnavailable,
)


LOGGER = logging.getLogger(__name__)


def _iter_handle(handle: BinaryIO, start: int, end: Optional[int], chunk_size: int) -> Iterator[bytes]:
    try:
        handle.seek(start)
        remaining = None if end is None else max(end - start + 1, 0)
        while remaining is None or remaining > 0:
            to_read = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = handle.read(to_read)
            if not chunk:
                break
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


class LocalStorageBackend(StorageBackend):
    """Store bytes as files below ``root``, one directory per session."""

    kind = BackendKind.LOCAL

    def __init__(self, root: Path, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        super().__init__(chunk_size=chunk_size)
        self.root = Path(root).resolve()

    def _resolve(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        if candidate == self.root or self.root not in candidate.parents:
            raise ValueError(f"Storage key escapes the media root: {key!r}")
        return candidate

    def path_for(self, ref: LocationRef) -> Path:
        self._check_ref(ref)
        return self._resolve(ref.key)

    def _write_atomically(self, target: Path, writer) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            descriptor, temp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=".part", dir=target.parent
            )
        except OSError as error:
            raise StorageUnavailable(f"Unable to prepare '{target}': {error}") from error

        temp_path = Path(temp_name)
        try:
            with os.fdopen(descriptor, "wb") as handle:
                writer(handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except OSError as error:
            with contextlib.suppress(OSError):
                temp_path.unlink()
            raise StorageUnavailable(f"Unable to write '{target}': {error}") from error

    def put(self, key: str, data: bytes, content_type: str) -> LocationRef:
        target = self._resolve(key)
        self._write_atomically(target, lambda handle: handle.write(data))
        emit_storage_event(
            "put",
            payload={"backend": self.kind, "key": key, "bytes": len(data), "content_type": content_type},
        )
        return self.ref(key)

    def put_file(self, key: str, source: Path, content_type: str) -> LocationRef:
        target = self._resolve(key)

        def _copy(handle: BinaryIO) -> None:
            with Path(source).open("rb") as reader:
                shutil.copyfileobj(reader, handle, self.chunk_size)

        self._write_atomically(target, _copy)
        emit_storage_event(
            "put_file",
            payload={"backend": self.kind, "key": key, "content_type": content_type},
        )
        return self.ref(key)

    def get_range(self, ref: LocationRef, start: int, end: Optional[int] = None) -> Iterator[bytes]:
        path = self.path_for(ref)
        try:
            handle = path.open("rb")
        except FileNotFoundError as error:
            raise StorageNotFound(f"No file at {ref}") from error
        except IsADirectoryError as error:
            raise StorageNotFound(f"No file at {ref}") from error
        except OSError as error:
            raise StorageUnavailable(f"Unable to open {ref}: {error}") from error
        return _iter_handle(handle, max(start, 0), end, self.chunk_size)

    def size(self, ref: LocationRef) -> int:
        path = self.path_for(ref)
        try:
            stat = path.stat()
        except FileNotFoundError as error:
            raise StorageNotFound(f"No file at {ref}") from error
        except OSError as error:
            raise StorageUnavailable(f"Unable to stat {ref}: {error}") from error
        if not path.is_file():
            raise StorageNotFound(f"No file at {ref}")
        return stat.st_size

    def delete(self, ref: LocationRef) -> None:
        path = self.path_for(ref)
        try:
            path.unlink()
        except FileNotFoundError as error:
            raise StorageNotFound(f"No file at {ref}") from error
        except OSError as error:
            raise StorageUnavailable(f"Unable to delete {ref}: {error}") from error
        emit_storage_event("delete", payload={"backend": self.kind, "key": ref.key})
        with contextlib.suppress(OSError):
            if path.parent != self.root and not any(path.parent.iterdir()):
                path.parent.rmdir()

    def exists(self, ref: LocationRef) -> bool:
        return self.path_for(ref).is_file()

    def materialize(self, ref: LocationRef, staging_dir: Path) -> Path:
        path = self.path_for(ref)
        if not path.is_file():
            raise StorageNotFound(f"No file at {ref}")
        return path


__all__ = ["LocalStorageBackend"]
