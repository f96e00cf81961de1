"""Backend-neutral storage contract."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from ..errors import DataLossError, TransientBackendError


DEFAULT_CHUNK_SIZE = 64 * 1024


class BackendKind(str, Enum):
    """Tag naming the medium that holds a set of bytes."""

    LOCAL = "local"
    OBJECT_STORE = "object_store"


class StorageNotFound(DataLossError):
    """The referenced location does not hold any bytes."""


class StorageUnavailable(TransientBackendError):
    """The backend could not be reached; the caller may retry."""


@dataclass(frozen=True)
class LocationRef:
    """A backend tag plus the key that backend understands."""

    backend: BackendKind
    key: str

    def __str__(self) -> str:
        return f"{self.backend.value}:{self.key}"

    @classmethod
    def parse(cls, value: str) -> "LocationRef":
        backend, separator, key = str(value).partition(":")
        if not separator or not key:
            raise ValueError(f"Malformed location reference: {value!r}")
        try:
            kind = BackendKind(backend)
        except ValueError as error:
            raise ValueError(f"Unknown storage backend in reference: {value!r}") from error
        return cls(backend=kind, key=key)


class StorageBackend(abc.ABC):
    """Uniform put/get/range/delete interface implemented per backend.

    Reads are returned as iterators yielding at most ``chunk_size`` bytes at a
    time. ``get_range`` opens the underlying resource eagerly so that a
    missing object raises :class:`StorageNotFound` before any bytes are
    yielded; ``end`` is inclusive and ``None`` means "until the end".
    """

    kind: BackendKind

    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = max(int(chunk_size), 1)

    @abc.abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> LocationRef:
        """Store *data* under *key* and return its location."""

    @abc.abstractmethod
    def put_file(self, key: str, source: Path, content_type: str) -> LocationRef:
        """Store the file at *source* under *key* without loading it into memory."""

    @abc.abstractmethod
    def get_range(self, ref: LocationRef, start: int, end: Optional[int] = None) -> Iterator[bytes]:
        """Return an iterator over bytes ``start..end`` of *ref*."""

    def get(self, ref: LocationRef) -> Iterator[bytes]:
        return self.get_range(ref, 0, None)

    @abc.abstractmethod
    def size(self, ref: LocationRef) -> int:
        """Return the size in bytes of the object behind *ref*."""

    @abc.abstractmethod
    def delete(self, ref: LocationRef) -> None:
        """Remove the bytes behind *ref*."""

    @abc.abstractmethod
    def exists(self, ref: LocationRef) -> bool:
        """Return ``True`` when *ref* currently holds bytes."""

    @abc.abstractmethod
    def materialize(self, ref: LocationRef, staging_dir: Path) -> Path:
        """Return a local file holding the bytes of *ref*.

        Local files are returned in place; remote objects are downloaded into
        *staging_dir*. Callers must not modify the returned file.
        """

    def public_url(self, ref: LocationRef) -> Optional[str]:
        """Return a URL clients can fetch directly, when the backend offers one."""

        return None

    def ref(self, key: str) -> LocationRef:
        return LocationRef(backend=self.kind, key=key)

    def _check_ref(self, ref: LocationRef) -> None:
        if ref.backend is not self.kind:
            raise ValueError(
                f"{ref.backend.value} reference passed to the {self.kind.value} backend"
            )


__all__ = [
    "BackendKind",
    "DEFAULT_CHUNK_SIZE",
    "LocationRef",
    "StorageBackend",
    "StorageNotFound",
    "StorageUnavailable",
]
