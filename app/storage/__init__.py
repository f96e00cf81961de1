"""Storage backends holding segment and recording bytes."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..config import AppConfig
from .base import (
    BackendKind,
    LocationRef,
    StorageBackend,
    StorageNotFound,
    StorageUnavailable,
)
from .local import LocalStorageBackend
from .object_store import ObjectStoreBackend


class StorageBackends:
    """The configured backends plus the one that receives new bytes.

    Reads resolve a backend from a reference's tag, so segments written before
    a backend migration stay readable after it.
    """

    def __init__(self, active: StorageBackend, *others: StorageBackend) -> None:
        self._backends: Dict[BackendKind, StorageBackend] = {}
        for backend in (active, *others):
            self._backends.setdefault(backend.kind, backend)
        self._active_kind = active.kind

    @classmethod
    def from_config(cls, config: AppConfig, *, object_store_client: Any = None) -> "StorageBackends":
        local = LocalStorageBackend(config.media_root, chunk_size=config.stream_chunk_size)
        remote: Optional[ObjectStoreBackend] = None
        if config.storage.object_store_configured:
            remote = ObjectStoreBackend.from_settings(
                config.storage,
                client=object_store_client,
                chunk_size=config.stream_chunk_size,
            )
        if config.storage.backend == BackendKind.OBJECT_STORE.value and remote is not None:
            return cls(remote, local)
        if remote is not None:
            return cls(local, remote)
        return cls(local)

    @property
    def active(self) -> StorageBackend:
        return self._backends[self._active_kind]

    def for_kind(self, kind: BackendKind) -> StorageBackend:
        try:
            return self._backends[BackendKind(kind)]
        except KeyError as error:
            raise StorageUnavailable(f"No {BackendKind(kind).value} backend is configured") from error

    def for_ref(self, ref: LocationRef) -> StorageBackend:
        return self.for_kind(ref.backend)

    def public_url(self, ref: LocationRef) -> Optional[str]:
        backend = self._backends.get(ref.backend)
        return backend.public_url(ref) if backend is not None else None


__all__ = [
    "BackendKind",
    "LocalStorageBackend",
    "LocationRef",
    "ObjectStoreBackend",
    "StorageBackend",
    "StorageBackends",
    "StorageNotFound",
    "StorageUnavailable",
]
