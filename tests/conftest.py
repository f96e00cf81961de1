from __future__ import annotations

import io
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.bootstrap import Bootstrapper
from app.config import AppConfig
from app.services.ingestion import SegmentIngestor
from app.services.merge import MergeOrchestrator
from app.services.registry import SegmentRegistry
from app.storage import LocalStorageBackend, ObjectStoreBackend, StorageBackends


def build_config(tmp_path: Path, **overrides: Any) -> AppConfig:
    mapping: Dict[str, Any] = {
        "storage_root": "storage",
        "database_file": "storage/proctor_media.db",
        "media_root": "storage/media",
        "merge": {
            "workers": 2,
            "concat_strategy": "binary",
            "retry_attempts": 2,
            "retry_base_delay": 0,
            "retry_max_delay": 0,
        },
        "stream_chunk_size": 1024,
    }
    mapping.update(overrides)
    return AppConfig.from_mapping(mapping, base_path=tmp_path)


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    config = build_config(tmp_path)
    Bootstrapper(config).initialize()
    return config


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._stream = io.BytesIO(data)
        self.closed = False

    def iter_chunks(self, chunk_size: int = 1024):
        while True:
            chunk = self._stream.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def close(self) -> None:
        self.closed = True


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client the backend uses."""

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
        self.fail_next: Dict[str, int] = {}
        self.calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] = self.calls.get(operation, 0) + 1
            remaining = self.fail_next.get(operation, 0)
            if remaining:
                self.fail_next[operation] = remaining - 1
                raise _client_error("ServiceUnavailable", operation)

    def put_object(self, *, Bucket: str, Key: str, Body: Any, ContentType: str = "") -> Dict[str, Any]:
        self._maybe_fail("PutObject")
        data = Body.read() if hasattr(Body, "read") else bytes(Body)
        with self._lock:
            self.objects[(Bucket, Key)] = (data, ContentType)
        return {}

    def get_object(self, *, Bucket: str, Key: str, Range: Optional[str] = None) -> Dict[str, Any]:
        self._maybe_fail("GetObject")
        with self._lock:
            stored = self.objects.get((Bucket, Key))
        if stored is None:
            raise _client_error("NoSuchKey", "GetObject")
        data, content_type = stored
        if Range:
            first, _, last = Range.split("=", 1)[1].partition("-")
            start = int(first)
            end = int(last) if last else len(data) - 1
            data = data[start : end + 1]
        return {"Body": _FakeBody(data), "ContentType": content_type, "ContentLength": len(data)}

    def head_object(self, *, Bucket: str, Key: str) -> Dict[str, Any]:
        self._maybe_fail("HeadObject")
        with self._lock:
            stored = self.objects.get((Bucket, Key))
        if stored is None:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(stored[0]), "ContentType": stored[1]}

    def delete_object(self, *, Bucket: str, Key: str) -> Dict[str, Any]:
        self._maybe_fail("DeleteObject")
        with self._lock:
            self.objects.pop((Bucket, Key), None)
        return {}


@pytest.fixture()
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture()
def registry(temp_config: AppConfig) -> SegmentRegistry:
    return SegmentRegistry(temp_config)


@pytest.fixture()
def local_backend(temp_config: AppConfig) -> LocalStorageBackend:
    return LocalStorageBackend(temp_config.media_root, chunk_size=temp_config.stream_chunk_size)


@pytest.fixture()
def object_backend(fake_s3: FakeS3Client) -> ObjectStoreBackend:
    return ObjectStoreBackend("recordings", key_prefix="proctoring", client=fake_s3, chunk_size=1024)


@pytest.fixture()
def backends(local_backend: LocalStorageBackend, object_backend: ObjectStoreBackend) -> StorageBackends:
    return StorageBackends(local_backend, object_backend)


@pytest.fixture()
def ingestor(temp_config: AppConfig, registry: SegmentRegistry, backends: StorageBackends) -> SegmentIngestor:
    return SegmentIngestor(temp_config, registry, backends, sleep=lambda _: None)


@pytest.fixture()
def orchestrator(temp_config: AppConfig, registry: SegmentRegistry, backends: StorageBackends):
    instance = MergeOrchestrator(temp_config, registry, backends, sleep=lambda _: None)
    yield instance
    instance.shutdown(wait=True)
