"""S3-compatible object store backend (AWS S3, MinIO, R2)."""

from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Any, Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StorageSettings
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

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class ObjectStoreBackend(StorageBackend):
    """Store bytes as objects under ``<key_prefix>/<key>`` in one bucket.

    The boto3 client is created lazily on first use unless one is injected,
    which is how tests supply an in-memory stand-in. Retries are left to the
    caller, so botocore's own retry loop is limited to a single attempt.
    """

    kind = BackendKind.OBJECT_STORE

    def __init__(
        self,
        bucket: str,
        *,
        key_prefix: str = "",
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        super().__init__(chunk_size=chunk_size)
        self.bucket = bucket
        self.key_prefix = key_prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._client = client
        self._client_lock = threading.Lock()
        self._endpoint_url = endpoint_url
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key

    @classmethod
    def from_settings(
        cls,
        settings: StorageSettings,
        *,
        client: Any = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> "ObjectStoreBackend":
        if not settings.bucket:
            raise ValueError("An object store backend needs a bucket")
        return cls(
            settings.bucket,
            key_prefix=settings.key_prefix,
            client=client,
            endpoint_url=settings.endpoint_url,
            region=settings.region,
            access_key_id=settings.access_key_id,
            secret_access_key=settings.secret_access_key,
            public_base_url=settings.public_base_url,
            chunk_size=chunk_size,
        )

    @property
    def client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                kwargs: dict = {
                    "config": Config(
                        signature_version="s3v4",
                        s3={"addressing_style": "path"},
                        retries={"max_attempts": 1, "mode": "standard"},
                    )
                }
                if self._endpoint_url:
                    kwargs["endpoint_url"] = self._endpoint_url
                if self._region:
                    kwargs["region_name"] = self._region
                if self._access_key_id and self._secret_access_key:
                    kwargs["aws_access_key_id"] = self._access_key_id
                    kwargs["aws_secret_access_key"] = self._secret_access_key
                self._client = boto3.client("s3", **kwargs)
                LOGGER.info("Object store client ready for bucket '%s'", self.bucket)
            return self._client

    def object_key(self, key: str) -> str:
        key = key.lstrip("/")
        if not key or ".." in key.split("/"):
            raise ValueError(f"Invalid object key: {key!r}")
        return f"{self.key_prefix}/{key}" if self.key_prefix else key

    def public_url(self, ref: LocationRef) -> Optional[str]:
        self._check_ref(ref)
        if not self.public_base_url:
            return None
        return f"{self.public_base_url}/{ref.key}"

    def _translate(self, error: Exception, ref_text: str, operation: str) -> Exception:
        if isinstance(error, ClientError) and _error_code(error) in _NOT_FOUND_CODES:
            return StorageNotFound(f"No object at {ref_text}")
        LOGGER.warning("Object store %s failed for %s: %s", operation, ref_text, error)
        return StorageUnavailable(f"Object store {operation} failed for {ref_text}: {error}")

    def put(self, key: str, data: bytes, content_type: str) -> LocationRef:
        ref = self.ref(self.object_key(key))
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=ref.key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as error:
            raise self._translate(error, str(ref), "put") from error
        emit_storage_event(
            "put",
            payload={"backend": self.kind, "key": ref.key, "bytes": len(data), "content_type": content_type},
        )
        return ref

    def put_file(self, key: str, source: Path, content_type: str) -> LocationRef:
        ref = self.ref(self.object_key(key))
        try:
            with Path(source).open("rb") as handle:
                self.client.put_object(
                    Bucket=self.bucket,
                    Key=ref.key,
                    Body=handle,
                    ContentType=content_type,
                )
        except (ClientError, BotoCoreError) as error:
            raise self._translate(error, str(ref), "put") from error
        except OSError as error:
            raise StorageUnavailable(f"Unable to read '{source}' for upload: {error}") from error
        emit_storage_event(
            "put_file",
            payload={"backend": self.kind, "key": ref.key, "content_type": content_type},
        )
        return ref

    def get_range(self, ref: LocationRef, start: int, end: Optional[int] = None) -> Iterator[bytes]:
        self._check_ref(ref)
        kwargs = {"Bucket": self.bucket, "Key": ref.key}
        start = max(start, 0)
        if start > 0 or end is not None:
            kwargs["Range"] = f"bytes={start}-{'' if end is None else end}"
        try:
            response = self.client.get_object(**kwargs)
        except (ClientError, BotoCoreError) as error:
            raise self._translate(error, str(ref), "get") from error
        return self._iter_body(response["Body"], str(ref))

    def _iter_body(self, body: Any, ref_text: str) -> Iterator[bytes]:
        try:
            for chunk in body.iter_chunks(self.chunk_size):
                if chunk:
                    yield chunk
        except (ClientError, BotoCoreError) as error:
            raise self._translate(error, ref_text, "read") from error
        finally:
            with contextlib.suppress(Exception):
                body.close()

    def size(self, ref: LocationRef) -> int:
        self._check_ref(ref)
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=ref.key)
        except (ClientError, BotoCoreError) as error:
            raise self._translate(error, str(ref), "head") from error
        return int(response["ContentLength"])

    def delete(self, ref: LocationRef) -> None:
        self._check_ref(ref)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=ref.key)
        except (ClientError, BotoCoreError) as error:
            raise self._translate(error, str(ref), "delete") from error
        emit_storage_event("delete", payload={"backend": self.kind, "key": ref.key})

    def exists(self, ref: LocationRef) -> bool:
        try:
            self.size(ref)
        except StorageNotFound:
            return False
        return True

    def materialize(self, ref: LocationRef, staging_dir: Path) -> Path:
        staging_dir.mkdir(parents=True, exist_ok=True)
        target = staging_dir / ref.key.replace("/", "__")
        chunks = self.get_range(ref, 0, None)
        try:
            with target.open("wb") as handle:
                for chunk in chunks:
                    handle.write(chunk)
        except OSError as error:
            raise StorageUnavailable(f"Unable to stage {ref}: {error}") from error
        emit_storage_event(
            "download",
            payload={"backend": self.kind, "key": ref.key, "target": target},
            level=logging.DEBUG,
        )
        return target


__all__ = ["ObjectStoreBackend"]
