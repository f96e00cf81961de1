"""Configuration loading utilities for the proctoring media pipeline."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".proctor_media_write_check"
_ENV_PREFIX = "PROCTOR_MEDIA_"

BACKEND_CHOICES: Tuple[str, ...] = ("local", "object_store")
CONCAT_STRATEGIES: Tuple[str, ...] = ("ffmpeg", "binary")

DEFAULT_STREAM_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_SEGMENT_BYTES = 8 * 1024 * 1024


class ConfigError(ValueError):
    """Raised when the configuration cannot describe a usable deployment."""


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The boolean flag reports whether a
    fallback had to be used. When nothing is writable ``preferred`` is
    returned unchanged and bootstrap reports the failure.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_int(value: Any, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _coerce_float(value: Any, default: float, *, minimum: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


@dataclass(frozen=True)
class StorageSettings:
    """Which backend receives new bytes and how to reach the object store."""

    backend: str = "local"
    bucket: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    key_prefix: str = "proctoring"
    public_base_url: Optional[str] = None

    @property
    def object_store_configured(self) -> bool:
        return bool(self.bucket)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "StorageSettings":
        backend = str(mapping.get("backend") or "local").strip().lower()
        if backend not in BACKEND_CHOICES:
            raise ConfigError(f"Unsupported storage backend '{backend}'")
        settings = cls(
            backend=backend,
            bucket=mapping.get("bucket") or None,
            endpoint_url=mapping.get("endpoint_url") or None,
            region=mapping.get("region") or None,
            access_key_id=mapping.get("access_key_id") or None,
            secret_access_key=mapping.get("secret_access_key") or None,
            key_prefix=str(mapping.get("key_prefix") or "proctoring").strip("/"),
            public_base_url=mapping.get("public_base_url") or None,
        )
        if settings.backend == "object_store" and not settings.object_store_configured:
            raise ConfigError("The object_store backend requires a bucket name")
        return settings


@dataclass(frozen=True)
class MergeSettings:
    """Worker pool size, concatenation strategy and retry bounds for merges."""

    workers: int = 2
    concat_strategy: str = "ffmpeg"
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    auto_retry_limit: int = 3
    stale_after_seconds: float = 1800.0
    ffmpeg_binary: Optional[str] = None
    ffprobe_binary: Optional[str] = None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "MergeSettings":
        strategy = str(mapping.get("concat_strategy") or "ffmpeg").strip().lower()
        if strategy not in CONCAT_STRATEGIES:
            raise ConfigError(f"Unsupported concat strategy '{strategy}'")
        defaults = cls()
        return cls(
            workers=_coerce_int(mapping.get("workers"), defaults.workers, minimum=1),
            concat_strategy=strategy,
            retry_attempts=_coerce_int(
                mapping.get("retry_attempts"), defaults.retry_attempts, minimum=1
            ),
            retry_base_delay=_coerce_float(
                mapping.get("retry_base_delay"), defaults.retry_base_delay
            ),
            retry_max_delay=_coerce_float(
                mapping.get("retry_max_delay"), defaults.retry_max_delay
            ),
            auto_retry_limit=_coerce_int(
                mapping.get("auto_retry_limit"), defaults.auto_retry_limit
            ),
            stale_after_seconds=_coerce_float(
                mapping.get("stale_after_seconds"), defaults.stale_after_seconds, minimum=1.0
            ),
            ffmpeg_binary=str(mapping.get("ffmpeg_binary") or "").strip() or None,
            ffprobe_binary=str(mapping.get("ffprobe_binary") or "").strip() or None,
        )


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and pipeline policy for the application."""

    storage_root: Path
    database_file: Path
    media_root: Path
    storage: StorageSettings = field(default_factory=StorageSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE
    max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES

    @property
    def staging_root(self) -> Path:
        """Scratch area where merge jobs stage their inputs."""

        return (self.storage_root / "_staging").resolve()

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".proctor_media" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_media = (base_path / mapping.get("media_root", "storage/media")).resolve()
        media_root, _ = _select_writable_directory(
            preferred_media,
            label="media",
            fallbacks=(storage_root / "media",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            media_root=media_root,
            storage=StorageSettings.from_mapping(mapping.get("storage") or {}),
            merge=MergeSettings.from_mapping(mapping.get("merge") or {}),
            stream_chunk_size=_coerce_int(
                mapping.get("stream_chunk_size"), DEFAULT_STREAM_CHUNK_SIZE, minimum=1024
            ),
            max_segment_bytes=_coerce_int(
                mapping.get("max_segment_bytes"), DEFAULT_MAX_SEGMENT_BYTES, minimum=1
            ),
        )


_ENV_OVERRIDES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("BACKEND", ("storage", "backend")),
    ("S3_BUCKET", ("storage", "bucket")),
    ("S3_ENDPOINT", ("storage", "endpoint_url")),
    ("S3_REGION", ("storage", "region")),
    ("S3_ACCESS_KEY_ID", ("storage", "access_key_id")),
    ("S3_SECRET_ACCESS_KEY", ("storage", "secret_access_key")),
    ("S3_PUBLIC_BASE_URL", ("storage", "public_base_url")),
    ("MERGE_WORKERS", ("merge", "workers")),
    ("CONCAT_STRATEGY", ("merge", "concat_strategy")),
    ("FFMPEG_BINARY", ("merge", "ffmpeg_binary")),
    ("FFPROBE_BINARY", ("merge", "ffprobe_binary")),
    ("MAX_SEGMENT_BYTES", ("max_segment_bytes",)),
)


def apply_environment_overrides(
    mapping: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Return a copy of *mapping* with ``PROCTOR_MEDIA_*`` variables applied.

    Credentials and the backend choice are deployment policy, so they are
    normally supplied through the environment rather than the JSON file.
    """

    environ = os.environ if environ is None else environ
    merged: Dict[str, Any] = {
        key: dict(value) if isinstance(value, dict) else value for key, value in mapping.items()
    }
    for suffix, path in _ENV_OVERRIDES:
        raw = environ.get(f"{_ENV_PREFIX}{suffix}")
        if raw is None or not raw.strip():
            continue
        target = merged
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = raw.strip()
    return merged


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(apply_environment_overrides(raw_config), base_path=base_path)


__all__ = [
    "AppConfig",
    "ConfigError",
    "MergeSettings",
    "StorageSettings",
    "apply_environment_overrides",
    "load_config",
]
