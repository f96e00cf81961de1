"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path

from .config import AppConfig, _ensure_writable_directory, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'in_progress'
        CHECK(status IN ('in_progress', 'submitted', 'auto_submitted', 'disqualified')),
    started_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS segments (
    segment_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    channel TEXT NOT NULL CHECK(channel IN ('webcam', 'screen', 'microphone')),
    sequence INTEGER,
    storage_backend TEXT NOT NULL CHECK(storage_backend IN ('local', 'object_store')),
    local_path TEXT,
    remote_key TEXT,
    size_bytes INTEGER,
    duration_ms INTEGER,
    mime_type TEXT NOT NULL DEFAULT 'video/webm',
    recorded_at TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE UNIQUE INDEX IF NOT EXISTS segments_session_channel_sequence
    ON segments(session_id, channel, sequence) WHERE sequence IS NOT NULL;
CREATE INDEX IF NOT EXISTS segments_session_position ON segments(session_id, position);

CREATE TABLE IF NOT EXISTS merge_jobs (
    session_id TEXT NOT NULL,
    channel TEXT NOT NULL CHECK(channel IN ('webcam', 'screen')),
    status TEXT NOT NULL DEFAULT 'not_started'
        CHECK(status IN ('not_started', 'pending', 'processing', 'completed', 'failed')),
    recording_ref TEXT,
    input_fingerprint TEXT,
    reason TEXT,
    retryable INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    defect_count INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER,
    size_bytes INTEGER,
    updated_at TEXT NOT NULL,
    PRIMARY KEY(session_id, channel),
    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS orphaned_objects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    location_ref TEXT NOT NULL,
    reason TEXT NOT NULL,
    orphaned_at TEXT NOT NULL
);
"""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("storage", self._config.storage_root),
            ("media", self._config.media_root),
            ("database", self._config.database_file.parent),
        ):
            if not _ensure_writable_directory(path):
                raise BootstrapError(f"The {label} directory '{path}' is not writable")
            LOGGER.debug("Ensured directory exists: %s", path)

        staging_root = self._config.staging_root
        staging_root.mkdir(parents=True, exist_ok=True)
        for child in staging_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove leftover staging entry %s: %s", child, error)
        LOGGER.debug("Cleared staging directory: %s", staging_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Unable to open database '{self._config.database_file}': {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.executescript(SCHEMA)
            connection.commit()

            cursor.execute("PRAGMA table_info(segments)")
            if not any(row[1] == "consumed_at" for row in cursor.fetchall()):
                cursor.execute("ALTER TABLE segments ADD COLUMN consumed_at TEXT")
                connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Unable to prepare the database schema: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "SCHEMA", "initialize_app"]
