"""SQLite-backed registry of sessions, segments and merge jobs."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
import uuid
from datetime import timedelta
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from ..config import AppConfig
from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from .events import emit_db_event, emit_merge_event
from .records import (
    LOCATION_FIELDS,
    MERGEABLE_CHANNELS,
    BackendKind,
    Channel,
    LocationRef,
    MergeJobRecord,
    MergeStatus,
    OrphanRecord,
    ProctoringReport,
    SegmentRecord,
    SessionRecord,
    SessionStatus,
    ensure_transition,
    format_timestamp,
    parse_channel,
    parse_timestamp,
    select_merge_inputs,
    utc_now,
)


LOGGER = logging.getLogger(__name__)

TransitionListener = Callable[[str, Channel, MergeStatus], None]

_SEGMENT_COLUMNS = (
    "segment_id, session_id, channel, sequence, storage_backend, local_path, remote_key, "
    "size_bytes, duration_ms, mime_type, recorded_at, consumed_at"
)
_JOB_COLUMNS = (
    "session_id, channel, status, recording_ref, input_fingerprint, reason, retryable, "
    "attempts, defect_count, duration_ms, size_bytes, updated_at"
)
_JOB_FIELDS = frozenset(
    {
        "recording_ref",
        "input_fingerprint",
        "reason",
        "retryable",
        "defect_count",
        "duration_ms",
        "size_bytes",
    }
)


def _segment_from_row(row: sqlite3.Row) -> SegmentRecord:
    return SegmentRecord(
        segment_id=row["segment_id"],
        session_id=row["session_id"],
        channel=Channel(row["channel"]),
        sequence=row["sequence"],
        storage_backend=BackendKind(row["storage_backend"]),
        local_path=row["local_path"],
        remote_key=row["remote_key"],
        size_bytes=row["size_bytes"],
        duration_ms=row["duration_ms"],
        mime_type=row["mime_type"],
        recorded_at=parse_timestamp(row["recorded_at"]),
        consumed_at=parse_timestamp(row["consumed_at"]),
    )


def _job_from_row(row: sqlite3.Row) -> MergeJobRecord:
    recording = row["recording_ref"]
    return MergeJobRecord(
        session_id=row["session_id"],
        channel=Channel(row["channel"]),
        status=MergeStatus(row["status"]),
        recording_ref=LocationRef.parse(recording) if recording else None,
        input_fingerprint=row["input_fingerprint"],
        reason=row["reason"],
        retryable=bool(row["retryable"]),
        attempts=int(row["attempts"] or 0),
        defect_count=int(row["defect_count"] or 0),
        duration_ms=row["duration_ms"],
        size_bytes=row["size_bytes"],
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _session_from_row(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=row["id"],
        status=SessionStatus(row["status"]),
        started_at=parse_timestamp(row["started_at"]),
        finished_at=parse_timestamp(row["finished_at"]),
    )


class SegmentRegistry:
    """Authoritative metadata for sessions, their segments and merge jobs.

    Every session is an arena: segments are appended with an increasing
    ``position`` under a per-session lock, so appends to different sessions
    never contend. Merge status changes go through a single conditional
    ``UPDATE`` so that claiming a job is exclusive without a lock object.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        transition_listener: Optional[TransitionListener] = None,
    ) -> None:
        self._db_path = config.database_file
        self._transition_listener = transition_listener
        self._locks_guard = threading.Lock()
        self._session_locks: Dict[str, threading.Lock] = {}

    def configure_transition_listener(self, listener: Optional[TransitionListener]) -> None:
        """Register a callable notified after every committed status change."""

        self._transition_listener = listener

    # ------------------------------------------------------------------
    # Connection plumbing
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            emit_db_event(
                action,
                payload=event_payload,
                duration_ms=(time.perf_counter() - start) * 1000.0,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params = tuple(parameters or ())
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event["rowcount"] = int(cursor.rowcount)
            return cursor

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextlib.contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            yield connection
        finally:
            connection.close()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()
        finally:
            connection.close()

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = self._session_locks[session_id] = threading.Lock()
            return lock

    def _require_session(self, connection: sqlite3.Connection, session_id: str) -> sqlite3.Row:
        row = self._execute(
            connection,
            "SELECT id, status, started_at, finished_at FROM sessions WHERE id = ?",
            (session_id,),
            action="sessions.lookup",
            table="sessions",
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Unknown session '{session_id}'")
        return row

    def _notify(self, session_id: str, channel: Channel, status: MergeStatus) -> None:
        if self._transition_listener is not None:
            self._transition_listener(session_id, channel, status)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def _seed_merge_jobs(self, connection: sqlite3.Connection, session_id: str) -> None:
        now = format_timestamp(utc_now())
        for channel in MERGEABLE_CHANNELS:
            self._execute(
                connection,
                "INSERT OR IGNORE INTO merge_jobs(session_id, channel, status, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (session_id, channel.value, MergeStatus.NOT_STARTED.value, now),
                action="merge_jobs.seed",
                table="merge_jobs",
            )

    def create_session(self, session_id: Optional[str] = None) -> SessionRecord:
        session_id = (session_id or "").strip() or uuid.uuid4().hex
        with self._transaction() as connection:
            try:
                self._execute(
                    connection,
                    "INSERT INTO sessions(id, status, started_at) VALUES (?, ?, ?)",
                    (session_id, SessionStatus.IN_PROGRESS.value, format_timestamp(utc_now())),
                    action="sessions.insert",
                    table="sessions",
                )
            except sqlite3.IntegrityError as error:
                raise ValidationError(f"Session '{session_id}' already exists") from error
            self._seed_merge_jobs(connection, session_id)
            row = self._require_session(connection, session_id)
        LOGGER.info("Session %s started", session_id)
        return _session_from_row(row)

    def ensure_session(self, session_id: str) -> SessionRecord:
        """Return the session, creating it (and its report) when missing."""

        if not session_id or not str(session_id).strip():
            raise ValidationError("A session identifier is required")
        with self._transaction() as connection:
            self._execute(
                connection,
                "INSERT OR IGNORE INTO sessions(id, status, started_at) VALUES (?, ?, ?)",
                (session_id, SessionStatus.IN_PROGRESS.value, format_timestamp(utc_now())),
                action="sessions.insert_or_ignore",
                table="sessions",
            )
            self._seed_merge_jobs(connection, session_id)
            row = self._require_session(connection, session_id)
        return _session_from_row(row)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._reading() as connection:
            try:
                row = self._require_session(connection, session_id)
            except NotFoundError:
                return None
        return _session_from_row(row)

    def finish_session(self, session_id: str, status: Union[SessionStatus, str]) -> SessionRecord:
        """Move an in-progress session to a terminal status.

        Finishing an already finished session keeps its first terminal status.
        """

        try:
            status = SessionStatus(status)
        except ValueError as error:
            raise ValidationError(f"Unknown session status '{status}'") from error
        if not status.terminal:
            raise ValidationError("A session can only be finished with a terminal status")
        with self._transaction() as connection:
            self._require_session(connection, session_id)
            self._execute(
                connection,
                "UPDATE sessions SET status = ?, finished_at = ? WHERE id = ? AND status = ?",
                (
                    status.value,
                    format_timestamp(utc_now()),
                    session_id,
                    SessionStatus.IN_PROGRESS.value,
                ),
                action="sessions.finish",
                table="sessions",
            )
            row = self._require_session(connection, session_id)
        return _session_from_row(row)

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------
    def _record_orphan(
        self,
        connection: sqlite3.Connection,
        session_id: str,
        ref: LocationRef,
        reason: str,
    ) -> None:
        self._execute(
            connection,
            "INSERT INTO orphaned_objects(session_id, location_ref, reason, orphaned_at) "
            "VALUES (?, ?, ?, ?)",
            (session_id, str(ref), reason, format_timestamp(utc_now())),
            action="orphaned_objects.insert",
            table="orphaned_objects",
        )

    def record_segment(self, record: SegmentRecord) -> Optional[SegmentRecord]:
        """Append *record* to its session; return the entry it replaced, if any.

        A segment already registered for the same ``(channel, sequence)`` is
        removed in the same transaction and every location it referenced is
        queued in ``orphaned_objects`` for later cleanup.
        """

        with self._session_lock(record.session_id):
            with self._transaction() as connection:
                self._require_session(connection, record.session_id)
                replaced: Optional[SegmentRecord] = None
                if record.sequence is not None:
                    row = self._execute(
                        connection,
                        f"SELECT {_SEGMENT_COLUMNS} FROM segments "
                        "WHERE session_id = ? AND channel = ? AND sequence = ?",
                        (record.session_id, record.channel.value, record.sequence),
                        action="segments.lookup_duplicate",
                        table="segments",
                    ).fetchone()
                    if row is not None:
                        replaced = _segment_from_row(row)
                        for ref in replaced.all_locations():
                            self._record_orphan(
                                connection, record.session_id, ref, "duplicate_upload"
                            )
                        self._execute(
                            connection,
                            "DELETE FROM segments WHERE segment_id = ?",
                            (replaced.segment_id,),
                            action="segments.delete_duplicate",
                            table="segments",
                        )
                position = self._execute(
                    connection,
                    "SELECT COALESCE(MAX(position), -1) + 1 FROM segments WHERE session_id = ?",
                    (record.session_id,),
                    action="segments.next_position",
                    table="segments",
                ).fetchone()[0]
                self._execute(
                    connection,
                    f"INSERT INTO segments({_SEGMENT_COLUMNS}, position) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.segment_id,
                        record.session_id,
                        record.channel.value,
                        record.sequence,
                        record.storage_backend.value,
                        record.local_path,
                        record.remote_key,
                        record.size_bytes,
                        record.duration_ms,
                        record.mime_type,
                        format_timestamp(record.recorded_at),
                        format_timestamp(record.consumed_at),
                        int(position),
                    ),
                    action="segments.insert",
                    table="segments",
                )
        if replaced is not None:
            LOGGER.info(
                "Segment %s replaced %s for %s/%s sequence %s",
                record.segment_id,
                replaced.segment_id,
                record.session_id,
                record.channel.value,
                record.sequence,
            )
        return replaced

    def get_segment(self, session_id: str, segment_id: str) -> Optional[SegmentRecord]:
        with self._reading() as connection:
            row = self._execute(
                connection,
                f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE session_id = ? AND segment_id = ?",
                (session_id, segment_id),
                action="segments.lookup",
                table="segments",
            ).fetchone()
        return _segment_from_row(row) if row else None

    def list_segments(
        self, session_id: str, channel: Optional[Channel] = None
    ) -> List[SegmentRecord]:
        """Return segments in append order, optionally for one channel."""

        query = f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE session_id = ?"
        params: List[Any] = [session_id]
        if channel is not None:
            query += " AND channel = ?"
            params.append(Channel(channel).value)
        query += " ORDER BY position"
        with self._reading() as connection:
            rows = self._execute(
                connection, query, params, action="segments.list", table="segments"
            ).fetchall()
        return [_segment_from_row(row) for row in rows]

    def mark_consumed(self, segment_ids: Iterable[str]) -> int:
        with self._transaction() as connection:
            return self._mark_consumed(connection, segment_ids)

    def _mark_consumed(self, connection: sqlite3.Connection, segment_ids: Iterable[str]) -> int:
        now = format_timestamp(utc_now())
        updated = 0
        for segment_id in segment_ids:
            cursor = self._execute(
                connection,
                "UPDATE segments SET consumed_at = ? WHERE segment_id = ?",
                (now, segment_id),
                action="segments.mark_consumed",
                table="segments",
            )
            updated += max(cursor.rowcount, 0)
        return updated

    def iter_sessions_with_segments(self) -> List[str]:
        with self._reading() as connection:
            rows = self._execute(
                connection,
                "SELECT DISTINCT session_id FROM segments ORDER BY session_id",
                action="segments.sessions",
                table="segments",
            ).fetchall()
        return [row["session_id"] for row in rows]

    def clear_location_field(self, segment_id: str, field_name: str) -> bool:
        """Null *field_name* on a segment whose declared backend does not own it.

        The authoritative field can never be cleared through this method.
        """

        owners = {name: backend for backend, name in LOCATION_FIELDS.items()}
        if field_name not in owners:
            raise ValueError(f"Not a location field: {field_name!r}")
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                f"UPDATE segments SET {field_name} = NULL "
                f"WHERE segment_id = ? AND storage_backend != ? AND {field_name} IS NOT NULL",
                (segment_id, owners[field_name].value),
                action="segments.clear_location_field",
                table="segments",
            )
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Orphaned bytes
    # ------------------------------------------------------------------
    def list_orphans(self) -> List[OrphanRecord]:
        with self._reading() as connection:
            rows = self._execute(
                connection,
                "SELECT id, session_id, location_ref, reason, orphaned_at "
                "FROM orphaned_objects ORDER BY id",
                action="orphaned_objects.list",
                table="orphaned_objects",
            ).fetchall()
        return [
            OrphanRecord(
                id=int(row["id"]),
                session_id=row["session_id"],
                ref=LocationRef.parse(row["location_ref"]),
                reason=row["reason"],
                orphaned_at=parse_timestamp(row["orphaned_at"]),
            )
            for row in rows
        ]

    def remove_orphan(self, orphan_id: int) -> None:
        with self._transaction() as connection:
            self._execute(
                connection,
                "DELETE FROM orphaned_objects WHERE id = ?",
                (int(orphan_id),),
                action="orphaned_objects.delete",
                table="orphaned_objects",
            )

    # ------------------------------------------------------------------
    # Merge jobs
    # ------------------------------------------------------------------
    def get_merge_job(self, session_id: str, channel: Channel) -> Optional[MergeJobRecord]:
        with self._reading() as connection:
            row = self._execute(
                connection,
                f"SELECT {_JOB_COLUMNS} FROM merge_jobs WHERE session_id = ? AND channel = ?",
                (session_id, Channel(channel).value),
                action="merge_jobs.lookup",
                table="merge_jobs",
            ).fetchone()
        return _job_from_row(row) if row else None

    def _require_job(self, session_id: str, channel: Channel) -> MergeJobRecord:
        job = self.get_merge_job(session_id, channel)
        if job is None:
            raise NotFoundError(f"No {Channel(channel).value} merge job for session '{session_id}'")
        return job

    def _compare_and_set(
        self,
        connection: sqlite3.Connection,
        session_id: str,
        channel: Channel,
        expected: Tuple[MergeStatus, ...],
        target: MergeStatus,
        fields: Optional[Mapping[str, Any]],
        bump_attempts: bool,
    ) -> bool:
        for status in expected:
            ensure_transition(status, target)
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [target.value, format_timestamp(utc_now())]
        for name, value in (fields or {}).items():
            if name not in _JOB_FIELDS:
                raise ValueError(f"Merge job field {name!r} cannot be set")
            assignments.append(f"{name} = ?")
            params.append(value)
        if bump_attempts:
            assignments.append("attempts = attempts + 1")
        placeholders = ", ".join("?" for _ in expected)
        params.extend([session_id, channel.value, *(status.value for status in expected)])
        cursor = self._execute(
            connection,
            f"UPDATE merge_jobs SET {', '.join(assignments)} "
            f"WHERE session_id = ? AND channel = ? AND status IN ({placeholders})",
            params,
            action="merge_jobs.compare_and_set",
            table="merge_jobs",
        )
        return cursor.rowcount == 1

    def compare_and_set_status(
        self,
        session_id: str,
        channel: Channel,
        expected: Union[MergeStatus, Iterable[MergeStatus]],
        target: MergeStatus,
        *,
        fields: Optional[Mapping[str, Any]] = None,
        bump_attempts: bool = False,
    ) -> bool:
        """Atomically move the job to *target* if its status is one of *expected*.

        Returns ``False`` without touching the row when another writer got
        there first. Transitions outside the state machine raise
        :class:`InvalidTransitionError`.
        """

        channel = Channel(channel)
        target = MergeStatus(target)
        if isinstance(expected, (MergeStatus, str)):
            expected_statuses: Tuple[MergeStatus, ...] = (MergeStatus(expected),)
        else:
            expected_statuses = tuple(MergeStatus(status) for status in expected)
        with self._transaction() as connection:
            moved = self._compare_and_set(
                connection, session_id, channel, expected_statuses, target, fields, bump_attempts
            )
        if moved:
            emit_merge_event(
                f"{channel.value} merge -> {target.value}",
                payload={
                    "from": [status.value for status in expected_statuses],
                    "to": target,
                    "reason": (fields or {}).get("reason"),
                },
                correlation={"session_id": session_id, "channel": channel},
            )
            self._notify(session_id, channel, target)
        return moved

    def request_merge(self, session_id: str, channel: Union[Channel, str]) -> Tuple[bool, MergeStatus]:
        """Move the job to ``pending`` when the state machine allows it.

        ``completed`` only re-enters ``pending`` when the valid input set
        differs from the one the current recording was built from. Returns
        whether this call made the transition and the status afterwards.
        """

        channel = parse_channel(channel, mergeable=True)
        job = self._require_job(session_id, channel)
        if job.status in (MergeStatus.NOT_STARTED, MergeStatus.FAILED):
            expected = job.status
        elif job.status is MergeStatus.COMPLETED:
            selection = select_merge_inputs(self.list_segments(session_id, channel))
            if selection.fingerprint == job.input_fingerprint:
                return False, job.status
            expected = MergeStatus.COMPLETED
        else:
            return False, job.status

        if self.compare_and_set_status(
            session_id, channel, expected, MergeStatus.PENDING, fields={"reason": None}
        ):
            return True, MergeStatus.PENDING
        return False, self._require_job(session_id, channel).status

    def claim_merge(self, session_id: str, channel: Channel) -> bool:
        return self.compare_and_set_status(
            session_id,
            channel,
            MergeStatus.PENDING,
            MergeStatus.PROCESSING,
            fields={"reason": None, "retryable": 0},
            bump_attempts=True,
        )

    def complete_merge(
        self,
        session_id: str,
        channel: Channel,
        *,
        recording_ref: LocationRef,
        fingerprint: str,
        segment_ids: Sequence[str],
        defect_count: int = 0,
        duration_ms: Optional[int] = None,
        size_bytes: Optional[int] = None,
    ) -> Optional[LocationRef]:
        """Publish *recording_ref* and mark the inputs consumed in one transaction.

        Returns the previous recording reference when it is superseded by a
        different one; that reference is also queued as orphaned.
        """

        channel = Channel(channel)
        with self._transaction() as connection:
            row = self._execute(
                connection,
                "SELECT recording_ref FROM merge_jobs WHERE session_id = ? AND channel = ?",
                (session_id, channel.value),
                action="merge_jobs.lookup_recording",
                table="merge_jobs",
            ).fetchone()
            previous = LocationRef.parse(row["recording_ref"]) if row and row["recording_ref"] else None
            moved = self._compare_and_set(
                connection,
                session_id,
                channel,
                (MergeStatus.PROCESSING,),
                MergeStatus.COMPLETED,
                {
                    "recording_ref": str(recording_ref),
                    "input_fingerprint": fingerprint,
                    "reason": None,
                    "retryable": 0,
                    "defect_count": int(defect_count),
                    "duration_ms": duration_ms,
                    "size_bytes": size_bytes,
                },
                False,
            )
            if not moved:
                raise InvalidTransitionError(
                    f"{channel.value} merge for session '{session_id}' is no longer processing"
                )
            self._mark_consumed(connection, segment_ids)
            superseded = previous if previous is not None and previous != recording_ref else None
            if superseded is not None:
                self._record_orphan(connection, session_id, superseded, "superseded_recording")
        emit_merge_event(
            f"{channel.value} merge -> completed",
            payload={"recording": recording_ref, "segments": len(segment_ids), "defects": defect_count},
            correlation={"session_id": session_id, "channel": channel},
        )
        self._notify(session_id, channel, MergeStatus.COMPLETED)
        return superseded

    def fail_merge(
        self,
        session_id: str,
        channel: Channel,
        *,
        reason: str,
        retryable: bool,
        defect_count: int = 0,
    ) -> bool:
        return self.compare_and_set_status(
            session_id,
            channel,
            MergeStatus.PROCESSING,
            MergeStatus.FAILED,
            fields={
                "reason": str(reason)[:500],
                "retryable": 1 if retryable else 0,
                "defect_count": int(defect_count),
            },
        )

    def reclaim_stale_jobs(self, older_than_seconds: float) -> List[Tuple[str, Channel]]:
        """Return jobs stuck in ``processing`` to ``pending``.

        The reset goes through ``failed`` so that only transitions from the
        state machine are ever written.
        """

        cutoff = format_timestamp(utc_now() - timedelta(seconds=older_than_seconds))
        with self._reading() as connection:
            rows = self._execute(
                connection,
                "SELECT session_id, channel FROM merge_jobs WHERE status = ? AND updated_at < ?",
                (MergeStatus.PROCESSING.value, cutoff),
                action="merge_jobs.stale",
                table="merge_jobs",
            ).fetchall()
        reclaimed: List[Tuple[str, Channel]] = []
        for row in rows:
            session_id, channel = row["session_id"], Channel(row["channel"])
            if not self.fail_merge(
                session_id, channel, reason="Merge worker timed out", retryable=True
            ):
                continue
            if self.compare_and_set_status(
                session_id, channel, MergeStatus.FAILED, MergeStatus.PENDING, fields={"reason": None}
            ):
                LOGGER.warning("Reclaimed stale %s merge for session %s", channel.value, session_id)
                reclaimed.append((session_id, channel))
        return reclaimed

    def list_retryable_failures(self, max_attempts: int) -> List[Tuple[str, Channel]]:
        with self._reading() as connection:
            rows = self._execute(
                connection,
                "SELECT session_id, channel FROM merge_jobs "
                "WHERE status = ? AND retryable = 1 AND attempts < ? ORDER BY updated_at",
                (MergeStatus.FAILED.value, int(max_attempts)),
                action="merge_jobs.retryable",
                table="merge_jobs",
            ).fetchall()
        return [(row["session_id"], Channel(row["channel"])) for row in rows]

    def list_jobs_with_status(self, status: MergeStatus) -> List[Tuple[str, Channel]]:
        with self._reading() as connection:
            rows = self._execute(
                connection,
                "SELECT session_id, channel FROM merge_jobs WHERE status = ? ORDER BY updated_at",
                (MergeStatus(status).value,),
                action="merge_jobs.by_status",
                table="merge_jobs",
            ).fetchall()
        return [(row["session_id"], Channel(row["channel"])) for row in rows]

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------
    def get_merge_statuses(self, session_id: str) -> Dict[Channel, MergeStatus]:
        return {channel: job.status for channel, job in self._jobs_for(session_id).items()}

    def _jobs_for(self, session_id: str) -> Dict[Channel, MergeJobRecord]:
        with self._reading() as connection:
            self._require_session(connection, session_id)
            rows = self._execute(
                connection,
                f"SELECT {_JOB_COLUMNS} FROM merge_jobs WHERE session_id = ? ORDER BY channel",
                (session_id,),
                action="merge_jobs.list",
                table="merge_jobs",
            ).fetchall()
        return {Channel(row["channel"]): _job_from_row(row) for row in rows}

    def get_report(self, session_id: str) -> ProctoringReport:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Unknown session '{session_id}'")
        jobs = self._jobs_for(session_id)
        segments = sorted(
            self.list_segments(session_id),
            key=lambda segment: (
                segment.channel.value,
                segment.sequence is None,
                segment.sequence if segment.sequence is not None else 0,
                segment.recorded_at,
            ),
        )
        return ProctoringReport(
            session_id=session_id,
            session_status=session.status,
            segments=segments,
            merge_status={channel: job.status for channel, job in jobs.items()},
            recording_urls={
                channel: job.recording_ref
                for channel, job in jobs.items()
                if job.recording_ref is not None
            },
            merge_jobs=jobs,
        )


__all__ = ["SegmentRegistry", "TransitionListener"]
