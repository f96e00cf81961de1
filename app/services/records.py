"""Record types, merge state machine and segment validity rules."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ..errors import InvalidTransitionError, ValidationError
from ..storage.base import BackendKind, LocationRef


class Channel(str, Enum):
    WEBCAM = "webcam"
    SCREEN = "screen"
    MICROPHONE = "microphone"

    @property
    def mergeable(self) -> bool:
        return self in MERGEABLE_CHANNELS


MERGEABLE_CHANNELS: Tuple[Channel, ...] = (Channel.WEBCAM, Channel.SCREEN)


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto_submitted"
    DISQUALIFIED = "disqualified"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.IN_PROGRESS


class MergeStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ``completed -> pending`` is only taken when the valid input set changed.
MERGE_TRANSITIONS: Mapping[MergeStatus, FrozenSet[MergeStatus]] = {
    MergeStatus.NOT_STARTED: frozenset({MergeStatus.PENDING}),
    MergeStatus.PENDING: frozenset({MergeStatus.PROCESSING}),
    MergeStatus.PROCESSING: frozenset({MergeStatus.COMPLETED, MergeStatus.FAILED}),
    MergeStatus.COMPLETED: frozenset({MergeStatus.PENDING}),
    MergeStatus.FAILED: frozenset({MergeStatus.PENDING}),
}


def can_transition(current: MergeStatus, target: MergeStatus) -> bool:
    return MergeStatus(target) in MERGE_TRANSITIONS.get(MergeStatus(current), frozenset())


def ensure_transition(current: MergeStatus, target: MergeStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Merge status cannot move from {MergeStatus(current).value} to {MergeStatus(target).value}"
        )


def parse_channel(value: Any, *, mergeable: bool = False) -> Channel:
    """Return the :class:`Channel` named by *value* or raise ``ValidationError``."""

    if isinstance(value, Channel):
        channel = value
    else:
        text = str(value or "").strip().lower()
        try:
            channel = Channel(text)
        except ValueError as error:
            raise ValidationError(f"Unrecognised channel '{value}'") from error
    if mergeable and not channel.mergeable:
        raise ValidationError(f"Channel '{channel.value}' has no merged recording")
    return channel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


LOCATION_FIELDS: Mapping[BackendKind, str] = {
    BackendKind.LOCAL: "local_path",
    BackendKind.OBJECT_STORE: "remote_key",
}


@dataclass(frozen=True)
class SessionRecord:
    id: str
    status: SessionStatus
    started_at: datetime
    finished_at: Optional[datetime] = None


@dataclass(frozen=True)
class SegmentRecord:
    """One uploaded chunk and the single place its bytes live."""

    segment_id: str
    session_id: str
    channel: Channel
    sequence: Optional[int]
    storage_backend: BackendKind
    local_path: Optional[str]
    remote_key: Optional[str]
    size_bytes: Optional[int]
    duration_ms: Optional[int]
    mime_type: str
    recorded_at: datetime
    consumed_at: Optional[datetime] = None

    @classmethod
    def at_location(cls, ref: LocationRef, **fields: Any) -> "SegmentRecord":
        """Build a record whose only location field is the one *ref* names."""

        return cls(
            storage_backend=ref.backend,
            local_path=ref.key if ref.backend is BackendKind.LOCAL else None,
            remote_key=ref.key if ref.backend is BackendKind.OBJECT_STORE else None,
            **fields,
        )

    def location_value(self, backend: BackendKind) -> Optional[str]:
        return getattr(self, LOCATION_FIELDS[backend])

    @property
    def authoritative_key(self) -> Optional[str]:
        return self.location_value(self.storage_backend)

    @property
    def stray_fields(self) -> Tuple[str, ...]:
        """Location fields populated for a backend other than ``storage_backend``."""

        return tuple(
            name
            for backend, name in LOCATION_FIELDS.items()
            if backend is not self.storage_backend and self.location_value(backend)
        )

    @property
    def satisfies_single_location(self) -> bool:
        return bool(self.authoritative_key) and not self.stray_fields

    @property
    def is_valid(self) -> bool:
        return self.sequence is not None and self.satisfies_single_location

    @property
    def location(self) -> Optional[LocationRef]:
        key = self.authoritative_key
        if not key:
            return None
        return LocationRef(self.storage_backend, key)

    def all_locations(self) -> List[LocationRef]:
        """Every location any field points at, stray ones included."""

        refs = []
        for backend in LOCATION_FIELDS:
            value = self.location_value(backend)
            if value:
                refs.append(LocationRef(backend, value))
        return refs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segmentId": self.segment_id,
            "channel": self.channel.value,
            "sequence": self.sequence,
            "storageBackend": self.storage_backend.value,
            "localPath": self.local_path,
            "remoteKey": self.remote_key,
            "sizeBytes": self.size_bytes,
            "durationMs": self.duration_ms,
            "mimeType": self.mime_type,
            "recordedAt": format_timestamp(self.recorded_at),
            "consumedAt": format_timestamp(self.consumed_at),
            "valid": self.is_valid,
        }


@dataclass(frozen=True)
class MergeJobRecord:
    session_id: str
    channel: Channel
    status: MergeStatus
    recording_ref: Optional[LocationRef]
    input_fingerprint: Optional[str]
    reason: Optional[str]
    retryable: bool
    attempts: int
    defect_count: int
    duration_ms: Optional[int]
    size_bytes: Optional[int]
    updated_at: datetime


@dataclass(frozen=True)
class OrphanRecord:
    """Bytes no registry entry points at any more, queued for deletion."""

    id: int
    session_id: str
    ref: LocationRef
    reason: str
    orphaned_at: datetime


@dataclass
class ProctoringReport:
    session_id: str
    session_status: SessionStatus
    segments: List[SegmentRecord] = field(default_factory=list)
    merge_status: Dict[Channel, MergeStatus] = field(default_factory=dict)
    recording_urls: Dict[Channel, LocationRef] = field(default_factory=dict)
    merge_jobs: Dict[Channel, MergeJobRecord] = field(default_factory=dict)

    @property
    def defect_count(self) -> int:
        return sum(1 for segment in self.segments if not segment.is_valid)

    def to_dict(self, *, public_urls: Optional[Mapping[Channel, Optional[str]]] = None) -> Dict[str, Any]:
        public_urls = public_urls or {}
        recordings: Dict[str, Any] = {}
        for channel, ref in self.recording_urls.items():
            job = self.merge_jobs.get(channel)
            recordings[channel.value] = {
                "ref": str(ref),
                "mergeStatus": self.merge_status.get(channel, MergeStatus.NOT_STARTED).value,
                "publicUrl": public_urls.get(channel),
                "durationMs": job.duration_ms if job else None,
                "sizeBytes": job.size_bytes if job else None,
            }
        failures = {
            channel.value: job.reason
            for channel, job in self.merge_jobs.items()
            if job.status is MergeStatus.FAILED and job.reason
        }
        return {
            "sessionId": self.session_id,
            "sessionStatus": self.session_status.value,
            "segments": [segment.to_dict() for segment in self.segments],
            "mergeStatus": {channel.value: status.value for channel, status in self.merge_status.items()},
            "recordingUrls": recordings,
            "mergeFailures": failures,
            "defectCount": self.defect_count,
        }


@dataclass(frozen=True)
class MergeSelection:
    """Ordered merge inputs plus the segments left out of them."""

    segments: Tuple[SegmentRecord, ...]
    defects: Tuple[SegmentRecord, ...]
    superseded: Tuple[SegmentRecord, ...]

    @property
    def fingerprint(self) -> Optional[str]:
        if not self.segments:
            return None
        digest = hashlib.sha256()
        for segment in self.segments:
            digest.update(segment.segment_id.encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()

    @property
    def defect_count(self) -> int:
        return len(self.defects)


def _preference(segment: SegmentRecord) -> Tuple[datetime, str]:
    return (segment.recorded_at, segment.segment_id)


def select_merge_inputs(segments: Iterable[SegmentRecord]) -> MergeSelection:
    """Filter to valid segments and order them by sequence.

    Should two valid segments share a sequence, the one recorded later wins
    and ties fall to the greater segment id.
    """

    chosen: Dict[int, SegmentRecord] = {}
    defects: List[SegmentRecord] = []
    superseded: List[SegmentRecord] = []
    for segment in segments:
        if not segment.is_valid:
            defects.append(segment)
            continue
        sequence = int(segment.sequence)
        current = chosen.get(sequence)
        if current is None:
            chosen[sequence] = segment
        elif _preference(segment) > _preference(current):
            superseded.append(current)
            chosen[sequence] = segment
        else:
            superseded.append(segment)
    ordered = tuple(chosen[sequence] for sequence in sorted(chosen))
    return MergeSelection(segments=ordered, defects=tuple(defects), superseded=tuple(superseded))


__all__ = [
    "BackendKind",
    "Channel",
    "LOCATION_FIELDS",
    "LocationRef",
    "MERGEABLE_CHANNELS",
    "MERGE_TRANSITIONS",
    "MergeJobRecord",
    "MergeSelection",
    "MergeStatus",
    "OrphanRecord",
    "ProctoringReport",
    "SegmentRecord",
    "SessionRecord",
    "SessionStatus",
    "can_transition",
    "ensure_transition",
    "format_timestamp",
    "parse_channel",
    "parse_timestamp",
    "select_merge_inputs",
    "utc_now",
]
