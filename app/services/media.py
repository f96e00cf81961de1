"""Resolve segments and recordings to range-aware byte streams."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Union

from ..errors import ConsistencyError, NotFoundError, ProctorMediaError
from ..storage import LocationRef, StorageBackends, StorageNotFound
from .naming import mime_type_for_key
from .records import Channel, parse_channel
from .registry import SegmentRegistry


LOGGER = logging.getLogger(__name__)

_RANGE_PATTERN = re.compile(r"^\s*(\d*)\s*-\s*(\d*)\s*$")


class RangeNotSatisfiable(ProctorMediaError):
    """The requested byte range lies outside the resource."""

    def __init__(self, message: str, *, size: int) -> None:
        super().__init__(message)
        self.size = size


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Interpret an HTTP ``Range`` header against a resource of *size* bytes.

    Supports ``bytes=a-b``, ``bytes=a-`` and ``bytes=-n``. Headers that are
    malformed, use another unit or ask for several ranges are ignored and the
    full resource is served, as HTTP permits. A syntactically valid range
    that selects nothing raises :class:`RangeNotSatisfiable`.
    """

    if not header:
        return None
    unit, _, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges or "," in ranges:
        return None
    match = _RANGE_PATTERN.match(ranges)
    if match is None:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(f"Range '{header}' selects no bytes", size=size)
        return ByteRange(start=max(size - suffix, 0), end=size - 1)

    start = int(first)
    end = int(last) if last else size - 1
    if last and end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiable(f"Range '{header}' starts beyond {size} bytes", size=size)
    return ByteRange(start=start, end=min(end, size - 1))


@dataclass
class MediaStream:
    status_code: int
    media_type: str
    chunks: Iterator[bytes]
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_length(self) -> int:
        return int(self.headers["Content-Length"])


class MediaGateway:
    """Stream segment and recording bytes without buffering them whole.

    An identifier the registry cannot resolve is a :class:`NotFoundError`;
    a reference that resolves to missing bytes is a
    :class:`ConsistencyError`.
    """

    def __init__(self, registry: SegmentRegistry, backends: StorageBackends) -> None:
        self._registry = registry
        self._backends = backends

    def open_segment(
        self, session_id: str, segment_id: str, range_header: Optional[str] = None
    ) -> MediaStream:
        segment = self._registry.get_segment(session_id, segment_id)
        if segment is None:
            raise NotFoundError(f"Unknown segment '{segment_id}' in session '{session_id}'")
        ref = segment.location
        if ref is None:
            raise ConsistencyError(
                f"Segment {segment_id} declares {segment.storage_backend.value} storage but has no location"
            )
        return self._open(ref, segment.mime_type, range_header)

    def open_recording(
        self,
        session_id: str,
        channel: Union[Channel, str],
        range_header: Optional[str] = None,
    ) -> MediaStream:
        channel = parse_channel(channel, mergeable=True)
        job = self._registry.get_merge_job(session_id, channel)
        if job is None:
            raise NotFoundError(f"Unknown session '{session_id}'")
        if job.recording_ref is None:
            raise NotFoundError(f"No merged {channel.value} recording for session '{session_id}'")
        return self._open(job.recording_ref, mime_type_for_key(job.recording_ref.key), range_header)

    def _open(self, ref: LocationRef, media_type: str, range_header: Optional[str]) -> MediaStream:
        backend = self._backends.for_ref(ref)
        try:
            size = backend.size(ref)
            byte_range = parse_range_header(range_header, size)
            if byte_range is None:
                chunks = backend.get(ref)
            else:
                chunks = backend.get_range(ref, byte_range.start, byte_range.end)
        except StorageNotFound as error:
            LOGGER.error("Reference %s resolves to missing bytes", ref)
            raise ConsistencyError(f"Bytes for {ref} are missing from storage") from error

        headers = {"Accept-Ranges": "bytes"}
        if byte_range is None:
            headers["Content-Length"] = str(size)
            return MediaStream(status_code=200, media_type=media_type, chunks=chunks, headers=headers)
        headers["Content-Length"] = str(byte_range.length)
        headers["Content-Range"] = byte_range.content_range(size)
        return MediaStream(status_code=206, media_type=media_type, chunks=chunks, headers=headers)


__all__ = [
    "ByteRange",
    "MediaGateway",
    "MediaStream",
    "RangeNotSatisfiable",
    "parse_range_header",
]
