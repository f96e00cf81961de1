"""Segment ingestion: persist an uploaded chunk, then register it."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from ..config import AppConfig
from ..errors import PayloadTooLargeError, ProctorMediaError, ValidationError
from ..storage import StorageBackends
from .events import emit_storage_event
from .naming import base_mime_type, new_segment_id, segment_key, validate_identifier
from .records import Channel, SegmentRecord, parse_channel, utc_now
from .registry import SegmentRegistry
from .retry import RetryPolicy, call_with_retries


LOGGER = logging.getLogger(__name__)


def _parse_sequence(value: Any) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("A segment sequence number is required")
    if isinstance(value, bool):
        raise ValidationError(f"Invalid sequence number '{value}'")
    try:
        sequence = int(str(value).strip()) if not isinstance(value, int) else value
    except ValueError as error:
        raise ValidationError(f"Invalid sequence number '{value}'") from error
    if sequence < 0:
        raise ValidationError("Sequence numbers must not be negative")
    return sequence


def _parse_duration(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        duration = int(float(value))
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Invalid segment duration '{value}'") from error
    if duration < 0:
        raise ValidationError("Segment durations must not be negative")
    return duration


class SegmentIngestor:
    """Accept one chunk, store it on the active backend and record it.

    Bytes are written before metadata; if the registry write fails the
    freshly written object is removed again so no entry ever points at
    nothing and no unreferenced upload lingers. Ingestion never starts a
    merge.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: SegmentRegistry,
        backends: StorageBackends,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._backends = backends
        self._retry_policy = retry_policy or RetryPolicy.from_settings(config.merge)
        self._sleep = sleep

    def ingest(
        self,
        session_id: str,
        channel: Union[Channel, str],
        sequence: Any,
        data: bytes,
        content_type: Optional[str],
        *,
        recorded_at: Optional[datetime] = None,
        duration_ms: Any = None,
    ) -> SegmentRecord:
        session_id = validate_identifier(session_id, label="session id")
        channel = parse_channel(channel)
        sequence = _parse_sequence(sequence)
        duration = _parse_duration(duration_ms)
        if not data:
            raise ValidationError("Uploaded segment is empty")
        if len(data) > self._config.max_segment_bytes:
            raise PayloadTooLargeError(
                f"Segment of {len(data)} bytes exceeds the {self._config.max_segment_bytes} byte limit"
            )
        mime_type = base_mime_type(content_type)

        self._registry.ensure_session(session_id)

        backend = self._backends.active
        segment_id = new_segment_id(channel.value)
        key = segment_key(session_id, channel.value, sequence, segment_id, mime_type)
        ref = call_with_retries(
            lambda: backend.put(key, data, mime_type),
            policy=self._retry_policy,
            description=f"Storing segment {segment_id}",
            sleep=self._sleep,
        )

        record = SegmentRecord.at_location(
            ref,
            segment_id=segment_id,
            session_id=session_id,
            channel=channel,
            sequence=sequence,
            size_bytes=len(data),
            duration_ms=duration,
            mime_type=mime_type,
            recorded_at=recorded_at or utc_now(),
        )
        try:
            self._registry.record_segment(record)
        except Exception as error:
            LOGGER.error("Registering segment %s failed, removing its bytes: %s", segment_id, error)
            try:
                backend.delete(ref)
            except ProctorMediaError as cleanup_error:
                LOGGER.warning("Unregistered bytes left at %s: %s", ref, cleanup_error)
            raise
        emit_storage_event(
            "segment_ingested",
            payload={
                "segment_id": segment_id,
                "sequence": sequence,
                "bytes": len(data),
                "location": ref,
            },
            correlation={"session_id": session_id, "channel": channel},
        )
        return record


__all__ = ["SegmentIngestor"]
