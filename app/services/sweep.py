"""Consistency sweep repairing stale cross-backend location fields."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from ..errors import ProctorMediaError
from ..storage import StorageBackends, StorageNotFound
from .events import emit_sweep_event
from .registry import SegmentRegistry


LOGGER = logging.getLogger(__name__)


@dataclass
class SweepReport:
    sessions_scanned: int = 0
    segments_scanned: int = 0
    repaired: List[Dict[str, str]] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "sessionsScanned": self.sessions_scanned,
            "segmentsScanned": self.segments_scanned,
            "repaired": list(self.repaired),
            "unresolved": list(self.unresolved),
            "errors": list(self.errors),
        }


class ConsistencySweep:
    """Idempotent pass enforcing the single-location rule on stored segments.

    A location field that belongs to a backend other than the segment's
    declared ``storage_backend`` is cleared. The authoritative field, the
    bytes, ``sequence`` and ``channel`` are never touched; a segment with no
    authoritative location is reported rather than guessed at. The sweep
    logs what it does and never raises to its caller.
    """

    def __init__(self, registry: SegmentRegistry, backends: StorageBackends) -> None:
        self._registry = registry
        self._backends = backends

    def run(self) -> SweepReport:
        report = SweepReport()
        try:
            session_ids = self._registry.iter_sessions_with_segments()
        except Exception as error:
            LOGGER.exception("Consistency sweep could not list sessions")
            report.errors.append(f"list sessions: {error}")
            return report

        for session_id in session_ids:
            report.sessions_scanned += 1
            try:
                self._sweep_session(session_id, report)
            except Exception as error:
                LOGGER.exception("Consistency sweep failed for session %s", session_id)
                report.errors.append(f"{session_id}: {error}")

        LOGGER.info(
            "Consistency sweep finished: %s sessions, %s segments, %s repaired, %s unresolved",
            report.sessions_scanned,
            report.segments_scanned,
            len(report.repaired),
            len(report.unresolved),
        )
        return report

    def _sweep_session(self, session_id: str, report: SweepReport) -> None:
        for segment in self._registry.list_segments(session_id):
            report.segments_scanned += 1
            for field_name in segment.stray_fields:
                if self._registry.clear_location_field(segment.segment_id, field_name):
                    report.repaired.append({"segmentId": segment.segment_id, "field": field_name})
                    emit_sweep_event(
                        "cleared stray location field",
                        payload={
                            "segment_id": segment.segment_id,
                            "field": field_name,
                            "storage_backend": segment.storage_backend,
                        },
                        correlation={"session_id": session_id, "channel": segment.channel},
                    )
            if not segment.authoritative_key:
                report.unresolved.append(segment.segment_id)
                emit_sweep_event(
                    "segment has no authoritative location",
                    payload={
                        "segment_id": segment.segment_id,
                        "storage_backend": segment.storage_backend,
                    },
                    correlation={"session_id": session_id, "channel": segment.channel},
                    level=logging.ERROR,
                )

    def purge_orphans(self) -> int:
        """Delete bytes queued as orphaned and return how many were removed.

        An orphan whose bytes are already gone is dropped from the queue; one
        whose backend is unreachable stays queued for the next run.
        """

        removed = 0
        for orphan in self._registry.list_orphans():
            try:
                self._backends.for_ref(orphan.ref).delete(orphan.ref)
            except StorageNotFound:
                LOGGER.debug("Orphaned bytes at %s were already gone", orphan.ref)
            except ProctorMediaError as error:
                LOGGER.warning("Could not delete orphaned bytes at %s: %s", orphan.ref, error)
                continue
            self._registry.remove_orphan(orphan.id)
            removed += 1
            emit_sweep_event(
                "deleted orphaned bytes",
                payload={"location": orphan.ref, "reason": orphan.reason},
                correlation={"session_id": orphan.session_id},
                level=logging.INFO,
            )
        return removed


__all__ = ["ConsistencySweep", "SweepReport"]
