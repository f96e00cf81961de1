from __future__ import annotations

import threading
from typing import List, Tuple

import pytest

from app.config import AppConfig
from app.errors import NotFoundError, ValidationError
from app.services.ingestion import SegmentIngestor
from app.services.merge import MergeOrchestrator
from app.services.records import Channel, MergeStatus
from app.services.registry import SegmentRegistry
from app.storage import LocalStorageBackend, ObjectStoreBackend, StorageBackends


def _recording_bytes(registry: SegmentRegistry, backends: StorageBackends, channel=Channel.WEBCAM) -> bytes:
    job = registry.get_merge_job("exam", channel)
    assert job is not None and job.recording_ref is not None
    return b"".join(backends.for_ref(job.recording_ref).get(job.recording_ref))


def _merge_and_wait(orchestrator: MergeOrchestrator, channel=Channel.WEBCAM) -> MergeStatus:
    orchestrator.trigger("exam", channel)
    assert orchestrator.wait(timeout=30)
    return orchestrator._registry.get_merge_job("exam", channel).status


def test_merge_orders_segments_by_sequence(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    backends: StorageBackends,
    orchestrator: MergeOrchestrator,
) -> None:
    for sequence, payload in ((2, b"CC"), (0, b"AA"), (1, b"BB")):
        ingestor.ingest("exam", "webcam", sequence, payload, "video/webm", duration_ms=2000)

    assert _merge_and_wait(orchestrator) is MergeStatus.COMPLETED
    assert _recording_bytes(registry, backends) == b"AABBCC"
    assert all(segment.consumed_at is not None for segment in registry.list_segments("exam"))


def test_concurrent_triggers_run_a_single_merge(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    orchestrator: MergeOrchestrator,
) -> None:
    for sequence in range(3):
        ingestor.ingest("exam", "webcam", sequence, b"x" * 32, "video/webm")
    transitions: List[Tuple[str, Channel, MergeStatus]] = []
    guard = threading.Lock()

    def listener(session_id: str, channel: Channel, status: MergeStatus) -> None:
        with guard:
            transitions.append((session_id, channel, status))

    registry.configure_transition_listener(listener)
    barrier = threading.Barrier(10)

    def fire() -> None:
        barrier.wait()
        orchestrator.trigger("exam", Channel.WEBCAM)

    threads = [threading.Thread(target=fire) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert orchestrator.wait(timeout=30)

    assert [status for _, _, status in transitions] == [
        MergeStatus.PENDING,
        MergeStatus.PROCESSING,
        MergeStatus.COMPLETED,
    ]


def test_missing_segment_bytes_fail_the_merge(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    local_backend: LocalStorageBackend,
    orchestrator: MergeOrchestrator,
) -> None:
    records = [
        ingestor.ingest("exam", "webcam", sequence, b"data", "video/webm") for sequence in range(3)
    ]
    local_backend.delete(records[1].location)

    assert _merge_and_wait(orchestrator) is MergeStatus.FAILED

    job = registry.get_merge_job("exam", Channel.WEBCAM)
    assert job is not None
    assert job.recording_ref is None
    assert records[1].segment_id in job.reason
    assert not job.retryable
    assert all(segment.consumed_at is None for segment in registry.list_segments("exam"))


def test_merge_without_valid_segments_fails(
    registry: SegmentRegistry, orchestrator: MergeOrchestrator
) -> None:
    registry.create_session("exam")

    assert _merge_and_wait(orchestrator, Channel.SCREEN) is MergeStatus.FAILED
    job = registry.get_merge_job("exam", Channel.SCREEN)
    assert job is not None
    assert "NoValidInputError" in job.reason


def test_repeated_merge_of_same_inputs_is_byte_identical(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    backends: StorageBackends,
    orchestrator: MergeOrchestrator,
) -> None:
    for sequence in range(3):
        ingestor.ingest("exam", "webcam", sequence, bytes([65 + sequence]) * 8, "video/webm")
    assert _merge_and_wait(orchestrator) is MergeStatus.COMPLETED
    first_job = registry.get_merge_job("exam", Channel.WEBCAM)
    first_bytes = _recording_bytes(registry, backends)

    assert registry.compare_and_set_status(
        "exam", Channel.WEBCAM, MergeStatus.COMPLETED, MergeStatus.PENDING
    )
    assert orchestrator.process("exam", Channel.WEBCAM) is MergeStatus.COMPLETED

    second_job = registry.get_merge_job("exam", Channel.WEBCAM)
    assert second_job.recording_ref == first_job.recording_ref
    assert second_job.input_fingerprint == first_job.input_fingerprint
    assert _recording_bytes(registry, backends) == first_bytes
    assert registry.list_orphans() == []


def test_trigger_after_completion_is_noop_until_inputs_change(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    backends: StorageBackends,
    orchestrator: MergeOrchestrator,
) -> None:
    ingestor.ingest("exam", "webcam", 0, b"AA", "video/webm")
    assert _merge_and_wait(orchestrator) is MergeStatus.COMPLETED
    first_ref = registry.get_merge_job("exam", Channel.WEBCAM).recording_ref

    assert orchestrator.trigger("exam", "webcam") is MergeStatus.COMPLETED

    ingestor.ingest("exam", "webcam", 1, b"BB", "video/webm")
    assert orchestrator.trigger("exam", "webcam") is MergeStatus.PENDING
    assert orchestrator.wait(timeout=30)

    job = registry.get_merge_job("exam", Channel.WEBCAM)
    assert job.status is MergeStatus.COMPLETED
    assert job.recording_ref != first_ref
    assert _recording_bytes(registry, backends) == b"AABB"
    assert [orphan.ref for orphan in registry.list_orphans()] == [first_ref]


def test_five_two_second_segments_make_a_ten_second_recording(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    orchestrator: MergeOrchestrator,
) -> None:
    for sequence in range(5):
        ingestor.ingest("exam", "screen", sequence, b"chunk", "video/webm", duration_ms=2000)

    assert _merge_and_wait(orchestrator, Channel.SCREEN) is MergeStatus.COMPLETED

    recording = registry.get_report("exam").to_dict()["recordingUrls"]["screen"]
    assert recording["durationMs"] == 10000
    assert recording["sizeBytes"] == 25


def test_invalid_segments_are_excluded_and_counted(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    backends: StorageBackends,
    orchestrator: MergeOrchestrator,
) -> None:
    ingestor.ingest("exam", "webcam", 0, b"AA", "video/webm")
    stray = ingestor.ingest("exam", "webcam", 1, b"BB", "video/webm")
    with registry._transaction() as connection:
        connection.execute(
            "UPDATE segments SET remote_key = ? WHERE segment_id = ?",
            ("proctoring/exam/webcam/stray.webm", stray.segment_id),
        )

    assert _merge_and_wait(orchestrator) is MergeStatus.COMPLETED

    job = registry.get_merge_job("exam", Channel.WEBCAM)
    assert job.defect_count == 1
    assert _recording_bytes(registry, backends) == b"AA"


def test_transient_publish_failure_is_retryable(
    temp_config: AppConfig,
    registry: SegmentRegistry,
    local_backend: LocalStorageBackend,
    object_backend: ObjectStoreBackend,
    fake_s3,
) -> None:
    backends = StorageBackends(object_backend, local_backend)
    ingestor = SegmentIngestor(temp_config, registry, backends, sleep=lambda _: None)
    orchestrator = MergeOrchestrator(temp_config, registry, backends, sleep=lambda _: None)
    try:
        ingestor.ingest("exam", "webcam", 0, b"AA", "video/webm")
        ingestor.ingest("exam", "webcam", 1, b"BB", "video/webm")
        fake_s3.fail_next["PutObject"] = temp_config.merge.retry_attempts

        assert _merge_and_wait(orchestrator) is MergeStatus.FAILED
        job = registry.get_merge_job("exam", Channel.WEBCAM)
        assert job.retryable

        assert orchestrator.retry_failed() == [("exam", Channel.WEBCAM)]
        assert orchestrator.wait(timeout=30)
        assert registry.get_merge_job("exam", Channel.WEBCAM).status is MergeStatus.COMPLETED
        assert _recording_bytes(registry, backends) == b"AABB"
    finally:
        orchestrator.shutdown()


def test_resume_pending_schedules_left_over_jobs(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    orchestrator: MergeOrchestrator,
) -> None:
    ingestor.ingest("exam", "webcam", 0, b"AA", "video/webm")
    registry.request_merge("exam", Channel.WEBCAM)

    assert orchestrator.resume_pending() == [("exam", Channel.WEBCAM)]
    assert orchestrator.wait(timeout=30)
    assert registry.get_merge_job("exam", Channel.WEBCAM).status is MergeStatus.COMPLETED


def test_finishing_session_merges_channels_with_segments(
    ingestor: SegmentIngestor,
    registry: SegmentRegistry,
    orchestrator: MergeOrchestrator,
) -> None:
    ingestor.ingest("exam", "webcam", 0, b"AA", "video/webm")
    ingestor.ingest("exam", "microphone", 0, b"mic", "audio/webm")

    assert orchestrator.on_session_finished("exam") == {}
    registry.finish_session("exam", "submitted")
    statuses = orchestrator.on_session_finished("exam")
    assert orchestrator.wait(timeout=30)

    assert statuses == {Channel.WEBCAM: MergeStatus.PENDING}
    assert registry.get_merge_statuses("exam") == {
        Channel.SCREEN: MergeStatus.NOT_STARTED,
        Channel.WEBCAM: MergeStatus.COMPLETED,
    }


def test_trigger_rejects_unknown_session_and_microphone(
    registry: SegmentRegistry, orchestrator: MergeOrchestrator
) -> None:
    with pytest.raises(NotFoundError):
        orchestrator.trigger("nobody", Channel.WEBCAM)

    registry.create_session("exam")
    with pytest.raises(ValidationError):
        orchestrator.trigger("exam", "microphone")
