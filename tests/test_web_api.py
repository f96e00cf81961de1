from __future__ import annotations

import dataclasses
from typing import Iterator

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from app.config import AppConfig
from app.errors import ConsistencyError, NotFoundError, TransientBackendError, ValidationError
from app.services.media import RangeNotSatisfiable
from app.services.merge import MergeOrchestrator
from app.services.registry import SegmentRegistry
from app.storage import LocalStorageBackend, LocationRef, ObjectStoreBackend, StorageBackends
from app.web import create_app
from app.web.server import status_for_error


PAYLOAD = bytes(index % 251 for index in range(1000))


@pytest.fixture()
def client(
    temp_config: AppConfig,
    registry: SegmentRegistry,
    backends: StorageBackends,
    orchestrator: MergeOrchestrator,
) -> Iterator[TestClient]:
    app = create_app(temp_config, registry=registry, backends=backends, orchestrator=orchestrator)
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, session_id: str, channel: str, sequence, data: bytes = PAYLOAD, **fields):
    form = {"channel": channel, **fields}
    if sequence is not None:
        form["sequence"] = str(sequence)
    return client.post(
        f"/api/sessions/{session_id}/segments",
        data=form,
        files={"file": ("chunk.webm", data, "video/webm;codecs=vp8")},
    )


def test_status_for_error_mapping() -> None:
    assert status_for_error(ValidationError("x")) == 400
    assert status_for_error(NotFoundError("x")) == 404
    assert status_for_error(ConsistencyError("x")) == 409
    assert status_for_error(RangeNotSatisfiable("x", size=10)) == 416
    assert status_for_error(TransientBackendError("x")) == 503


def test_session_lifecycle_and_report(client: TestClient) -> None:
    created = client.post("/api/sessions", json={"session_id": "exam"})
    assert created.status_code == 201
    assert created.json() == {"sessionId": "exam", "status": "in_progress"}

    assert client.post("/api/sessions", json={"session_id": "exam"}).status_code == 400

    report = client.get("/api/sessions/exam/report")
    assert report.status_code == 200
    payload = report.json()
    assert payload["sessionId"] == "exam"
    assert payload["mergeStatus"] == {"screen": "not_started", "webcam": "not_started"}
    assert payload["segments"] == []


def test_create_session_without_body_generates_identifier(client: TestClient) -> None:
    response = client.post("/api/sessions")

    assert response.status_code == 201
    assert response.json()["sessionId"]


def test_upload_segment_registers_it(client: TestClient) -> None:
    response = _upload(client, "exam", "webcam", 0, duration_ms="2000")

    assert response.status_code == 201
    body = response.json()
    assert body["channel"] == "webcam"
    assert body["sequence"] == 0
    assert body["storageBackend"] == "local"
    assert body["sizeBytes"] == len(PAYLOAD)

    segments = client.get("/api/sessions/exam/report").json()["segments"]
    assert [segment["segmentId"] for segment in segments] == [body["segmentId"]]
    assert segments[0]["mimeType"] == "video/webm"
    assert segments[0]["durationMs"] == 2000


@pytest.mark.parametrize(
    "channel, sequence, extra",
    [
        ("webcam", None, {}),
        ("webcam", "-3", {}),
        ("tablet", 0, {}),
        ("webcam", 0, {"recorded_at": "yesterday"}),
    ],
)
def test_upload_rejects_invalid_fields(client: TestClient, channel, sequence, extra) -> None:
    response = _upload(client, "exam", channel, sequence, **extra)

    assert response.status_code == 400
    assert "detail" in response.json()


def test_upload_rejects_oversized_segment(
    temp_config: AppConfig, registry: SegmentRegistry, backends: StorageBackends
) -> None:
    config = dataclasses.replace(temp_config, max_segment_bytes=10)
    app = create_app(config, registry=registry, backends=backends)

    with TestClient(app) as client:
        response = _upload(client, "exam", "webcam", 0, data=b"x" * 11)

    assert response.status_code == 413


def test_upload_reports_unavailable_store(
    temp_config: AppConfig,
    registry: SegmentRegistry,
    local_backend: LocalStorageBackend,
    object_backend: ObjectStoreBackend,
    fake_s3,
) -> None:
    fake_s3.fail_next["PutObject"] = temp_config.merge.retry_attempts
    app = create_app(temp_config, registry=registry, backends=StorageBackends(object_backend, local_backend))

    with TestClient(app) as client:
        response = _upload(client, "exam", "webcam", 0)

    assert response.status_code == 503


def test_merge_trigger_and_recording_playback(client: TestClient) -> None:
    _upload(client, "exam", "screen", 1, data=PAYLOAD[500:], duration_ms="2000")
    _upload(client, "exam", "screen", 0, data=PAYLOAD[:500], duration_ms="2000")

    response = client.post("/api/sessions/exam/merge", json={"channel": "screen"})
    assert response.status_code == 202
    assert response.json() == {"channel": "screen", "status": "pending"}
    assert client.app.state.orchestrator.wait(timeout=30)

    assert client.get("/api/sessions/exam/merge-status").json() == {
        "screen": "completed",
        "webcam": "not_started",
    }
    recording = client.get("/api/sessions/exam/report").json()["recordingUrls"]["screen"]
    assert recording["mergeStatus"] == "completed"
    assert recording["durationMs"] == 4000
    assert recording["sizeBytes"] == 1000
    assert recording["publicUrl"] is None
    assert LocationRef.parse(recording["ref"]).key.startswith("exam/recordings/screen-")

    full = client.get("/api/sessions/exam/media/recordings/screen")
    assert full.status_code == 200
    assert full.content == PAYLOAD

    partial = client.get(
        "/api/sessions/exam/media/recordings/screen", headers={"Range": "bytes=100-199"}
    )
    assert partial.status_code == 206
    assert partial.headers["content-range"] == "bytes 100-199/1000"
    assert partial.headers["accept-ranges"] == "bytes"
    assert partial.content == PAYLOAD[100:200]


def test_merge_trigger_rejects_microphone(client: TestClient) -> None:
    _upload(client, "exam", "microphone", 0)

    response = client.post("/api/sessions/exam/merge", json={"channel": "microphone"})

    assert response.status_code == 400


def test_finish_session_starts_merges(client: TestClient) -> None:
    _upload(client, "exam", "webcam", 0)

    response = client.post("/api/sessions/exam/finish", json={"status": "auto_submitted"})

    assert response.status_code == 200
    assert response.json() == {
        "sessionId": "exam",
        "status": "auto_submitted",
        "mergeStatus": {"webcam": "pending"},
    }
    assert client.app.state.orchestrator.wait(timeout=30)
    assert client.get("/api/sessions/exam/merge-status").json()["webcam"] == "completed"


def test_segment_streaming_with_ranges(client: TestClient) -> None:
    segment_id = _upload(client, "exam", "webcam", 0).json()["segmentId"]
    url = f"/api/sessions/exam/media/segments/{segment_id}"

    partial = client.get(url, headers={"Range": "bytes=100-199"})
    assert partial.status_code == 206
    assert partial.headers["content-range"] == "bytes 100-199/1000"
    assert partial.headers["content-length"] == "100"
    assert partial.content == PAYLOAD[100:200]

    full = client.get(url)
    assert full.status_code == 200
    assert full.headers["content-length"] == "1000"
    assert full.content == PAYLOAD

    ignored = client.get(url, headers={"Range": "bytes=0-1,5-6"})
    assert ignored.status_code == 200

    unsatisfiable = client.get(url, headers={"Range": "bytes=5000-"})
    assert unsatisfiable.status_code == 416
    assert unsatisfiable.headers["content-range"] == "bytes */1000"


def test_missing_resources_map_to_404_and_409(
    client: TestClient, local_backend: LocalStorageBackend, registry: SegmentRegistry
) -> None:
    assert client.get("/api/sessions/nobody/report").status_code == 404
    assert client.get("/api/sessions/nobody/merge-status").status_code == 404
    assert client.get("/api/sessions/nobody/media/segments/webcam-x").status_code == 404
    assert client.get("/api/sessions/nobody/media/recordings/webcam").status_code == 404

    segment_id = _upload(client, "exam", "webcam", 0).json()["segmentId"]
    local_backend.delete(registry.get_segment("exam", segment_id).location)

    response = client.get(f"/api/sessions/exam/media/segments/{segment_id}")
    assert response.status_code == 409


def test_sweep_endpoint_returns_report(client: TestClient) -> None:
    _upload(client, "exam", "webcam", 0)

    response = client.post("/api/maintenance/sweep")

    assert response.status_code == 200
    body = response.json()
    assert body["sessionsScanned"] == 1
    assert body["segmentsScanned"] == 1
    assert body["repaired"] == []
