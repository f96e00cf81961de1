from pathlib import Path

import pytest

from app.config import AppConfig
from app.storage import (
    BackendKind,
    LocalStorageBackend,
    LocationRef,
    ObjectStoreBackend,
    StorageBackends,
    StorageNotFound,
    StorageUnavailable,
)
from conftest import FakeS3Client, build_config


def test_location_ref_round_trips_through_text() -> None:
    ref = LocationRef(BackendKind.OBJECT_STORE, "proctoring/s1/webcam/000001-a.webm")

    assert str(ref) == "object_store:proctoring/s1/webcam/000001-a.webm"
    assert LocationRef.parse(str(ref)) == ref


@pytest.mark.parametrize("value", ["", "local", "local:", "ftp:key"])
def test_location_ref_rejects_malformed_text(value: str) -> None:
    with pytest.raises(ValueError):
        LocationRef.parse(value)


def test_local_backend_reads_ranges_in_chunks(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media", chunk_size=4)
    payload = bytes(range(20))

    ref = backend.put("s1/webcam/000000-a.webm", payload, "video/webm")

    assert ref == LocationRef(BackendKind.LOCAL, "s1/webcam/000000-a.webm")
    assert backend.size(ref) == 20
    chunks = list(backend.get_range(ref, 5, 14))
    assert b"".join(chunks) == payload[5:15]
    assert all(len(chunk) <= 4 for chunk in chunks)
    assert b"".join(backend.get(ref)) == payload
    assert b"".join(backend.get_range(ref, 18)) == payload[18:]


def test_local_backend_put_leaves_no_partial_files(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media")

    ref = backend.put("s1/screen/000000-b.webm", b"first", "video/webm")
    backend.put("s1/screen/000000-b.webm", b"second", "video/webm")

    target = backend.path_for(ref)
    assert target.read_bytes() == b"second"
    assert [entry.name for entry in target.parent.iterdir()] == [target.name]


def test_local_backend_missing_file_raises_before_streaming(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media")
    ref = backend.ref("s1/webcam/missing.webm")

    with pytest.raises(StorageNotFound):
        backend.get_range(ref, 0)
    with pytest.raises(StorageNotFound):
        backend.size(ref)
    with pytest.raises(StorageNotFound):
        backend.delete(ref)
    assert not backend.exists(ref)


def test_local_backend_rejects_keys_outside_root(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media")

    with pytest.raises(ValueError):
        backend.put("../escape.webm", b"x", "video/webm")


def test_local_backend_delete_removes_empty_directory(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media")
    ref = backend.put("s1/webcam/000000-a.webm", b"x", "video/webm")
    directory = backend.path_for(ref).parent

    backend.delete(ref)

    assert not backend.exists(ref)
    assert not directory.exists()


def test_local_backend_rejects_foreign_references(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media")

    with pytest.raises(ValueError):
        backend.size(LocationRef(BackendKind.OBJECT_STORE, "s1/webcam/a.webm"))


def test_local_backend_materializes_in_place(tmp_path: Path) -> None:
    backend = LocalStorageBackend(tmp_path / "media")
    ref = backend.put("s1/webcam/000000-a.webm", b"abc", "video/webm")

    path = backend.materialize(ref, tmp_path / "staging")

    assert path == backend.path_for(ref)
    assert not (tmp_path / "staging").exists()


def test_object_store_backend_applies_prefix_and_ranges() -> None:
    client = FakeS3Client()
    backend = ObjectStoreBackend("recordings", key_prefix="proctoring", client=client, chunk_size=3)
    payload = b"0123456789"

    ref = backend.put("s1/webcam/000000-a.webm", payload, "video/webm")

    assert ref.backend is BackendKind.OBJECT_STORE
    assert ref.key == "proctoring/s1/webcam/000000-a.webm"
    assert client.objects[("recordings", ref.key)] == (payload, "video/webm")
    assert backend.size(ref) == 10
    assert b"".join(backend.get_range(ref, 2, 5)) == b"2345"
    assert b"".join(backend.get_range(ref, 7)) == b"789"
    assert b"".join(backend.get(ref)) == payload


def test_object_store_backend_maps_missing_objects() -> None:
    backend = ObjectStoreBackend("recordings", client=FakeS3Client())
    ref = backend.ref("s1/webcam/missing.webm")

    with pytest.raises(StorageNotFound):
        backend.get_range(ref, 0)
    with pytest.raises(StorageNotFound):
        backend.size(ref)
    assert not backend.exists(ref)


def test_object_store_backend_maps_service_errors_to_transient() -> None:
    client = FakeS3Client()
    client.fail_next["PutObject"] = 1
    backend = ObjectStoreBackend("recordings", client=client)

    with pytest.raises(StorageUnavailable):
        backend.put("s1/webcam/000000-a.webm", b"x", "video/webm")

    ref = backend.put("s1/webcam/000000-a.webm", b"x", "video/webm")
    assert backend.exists(ref)


def test_object_store_backend_materializes_into_staging(tmp_path: Path) -> None:
    backend = ObjectStoreBackend("recordings", key_prefix="p", client=FakeS3Client())
    ref = backend.put("s1/webcam/000000-a.webm", b"remote-bytes", "video/webm")

    path = backend.materialize(ref, tmp_path / "staging")

    assert path.parent == tmp_path / "staging"
    assert path.read_bytes() == b"remote-bytes"


def test_object_store_put_file_streams_from_disk(tmp_path: Path) -> None:
    client = FakeS3Client()
    backend = ObjectStoreBackend("recordings", client=client)
    source = tmp_path / "merged.webm"
    source.write_bytes(b"merged")

    ref = backend.put_file("s1/recordings/webcam.webm", source, "video/webm")

    assert client.objects[("recordings", ref.key)][0] == b"merged"


def test_object_store_public_url() -> None:
    backend = ObjectStoreBackend(
        "recordings", client=FakeS3Client(), public_base_url="https://cdn.example.com/media/"
    )
    ref = backend.ref("proctoring/s1/recordings/webcam.webm")

    assert backend.public_url(ref) == "https://cdn.example.com/media/proctoring/s1/recordings/webcam.webm"


def test_object_store_rejects_traversal_keys() -> None:
    backend = ObjectStoreBackend("recordings", client=FakeS3Client())

    with pytest.raises(ValueError):
        backend.object_key("s1/../other/key")


def test_backends_from_config_select_active_backend(tmp_path: Path) -> None:
    config = build_config(
        tmp_path,
        storage={"backend": "object_store", "bucket": "recordings"},
    )

    backends = StorageBackends.from_config(config, object_store_client=FakeS3Client())

    assert backends.active.kind is BackendKind.OBJECT_STORE
    assert backends.for_kind(BackendKind.LOCAL).kind is BackendKind.LOCAL


def test_backends_without_bucket_cannot_resolve_object_store(tmp_path: Path) -> None:
    config: AppConfig = build_config(tmp_path)

    backends = StorageBackends.from_config(config)

    assert backends.active.kind is BackendKind.LOCAL
    with pytest.raises(StorageUnavailable):
        backends.for_ref(LocationRef(BackendKind.OBJECT_STORE, "s1/webcam/a.webm"))
    assert backends.public_url(LocationRef(BackendKind.OBJECT_STORE, "k")) is None
